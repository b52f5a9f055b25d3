from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Iterable, Sequence

from loadgen import RequestOutcome


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(sum(values) / len(values))


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Linear-interpolation percentile over values already sorted ascending."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])
    index = (pct / 100.0) * (len(sorted_values) - 1)
    low = math.floor(index)
    high = math.ceil(index)
    if high >= len(sorted_values):
        return float(sorted_values[-1])
    if low == high:
        return float(sorted_values[low])
    fraction = index - low
    return float(sorted_values[low] * (1.0 - fraction) + sorted_values[high] * fraction)


@dataclass(frozen=True)
class RunSummary:
    service_name: str = ""
    endpoint: str = ""
    iterations: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    prompt_tokens: int = 0
    max_tokens: int = 0

    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_mean_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0

    prompt_toks_per_sec_mean: float = 0.0
    generation_toks_per_sec_mean: float = 0.0
    generation_toks_per_sec_min: float = 0.0
    generation_toks_per_sec_max: float = 0.0

    results: tuple[RequestOutcome, ...] = field(default_factory=tuple)
    started_at: float = 0.0
    duration_s: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.iterations <= 0:
            return 0.0
        return self.successful_runs / self.iterations * 100.0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["results"] = [outcome.to_dict() for outcome in self.results]
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]):
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["results"] = tuple(
            RequestOutcome.from_dict(item) for item in payload.get("results", [])
        )
        return cls(**values)


@dataclass(frozen=True)
class StressSummary(RunSummary):
    concurrency: int = 1
    target_duration_s: float = 0.0
    total_requests: int = 0
    requests_per_sec: float = 0.0
    error_rate: float = 0.0
    peak_toks_per_sec: float = 0.0
    # population variance of generation tok/s, truncated to two decimals
    toks_per_sec_spread: float = 0.0


def _run_summary_values(
    outcomes: Sequence[RequestOutcome],
    service_name: str,
    endpoint: str,
    max_tokens: int,
    started_at: float,
    duration_s: float,
) -> dict[str, Any]:
    values: dict[str, Any] = {
        "service_name": service_name,
        "endpoint": endpoint,
        "iterations": len(outcomes),
        "max_tokens": max_tokens,
        "results": tuple(outcomes),
        "started_at": started_at,
        "duration_s": duration_s,
    }

    successful = [outcome for outcome in outcomes if outcome.succeeded]
    values["successful_runs"] = len(successful)
    values["failed_runs"] = len(outcomes) - len(successful)
    if not successful:
        return values

    values["prompt_tokens"] = successful[-1].prompt_tokens

    latencies = sorted(outcome.total_time_ms for outcome in successful)
    values["latency_min_ms"] = latencies[0]
    values["latency_max_ms"] = latencies[-1]
    values["latency_mean_ms"] = mean(latencies)
    values["latency_p50_ms"] = percentile(latencies, 50)
    values["latency_p95_ms"] = percentile(latencies, 95)
    values["latency_p99_ms"] = percentile(latencies, 99)

    generation_rates = sorted(
        outcome.generation_toks_per_sec
        for outcome in successful
        if outcome.generation_toks_per_sec > 0
    )
    prompt_rates = [
        outcome.prompt_toks_per_sec
        for outcome in successful
        if outcome.prompt_toks_per_sec > 0
    ]
    if generation_rates:
        values["generation_toks_per_sec_mean"] = mean(generation_rates)
        values["generation_toks_per_sec_min"] = generation_rates[0]
        values["generation_toks_per_sec_max"] = generation_rates[-1]
    if prompt_rates:
        values["prompt_toks_per_sec_mean"] = mean(prompt_rates)
    return values


def compute_run_summary(
    outcomes: Sequence[RequestOutcome],
    *,
    service_name: str = "",
    endpoint: str = "",
    max_tokens: int = 0,
    started_at: float = 0.0,
    duration_s: float = 0.0,
) -> RunSummary:
    return RunSummary(
        **_run_summary_values(
            outcomes, service_name, endpoint, max_tokens, started_at, duration_s
        )
    )


def throughput_spread(rates: Iterable[float], rate_mean: float) -> float:
    """Sum of squared deviations over n, truncated to two decimals.

    This is a variance, not a standard deviation; reports built on earlier
    runs compare against this scale.
    """
    rates = list(rates)
    if not rates:
        return 0.0
    spread = sum((rate - rate_mean) ** 2 for rate in rates) / len(rates)
    if spread > 0:
        spread = math.trunc(spread * 100) / 100
    return float(spread)


def compute_stress_summary(
    outcomes: Sequence[RequestOutcome],
    *,
    concurrency: int,
    target_duration_s: float = 0.0,
    elapsed_s: float = 0.0,
    service_name: str = "",
    endpoint: str = "",
    max_tokens: int = 0,
    started_at: float = 0.0,
) -> StressSummary:
    values = _run_summary_values(
        outcomes, service_name, endpoint, max_tokens, started_at, elapsed_s
    )
    total = len(outcomes)
    values["concurrency"] = concurrency
    values["target_duration_s"] = target_duration_s
    values["total_requests"] = total
    if elapsed_s > 0:
        values["requests_per_sec"] = total / elapsed_s
    if total > 0:
        values["error_rate"] = values["failed_runs"] / total * 100.0

    generation_rates = [
        outcome.generation_toks_per_sec
        for outcome in outcomes
        if outcome.succeeded and outcome.generation_toks_per_sec > 0
    ]
    if generation_rates:
        values["peak_toks_per_sec"] = max(generation_rates)
        values["toks_per_sec_spread"] = throughput_spread(
            generation_rates, values.get("generation_toks_per_sec_mean", 0.0)
        )
    return StressSummary(**values)
