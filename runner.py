from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import httpx

from loadgen import (
    RequestFailedError,
    RequestOutcome,
    RequestSettings,
    load_prompts,
    send_chat_request,
)
from stats import RunSummary, StressSummary, compute_run_summary, compute_stress_summary


logger = logging.getLogger(__name__)

PROGRESS_INTERVAL_S = 2.0


@dataclass
class RunConfig:
    name: str = "benchmark"
    endpoint: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = None
    iterations: int = 10
    warmup: int = 2
    prompt: Optional[str] = None
    prompt_file: Optional[Path] = None
    max_tokens: int = 50
    concurrency: int = 1
    duration_s: float = 0.0
    timeout_s: float = 60.0
    temperature: float = 0.7

    # deployment shape, used when the target is (re)provisioned
    context_size: Optional[int] = None
    gpu: bool = False
    gpu_count: int = 1
    # -1 keeps the catalog default
    gpu_layers: int = -1
    accelerator: Optional[str] = None
    cleanup: bool = True
    deploy_wait_s: float = 600.0

    monitor_gpu: bool = False
    monitor_interval_s: float = 10.0
    show_progress: bool = True

    @property
    def stress_mode(self) -> bool:
        return self.concurrency > 1 or self.duration_s > 0

    def request_settings(self) -> RequestSettings:
        return RequestSettings(
            max_tokens=self.max_tokens,
            timeout_s=float(self.timeout_s),
            temperature=self.temperature,
            model=self.model,
            api_key=self.api_key,
        )

    def prompts(self) -> list[str]:
        return load_prompts(self.prompt, self.prompt_file, self.stress_mode)


class AllIterationsFailedError(RuntimeError):
    def __init__(self, iterations: int) -> None:
        super().__init__(f"all iterations failed ({iterations} attempted)")
        self.iterations = iterations


async def _attempt(
    client: httpx.AsyncClient,
    endpoint: str,
    settings: RequestSettings,
    prompt: str,
    iteration: int,
) -> RequestOutcome:
    try:
        return await send_chat_request(client, endpoint, settings, prompt, iteration)
    except RequestFailedError as exc:
        return RequestOutcome.failed(iteration, str(exc))
    except Exception as exc:  # noqa: BLE001
        return RequestOutcome.failed(iteration, f"request failed: {exc}")


async def run_warmup(
    client: httpx.AsyncClient,
    endpoint: str,
    settings: RequestSettings,
    prompts: list[str],
    count: int,
) -> None:
    if count <= 0:
        return
    logger.info("Running %d warmup requests", count)
    for i in range(count):
        try:
            await send_chat_request(client, endpoint, settings, prompts[i % len(prompts)], i + 1)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Warmup %d failed: %s", i + 1, exc)
        else:
            logger.debug("Warmup %d ok", i + 1)


async def run_benchmark(
    client: httpx.AsyncClient,
    endpoint: str,
    config: RunConfig,
    prompts: Optional[list[str]] = None,
) -> RunSummary:
    """Sequential single-shot run: warm-up, then ``config.iterations`` requests."""
    started_at = time.time()
    started = time.monotonic()
    prompts = prompts or config.prompts()
    settings = config.request_settings()

    await run_warmup(client, endpoint, settings, prompts, config.warmup)

    logger.info("Running %d benchmark iterations", config.iterations)
    outcomes: list[RequestOutcome] = []
    for i in range(1, config.iterations + 1):
        outcome = await _attempt(client, endpoint, settings, prompts[(i - 1) % len(prompts)], i)
        if outcome.succeeded:
            logger.info(
                "[%d/%d] %.1f tok/s (%.0f ms)",
                i,
                config.iterations,
                outcome.generation_toks_per_sec,
                outcome.total_time_ms,
            )
        else:
            logger.warning("[%d/%d] error: %s", i, config.iterations, outcome.error)
        outcomes.append(outcome)

    summary = compute_run_summary(
        outcomes,
        service_name=config.name,
        endpoint=endpoint,
        max_tokens=config.max_tokens,
        started_at=started_at,
        duration_s=time.monotonic() - started,
    )
    if summary.successful_runs == 0:
        raise AllIterationsFailedError(config.iterations)
    return summary


class StressCounters:
    """Live tallies for progress output.

    Mutated only between awaits on the event loop, so increments never
    interleave.
    """

    def __init__(self) -> None:
        self.completed = 0
        self.errors = 0
        self.completion_tokens = 0

    @property
    def total(self) -> int:
        return self.completed + self.errors

    def record(self, outcome: RequestOutcome) -> None:
        if outcome.succeeded:
            self.completed += 1
            self.completion_tokens += outcome.completion_tokens
        else:
            self.errors += 1


async def _wait_for_workers(tasks: list[asyncio.Task[None]], timeout_s: float) -> None:
    if not tasks:
        return
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        logger.warning("%d workers still busy after %.0fs drain, cancelling", len(pending), timeout_s)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        task.result()


class StressExecutor:
    """Fixed pool of concurrent workers against one endpoint.

    Workers share one iteration counter and one result list. A run is bound
    either by wall-clock duration (which wins when both are set) or by the
    iteration budget. Once the stop event is set each worker finishes its
    in-flight request before returning, so duration is a soft lower bound.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        config: RunConfig,
        prompts: Optional[list[str]] = None,
        progress_interval_s: float = PROGRESS_INTERVAL_S,
    ) -> None:
        self.client = client
        self.endpoint = endpoint
        self.config = config
        self.prompts = prompts or config.prompts()
        self.concurrency = max(1, config.concurrency)
        self.duration_s = max(0.0, float(config.duration_s))
        self.progress_interval_s = progress_interval_s
        self.settings = config.request_settings()
        self.counters = StressCounters()

        self._results: list[RequestOutcome] = []
        self._results_lock = asyncio.Lock()
        self._progress_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._iteration = 0
        self._deadline: Optional[float] = None
        self._started = 0.0
        self._last_progress_at = 0.0

    def _should_stop(self) -> bool:
        if self._stop_event.is_set():
            return True
        if self._deadline is not None:
            return time.monotonic() >= self._deadline
        return self._iteration >= self.config.iterations

    def _claim_iteration(self) -> Optional[int]:
        if self._should_stop():
            return None
        self._iteration += 1
        return self._iteration

    async def _worker(self) -> None:
        while True:
            iteration = self._claim_iteration()
            if iteration is None:
                return
            prompt = self.prompts[(iteration - 1) % len(self.prompts)]
            outcome = await _attempt(self.client, self.endpoint, self.settings, prompt, iteration)
            self.counters.record(outcome)
            async with self._results_lock:
                self._results.append(outcome)
            await self._maybe_report_progress()

    async def _maybe_report_progress(self) -> None:
        if not self.config.show_progress:
            return
        async with self._progress_lock:
            now = time.monotonic()
            if now - self._last_progress_at < self.progress_interval_s:
                return
            self._last_progress_at = now
            print("\r" + self.progress_line(now), end="", flush=True)

    def progress_line(self, now: float) -> str:
        elapsed = max(now - self._started, 1e-9)
        total = self.counters.total
        rps = total / elapsed
        tps = self.counters.completion_tokens / elapsed
        error_rate = self.counters.errors / total * 100.0 if total else 0.0
        if self.duration_s > 0:
            remaining = max(0.0, self.duration_s - (now - self._started))
            return (
                f"{remaining:.0f}s remaining | {total} req ({rps:.1f}/s) | "
                f"{tps:.1f} tok/s | {error_rate:.1f}% errors     "
            )
        done_pct = total / self.config.iterations * 100.0 if self.config.iterations else 0.0
        return (
            f"{total}/{self.config.iterations} ({done_pct:.1f}%) | {rps:.1f} req/s | "
            f"{tps:.1f} tok/s | {error_rate:.1f}% errors     "
        )

    async def run(self) -> StressSummary:
        started_at = time.time()
        await run_warmup(self.client, self.endpoint, self.settings, self.prompts, self.config.warmup)

        if self.duration_s > 0:
            logger.info(
                "Running stress test for %.0fs with %d concurrent workers",
                self.duration_s,
                self.concurrency,
            )
        else:
            logger.info(
                "Running %d iterations with %d concurrent workers",
                self.config.iterations,
                self.concurrency,
            )

        self._started = time.monotonic()
        self._last_progress_at = self._started
        if self.duration_s > 0:
            self._deadline = self._started + self.duration_s

        tasks = [asyncio.create_task(self._worker()) for _ in range(self.concurrency)]
        if self.duration_s > 0:
            await asyncio.sleep(self.duration_s)
            self._stop_event.set()
            await _wait_for_workers(tasks, timeout_s=self.settings.timeout_s + 5.0)
        else:
            await asyncio.gather(*tasks)
        elapsed_s = time.monotonic() - self._started
        if self.config.show_progress:
            print()

        async with self._results_lock:
            outcomes = list(self._results)
        return compute_stress_summary(
            outcomes,
            concurrency=self.concurrency,
            target_duration_s=self.duration_s,
            elapsed_s=elapsed_s,
            service_name=self.config.name,
            endpoint=self.endpoint,
            max_tokens=self.config.max_tokens,
            started_at=started_at,
        )


async def run_stress_test(
    client: httpx.AsyncClient,
    endpoint: str,
    config: RunConfig,
    prompts: Optional[list[str]] = None,
) -> StressSummary:
    return await StressExecutor(client, endpoint, config, prompts).run()


async def run_single(
    client: httpx.AsyncClient,
    endpoint: str,
    config: RunConfig,
) -> Union[RunSummary, StressSummary]:
    if config.stress_mode:
        return await run_stress_test(client, endpoint, config)
    return await run_benchmark(client, endpoint, config)
