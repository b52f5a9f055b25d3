from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import httpx

from deploy import Catalog, CatalogEntry, DeploymentError, DeploymentManager, deployed_endpoint
from runner import AllIterationsFailedError, RunConfig, run_single
from stats import StressSummary
from sweep import deployment_config


logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class ModelBenchmark:
    """One row of a multi-model comparison."""

    model_id: str
    model_name: str = ""
    model_size: str = ""
    status: str = STATUS_FAILED
    error: Optional[str] = None
    generation_toks_per_sec: float = 0.0
    prompt_toks_per_sec: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p99_ms: float = 0.0
    vram_estimate: str = ""
    # stress runs only
    total_requests: int = 0
    requests_per_sec: float = 0.0
    error_rate: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ModelBenchmark:
        names = {item.name for item in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in names})


@dataclass
class ComparisonReport:
    models: list[ModelBenchmark] = field(default_factory=list)
    started_at: float = 0.0
    duration_s: float = 0.0
    iterations: int = 0
    max_tokens: int = 0
    gpu: bool = False
    gpu_count: int = 1
    accelerator: Optional[str] = None
    is_stress_test: bool = False
    concurrency: int = 1
    target_duration_s: float = 0.0

    @property
    def failed(self) -> list[ModelBenchmark]:
        return [model for model in self.models if not model.ok]

    def to_dict(self) -> dict[str, Any]:
        payload = dataclasses.asdict(self)
        payload["models"] = [model.to_dict() for model in self.models]
        return payload


def _identity(target_id: str, entry: Optional[CatalogEntry]) -> dict[str, str]:
    if entry is None:
        return {"model_id": target_id, "model_name": target_id}
    return {
        "model_id": target_id,
        "model_name": entry.name or target_id,
        "model_size": entry.size,
        "vram_estimate": entry.vram_estimate or entry.resources.gpu_memory,
    }


async def benchmark_catalog_model(
    client: httpx.AsyncClient,
    deployer: DeploymentManager,
    target_id: str,
    entry: Optional[CatalogEntry],
    config: RunConfig,
) -> ModelBenchmark:
    """Deploy one model, benchmark it and tear it down.

    Never raises for deploy or benchmark failures; they are returned as a
    failed row so the remaining models still run.
    """
    identity = _identity(target_id, entry)
    run_config = dataclasses.replace(config, name=target_id)
    try:
        async with deployed_endpoint(
            deployer,
            target_id,
            deployment_config(run_config, entry),
            deploy_wait_s=run_config.deploy_wait_s,
            cleanup=run_config.cleanup,
        ) as endpoint:
            try:
                result = await run_single(client, endpoint, run_config)
            except (AllIterationsFailedError, ValueError) as exc:
                logger.warning("Benchmark of %s failed: %s", target_id, exc)
                return ModelBenchmark(**identity, error=f"benchmark failed: {exc}")
    except DeploymentError as exc:
        logger.warning("Deployment of %s failed: %s", target_id, exc)
        return ModelBenchmark(**identity, error=str(exc))

    values: dict[str, Any] = {
        "generation_toks_per_sec": result.generation_toks_per_sec_mean,
        "prompt_toks_per_sec": result.prompt_toks_per_sec_mean,
        "latency_p50_ms": result.latency_p50_ms,
        "latency_p99_ms": result.latency_p99_ms,
    }
    if isinstance(result, StressSummary):
        values.update(
            total_requests=result.total_requests,
            requests_per_sec=result.requests_per_sec,
            error_rate=result.error_rate,
        )
    logger.info("%s: %.1f tok/s", target_id, result.generation_toks_per_sec_mean)
    return ModelBenchmark(**identity, status=STATUS_SUCCESS, **values)


async def run_catalog_comparison(
    client: httpx.AsyncClient,
    deployer: DeploymentManager,
    catalog: Optional[Catalog],
    target_ids: Sequence[str],
    config: RunConfig,
    preload: bool = False,
) -> ComparisonReport:
    """Benchmark each target in turn and collect one row per model.

    Every id is looked up before anything is deployed, so an unknown id
    raises ``CatalogError`` without touching the deployer.
    """
    targets = [target.strip() for target in target_ids if target.strip()]
    if not targets:
        raise ValueError("comparison needs at least one target")
    entries = {target: catalog.get_entry(target) if catalog else None for target in targets}

    report = ComparisonReport(
        started_at=time.time(),
        iterations=config.iterations,
        max_tokens=config.max_tokens,
        gpu=config.gpu,
        gpu_count=config.gpu_count,
        accelerator=config.accelerator,
        is_stress_test=config.stress_mode,
        concurrency=config.concurrency,
        target_duration_s=config.duration_s,
    )
    started = time.monotonic()
    for position, target in enumerate(targets, start=1):
        logger.info("Model %d/%d: %s", position, len(targets), target)
        if preload:
            try:
                await deployer.preload(target)
            except DeploymentError as exc:
                logger.warning("Preload of %s failed: %s", target, exc)
        report.models.append(
            await benchmark_catalog_model(client, deployer, target, entries[target], config)
        )
    report.duration_s = time.monotonic() - started
    return report
