from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import httpx

from deploy import CatalogEntry, DeploymentConfig, DeploymentError, DeploymentManager, deployed_endpoint
from metrics_gpu import TelemetrySample, TelemetrySampler
from runner import AllIterationsFailedError, RunConfig, run_single
from stats import RunSummary, StressSummary


logger = logging.getLogger(__name__)

# parameter name -> (RunConfig field, sweep title)
SWEEP_PARAMETERS = {
    "concurrency": ("concurrency", "Concurrency"),
    "max_tokens": ("max_tokens", "Max Tokens"),
    "context_size": ("context_size", "Context Size"),
    "gpu_count": ("gpu_count", "GPU Count"),
}
REDEPLOY_PARAMETERS = {"context_size", "gpu_count"}


class SweepConfigError(ValueError):
    pass


def parse_sweep_values(value: str) -> list[int]:
    if not value or not value.strip():
        return []
    values: list[int] = []
    for part in value.split(","):
        try:
            values.append(int(part.strip()))
        except ValueError as exc:
            raise SweepConfigError(
                f"invalid value '{part.strip()}'. Expected comma-separated integers."
            ) from exc
    return values


@dataclass(frozen=True)
class SweepPoint:
    parameter: str
    value: str
    summary: Optional[RunSummary] = None
    stress: Optional[StressSummary] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        populated = sum(item is not None for item in (self.summary, self.stress, self.error))
        if populated != 1:
            raise ValueError(
                f"sweep point {self.parameter}={self.value} needs exactly one of "
                f"summary, stress or error (got {populated})"
            )

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameter": self.parameter,
            "value": self.value,
            "summary": self.summary.to_dict() if self.summary else None,
            "stress": self.stress.to_dict() if self.stress else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SweepPoint:
        summary = payload.get("summary")
        stress = payload.get("stress")
        return cls(
            parameter=payload["parameter"],
            value=payload["value"],
            summary=RunSummary.from_dict(summary) if summary else None,
            stress=StressSummary.from_dict(stress) if stress else None,
            error=payload.get("error"),
        )


@dataclass
class SweepSet:
    sweep_type: str
    values: list[str] = field(default_factory=list)
    results: list[SweepPoint] = field(default_factory=list)
    started_at: float = 0.0
    duration_s: float = 0.0
    gpu_samples: list[TelemetrySample] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sweep_type": self.sweep_type,
            "values": list(self.values),
            "results": [point.to_dict() for point in self.results],
            "started_at": self.started_at,
            "duration_s": self.duration_s,
            "gpu_samples": [sample.to_dict() for sample in self.gpu_samples],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SweepSet:
        return cls(
            sweep_type=payload["sweep_type"],
            values=list(payload.get("values", [])),
            results=[SweepPoint.from_dict(item) for item in payload.get("results", [])],
            started_at=payload.get("started_at", 0.0),
            duration_s=payload.get("duration_s", 0.0),
            gpu_samples=[TelemetrySample.from_dict(item) for item in payload.get("gpu_samples", [])],
        )


def _sweep_parameter(parameter: str) -> tuple[str, str]:
    try:
        return SWEEP_PARAMETERS[parameter]
    except KeyError:
        raise SweepConfigError(
            f"unknown sweep parameter '{parameter}'. Available: {', '.join(sorted(SWEEP_PARAMETERS))}"
        ) from None


async def run_sweep_iteration(
    client: httpx.AsyncClient,
    endpoint: str,
    config: RunConfig,
    parameter: str,
    value: str,
) -> SweepPoint:
    try:
        result = await run_single(client, endpoint, config)
    except (AllIterationsFailedError, ValueError) as exc:
        # ValueError: prompt source could not be loaded
        logger.warning("%s=%s: %s", parameter, value, exc)
        return SweepPoint(parameter=parameter, value=value, error=str(exc))
    if isinstance(result, StressSummary):
        return SweepPoint(parameter=parameter, value=value, stress=result)
    return SweepPoint(parameter=parameter, value=value, summary=result)


def deployment_config(config: RunConfig, catalog_entry: Optional[CatalogEntry] = None) -> DeploymentConfig:
    gpu_layers = config.gpu_layers
    if gpu_layers < 0 and catalog_entry is not None:
        gpu_layers = catalog_entry.gpu_layers
    return DeploymentConfig(
        context_size=config.context_size,
        gpu=config.gpu,
        gpu_count=config.gpu_count,
        gpu_layers=gpu_layers,
        accelerator=config.accelerator,
        catalog_entry=catalog_entry,
    )


async def run_deployed_iteration(
    client: httpx.AsyncClient,
    deployer: DeploymentManager,
    target_id: str,
    config: RunConfig,
    parameter: str,
    value: str,
    catalog_entry: Optional[CatalogEntry] = None,
) -> SweepPoint:
    """One value of a redeploying sweep: provision, run, tear down."""
    try:
        async with deployed_endpoint(
            deployer,
            target_id,
            deployment_config(config, catalog_entry),
            deploy_wait_s=config.deploy_wait_s,
            cleanup=config.cleanup,
        ) as endpoint:
            return await run_sweep_iteration(client, endpoint, config, parameter, value)
    except DeploymentError as exc:
        logger.warning("%s=%s: %s", parameter, value, exc)
        return SweepPoint(parameter=parameter, value=value, error=str(exc))


async def run_sweep(
    client: httpx.AsyncClient,
    endpoint: str,
    config: RunConfig,
    parameter: str,
    values: Sequence[int],
    sampler: Optional[TelemetrySampler] = None,
) -> SweepSet:
    """Repeat a run once per value of a request-shape parameter.

    The target is never re-provisioned; each value gets its own copy of
    ``config``.
    """
    field_name, title = _sweep_parameter(parameter)
    if parameter in REDEPLOY_PARAMETERS:
        raise SweepConfigError(f"{parameter} sweeps redeploy the target; use run_redeploy_sweep")

    sweep = SweepSet(sweep_type=title, values=[str(v) for v in values], started_at=time.time())
    started = time.monotonic()
    if sampler is not None:
        await sampler.start()
    try:
        for value in values:
            logger.info("Testing %s: %d", parameter, value)
            run_config = dataclasses.replace(config, **{field_name: value})
            point = await run_sweep_iteration(client, endpoint, run_config, parameter, str(value))
            sweep.results.append(point)
    finally:
        if sampler is not None:
            sweep.gpu_samples = await sampler.stop()
    sweep.duration_s = time.monotonic() - started
    return sweep


async def run_redeploy_sweep(
    client: httpx.AsyncClient,
    deployer: DeploymentManager,
    target_id: str,
    config: RunConfig,
    parameter: str,
    values: Sequence[int],
    catalog_entry: Optional[CatalogEntry] = None,
    sampler: Optional[TelemetrySampler] = None,
) -> SweepSet:
    """Repeat a run once per value of a parameter that needs a fresh target.

    A deploy, readiness or endpoint failure is recorded on that value's
    point and the sweep continues with the next value.
    """
    field_name, title = _sweep_parameter(parameter)
    if parameter not in REDEPLOY_PARAMETERS:
        raise SweepConfigError(f"{parameter} does not require redeployment; use run_sweep")

    sweep = SweepSet(sweep_type=title, values=[str(v) for v in values], started_at=time.time())
    started = time.monotonic()
    if sampler is not None:
        await sampler.start()
    try:
        for value in values:
            logger.info("Testing %s: %d", parameter, value)
            overrides: dict[str, Any] = {"name": target_id, field_name: value}
            if parameter == "gpu_count":
                overrides["gpu"] = True
            run_config = dataclasses.replace(config, **overrides)
            point = await run_deployed_iteration(
                client, deployer, target_id, run_config, parameter, str(value), catalog_entry
            )
            sweep.results.append(point)
    finally:
        if sampler is not None:
            sweep.gpu_samples = await sampler.stop()
    sweep.duration_s = time.monotonic() - started
    return sweep
