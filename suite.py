from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import httpx

from deploy import Catalog, CatalogEntry, DeploymentError, DeploymentManager, deployed_endpoint
from metrics_gpu import TelemetrySampler
from report import ReportWriter, render_stress_summary, render_sweep_table
from runner import AllIterationsFailedError, RunConfig, run_stress_test
from stats import StressSummary
from sweep import (
    SweepPoint,
    SweepSet,
    deployment_config,
    run_redeploy_sweep,
    run_sweep,
    run_sweep_iteration,
)


logger = logging.getLogger(__name__)

MINUTE_S = 60.0
DEFAULT_PHASE_CONCURRENCY = 4


class UnknownSuiteError(KeyError):
    def __init__(self, name: str, available: Sequence[str]) -> None:
        super().__init__(name)
        self.name = name
        self.available = list(available)

    def __str__(self) -> str:
        return f"unknown suite '{self.name}'. Available: {', '.join(sorted(self.available))}"


@dataclass(frozen=True)
class SuitePhase:
    name: str
    description: str = ""
    duration_s: float = 0.0


@dataclass(frozen=True)
class PreloadPhase(SuitePhase):
    """Warm the target's model cache. Sends no requests."""


@dataclass(frozen=True)
class ConcurrencyPhase(SuitePhase):
    concurrency: tuple[int, ...] = (DEFAULT_PHASE_CONCURRENCY,)
    stability: bool = False


@dataclass(frozen=True)
class TokensPhase(SuitePhase):
    max_tokens: tuple[int, ...] = ()
    concurrency: int = DEFAULT_PHASE_CONCURRENCY


@dataclass(frozen=True)
class ContextPhase(SuitePhase):
    context_sizes: tuple[int, ...] = ()
    concurrency: int = DEFAULT_PHASE_CONCURRENCY


@dataclass(frozen=True)
class GPUScalingPhase(SuitePhase):
    gpu_counts: tuple[int, ...] = ()
    concurrency: tuple[int, ...] = (1, 2, 4)


@dataclass(frozen=True)
class SuitePlan:
    name: str
    description: str
    phases: tuple[SuitePhase, ...]


_PRELOAD = PreloadPhase(name="preload", description="Preload model cache")
_CONCURRENCY_SWEEP = ConcurrencyPhase(
    name="concurrency-sweep",
    description="Concurrency scaling test",
    concurrency=(1, 2, 4, 8),
    duration_s=5 * MINUTE_S,
)

AVAILABLE_SUITES: dict[str, SuitePlan] = {
    "quick": SuitePlan(
        name="quick",
        description="Fast validation (~10 min) - concurrent load + quick stress test",
        phases=(
            ConcurrencyPhase(
                name="concurrent",
                description="Concurrent load test",
                concurrency=(1, 2, 4),
                duration_s=2 * MINUTE_S,
            ),
            ConcurrencyPhase(
                name="stress",
                description="Quick stress test",
                concurrency=(4,),
                duration_s=5 * MINUTE_S,
            ),
        ),
    ),
    "stress": SuitePlan(
        name="stress",
        description="Stress focused (~1 hr) - preload + concurrent sweep + stability test",
        phases=(
            _PRELOAD,
            _CONCURRENCY_SWEEP,
            ConcurrencyPhase(
                name="stability",
                description="Long-running stability test",
                concurrency=(4,),
                duration_s=30 * MINUTE_S,
                stability=True,
            ),
        ),
    ),
    "full": SuitePlan(
        name="full",
        description="Comprehensive (~4 hr) - all tests including context and token sweeps",
        phases=(
            _PRELOAD,
            _CONCURRENCY_SWEEP,
            TokensPhase(
                name="tokens-sweep",
                description="Generation length test",
                max_tokens=(64, 256, 512, 1024, 2048),
                concurrency=4,
                duration_s=3 * MINUTE_S,
            ),
            ContextPhase(
                name="context-sweep",
                description="Context size test (redeploys)",
                context_sizes=(4096, 8192, 16384, 32768),
                concurrency=4,
                duration_s=5 * MINUTE_S,
            ),
            ConcurrencyPhase(
                name="stability",
                description="Long-running stability test",
                concurrency=(4,),
                duration_s=60 * MINUTE_S,
                stability=True,
            ),
        ),
    ),
    "context": SuitePlan(
        name="context",
        description="Context length testing - sweep from 4K to 64K context sizes",
        phases=(
            ContextPhase(
                name="context-sweep",
                description="Context size sweep (redeploys for each)",
                context_sizes=(4096, 8192, 16384, 32768, 65536),
                concurrency=4,
                duration_s=5 * MINUTE_S,
            ),
        ),
    ),
    "scaling": SuitePlan(
        name="scaling",
        description="Multi-GPU efficiency - compare 1 GPU vs 2 GPU performance",
        phases=(
            GPUScalingPhase(
                name="single-gpu",
                description="Single GPU baseline",
                gpu_counts=(1,),
                concurrency=(1, 2, 4),
                duration_s=5 * MINUTE_S,
            ),
            GPUScalingPhase(
                name="multi-gpu",
                description="Multi-GPU comparison",
                gpu_counts=(2,),
                concurrency=(1, 2, 4),
                duration_s=5 * MINUTE_S,
            ),
        ),
    ),
}


def get_suite(name: str) -> SuitePlan:
    try:
        return AVAILABLE_SUITES[name]
    except KeyError:
        raise UnknownSuiteError(name, list(AVAILABLE_SUITES)) from None


def suite_help() -> str:
    lines = ["Available test suites:"]
    for plan in AVAILABLE_SUITES.values():
        lines.append(f"  {plan.name:<10} {plan.description}")
        for phase in plan.phases:
            lines.append(f"             • {phase.description}")
    return "\n".join(lines)


@dataclass
class PhaseOutcome:
    index: int
    phase_name: str
    sweeps: list[SweepSet] = field(default_factory=list)
    stress: list[StressSummary] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "phase_name": self.phase_name,
            "sweeps": [sweep.to_dict() for sweep in self.sweeps],
            "stress": [summary.to_dict() for summary in self.stress],
            "error": self.error,
        }


SamplerFactory = Callable[[], TelemetrySampler]


class SuiteRunner:
    """Runs every phase of a plan against each target, in declared order.

    A phase that fails is recorded and reported, and the runner moves on to
    the next phase. Report sections are written as soon as each sweep or
    stability run finishes.
    """

    def __init__(
        self,
        plan: SuitePlan,
        target_ids: Sequence[str],
        deployer: DeploymentManager,
        client: httpx.AsyncClient,
        config: RunConfig,
        report: Optional[ReportWriter] = None,
        catalog: Optional[Catalog] = None,
        sampler_factory: Optional[SamplerFactory] = None,
    ) -> None:
        self.plan = plan
        self.target_ids = [target.strip() for target in target_ids if target.strip()]
        self.deployer = deployer
        self.client = client
        self.config = config
        self.report = report
        self.catalog = catalog
        self.sampler_factory = sampler_factory
        self._entries: dict[str, Optional[CatalogEntry]] = {}

    def _resolve_targets(self) -> None:
        if not self.target_ids:
            raise ValueError("suite needs at least one target")
        for target in self.target_ids:
            self._entries[target] = self.catalog.get_entry(target) if self.catalog else None

    def _sampler(self) -> Optional[TelemetrySampler]:
        if self.sampler_factory is None:
            return None
        return self.sampler_factory()

    def _target_config(self, target: str, **overrides) -> RunConfig:
        return dataclasses.replace(self.config, name=target, **overrides)

    async def run(self) -> list[PhaseOutcome]:
        self._resolve_targets()
        started = time.monotonic()
        logger.info(
            "Suite %s: %d phases against %s",
            self.plan.name,
            len(self.plan.phases),
            ", ".join(self.target_ids),
        )
        if self.report is not None:
            self.report.write_suite_config(
                self.plan.name, self.plan.description, self.target_ids, len(self.plan.phases)
            )

        outcomes: list[PhaseOutcome] = []
        for index, phase in enumerate(self.plan.phases, start=1):
            logger.info("Phase %d/%d: %s", index, len(self.plan.phases), phase.description)
            outcome = PhaseOutcome(index=index, phase_name=phase.name)
            try:
                await self._run_phase(phase, outcome)
            except (DeploymentError, AllIterationsFailedError) as exc:
                outcome.error = str(exc)
                logger.warning("Phase %d (%s) failed: %s", index, phase.name, exc)
                if self.report is not None:
                    self.report.write_phase_failure(index, phase.name, outcome.error)
            outcomes.append(outcome)

        logger.info("Suite %s completed in %.0fs", self.plan.name, time.monotonic() - started)
        return outcomes

    async def _run_phase(self, phase: SuitePhase, outcome: PhaseOutcome) -> None:
        if isinstance(phase, PreloadPhase):
            await self._run_preload()
        elif isinstance(phase, ConcurrencyPhase):
            await self._run_concurrency(phase, outcome)
        elif isinstance(phase, TokensPhase):
            await self._run_tokens(phase, outcome)
        elif isinstance(phase, ContextPhase):
            await self._run_context(phase, outcome)
        elif isinstance(phase, GPUScalingPhase):
            await self._run_gpu_scaling(phase, outcome)
        else:
            raise TypeError(f"unsupported suite phase {type(phase).__name__}")

    def _publish_sweep(self, sweep: SweepSet, outcome: PhaseOutcome) -> None:
        outcome.sweeps.append(sweep)
        if self.config.show_progress:
            print(render_sweep_table(sweep))
        if self.report is not None:
            self.report.write_sweep_results(sweep)

    def _publish_stress(self, title: str, summary: StressSummary, outcome: PhaseOutcome) -> None:
        outcome.stress.append(summary)
        if self.config.show_progress:
            print(render_stress_summary(summary))
        if self.report is not None:
            self.report.write_stress_result(summary, title=title)

    async def _run_preload(self) -> None:
        for target in self.target_ids:
            logger.info("Preloading %s", target)
            try:
                await self.deployer.preload(target)
            except DeploymentError as exc:
                logger.warning("Preload of %s failed: %s", target, exc)

    async def _run_concurrency(self, phase: ConcurrencyPhase, outcome: PhaseOutcome) -> None:
        for target in self.target_ids:
            config = self._target_config(target, duration_s=phase.duration_s)
            async with deployed_endpoint(
                self.deployer,
                target,
                deployment_config(config, self._entries[target]),
                deploy_wait_s=config.deploy_wait_s,
                cleanup=config.cleanup,
            ) as endpoint:
                if len(phase.concurrency) > 1:
                    sweep = await run_sweep(
                        self.client,
                        endpoint,
                        config,
                        "concurrency",
                        phase.concurrency,
                        sampler=self._sampler(),
                    )
                    self._publish_sweep(sweep, outcome)
                else:
                    concurrency = phase.concurrency[0] if phase.concurrency else DEFAULT_PHASE_CONCURRENCY
                    logger.info(
                        "Running stability test: %d concurrent, %.0fs", concurrency, phase.duration_s
                    )
                    summary = await self._run_stability(
                        endpoint, dataclasses.replace(config, concurrency=concurrency)
                    )
                    label = "Stability Test" if phase.stability else "Stress Test"
                    self._publish_stress(f"{label}: {target}", summary, outcome)

    async def _run_stability(self, endpoint: str, config: RunConfig) -> StressSummary:
        sampler = self._sampler()
        if sampler is not None:
            await sampler.start()
        try:
            return await run_stress_test(self.client, endpoint, config)
        finally:
            if sampler is not None:
                samples = await sampler.stop()
                if self.report is not None:
                    self.report.write_gpu_metrics(samples)

    async def _run_tokens(self, phase: TokensPhase, outcome: PhaseOutcome) -> None:
        for target in self.target_ids:
            config = self._target_config(
                target, concurrency=phase.concurrency, duration_s=phase.duration_s
            )
            async with deployed_endpoint(
                self.deployer,
                target,
                deployment_config(config, self._entries[target]),
                deploy_wait_s=config.deploy_wait_s,
                cleanup=config.cleanup,
            ) as endpoint:
                sweep = await run_sweep(
                    self.client,
                    endpoint,
                    config,
                    "max_tokens",
                    phase.max_tokens,
                    sampler=self._sampler(),
                )
            self._publish_sweep(sweep, outcome)

    async def _run_context(self, phase: ContextPhase, outcome: PhaseOutcome) -> None:
        for target in self.target_ids:
            config = self._target_config(
                target, concurrency=phase.concurrency, duration_s=phase.duration_s
            )
            sweep = await run_redeploy_sweep(
                self.client,
                self.deployer,
                target,
                config,
                "context_size",
                phase.context_sizes,
                catalog_entry=self._entries[target],
                sampler=self._sampler(),
            )
            self._publish_sweep(sweep, outcome)

    async def _run_gpu_scaling(self, phase: GPUScalingPhase, outcome: PhaseOutcome) -> None:
        for target in self.target_ids:
            sweep = SweepSet(sweep_type=f"GPU Scaling ({phase.name})", started_at=time.time())
            started = time.monotonic()
            for gpu_count in phase.gpu_counts:
                config = self._target_config(
                    target, gpu=True, gpu_count=gpu_count, duration_s=phase.duration_s
                )
                labels = [f"{gpu_count}GPU-C{concurrency}" for concurrency in phase.concurrency]
                sweep.values.extend(labels)
                try:
                    async with deployed_endpoint(
                        self.deployer,
                        target,
                        deployment_config(config, self._entries[target]),
                        deploy_wait_s=config.deploy_wait_s,
                        cleanup=config.cleanup,
                    ) as endpoint:
                        for concurrency, label in zip(phase.concurrency, labels):
                            logger.info("Testing %d GPU(s), concurrency %d", gpu_count, concurrency)
                            point = await run_sweep_iteration(
                                self.client,
                                endpoint,
                                dataclasses.replace(config, concurrency=concurrency),
                                "gpu_scaling",
                                label,
                            )
                            sweep.results.append(point)
                except DeploymentError as exc:
                    logger.warning("%d GPU(s) for %s: %s", gpu_count, target, exc)
                    for label in sweep.values[len(sweep.results):]:
                        sweep.results.append(
                            SweepPoint(parameter="gpu_scaling", value=label, error=str(exc))
                        )
            sweep.duration_s = time.monotonic() - started
            self._publish_sweep(sweep, outcome)
