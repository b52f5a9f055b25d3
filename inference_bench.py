from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from functools import partial
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import httpx

from compare import run_catalog_comparison
from deploy import Catalog, CatalogError, StaticDeploymentManager
from metrics_gpu import DEFAULT_SAMPLE_INTERVAL_S, TelemetrySampler
from report import (
    ReportWriter,
    render_comparison_table,
    render_gpu_metrics,
    render_run_summary,
    render_stress_summary,
    render_sweep_table,
    resolve_report_path,
)
from runner import AllIterationsFailedError, RunConfig, run_single
from stats import RunSummary, StressSummary
from suite import SuiteRunner, UnknownSuiteError, get_suite, suite_help
from sweep import SweepConfigError, SweepSet, parse_sweep_values, run_redeploy_sweep, run_sweep


logger = logging.getLogger("inference_bench")

SWEEP_FLAGS = {
    "concurrency_sweep": "concurrency",
    "tokens_sweep": "max_tokens",
    "context_sweep": "context_size",
    "gpu_sweep": "gpu_count",
}


def _parse_sweep(value: str) -> list[int]:
    try:
        values = parse_sweep_values(value)
    except SweepConfigError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc
    if not values:
        raise argparse.ArgumentTypeError("sweep values cannot be empty")
    for parsed in values:
        if parsed <= 0:
            raise argparse.ArgumentTypeError(f"sweep values must be > 0, got {parsed}.")
    return values


def _parse_targets(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inference-bench",
        description="Benchmark an OpenAI-compatible chat completions endpoint.",
    )

    parser.add_argument("--endpoint", default=None, help="Base URL, e.g. http://localhost:8080")
    parser.add_argument("--api-key", default=None)
    parser.add_argument("--model", default=None)
    parser.add_argument("--name", default="benchmark", help="Service name shown in reports")

    parser.add_argument("--iterations", type=int, default=10)
    parser.add_argument("--warmup", type=int, default=2)
    parser.add_argument("--prompt", default=None)
    parser.add_argument("--prompt-file", type=Path, default=None)
    parser.add_argument("--max-tokens", type=int, default=50)
    parser.add_argument("--temperature", type=float, default=0.7)
    parser.add_argument("--timeout-s", type=float, default=60.0)

    parser.add_argument("--concurrency", type=int, default=1)
    parser.add_argument(
        "--duration-s",
        type=float,
        default=0.0,
        help="Run a stress test for this long instead of a fixed iteration count",
    )

    sweeps = parser.add_argument_group("sweeps")
    sweeps.add_argument("--concurrency-sweep", type=_parse_sweep, default=None, help="e.g. 1,2,4,8")
    sweeps.add_argument("--tokens-sweep", type=_parse_sweep, default=None, help="e.g. 64,256,1024")
    sweeps.add_argument("--context-sweep", type=_parse_sweep, default=None, help="Redeploys per value")
    sweeps.add_argument("--gpu-sweep", type=_parse_sweep, default=None, help="Redeploys per value")

    suites = parser.add_argument_group("suites")
    suites.add_argument("--suite", default=None)
    suites.add_argument("--targets", type=_parse_targets, default=None, help="Comma-separated catalog ids")
    suites.add_argument("--catalog", type=Path, default=None, help="JSON model catalog")
    suites.add_argument("--list-suites", action="store_true")
    suites.add_argument(
        "--preload", action="store_true", help="Preload each target before benchmarking it (comparisons)"
    )

    deployment = parser.add_argument_group("deployment")
    deployment.add_argument("--context-size", type=int, default=None)
    deployment.add_argument("--gpu", action="store_true")
    deployment.add_argument("--gpu-count", type=int, default=1)
    deployment.add_argument(
        "--gpu-layers", type=int, default=-1, help="Layers to offload; -1 keeps the catalog default"
    )
    deployment.add_argument("--accelerator", default=None)
    deployment.add_argument("--cleanup", action=argparse.BooleanOptionalAction, default=True)
    deployment.add_argument("--deploy-wait-s", type=float, default=600.0)

    output = parser.add_argument_group("output")
    output.add_argument("--report", type=Path, default=None)
    output.add_argument("--report-dir", type=Path, default=None)
    output.add_argument("--monitor-gpu", action="store_true")
    output.add_argument("--monitor-interval-s", type=float, default=DEFAULT_SAMPLE_INTERVAL_S)
    output.add_argument("--output", choices=["markdown", "json"], default="markdown")
    output.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
    )

    return parser


def _selected_sweeps(args: argparse.Namespace) -> list[str]:
    return [flag for flag in SWEEP_FLAGS if getattr(args, flag) is not None]


def _validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.list_suites:
        return
    if not args.endpoint:
        parser.error("--endpoint is required")
    if args.iterations <= 0:
        parser.error("--iterations must be > 0")
    if args.warmup < 0:
        parser.error("--warmup must be >= 0")
    if args.max_tokens <= 0:
        parser.error("--max-tokens must be > 0")
    if args.concurrency <= 0:
        parser.error("--concurrency must be > 0")
    if args.duration_s < 0:
        parser.error("--duration-s must be >= 0")
    if args.timeout_s <= 0:
        parser.error("--timeout-s must be > 0")
    if args.gpu_count <= 0:
        parser.error("--gpu-count must be > 0")
    if args.monitor_interval_s <= 0:
        parser.error("--monitor-interval-s must be > 0")
    if args.prompt_file is not None and not args.prompt_file.exists():
        parser.error(f"--prompt-file not found: {args.prompt_file}")
    if args.report is not None and args.report_dir is not None:
        parser.error("--report and --report-dir are mutually exclusive")

    selected = _selected_sweeps(args)
    if len(selected) > 1:
        parser.error("only one sweep can be run at a time")
    if args.suite is not None:
        if selected:
            parser.error("--suite cannot be combined with a sweep")
        try:
            get_suite(args.suite)
        except UnknownSuiteError as exc:
            parser.error(str(exc))
        if not args.targets:
            parser.error("--targets is required with --suite")
    elif args.targets is not None:
        if not args.targets:
            parser.error("--targets cannot be empty")
        if selected:
            parser.error("--targets cannot be combined with a sweep")
    if args.preload and not args.targets:
        parser.error("--preload requires --targets")
    if args.gpu_layers < -1:
        parser.error("--gpu-layers must be >= -1")
    if args.catalog is not None and not args.catalog.exists():
        parser.error(f"--catalog not found: {args.catalog}")


def _config_from_args(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        name=args.name,
        endpoint=args.endpoint,
        model=args.model,
        api_key=args.api_key,
        iterations=args.iterations,
        warmup=args.warmup,
        prompt=args.prompt,
        prompt_file=args.prompt_file,
        max_tokens=args.max_tokens,
        concurrency=args.concurrency,
        duration_s=args.duration_s,
        timeout_s=args.timeout_s,
        temperature=args.temperature,
        context_size=args.context_size,
        gpu=args.gpu,
        gpu_count=args.gpu_count,
        gpu_layers=args.gpu_layers,
        accelerator=args.accelerator,
        cleanup=args.cleanup,
        deploy_wait_s=args.deploy_wait_s,
        monitor_gpu=args.monitor_gpu,
        monitor_interval_s=args.monitor_interval_s,
        show_progress=args.output == "markdown",
    )


def _accelerator_label(config: RunConfig) -> Optional[str]:
    if not config.gpu:
        return None
    return f"{config.accelerator or 'cuda'} (GPU count: {config.gpu_count})"


def _emit(args: argparse.Namespace, payload: Any, markdown: str) -> None:
    if args.output == "json":
        print(json.dumps(payload, indent=2))
    else:
        print(markdown)


async def _run_suite(
    args: argparse.Namespace,
    client: httpx.AsyncClient,
    config: RunConfig,
    report: Optional[ReportWriter],
) -> int:
    catalog = Catalog.from_json(args.catalog) if args.catalog is not None else None
    deployer = StaticDeploymentManager(args.endpoint, client)
    sampler_factory = partial(TelemetrySampler, config.monitor_interval_s) if config.monitor_gpu else None
    runner = SuiteRunner(
        get_suite(args.suite),
        args.targets,
        deployer,
        client,
        config,
        report=report,
        catalog=catalog,
        sampler_factory=sampler_factory,
    )
    outcomes = await runner.run()

    failed = [outcome for outcome in outcomes if not outcome.ok]
    lines = [f"Suite '{args.suite}' completed: {len(outcomes) - len(failed)}/{len(outcomes)} phases ok"]
    lines.extend(f"  phase {outcome.index} ({outcome.phase_name}) failed: {outcome.error}" for outcome in failed)
    _emit(args, [outcome.to_dict() for outcome in outcomes], "\n".join(lines))
    return 1 if outcomes and len(failed) == len(outcomes) else 0


async def _run_comparison(
    args: argparse.Namespace,
    client: httpx.AsyncClient,
    config: RunConfig,
    report: Optional[ReportWriter],
) -> int:
    catalog = Catalog.from_json(args.catalog) if args.catalog is not None else None
    deployer = StaticDeploymentManager(args.endpoint, client)
    comparison = await run_catalog_comparison(
        client, deployer, catalog, args.targets, config, preload=args.preload
    )
    _emit(args, comparison.to_dict(), render_comparison_table(comparison))
    if report is not None:
        report.write_comparison_report(comparison)
    return 1 if len(comparison.failed) == len(comparison.models) else 0


async def _run_sweep(
    args: argparse.Namespace,
    client: httpx.AsyncClient,
    config: RunConfig,
    report: Optional[ReportWriter],
) -> int:
    flag = _selected_sweeps(args)[0]
    parameter = SWEEP_FLAGS[flag]
    values = getattr(args, flag)
    sampler = TelemetrySampler(config.monitor_interval_s) if config.monitor_gpu else None

    sweep: SweepSet
    if parameter in ("concurrency", "max_tokens"):
        sweep = await run_sweep(client, args.endpoint, config, parameter, values, sampler=sampler)
    else:
        deployer = StaticDeploymentManager(args.endpoint, client)
        sweep = await run_redeploy_sweep(
            client, deployer, config.name, config, parameter, values, sampler=sampler
        )

    markdown = render_sweep_table(sweep)
    if sweep.gpu_samples:
        markdown += "\n\n" + render_gpu_metrics(sweep.gpu_samples)
    _emit(args, sweep.to_dict(), markdown)
    if report is not None:
        report.write_sweep_results(sweep)
    return 0 if any(point.ok for point in sweep.results) else 1


async def _run_single(
    args: argparse.Namespace,
    client: httpx.AsyncClient,
    config: RunConfig,
    report: Optional[ReportWriter],
) -> int:
    sampler = TelemetrySampler(config.monitor_interval_s) if config.monitor_gpu else None
    if sampler is not None:
        await sampler.start()
    result: Union[RunSummary, StressSummary]
    try:
        result = await run_single(client, args.endpoint, config)
    finally:
        samples = await sampler.stop() if sampler is not None else []

    if isinstance(result, StressSummary):
        markdown = render_stress_summary(result)
    else:
        markdown = render_run_summary(result)
    if samples:
        markdown += "\n\n" + render_gpu_metrics(samples)
    _emit(args, result.to_dict(), markdown)

    if report is not None:
        if isinstance(result, StressSummary):
            report.write_stress_result(result)
        else:
            report.write_benchmark_result(result)
        report.write_gpu_metrics(samples)
    return 0


async def _run_from_args(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    report_path = resolve_report_path(args.report, args.report_dir)

    async with httpx.AsyncClient() as client:
        report = ReportWriter.open(report_path, _accelerator_label(config)) if report_path else None
        try:
            if args.suite is not None:
                return await _run_suite(args, client, config, report)
            if args.targets:
                return await _run_comparison(args, client, config, report)
            if _selected_sweeps(args):
                return await _run_sweep(args, client, config, report)
            return await _run_single(args, client, config, report)
        except (AllIterationsFailedError, CatalogError, ValueError) as exc:
            logger.error("%s", exc)
            return 1
        finally:
            if report is not None:
                report.close()
                logger.info("Report written to %s", report_path)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _validate_args(parser, args)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.list_suites:
        print(suite_help())
        return 0
    return asyncio.run(_run_from_args(args))


if __name__ == "__main__":
    sys.exit(main())
