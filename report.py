from __future__ import annotations

import math
import platform
import socket
import time
from datetime import datetime
from pathlib import Path
from typing import IO, TYPE_CHECKING, Optional, Sequence

from metrics_gpu import TelemetrySample
from stats import RunSummary, StressSummary

if TYPE_CHECKING:
    from compare import ComparisonReport
    from sweep import SweepSet


TOOL_NAME = "inference-bench"
TOOL_VERSION = "0.1.0"

STATUS_OK = "✅"
STATUS_FAILED = "❌"
PLACEHOLDER = "-"


def _fmt(value: Optional[float], digits: int = 1) -> str:
    if value is None or math.isnan(value):
        return PLACEHOLDER
    return f"{value:.{digits}f}"


def format_duration(seconds: float) -> str:
    """Whole-second duration such as ``1h2m3s`` or ``45s``."""
    total = int(round(max(0.0, seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def resolve_report_path(report: Optional[Path], report_dir: Optional[Path]) -> Optional[Path]:
    if report is not None:
        return report
    if report_dir is not None:
        report_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return report_dir / f"benchmark-{timestamp}.md"
    return None


def render_run_summary(summary: RunSummary) -> str:
    lines = [
        f"**Service:** {summary.service_name}  ",
        f"**Endpoint:** {summary.endpoint}  ",
        f"**Duration:** {format_duration(summary.duration_s)}  ",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Iterations | {summary.iterations} |",
        f"| Success Rate | {summary.success_rate:.1f}% |",
    ]
    if summary.successful_runs > 0:
        lines.extend(
            [
                f"| Generation (tok/s) | {_fmt(summary.generation_toks_per_sec_mean)} |",
                f"| Generation range (tok/s) | {_fmt(summary.generation_toks_per_sec_min)} - "
                f"{_fmt(summary.generation_toks_per_sec_max)} |",
            ]
        )
        if summary.prompt_toks_per_sec_mean > 0:
            lines.append(f"| Prompt (tok/s) | {_fmt(summary.prompt_toks_per_sec_mean)} |")
        lines.extend(
            [
                f"| Latency P50 | {_fmt(summary.latency_p50_ms, 0)} ms |",
                f"| Latency P95 | {_fmt(summary.latency_p95_ms, 0)} ms |",
                f"| Latency P99 | {_fmt(summary.latency_p99_ms, 0)} ms |",
                f"| Latency Min / Max | {_fmt(summary.latency_min_ms, 0)} / {_fmt(summary.latency_max_ms, 0)} ms |",
                f"| Latency Mean | {_fmt(summary.latency_mean_ms, 0)} ms |",
            ]
        )
    else:
        lines.extend(["", "No successful runs to report."])
    lines.extend(["", f"Prompt: {summary.prompt_tokens} tokens | Max generation: {summary.max_tokens} tokens"])
    return "\n".join(lines)


def render_stress_summary(summary: StressSummary) -> str:
    lines = [
        f"**Service:** {summary.service_name}  ",
        f"**Concurrency:** {summary.concurrency}  ",
    ]
    if summary.target_duration_s > 0:
        lines.append(f"**Target Duration:** {format_duration(summary.target_duration_s)}  ")
    lines.extend(
        [
            f"**Actual Duration:** {format_duration(summary.duration_s)}  ",
            "",
            "| Metric | Value |",
            "|--------|-------|",
            f"| Total Requests | {summary.total_requests} |",
            f"| Successful / Failed | {summary.successful_runs} / {summary.failed_runs} |",
            f"| Requests/sec | {summary.requests_per_sec:.2f} |",
            f"| Error Rate | {summary.error_rate:.1f}% |",
        ]
    )
    if summary.successful_runs > 0:
        lines.extend(
            [
                f"| Generation (tok/s) | {_fmt(summary.generation_toks_per_sec_mean)} |",
                f"| Peak (tok/s) | {_fmt(summary.peak_toks_per_sec)} |",
                f"| Throughput spread | {_fmt(summary.toks_per_sec_spread, 2)} |",
                f"| Latency P50 | {_fmt(summary.latency_p50_ms, 0)} ms |",
                f"| Latency P95 | {_fmt(summary.latency_p95_ms, 0)} ms |",
                f"| Latency P99 | {_fmt(summary.latency_p99_ms, 0)} ms |",
            ]
        )
    return "\n".join(lines)


def render_sweep_table(sweep: SweepSet) -> str:
    lines = [
        f"**Sweep Type:** {sweep.sweep_type}  ",
        f"**Values Tested:** {', '.join(sweep.values)}  ",
        f"**Duration:** {format_duration(sweep.duration_s)}  ",
        "",
        "| Value | Gen tok/s | P50 (ms) | P99 (ms) | Requests | RPS | Error% | Status |",
        "|-------|-----------|----------|----------|----------|-----|--------|--------|",
    ]
    errors: list[str] = []
    for index, value in enumerate(sweep.values):
        point = sweep.results[index] if index < len(sweep.results) else None
        cells = [PLACEHOLDER] * 6
        status = STATUS_FAILED
        if point is None:
            errors.append(f"**Error ({value}):** not run")
        elif point.error is not None:
            errors.append(f"**Error ({value}):** {point.error}")
        elif point.stress is not None:
            stress = point.stress
            cells = [
                _fmt(stress.generation_toks_per_sec_mean),
                _fmt(stress.latency_p50_ms, 0),
                _fmt(stress.latency_p99_ms, 0),
                str(stress.total_requests),
                _fmt(stress.requests_per_sec),
                _fmt(stress.error_rate),
            ]
            status = STATUS_OK
        elif point.summary is not None:
            summary = point.summary
            cells = [
                _fmt(summary.generation_toks_per_sec_mean),
                _fmt(summary.latency_p50_ms, 0),
                _fmt(summary.latency_p99_ms, 0),
                str(summary.iterations),
                PLACEHOLDER,
                PLACEHOLDER,
            ]
            status = STATUS_OK
        lines.append(f"| {value} | " + " | ".join(cells) + f" | {status} |")
    if errors:
        lines.append("")
        lines.extend(errors)
    return "\n".join(lines)


def render_comparison_table(report: ComparisonReport) -> str:
    lines = [f"**Models:** {len(report.models)}  "]
    if report.gpu:
        lines.append(f"**Accelerator:** {report.accelerator or 'cuda'}  ")
        lines.append(f"**GPU Count:** {report.gpu_count}  ")
    if report.is_stress_test:
        lines.append(f"**Concurrency:** {report.concurrency}  ")
        if report.target_duration_s > 0:
            lines.append(f"**Duration:** {format_duration(report.target_duration_s)} per model  ")
    lines.extend(
        [
            f"**Iterations:** {report.iterations} per model  ",
            f"**Max Tokens:** {report.max_tokens}  ",
            "",
        ]
    )
    if report.is_stress_test:
        lines.extend(
            [
                "| Model | Size | Requests | RPS | tok/s | P50 | P99 | Error% | Status |",
                "|-------|------|----------|-----|-------|-----|-----|--------|--------|",
            ]
        )
    else:
        lines.extend(
            [
                "| Model | Size | Gen tok/s | P50 (ms) | P99 (ms) | VRAM | Status |",
                "|-------|------|-----------|----------|----------|------|--------|",
            ]
        )

    for model in report.models:
        status = STATUS_OK if model.ok else STATUS_FAILED
        if report.is_stress_test:
            cells = [PLACEHOLDER] * 6
            if model.ok:
                cells = [
                    str(model.total_requests),
                    _fmt(model.requests_per_sec),
                    _fmt(model.generation_toks_per_sec),
                    _fmt(model.latency_p50_ms, 0),
                    _fmt(model.latency_p99_ms, 0),
                    _fmt(model.error_rate),
                ]
        else:
            cells = [PLACEHOLDER] * 3
            if model.ok:
                cells = [
                    _fmt(model.generation_toks_per_sec),
                    _fmt(model.latency_p50_ms, 0),
                    _fmt(model.latency_p99_ms, 0),
                ]
            cells.append(model.vram_estimate or PLACEHOLDER)
        lines.append(
            f"| {model.model_id} | {model.model_size or PLACEHOLDER} | " + " | ".join(cells) + f" | {status} |"
        )

    for model in report.models:
        if model.error:
            lines.extend(["", f"**Error ({model.model_id}):** {model.error}"])
    return "\n".join(lines)


def render_gpu_metrics(samples: Sequence[TelemetrySample]) -> str:
    peak_memory = max(sample.memory_used_mib for sample in samples)
    peak_utilization = max(sample.utilization_pct for sample in samples)
    peak_temperature = max(sample.temperature_c for sample in samples)
    peak_power = max(sample.power_w for sample in samples)
    memory_total = samples[0].memory_total_mib

    lines = [
        f"**Samples:** {len(samples)}  ",
        "",
        "| Metric | Peak Value |",
        "|--------|------------|",
    ]
    if memory_total > 0:
        lines.append(
            f"| Memory | {peak_memory} / {memory_total} MB ({peak_memory / memory_total * 100:.1f}%) |"
        )
    lines.append(f"| Utilization | {peak_utilization}% |")
    if peak_temperature > 0:
        lines.append(f"| Temperature | {peak_temperature}°C |")
    if peak_power > 0:
        lines.append(f"| Power | {peak_power} W |")
    return "\n".join(lines)


class ReportWriter:
    """Markdown report appended section by section.

    Each write is flushed immediately so an interrupted suite still leaves
    every finished section on disk.
    """

    def __init__(self, path: Path, stream: IO[str], accelerator: Optional[str] = None) -> None:
        self.path = path
        self._file = stream
        self._started = time.monotonic()
        self.started_at = datetime.now()
        self.accelerator = accelerator

    @classmethod
    def open(cls, path: Path, accelerator: Optional[str] = None) -> ReportWriter:
        stream = path.open("w", encoding="utf-8")
        writer = cls(path, stream, accelerator)
        try:
            writer._write_header()
        except OSError:
            stream.close()
            raise
        return writer

    def __enter__(self) -> ReportWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        if not self._file.closed:
            self.close()

    def _write(self, text: str) -> None:
        self._file.write(text)
        self._file.flush()

    def _write_header(self) -> None:
        accelerator = self.accelerator or "CPU"
        self._write(
            "# Inference Benchmark Report\n\n"
            f"**Generated:** {self.started_at.strftime('%Y-%m-%d %H:%M:%S')}  \n"
            f"**Host:** {_hostname()} ({platform.system().lower()}/{platform.machine()})  \n"
            f"**Accelerator:** {accelerator}  \n"
            "\n---\n\n"
        )

    def write_section(self, title: str, content: str) -> None:
        self._write(f"## {title}\n\n{content}\n\n")

    def write_benchmark_result(self, summary: RunSummary) -> None:
        self.write_section("Benchmark Results", render_run_summary(summary))

    def write_stress_result(self, summary: StressSummary, title: str = "Stress Test Results") -> None:
        self.write_section(title, render_stress_summary(summary))

    def write_sweep_results(self, sweep: SweepSet) -> None:
        self.write_section(f"{sweep.sweep_type} Sweep Results", render_sweep_table(sweep))
        if sweep.gpu_samples:
            self.write_gpu_metrics(sweep.gpu_samples)

    def write_comparison_report(self, report: ComparisonReport) -> None:
        self.write_section("Model Comparison", render_comparison_table(report))

    def write_gpu_metrics(self, samples: Sequence[TelemetrySample]) -> None:
        if not samples:
            return
        self.write_section("GPU Metrics", render_gpu_metrics(samples))

    def write_suite_config(self, name: str, description: str, targets: Sequence[str], phases: int) -> None:
        self.write_section(
            "Test Suite Configuration",
            f"**Suite:** {name}  \n"
            f"**Description:** {description}  \n"
            f"**Targets:** {', '.join(targets)}  \n"
            f"**Phases:** {phases}  ",
        )

    def write_phase_failure(self, index: int, name: str, error: str) -> None:
        self.write_section(f"Phase {index}: {name}", f"**Status:** Failed  \n**Error:** {error}")

    def close(self) -> None:
        elapsed = time.monotonic() - self._started
        try:
            self._write(
                "\n---\n\n"
                f"*Total Duration: {format_duration(elapsed)}*  \n"
                f"*Generated by {TOOL_NAME} v{TOOL_VERSION}*\n"
            )
        finally:
            self._file.close()
