from __future__ import annotations

import asyncio
import csv
import io
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional, Sequence

from loadgen import now_unix_ms


logger = logging.getLogger(__name__)

GPU_QUERY_FIELDS = [
    "memory.used",
    "memory.total",
    "utilization.gpu",
    "temperature.gpu",
    "power.draw",
]

NVIDIA_SMI_COMMAND = [
    "nvidia-smi",
    f"--query-gpu={','.join(GPU_QUERY_FIELDS)}",
    "--format=csv,noheader,nounits",
]

DEFAULT_SAMPLE_INTERVAL_S = 10.0


@dataclass(frozen=True)
class TelemetrySample:
    """One reading across every visible GPU.

    Memory and power are summed over devices, utilization and temperature
    are the hottest device's.
    """

    timestamp_unix_ms: int
    memory_used_mib: int
    memory_total_mib: int
    utilization_pct: int
    temperature_c: int
    power_w: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TelemetrySample:
        return cls(**payload)


def _to_int(value: str) -> int:
    normalized = value.strip()
    if not normalized or normalized.upper() in {"N/A", "NA", "[N/A]"}:
        return 0
    try:
        return int(float(normalized))
    except ValueError:
        return 0


def parse_nvidia_smi(output: str, timestamp_unix_ms: Optional[int] = None) -> Optional[TelemetrySample]:
    output = output.strip()
    if not output:
        return None

    memory_used = 0
    memory_total = 0
    utilization = 0
    temperature = 0
    power = 0
    parsed_rows = 0

    for row in csv.reader(io.StringIO(output)):
        row = [value.strip() for value in row]
        if len(row) < 3:
            continue
        parsed_rows += 1
        memory_used += _to_int(row[0])
        memory_total += _to_int(row[1])
        utilization = max(utilization, _to_int(row[2]))
        if len(row) >= 4:
            temperature = max(temperature, _to_int(row[3]))
        if len(row) >= 5:
            power += _to_int(row[4])

    if parsed_rows == 0:
        return None
    if timestamp_unix_ms is None:
        timestamp_unix_ms = now_unix_ms()
    return TelemetrySample(
        timestamp_unix_ms=timestamp_unix_ms,
        memory_used_mib=memory_used,
        memory_total_mib=memory_total,
        utilization_pct=utilization,
        temperature_c=temperature,
        power_w=power,
    )


class TelemetrySampler:
    def __init__(
        self,
        interval_s: float = DEFAULT_SAMPLE_INTERVAL_S,
        command: Sequence[str] = tuple(NVIDIA_SMI_COMMAND),
    ) -> None:
        self.interval_s = interval_s
        self.command = list(command)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._samples: list[TelemetrySample] = []
        self._lock = asyncio.Lock()
        self._disabled = False

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> list[TelemetrySample]:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        return await self.samples()

    async def samples(self) -> list[TelemetrySample]:
        async with self._lock:
            return list(self._samples)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            started = time.monotonic()
            sample = await self.sample_once()
            if sample is not None:
                async with self._lock:
                    self._samples.append(sample)
            elapsed = time.monotonic() - started
            sleep_for = max(0.0, self.interval_s - elapsed)
            if sleep_for <= 0:
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    async def sample_once(self) -> Optional[TelemetrySample]:
        if self._disabled:
            return None
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except FileNotFoundError:
            logger.info("%s not found, GPU telemetry disabled", self.command[0])
            self._disabled = True
            return None
        except OSError as exc:
            logger.debug("GPU telemetry sample failed: %s", exc)
            return None

        if process.returncode != 0:
            logger.debug(
                "%s exited with %s: %s",
                self.command[0],
                process.returncode,
                stderr.decode("utf-8", errors="replace").strip(),
            )
            return None
        return parse_nvidia_smi(stdout.decode("utf-8", errors="replace"))
