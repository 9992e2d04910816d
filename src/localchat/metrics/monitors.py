"""Peak RAM/VRAM samplers and a point-in-time system snapshot."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import psutil

try:
    import pynvml  # provided by nvidia-ml-py
except ImportError:  # pragma: no cover
    pynvml = None

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


class _PeakSampler:
    def __init__(self, interval_ms: int) -> None:
        self._interval = interval_ms / 1000.0
        self._peak = 0
        self._running = threading.Event()
        self._thread: threading.Thread | None = None

    def _sample(self) -> int:
        raise NotImplementedError

    def start(self) -> None:
        self._running.set()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> float:
        self._running.clear()
        if self._thread:
            self._thread.join(timeout=1.0)
        return self._peak / _MB

    def _run(self) -> None:
        while self._running.is_set():
            self._peak = max(self._peak, self._sample())
            time.sleep(self._interval)


class RamMonitor(_PeakSampler):
    def __init__(self, interval_ms: int) -> None:
        super().__init__(interval_ms)
        self._proc = psutil.Process()

    def _sample(self) -> int:
        return self._proc.memory_info().rss


class VramMonitor(_PeakSampler):
    def __init__(self, interval_ms: int, gpu_index: int | None) -> None:
        super().__init__(interval_ms)
        self._gpu_index = gpu_index if gpu_index is not None else 0
        self._handle = None
        self.enabled = pynvml is not None

    def start(self) -> None:
        if not self.enabled:
            return
        try:
            pynvml.nvmlInit()
            self._handle = pynvml.nvmlDeviceGetHandleByIndex(self._gpu_index)
        except pynvml.NVMLError as exc:
            logger.debug("NVML unavailable: %s", exc)
            self.enabled = False
            return
        super().start()

    def stop(self) -> float | None:
        if not self.enabled:
            return None
        peak = super().stop()
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError:
            logger.debug("nvmlShutdown failed", exc_info=True)
        return peak

    def _sample(self) -> int:
        try:
            return pynvml.nvmlDeviceGetMemoryInfo(self._handle).used
        except pynvml.NVMLError:
            return 0


@dataclass
class SystemSnapshot:
    ram_used_mb: float
    ram_total_mb: float
    cpu_percent: float
    gpu_name: str | None
    vram_used_mb: float | None
    vram_total_mb: float | None

    @property
    def ram_percent(self) -> float:
        return (self.ram_used_mb / self.ram_total_mb) * 100 if self.ram_total_mb else 0.0


def system_snapshot(gpu_index: int | None = 0) -> SystemSnapshot:
    vm = psutil.virtual_memory()
    gpu_name = vram_used = vram_total = None
    if pynvml is not None:
        try:
            pynvml.nvmlInit()
            try:
                handle = pynvml.nvmlDeviceGetHandleByIndex(gpu_index or 0)
                name = pynvml.nvmlDeviceGetName(handle)
                gpu_name = name.decode() if isinstance(name, bytes) else str(name)
                info = pynvml.nvmlDeviceGetMemoryInfo(handle)
                vram_used, vram_total = info.used / _MB, info.total / _MB
            finally:
                pynvml.nvmlShutdown()
        except pynvml.NVMLError as exc:
            logger.debug("No GPU telemetry: %s", exc)
    return SystemSnapshot(
        ram_used_mb=(vm.total - vm.available) / _MB,
        ram_total_mb=vm.total / _MB,
        cpu_percent=psutil.cpu_percent(interval=None),
        gpu_name=gpu_name,
        vram_used_mb=vram_used,
        vram_total_mb=vram_total,
    )
