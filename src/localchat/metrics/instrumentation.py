"""Instrumentation wrapper for streamed chat turns."""
from __future__ import annotations

import time
from dataclasses import dataclass

from .monitors import RamMonitor, VramMonitor
from ..chat import StreamingChatOrchestrator


@dataclass
class TurnMetrics:
    elapsed_s: float
    updates: int
    response_chars: int
    chars_per_s: float
    ram_peak_mb: float
    vram_peak_mb: float | None


class Instrumentation:
    def __init__(self, sampling_interval_ms: int, gpu_index: int | None) -> None:
        self._interval = sampling_interval_ms
        self._gpu_index = gpu_index

    async def measure_send(self, orchestrator: StreamingChatOrchestrator, text: str) -> TurnMetrics:
        """Run one ``send`` under RAM/VRAM sampling; errors propagate unchanged."""
        updates = 0

        def _count(_snapshot) -> None:
            nonlocal updates
            updates += 1

        unsubscribe = orchestrator.subscribe_transcript(_count)
        ram = RamMonitor(self._interval)
        vram = VramMonitor(self._interval, self._gpu_index)
        ram.start()
        vram.start()
        start = time.perf_counter()
        try:
            await orchestrator.send(text)
        finally:
            elapsed = time.perf_counter() - start
            ram_peak = ram.stop()
            vram_peak = vram.stop()
            unsubscribe()

        transcript = orchestrator.transcript
        chars = len(transcript[-1].content) if transcript else 0
        return TurnMetrics(
            elapsed_s=elapsed,
            updates=updates,
            response_chars=chars,
            chars_per_s=chars / elapsed if elapsed > 0 else 0.0,
            ram_peak_mb=ram_peak,
            vram_peak_mb=vram_peak,
        )
