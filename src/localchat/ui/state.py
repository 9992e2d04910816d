"""UI session state."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..catalog import ModelCatalog
from ..chat import StreamingChatOrchestrator, Transcript
from ..engines.base import EngineFactory
from ..errors import ErrorKind
from ..metrics.instrumentation import TurnMetrics
from ..session import ModelSessionManager, SessionStatus


@dataclass
class AppState:
    catalog: ModelCatalog
    manager: ModelSessionManager
    orchestrator: StreamingChatOrchestrator
    last_error: str | None = None
    last_label: str = ""
    last_metrics: TurnMetrics | None = None
    unsubscribers: list = field(default_factory=list)

    @classmethod
    def create(cls, catalog: ModelCatalog, factory: EngineFactory, orchestrator_kwargs: dict | None = None) -> AppState:
        manager = ModelSessionManager(factory)
        orchestrator = StreamingChatOrchestrator(manager, **(orchestrator_kwargs or {}))
        state = cls(catalog=catalog, manager=manager, orchestrator=orchestrator)
        state.unsubscribers = [
            manager.subscribe_errors(state._record_error),
            orchestrator.subscribe_errors(state._record_error),
            manager.reporter.subscribe(lambda event: setattr(state, "last_label", event.label)),
        ]
        return state

    def _record_error(self, kind: ErrorKind, message: str) -> None:
        self.last_error = message

    def clear_error(self) -> None:
        self.last_error = None


def status_markdown(status: SessionStatus, progress: int, model_id: str | None, label: str = "") -> str:
    if status is SessionStatus.LOADING:
        suffix = f" ({label})" if label else ""
        return f"**Loading model...** {progress}%{suffix}"
    if status is SessionStatus.READY:
        return f"**Model ready:** `{model_id}`"
    if status is SessionStatus.FAILED:
        return "**Model failed to load.** Select a model to retry."
    return "Select a model to get started."


def transcript_to_chatbot(transcript: Transcript) -> list[dict[str, str]]:
    return [message.to_dict() for message in transcript]


def metrics_markdown(metrics: TurnMetrics | None) -> str:
    if metrics is None:
        return "No metrics yet."
    vram = metrics.vram_peak_mb
    vram_str = f"{vram:.2f}" if isinstance(vram, (int, float)) else "n/a"
    return (
        f"**chars/s:** {metrics.chars_per_s:.2f}\n"
        f"**updates:** {metrics.updates}\n"
        f"**elapsed_s:** {metrics.elapsed_s:.3f}\n"
        f"**ram_peak_mb:** {metrics.ram_peak_mb:.2f}\n"
        f"**vram_peak_mb:** {vram_str}"
    )
