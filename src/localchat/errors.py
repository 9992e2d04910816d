"""Error taxonomy for model loading and chat generation."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    LOAD = "load"
    BUSY = "busy"
    NO_SESSION = "no_session"
    ENGINE_FAILURE = "engine_failure"


class LocalChatError(Exception):
    kind: ErrorKind


class LoadError(LocalChatError):
    """The engine factory rejected or failed to materialize a model."""

    kind = ErrorKind.LOAD

    def __init__(self, model_id: str, detail: str) -> None:
        super().__init__(f"Failed to load model {model_id!r}: {detail}")
        self.model_id = model_id
        self.detail = detail


class GenerationError(LocalChatError):
    pass


class GenerationBusy(GenerationError):
    kind = ErrorKind.BUSY

    def __init__(self) -> None:
        super().__init__("A response is already being generated")


class NoSessionError(GenerationError):
    kind = ErrorKind.NO_SESSION

    def __init__(self, message: str = "Model not loaded. Please select a model first.") -> None:
        super().__init__(message)


class EngineFailure(GenerationError):
    kind = ErrorKind.ENGINE_FAILURE

    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to generate response: {detail}")
        self.detail = detail
