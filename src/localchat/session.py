"""Model session lifecycle: one engine slot, serialized loads."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

from .engines.base import EngineFactory, EngineHandle
from .errors import ErrorKind, LoadError, NoSessionError
from .progress import ProgressEvent, ProgressReporter

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


StatusCallback = Callable[[SessionStatus, int], None]
ErrorCallback = Callable[[ErrorKind, str], None]
ResetCallback = Callable[[], None]


def _subscribe(callbacks: list, callback) -> Callable[[], None]:
    callbacks.append(callback)

    def _unsubscribe() -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    return _unsubscribe


class ModelSessionManager:
    """Owns at most one live engine handle and the session state machine.

    Loads are processed one at a time in arrival order. Re-selecting the
    model that is already ready is a no-op; selecting a different one
    disposes the current engine before the factory is called.
    """

    def __init__(self, factory: EngineFactory, reporter: ProgressReporter | None = None) -> None:
        self._factory = factory
        self.reporter = reporter or ProgressReporter()
        self._lock = asyncio.Lock()
        self._engine: EngineHandle | None = None
        self._model_id: str | None = None
        self._status = SessionStatus.IDLE
        self._progress = 0
        self._error: LoadError | None = None
        self._epoch = 0
        self._status_callbacks: list[StatusCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._reset_callbacks: list[ResetCallback] = []
        self._unload_callbacks: list[ResetCallback] = []

    @property
    def model_id(self) -> str | None:
        return self._model_id

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def progress(self) -> int:
        return self._progress

    @property
    def error(self) -> LoadError | None:
        return self._error

    @property
    def engine(self) -> EngineHandle | None:
        return self._engine

    @property
    def epoch(self) -> int:
        return self._epoch

    def subscribe_status(self, callback: StatusCallback) -> Callable[[], None]:
        return _subscribe(self._status_callbacks, callback)

    def subscribe_errors(self, callback: ErrorCallback) -> Callable[[], None]:
        return _subscribe(self._error_callbacks, callback)

    def subscribe_reset(self, callback: ResetCallback) -> Callable[[], None]:
        return _subscribe(self._reset_callbacks, callback)

    def subscribe_unload(self, callback: ResetCallback) -> Callable[[], None]:
        """Called just before the held engine is disposed (switch or reset)."""
        return _subscribe(self._unload_callbacks, callback)

    def require_engine(self) -> EngineHandle:
        if self._status is SessionStatus.LOADING:
            raise NoSessionError("Model is still loading.")
        if self._status is not SessionStatus.READY or self._engine is None:
            raise NoSessionError()
        return self._engine

    async def select_model(self, model_id: str) -> None:
        async with self._lock:
            if (
                model_id
                and model_id == self._model_id
                and self._status is SessionStatus.READY
            ):
                logger.debug("Model %s already loaded", model_id)
                return
            await self._load(model_id)

    def reset(self) -> None:
        """Drop the engine and return to IDLE; in-flight work is orphaned."""
        self._epoch += 1
        self._dispose_current()
        self._model_id = None
        self._error = None
        self._set_status(SessionStatus.IDLE, 0)
        logger.info("Session reset")
        for callback in list(self._reset_callbacks):
            callback()

    close = reset

    async def _load(self, model_id: str) -> None:
        self._epoch += 1
        epoch = self._epoch

        if self._engine is not None:
            logger.info("Unloading %s before loading %s", self._model_id, model_id)
            self._dispose_current()
        self._model_id = None
        self._error = None
        self._set_status(SessionStatus.LOADING, 0)

        if not model_id or not model_id.strip():
            raise self._fail(model_id, "model id must not be empty")

        def _on_progress(fraction: float, label: str) -> None:
            if epoch != self._epoch:
                return
            event = self.reporter.report(fraction, label)
            self._on_progress_event(event)

        logger.info("Loading model %s", model_id)
        try:
            handle = await self._factory.create(model_id, _on_progress)
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._fail(model_id, "load cancelled")
            raise
        except Exception as exc:
            if epoch != self._epoch:
                raise LoadError(model_id, "load superseded by reset") from exc
            raise self._fail(model_id, str(exc) or exc.__class__.__name__) from exc

        if epoch != self._epoch:
            # reset() ran while the factory was working
            handle.dispose()
            raise LoadError(model_id, "load superseded by reset")

        self._engine = handle
        self._model_id = model_id
        self._set_status(SessionStatus.READY, 100)
        logger.info("Model loaded successfully: %s", model_id)

    def _on_progress_event(self, event: ProgressEvent) -> None:
        if self._status is SessionStatus.LOADING:
            self._set_status(SessionStatus.LOADING, event.percentage)

    def _fail(self, model_id: str, detail: str) -> LoadError:
        error = LoadError(model_id, detail)
        self._engine = None
        self._model_id = None
        self._error = error
        self._set_status(SessionStatus.FAILED, 0)
        logger.error("Failed to load model %s: %s", model_id, detail)
        for callback in list(self._error_callbacks):
            callback(ErrorKind.LOAD, str(error))
        return error

    def _dispose_current(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        for callback in list(self._unload_callbacks):
            callback()
        try:
            engine.dispose()
        except Exception:  # noqa: BLE001
            logger.warning("Error unloading engine", exc_info=True)

    def _set_status(self, status: SessionStatus, progress: int) -> None:
        self._status = status
        self._progress = progress
        for callback in list(self._status_callbacks):
            callback(status, progress)
