"""Streaming chat orchestration over the current model session."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .engines.base import GenerationParams
from .errors import EngineFailure, ErrorKind, GenerationBusy, GenerationError
from .prompts import DEFAULT_SYSTEM, build_context
from .session import ModelSessionManager

logger = logging.getLogger(__name__)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


Transcript = tuple[Message, ...]
TranscriptCallback = Callable[[Transcript], None]
ErrorCallback = Callable[[ErrorKind, str], None]


class _Turn:
    __slots__ = ("epoch", "index")

    def __init__(self, epoch: int, index: int) -> None:
        self.epoch = epoch
        self.index = index


class StreamingChatOrchestrator:
    """Owns the transcript and drives one streamed reply at a time.

    Each call to :meth:`send` appends the user message, appends an empty
    assistant placeholder and overwrites it with the accumulated text once
    per delta. If the request or the stream fails, the placeholder is
    removed and the user message stays so the turn can be retried.
    """

    def __init__(
        self,
        manager: ModelSessionManager,
        params: GenerationParams | None = None,
        system_prompt: str | None = DEFAULT_SYSTEM,
    ) -> None:
        self._manager = manager
        self.params = params or GenerationParams()
        self.system_prompt = system_prompt
        self._messages: list[Message] = []
        self._epoch = 0
        self._active: _Turn | None = None
        self._transcript_callbacks: list[TranscriptCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        manager.subscribe_reset(self.clear)
        manager.subscribe_unload(self._abandon_turn)

    @property
    def transcript(self) -> Transcript:
        return tuple(self._messages)

    @property
    def busy(self) -> bool:
        return self._active is not None

    def subscribe_transcript(self, callback: TranscriptCallback) -> Callable[[], None]:
        self._transcript_callbacks.append(callback)
        return lambda: self._unsubscribe(self._transcript_callbacks, callback)

    def subscribe_errors(self, callback: ErrorCallback) -> Callable[[], None]:
        self._error_callbacks.append(callback)
        return lambda: self._unsubscribe(self._error_callbacks, callback)

    def clear(self) -> None:
        """Empty the transcript; a turn still streaming is orphaned."""
        self._epoch += 1
        if self._active is not None:
            logger.info("Discarding in-flight response")
        self._active = None
        self._messages = []
        self._emit_transcript()

    async def send(self, user_text: str) -> None:
        text = (user_text or "").strip()
        if not text:
            raise ValueError("message must not be empty")
        if self._active is not None:
            raise self._report(GenerationBusy())
        try:
            engine = self._manager.require_engine()
        except GenerationError as exc:
            raise self._report(exc) from None

        self._messages.append(Message(Role.USER, text))
        self._emit_transcript()

        context = build_context(self._messages, self.system_prompt)
        turn = _Turn(self._epoch, len(self._messages))
        self._active = turn
        self._messages.append(Message(Role.ASSISTANT, ""))
        self._emit_transcript()

        logger.info("Generating response (%d context messages)", len(context))
        stream = None
        response = ""
        try:
            stream = engine.generate_stream(context, self.params)
            async for delta in stream:
                if turn.epoch != self._epoch:
                    logger.info("Dropping deltas from orphaned response")
                    break
                response += delta.text
                self._messages[turn.index] = Message(Role.ASSISTANT, response)
                self._emit_transcript()
        except asyncio.CancelledError:
            if turn.epoch == self._epoch:
                logger.info("Response cancelled; discarding partial reply")
                self._rollback(turn)
            raise
        except Exception as exc:  # noqa: BLE001
            if turn.epoch != self._epoch:
                logger.info("Orphaned response failed: %s", exc)
                return
            self._rollback(turn)
            detail = str(exc) or exc.__class__.__name__
            logger.error("Error generating response: %s", detail)
            raise self._report(EngineFailure(detail)) from exc
        finally:
            if self._active is turn:
                self._active = None
            if turn.epoch != self._epoch and stream is not None:
                await _close_stream(stream)

        if turn.epoch == self._epoch:
            logger.info("Response completed (%d chars)", len(response))

    def _abandon_turn(self) -> None:
        """Orphan the running turn and drop its reply; the engine is going away."""
        turn = self._active
        if turn is None:
            return
        logger.info("Engine unloaded mid-response; discarding partial reply")
        self._epoch += 1
        self._active = None
        self._rollback(turn)

    def _rollback(self, turn: _Turn) -> None:
        del self._messages[turn.index:]
        self._emit_transcript()

    def _report(self, error: GenerationError) -> GenerationError:
        for callback in list(self._error_callbacks):
            callback(error.kind, str(error))
        return error

    def _emit_transcript(self) -> None:
        snapshot = self.transcript
        for callback in list(self._transcript_callbacks):
            callback(snapshot)

    @staticmethod
    def _unsubscribe(callbacks: list, callback) -> None:
        if callback in callbacks:
            callbacks.remove(callback)


async def _close_stream(stream) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:  # noqa: BLE001
        logger.debug("Error closing orphaned stream", exc_info=True)
