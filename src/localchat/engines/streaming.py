"""Bridge a blocking, callback-driven generator thread onto the event loop."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable

from .base import TokenDelta

logger = logging.getLogger(__name__)

_DONE = object()

Emit = Callable[[str], None]


class GenerationCancelled(RuntimeError):
    pass


async def stream_from_thread(
    produce: Callable[[Emit], None],
    cancelled: threading.Event,
    name: str = "engine-generate",
) -> AsyncIterator[TokenDelta]:
    """Run ``produce(emit)`` on a worker thread and yield each emitted text.

    ``emit`` raises :class:`GenerationCancelled` once ``cancelled`` is set, which
    is how a blocking producer is stopped: the consumer closing the stream and
    the engine being disposed both set it. Exceptions from ``produce`` are
    re-raised in the consumer after the deltas that preceded them.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _post(item: object) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Event loop closed; dropping %r", item)

    def emit(text: str) -> None:
        if cancelled.is_set():
            raise GenerationCancelled("generation cancelled")
        if text:
            _post(TokenDelta(text))

    def _worker() -> None:
        try:
            produce(emit)
        except Exception as exc:  # noqa: BLE001
            _post(exc)
            return
        _post(_DONE)

    thread = threading.Thread(target=_worker, name=name, daemon=True)
    thread.start()
    try:
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            if isinstance(item, Exception):
                raise item
            yield item
    finally:
        cancelled.set()
