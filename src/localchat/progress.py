"""Load progress normalization."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    percentage: int
    label: str


ProgressCallback = Callable[[ProgressEvent], None]


def to_percentage(fraction: float) -> int:
    if fraction is None or math.isnan(fraction):
        return 0
    if math.isinf(fraction):
        return 100 if fraction > 0 else 0
    # round half up
    return max(0, min(100, math.floor(fraction * 100 + 0.5)))


class ProgressReporter:
    """Converts engine-reported fractions into 0-100 events for subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[ProgressCallback] = []

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def report(self, fraction: float, label: str) -> ProgressEvent:
        event = ProgressEvent(percentage=to_percentage(fraction), label=label)
        logger.debug("Loading: %s (%d%%)", event.label, event.percentage)
        for callback in list(self._subscribers):
            callback(event)
        return event
