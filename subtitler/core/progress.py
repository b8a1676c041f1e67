"""
Monotonic progress reporting for long-running extraction work.

OCR publishes (frame, total, percent) events; subscribers (the Start stage
persists them into job meta) only ever see values that move forward.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    frame: int
    total: int
    percent: float


class ProgressChannel:
    """Thread-safe progress sink that drops non-increasing updates."""

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: ProgressEvent | None = None
        self._subscribers: list[Callable[[ProgressEvent], None]] = []

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            self._subscribers = self._subscribers + [callback]

        def _unsubscribe():
            with self._lock:
                self._subscribers = [s for s in self._subscribers if s is not callback]

        return _unsubscribe

    def publish(self, frame: int, total: int, percent: float) -> bool:
        """Record an event; returns False when it does not advance progress."""
        percent = round(max(0.0, min(100.0, float(percent))), 1)
        event = ProgressEvent(int(frame), int(total), percent)
        with self._lock:
            if self._latest is not None and percent <= self._latest.percent:
                return False
            self._latest = event
            subscribers = tuple(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.warning("Progress subscriber failed", exc_info=True)
        return True

    def latest(self) -> ProgressEvent | None:
        with self._lock:
            return self._latest

    def scaled(self, pass_index: int, pass_count: int) -> "ScaledProgress":
        return ScaledProgress(self, pass_index, pass_count)


class ScaledProgress:
    """Maps one pass's 0..100 progress into its slice of the overall range."""

    def __init__(self, channel: ProgressChannel, pass_index: int, pass_count: int):
        self.channel = channel
        self.pass_count = max(1, pass_count)
        self.pass_index = max(1, min(pass_index, self.pass_count))

    def publish(self, frame: int, total: int, percent: float) -> bool:
        total = max(1, int(total))
        span = 100.0 / self.pass_count
        overall = (self.pass_index - 1) * span + float(percent) / self.pass_count
        return self.channel.publish((self.pass_index - 1) * total + int(frame),
                                    total * self.pass_count, overall)

    def latest(self) -> ProgressEvent | None:
        return self.channel.latest()
