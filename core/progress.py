"""
progress.py
------------
Ordered progress channel for one discovery run.

All events go through emit(), which holds a lock, so concurrent sources can
never interleave out of order. Progress is clamped to be non-decreasing: a
late event asking for a lower value is recorded at the current value.

Consumers can:
    - pass a callback (called synchronously on every event),
    - read `events` after the run,
    - iterate stream() from another thread while the run is in flight.
"""

import logging
import queue
import threading
from typing import Callable, Iterator, Optional

from core.models import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressChannel:

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self._lock = threading.RLock()
        self._events: list[ProgressEvent] = []
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue()

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            return tuple(self._events)

    @property
    def current(self) -> int:
        with self._lock:
            return self._events[-1].progress if self._events else 0

    @property
    def is_closed(self) -> bool:
        with self._lock:
            return bool(self._events) and self._events[-1].is_complete

    def emit(self, step: str, progress: float, message: str, is_complete: bool = False) -> ProgressEvent:
        """Records and publishes one event. Emitting after completion is an error."""
        with self._lock:
            last = self._events[-1] if self._events else None
            if last is not None and last.is_complete:
                raise RuntimeError("Progress channel already completed")

            value = int(max(0, min(round(progress), 100)))
            if last is not None and value < last.progress:
                logger.debug(f"Clamping progress {value} to {last.progress} for step '{step}'.")
                value = last.progress

            event = ProgressEvent(step=step, progress=value, message=message, is_complete=is_complete)
            self._events.append(event)
            self._queue.put(event)
            if self._callback is not None:
                self._callback(event)

        return event

    def stream(self, timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
        """
        Yields events in emission order until the completing event.

        Raises:
            queue.Empty: if no event arrives within `timeout` seconds.
        """
        while True:
            event = self._queue.get(timeout=timeout)
            yield event
            if event.is_complete:
                return
