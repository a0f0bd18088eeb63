"""Thread-safe event bus between the device core and the controller dispatcher."""

from __future__ import annotations

import logging
import queue
from typing import Optional

from .events import StopEvent

logger = logging.getLogger("services.event_bus")


class EventBus:
    """FIFO publish/consume bus; producers never block."""

    def __init__(self, maxsize: int = 1024) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)

    def publish(self, event: object) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Event bus queue full; dropping event %s", event)

    def get(self, timeout: Optional[float] = None) -> object:
        return self._queue.get(timeout=timeout)

    def drain(self) -> list[object]:
        """Remove and return every queued event in publish order."""
        events: list[object] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def stop(self, reason: str | None = None) -> None:
        self.publish(StopEvent(reason=reason))
