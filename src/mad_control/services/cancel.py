"""Cooperative cancellation shared between a caller and a blocking wait."""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger("services.cancel")


class CancelToken:
    """Set once by ``cancel()``; waits registered on it wake immediately."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed.")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancel (now, if already canceled); returns a remover."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        callback()
        return lambda: None

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if canceled meanwhile."""
        return self._event.wait(seconds)
