"""Error types and global exception handling for the application."""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("app.exceptions")


class MadControlError(Exception):
    """Base class for errors raised by the host core."""


class DeviceConnectionError(MadControlError):
    """Opening, closing or writing the serial link failed."""


class ProtocolDecodeError(MadControlError):
    """An inbound frame could not be parsed into a typed message."""


class ResponseTimeoutError(MadControlError, TimeoutError):
    """No matching response arrived before the deadline."""


class OperationCanceledError(MadControlError):
    """A wait was aborted through its cancel event."""


class RetryExhaustedError(MadControlError):
    """A streamed command was never acknowledged."""

    def __init__(self, line: str, attempts: int) -> None:
        super().__init__(f"No acknowledgment for '{line}' after {attempts} attempts")
        self.line = line
        self.attempts = attempts


class FlashError(MadControlError):
    """Firmware flashing could not be started or completed."""


def install_exception_hook() -> None:
    """Install global exception handlers for main thread and other threads."""

    hook = _ExceptionHook()
    hook.install()


@dataclass
class _ExceptionHook:
    _original_excepthook: Optional[Callable] = None
    _original_thread_excepthook: Optional[Callable] = None

    def install(self) -> None:
        self._original_excepthook = sys.excepthook
        sys.excepthook = self._handle_exception

        if hasattr(threading, "excepthook"):
            self._original_thread_excepthook = threading.excepthook
            threading.excepthook = self._handle_thread_exception  # type: ignore[assignment]

    def _handle_exception(self, exc_type, exc_value, exc_traceback) -> None:
        logger.critical(
            "Unhandled exception: %s",
            exc_value,
            exc_info=(exc_type, exc_value, exc_traceback),
        )
        if self._original_excepthook:
            self._original_excepthook(exc_type, exc_value, exc_traceback)

    def _handle_thread_exception(self, args: "threading.ExceptHookArgs") -> None:  # pragma: no cover
        logger.critical(
            "Unhandled thread exception in %s: %s",
            args.thread.name if args.thread else "<unknown>",
            args.exc_value,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )
        if self._original_thread_excepthook:
            self._original_thread_excepthook(args)
