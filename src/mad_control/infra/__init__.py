"""Infrastructure helpers such as logging, error types and exception handling."""

from .exceptions import (
    DeviceConnectionError,
    FlashError,
    MadControlError,
    OperationCanceledError,
    ProtocolDecodeError,
    ResponseTimeoutError,
    RetryExhaustedError,
    install_exception_hook,
)
from .logging import configure_logging

__all__ = [
    "DeviceConnectionError",
    "FlashError",
    "MadControlError",
    "OperationCanceledError",
    "ProtocolDecodeError",
    "ResponseTimeoutError",
    "RetryExhaustedError",
    "configure_logging",
    "install_exception_hook",
]
