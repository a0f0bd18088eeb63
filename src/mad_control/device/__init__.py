"""Device-level services: health, streaming, flashing and the controller."""

from .context import DeviceCache
from .controller import Controller
from .flasher import CancelResult, FirmwareFlasher, FlashJob, FlashProcess, FlashResult, FlashState, ProcessState
from .health import HealthTracker
from .streaming import CommandStream, StreamResult
from .transport import ConsoleTransport, NotificationSender, Transport

__all__ = [
    "CancelResult",
    "CommandStream",
    "ConsoleTransport",
    "Controller",
    "DeviceCache",
    "FirmwareFlasher",
    "FlashJob",
    "FlashProcess",
    "FlashResult",
    "FlashState",
    "HealthTracker",
    "NotificationSender",
    "ProcessState",
    "StreamResult",
    "Transport",
]
