"""Event definitions exchanged over the controller event bus."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..serial_io.protocol import (
        Acknowledgment,
        DeviceNotification,
        FirmwareVersion,
        MachineConfiguration,
        MachineState,
        SampleData,
    )


class EventType(Enum):
    SAMPLE = auto()
    MACHINE_STATE = auto()
    MACHINE_CONFIGURATION = auto()
    FIRMWARE_VERSION = auto()
    ACKNOWLEDGMENT = auto()
    NOTIFICATION = auto()
    UNKNOWN_FRAME = auto()
    CONNECTION = auto()
    HEALTH = auto()
    FLASH_PROGRESS = auto()
    FLASH_STATUS = auto()
    TIMER = auto()
    STOP = auto()


class TimerId(Enum):
    SAMPLE_POLL = "sample_poll"
    STATE_POLL = "state_poll"


class ConnectionStatus(Enum):
    OPENED = "opened"
    CLOSED = "closed"
    ERROR = "error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SampleEvent:
    sample: SampleData
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.SAMPLE)


@dataclass(frozen=True)
class MachineStateEvent:
    state: MachineState
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.MACHINE_STATE)


@dataclass(frozen=True)
class MachineConfigurationEvent:
    configuration: MachineConfiguration
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.MACHINE_CONFIGURATION)


@dataclass(frozen=True)
class FirmwareVersionEvent:
    version: FirmwareVersion
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.FIRMWARE_VERSION)


@dataclass(frozen=True)
class AcknowledgmentEvent:
    ack: Acknowledgment
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.ACKNOWLEDGMENT)


@dataclass(frozen=True)
class NotificationEvent:
    """Device- or host-originated message for the user."""

    notification: DeviceNotification
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.NOTIFICATION)


@dataclass(frozen=True)
class UnknownFrameEvent:
    raw: bytes
    reason: str = ""
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.UNKNOWN_FRAME)


@dataclass(frozen=True)
class ConnectionEvent:
    """Serial link lifecycle change."""

    status: ConnectionStatus
    port: Optional[str]
    message: str
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.CONNECTION)


@dataclass(frozen=True)
class HealthChangedEvent:
    """Emitted only when the responding flag actually changes."""

    responding: bool
    connected: bool
    message: str
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.HEALTH)


@dataclass(frozen=True)
class FlashProgressEvent:
    message: str
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.FLASH_PROGRESS)


@dataclass(frozen=True)
class FlashStatusEvent:
    status: str
    message: str
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.FLASH_STATUS)


@dataclass(frozen=True)
class TimerEvent:
    timer_id: TimerId
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.TIMER)


@dataclass(frozen=True)
class StopEvent:
    reason: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    type: EventType = field(init=False, default=EventType.STOP)
