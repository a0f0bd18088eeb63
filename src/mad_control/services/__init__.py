"""Shared service-layer components: event bus, events and timers."""

from .cancel import CancelToken
from .event_bus import EventBus
from .events import (
    AcknowledgmentEvent,
    ConnectionEvent,
    ConnectionStatus,
    EventType,
    FirmwareVersionEvent,
    FlashProgressEvent,
    FlashStatusEvent,
    HealthChangedEvent,
    MachineConfigurationEvent,
    MachineStateEvent,
    NotificationEvent,
    SampleEvent,
    StopEvent,
    TimerEvent,
    TimerId,
    UnknownFrameEvent,
)
from .scheduler import CommandScheduler

__all__ = [
    "CancelToken",
    "EventBus",
    "CommandScheduler",
    "EventType",
    "TimerId",
    "ConnectionStatus",
    "AcknowledgmentEvent",
    "ConnectionEvent",
    "FirmwareVersionEvent",
    "FlashProgressEvent",
    "FlashStatusEvent",
    "HealthChangedEvent",
    "MachineConfigurationEvent",
    "MachineStateEvent",
    "NotificationEvent",
    "SampleEvent",
    "StopEvent",
    "TimerEvent",
    "UnknownFrameEvent",
]
