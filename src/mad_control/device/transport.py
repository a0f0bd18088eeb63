"""Outward channels towards the user interface."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from ..serial_io.protocol import DeviceNotification, NotificationKind

logger = logging.getLogger("device.transport")

SAMPLE_DATA_UPDATES = "sample-data-updates"
MACHINE_STATE_UPDATES = "machine-state-updates"
MACHINE_CONFIGURATION_UPDATES = "machine-configuration-updates"
FIRMWARE_VERSION_UPDATES = "firmware-version-updates"
DEVICE_STATUS_UPDATES = "device-status-updates"
FIRMWARE_UPDATE_PROGRESS = "firmware-update-progress"
FIRMWARE_FLASH_STATUS = "firmware-flash-status"
NOTIFICATION_ERROR = "notification-error"
NOTIFICATION_WARNING = "notification-warning"
NOTIFICATION_INFO = "notification-info"
NOTIFICATION_SUCCESS = "notification-success"


class Transport(Protocol):
    """Anything that can deliver a payload on a named channel."""

    def send(self, channel: str, payload: Any) -> None:
        ...


class NotificationSender:
    """Routes notifications to the channel matching their severity."""

    _CHANNELS = {
        NotificationKind.ERROR: NOTIFICATION_ERROR,
        NotificationKind.WARN: NOTIFICATION_WARNING,
        NotificationKind.INFO: NOTIFICATION_INFO,
        NotificationKind.SUCCESS: NOTIFICATION_SUCCESS,
    }

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    def send(self, notification: DeviceNotification) -> None:
        channel = self._CHANNELS.get(notification.kind, NOTIFICATION_INFO)
        if notification.kind is NotificationKind.ERROR:
            logger.error("Notification: %s", notification.message)
        elif notification.kind is NotificationKind.WARN:
            logger.warning("Notification: %s", notification.message)
        else:
            logger.info("Notification (%s): %s", notification.kind.name, notification.message)
        self._transport.send(channel, notification.message)

    def error(self, message: str) -> None:
        self.send(DeviceNotification(kind=NotificationKind.ERROR, message=message))

    def warning(self, message: str) -> None:
        self.send(DeviceNotification(kind=NotificationKind.WARN, message=message))

    def info(self, message: str) -> None:
        self.send(DeviceNotification(kind=NotificationKind.INFO, message=message))

    def success(self, message: str) -> None:
        self.send(DeviceNotification(kind=NotificationKind.SUCCESS, message=message))


class ConsoleTransport:
    """Transport for headless use: every outward message is written to the log."""

    def __init__(self, logger_name: str = "app.transport") -> None:
        self._logger = logging.getLogger(logger_name)

    def send(self, channel: str, payload: Any) -> None:
        if channel == SAMPLE_DATA_UPDATES:
            self._logger.debug("%s: %s", channel, payload)
        else:
            self._logger.info("%s: %s", channel, payload)
