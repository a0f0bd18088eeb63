"""Composition root: owns the device components and fans their events out."""

from __future__ import annotations

import json
import logging
import queue
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union, cast

from ..config.models import Config
from ..infra.exceptions import DeviceConnectionError
from ..serial_io.engine import ProtocolEngine
from ..serial_io.link import ConnectionHandle, SerialLink
from ..serial_io.protocol import (
    Acknowledgment,
    FirmwareVersion,
    InboundMessage,
    MachineConfiguration,
    MachineState,
    ReadType,
    SampleData,
    WriteType,
    ack_matches,
)
from ..services.cancel import CancelToken
from ..services.event_bus import EventBus
from ..services.events import (
    AcknowledgmentEvent,
    ConnectionEvent,
    ConnectionStatus,
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
from ..services.scheduler import CommandScheduler
from . import transport as channels
from .context import DeviceCache
from .flasher import FirmwareFlasher, PopenFactory
from .health import HealthTracker
from .streaming import CommandStream
from .transport import NotificationSender, Transport

logger = logging.getLogger("device.controller")

CONNECTION_CANCELED = "Connection was canceled. Please try again."
NO_FILE_SELECTED = "No file selected"


class Controller:
    """Host-side controller for one instrument.

    Commands arrive as method calls from the embedding host. Everything the
    device sends back travels as events on one FIFO bus, consumed by a single
    dispatcher that updates ``cache`` and forwards to the transport.
    """

    def __init__(
        self,
        config: Config,
        transport: Transport,
        link: Optional[SerialLink] = None,
        popen_factory: PopenFactory = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
        platform: str = sys.platform,
    ) -> None:
        self.config = config
        self.bus = EventBus()
        self.link = link or SerialLink(config.serial, self.bus)
        self.engine = ProtocolEngine(self.link, self.bus)
        self.health = HealthTracker(
            self.engine, self.bus, is_connected=lambda: self.link.is_open, config=config.health, clock=clock
        )
        self.engine.set_inbound_callback(self.health.mark_inbound)
        self.stream = CommandStream(self.engine, config.stream)
        self.flasher = FirmwareFlasher(
            self.link,
            self.bus,
            config.flash,
            reconnect=self._reopen,
            popen_factory=popen_factory,
            platform=platform,
        )
        self.scheduler = CommandScheduler(self.bus)
        self.cache = DeviceCache(config.device.sample_buffer_size)
        self.transport = transport
        self.notifications = NotificationSender(transport)

        self._loop_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # Lifecycle -----------------------------------------------------------------

    def start(self) -> None:
        health_cfg = self.config.health
        self.scheduler.start_interval(TimerId.SAMPLE_POLL, health_cfg.sample_interval_ms / 1000.0)
        self.scheduler.start_interval(TimerId.STATE_POLL, health_cfg.state_interval_ms / 1000.0)
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self._event_loop, name="ControllerEventLoop", daemon=True)
        self._loop_thread.start()
        logger.info("Controller started.")

    def stop(self) -> None:
        self._stop_event.set()
        self.bus.stop("controller shutdown")
        if self._loop_thread:
            self._loop_thread.join(timeout=2.0)
            self._loop_thread = None
        self.scheduler.shutdown()
        if self.flasher.active_job is not None:
            self.flasher.cancel()
        try:
            self.link.close()
        except DeviceConnectionError as exc:
            logger.warning("Error closing link during shutdown: %s", exc)
        self.engine.close()
        logger.info("Controller stopped.")

    def process_pending(self) -> int:
        """Dispatch everything queued on the bus on the calling thread."""
        handled = 0
        while True:
            events = self.bus.drain()
            if not events:
                return handled
            for event in events:
                if isinstance(event, StopEvent):
                    continue
                self._dispatch_event(event)
                handled += 1

    # Connection ----------------------------------------------------------------

    def connect(self, port: str, baudrate: Optional[int] = None) -> str:
        logger.info("Attempting to connect to device on %s", port)
        baudrate = baudrate or self.config.serial.baudrate
        self.cache.state = None
        try:
            self._reopen(port, baudrate)
        except DeviceConnectionError as exc:
            if "Canceled" in str(exc):
                logger.warning("Connect to %s was canceled: %s", port, exc)
                self.notifications.warning(CONNECTION_CANCELED)
                return CONNECTION_CANCELED
            raise
        return f"Connected to {port}"

    def disconnect(self) -> None:
        self.link.close()

    def list_ports(self) -> list[str]:
        return self.link.list_ports()

    def _reopen(self, port: str, baudrate: int) -> ConnectionHandle:
        self.engine.reset()
        handle = self.link.open(port, baudrate)
        self.health.reset()
        return handle

    # Queries -------------------------------------------------------------------

    def get_all_sample_data(self) -> list[SampleData]:
        return self.cache.samples()

    def get_latest_sample(self) -> Optional[SampleData]:
        return self.cache.latest_sample()

    def get_state(self) -> Optional[MachineState]:
        return self.cache.state

    def is_responding(self) -> bool:
        return self.health.responding

    def is_connected(self) -> bool:
        return self.link.is_open

    def get_machine_configuration(self, cancel: Optional[CancelToken] = None) -> MachineConfiguration:
        logger.info("Getting machine configuration")
        message = self.engine.request(
            ReadType.MACHINE_CONFIGURATION,
            lambda m: isinstance(m, MachineConfiguration),
            self._response_timeout_s,
            cancel=cancel,
        )
        return cast(MachineConfiguration, message)

    def get_firmware_version(self, cancel: Optional[CancelToken] = None) -> FirmwareVersion:
        logger.info("Getting firmware version")
        message = self.engine.request(
            ReadType.FIRMWARE_VERSION,
            lambda m: isinstance(m, FirmwareVersion),
            self._response_timeout_s,
            cancel=cancel,
        )
        return cast(FirmwareVersion, message)

    # Commands ------------------------------------------------------------------

    def save_machine_configuration(self, settings: Mapping[str, Any]) -> bool:
        logger.info("Saving machine configuration: %s", dict(settings))
        self.engine.write_request(WriteType.MACHINE_CONFIGURATION, json.dumps(dict(settings)))
        return True

    def set_motion_enabled(self, enabled: bool, cancel: Optional[CancelToken] = None) -> bool:
        correlation_id = self.engine.next_correlation_id()

        def _is_ack(message: InboundMessage) -> bool:
            return isinstance(message, Acknowledgment) and ack_matches(
                message, WriteType.MOTION_ENABLE, correlation_id
            )

        ack = self.engine.request(
            WriteType.MOTION_ENABLE,
            _is_ack,
            self._response_timeout_s,
            payload="1" if enabled else "0",
            correlation_id=correlation_id,
            cancel=cancel,
        )
        return cast(Acknowledgment, ack).ok

    def manual_move(self, distance_mm: float, speed: float) -> bool:
        move = {"G": 0, "X": float(distance_mm), "F": float(speed), "P": 0}
        self.engine.write_request(WriteType.MANUAL_MOVE, '{"G":91}')
        self.engine.write_request(WriteType.MANUAL_MOVE, json.dumps(move, separators=(",", ":")))
        return True

    def home_axis(self) -> bool:
        self.engine.write_request(WriteType.MANUAL_MOVE, '{"G":28}')
        return True

    def zero_force(self) -> bool:
        self.engine.write_request(WriteType.GAUGE_FORCE, "0")
        return True

    def stream_gcode(self, text: str, cancel: Optional[CancelToken] = None) -> dict[str, object]:
        result = self.stream.stream_text(text, cancel=cancel)
        return result.as_dict()

    # Firmware ------------------------------------------------------------------

    def flash_from_file(self, select_file: Callable[[], Optional[Union[str, Path]]]) -> dict[str, object]:
        logger.info("Attempting to flash firmware from local file")
        path = select_file()
        if not path:
            return {"success": False, "error": NO_FILE_SELECTED}
        return self.flash_firmware(path)

    def flash_firmware(self, path: Union[str, Path]) -> dict[str, object]:
        return self.flasher.flash(path).as_dict()

    def cancel_firmware_flash(self) -> dict[str, object]:
        return self.flasher.cancel().as_dict()

    # Dispatcher ----------------------------------------------------------------

    @property
    def _response_timeout_s(self) -> float:
        return self.config.serial.response_timeout_ms / 1000.0

    def _event_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self.bus.get(timeout=0.5)
            except queue.Empty:
                continue

            if isinstance(event, StopEvent):
                logger.info("Controller received stop event: %s", event.reason)
                break

            self._dispatch_event(event)

    def _dispatch_event(self, event: object) -> None:
        try:
            if isinstance(event, SampleEvent):
                self.cache.add_sample(event.sample)
                self.transport.send(channels.SAMPLE_DATA_UPDATES, event.sample.as_dict())
            elif isinstance(event, MachineStateEvent):
                self.cache.state = event.state
                self.transport.send(channels.MACHINE_STATE_UPDATES, event.state.as_dict())
            elif isinstance(event, MachineConfigurationEvent):
                self.cache.configuration = event.configuration
                logger.info("Machine configuration: %s", event.configuration.as_dict())
                self.transport.send(channels.MACHINE_CONFIGURATION_UPDATES, event.configuration.as_dict())
            elif isinstance(event, FirmwareVersionEvent):
                self.cache.firmware_version = event.version
                self.transport.send(channels.FIRMWARE_VERSION_UPDATES, event.version.as_dict())
            elif isinstance(event, NotificationEvent):
                self.notifications.send(event.notification)
            elif isinstance(event, ConnectionEvent):
                self._handle_connection_event(event)
            elif isinstance(event, HealthChangedEvent):
                self.transport.send(
                    channels.DEVICE_STATUS_UPDATES,
                    {"connected": event.connected, "responding": event.responding, "message": event.message},
                )
            elif isinstance(event, FlashProgressEvent):
                self.transport.send(channels.FIRMWARE_UPDATE_PROGRESS, event.message)
            elif isinstance(event, FlashStatusEvent):
                self.transport.send(channels.FIRMWARE_FLASH_STATUS, {"status": event.status, "message": event.message})
            elif isinstance(event, TimerEvent):
                self._handle_timer_event(event)
            elif isinstance(event, AcknowledgmentEvent):
                logger.debug("Acknowledgment %s ok=%s", event.ack.command.name, event.ack.ok)
            elif isinstance(event, UnknownFrameEvent):
                logger.info("Message type unknown (%s)", event.reason or "unrecognised")
            else:
                logger.debug("Unhandled event type: %s", type(event).__name__)
        except Exception:
            logger.exception("Error while dispatching event: %s", event)

    def _handle_connection_event(self, event: ConnectionEvent) -> None:
        if event.status is ConnectionStatus.OPENED:
            payload = {"connected": True, "responding": self.health.responding, "message": event.message}
        else:
            if event.status is ConnectionStatus.CLOSED:
                self.health.reset()
            payload = {"connected": False, "responding": False, "message": event.message}
        self.transport.send(channels.DEVICE_STATUS_UPDATES, payload)

    def _handle_timer_event(self, event: TimerEvent) -> None:
        if event.timer_id is TimerId.SAMPLE_POLL:
            self.health.on_sample_tick()
        elif event.timer_id is TimerId.STATE_POLL:
            self.health.on_state_tick()
