"""Protocol dispatcher between the serial link and the rest of the core."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..infra.exceptions import OperationCanceledError, ResponseTimeoutError
from ..services.cancel import CancelToken
from ..services.event_bus import EventBus
from ..services.events import (
    AcknowledgmentEvent,
    FirmwareVersionEvent,
    MachineConfigurationEvent,
    MachineStateEvent,
    NotificationEvent,
    SampleEvent,
    UnknownFrameEvent,
)
from .codec import FrameCodec
from .link import SerialLink
from .protocol import (
    Acknowledgment,
    DeviceNotification,
    FirmwareVersion,
    InboundMessage,
    MachineConfiguration,
    MachineState,
    ReadType,
    SampleData,
    UnknownFrame,
    WriteType,
    build_read_request,
    build_write_request,
    decode_frame,
)

logger = logging.getLogger("serial.engine")

Predicate = Callable[[InboundMessage], bool]


@dataclass
class PendingResponse:
    """One-shot waiter resolved by the first inbound message matching its predicate."""

    predicate: Predicate
    description: str = "response"
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[InboundMessage] = None
    _engine: Optional["ProtocolEngine"] = field(default=None, repr=False)

    def wait(self, timeout_s: float, cancel: Optional[CancelToken] = None) -> InboundMessage:
        """Block until resolved; raise on timeout or cancellation."""
        remove_callback = cancel.add_callback(self.event.set) if cancel is not None else None
        try:
            self.event.wait(timeout_s)
            if self.result is not None:
                return self.result
            if cancel is not None and cancel.is_canceled:
                raise OperationCanceledError(f"Canceled while waiting for {self.description}")
            raise ResponseTimeoutError(f"Timeout waiting for {self.description}")
        finally:
            if remove_callback is not None:
                remove_callback()
            self.discard()

    def discard(self) -> None:
        if self._engine is not None:
            self._engine._discard(self)


class ProtocolEngine:
    """Turns link bytes into typed events and typed requests into link bytes.

    Decoded messages first resolve the oldest matching pending waiter, then are
    published on the bus. Sample and state frames also feed ``on_inbound`` which
    the health tracker uses as its liveness signal.
    """

    def __init__(
        self,
        link: SerialLink,
        bus: EventBus,
        on_inbound: Optional[Callable[[], None]] = None,
    ) -> None:
        self._link = link
        self._bus = bus
        self._on_inbound = on_inbound
        self._buffer = bytearray()
        self._buffer_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: list[PendingResponse] = []
        self._ids = itertools.cycle(range(1, 256))
        self._ids_lock = threading.Lock()
        self._listener_id = link.register_listener(self.feed)

    def set_inbound_callback(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_inbound = callback

    def close(self) -> None:
        self._link.unregister_listener(self._listener_id)

    def reset(self) -> None:
        """Drop partially received bytes, e.g. after the port was reopened."""
        with self._buffer_lock:
            self._buffer.clear()

    # Outbound ------------------------------------------------------------------

    def next_correlation_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def read_request(self, kind: ReadType) -> int:
        correlation_id = self.next_correlation_id()
        self._link.write(build_read_request(kind, correlation_id=correlation_id))
        return correlation_id

    def write_request(self, kind: WriteType, payload: bytes | str = b"", correlation_id: Optional[int] = None) -> int:
        if correlation_id is None:
            correlation_id = self.next_correlation_id()
        logger.debug("Write %s (id=%d): %r", kind.name, correlation_id, payload)
        self._link.write(build_write_request(kind, payload, correlation_id=correlation_id))
        return correlation_id

    # Waiting -------------------------------------------------------------------

    def expect(self, predicate: Predicate, description: str = "response") -> PendingResponse:
        """Register a waiter before sending, so a fast reply cannot be missed."""
        waiter = PendingResponse(predicate=predicate, description=description, _engine=self)
        with self._pending_lock:
            self._pending.append(waiter)
        return waiter

    def request(
        self,
        kind: ReadType | WriteType,
        predicate: Predicate,
        timeout_s: float,
        payload: bytes | str = b"",
        correlation_id: Optional[int] = None,
        cancel: Optional[CancelToken] = None,
    ) -> InboundMessage:
        """Send a read or write request and block for the first matching reply."""
        waiter = self.expect(predicate, description=kind.name)
        try:
            if isinstance(kind, ReadType):
                self.read_request(kind)
            else:
                self.write_request(kind, payload, correlation_id=correlation_id)
        except Exception:
            waiter.discard()
            raise
        return waiter.wait(timeout_s, cancel=cancel)

    def _discard(self, waiter: PendingResponse) -> None:
        with self._pending_lock:
            if waiter in self._pending:
                self._pending.remove(waiter)

    # Inbound -------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Consume raw link bytes; called on the reader thread."""
        with self._buffer_lock:
            self._buffer.extend(data)
            frames = FrameCodec.extract_frames(self._buffer)
        for frame in frames:
            self.dispatch(decode_frame(frame))

    def dispatch(self, message: InboundMessage) -> None:
        self._resolve_waiters(message)
        if isinstance(message, (SampleData, MachineState)) and self._on_inbound:
            try:
                self._on_inbound()
            except Exception:
                logger.exception("Inbound callback failed.")
        self._publish(message)

    def _resolve_waiters(self, message: InboundMessage) -> None:
        with self._pending_lock:
            for waiter in list(self._pending):
                try:
                    matched = waiter.predicate(message)
                except Exception:
                    logger.exception("Waiter predicate raised exception.")
                    continue
                if matched:
                    waiter.result = message
                    waiter.event.set()
                    self._pending.remove(waiter)
                    return

    def _publish(self, message: InboundMessage) -> None:
        if isinstance(message, SampleData):
            self._bus.publish(SampleEvent(sample=message))
        elif isinstance(message, MachineState):
            self._bus.publish(MachineStateEvent(state=message))
        elif isinstance(message, MachineConfiguration):
            self._bus.publish(MachineConfigurationEvent(configuration=message))
        elif isinstance(message, FirmwareVersion):
            self._bus.publish(FirmwareVersionEvent(version=message))
        elif isinstance(message, Acknowledgment):
            logger.debug("ACK %s ok=%s id=%d", message.command.name, message.ok, message.correlation_id)
            self._bus.publish(AcknowledgmentEvent(ack=message))
        elif isinstance(message, DeviceNotification):
            self._bus.publish(NotificationEvent(notification=message))
        elif isinstance(message, UnknownFrame):
            logger.info("Unknown frame (%s): %s", message.reason or "unrecognised", message.raw.hex(" "))
            self._bus.publish(UnknownFrameEvent(raw=message.raw, reason=message.reason))
