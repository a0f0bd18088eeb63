from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Optional

import pytest
from serial import SerialException

from mad_control.serial_io import link as link_module
from mad_control.serial_io.codec import FrameCodec
from mad_control.serial_io.protocol import (
    GROUP_ACK,
    GROUP_DATA,
    GROUP_NOTIFICATION,
    NotificationKind,
    ReadType,
    WriteType,
)


class FakeSerial:
    """In-memory stand-in for ``serial.Serial`` with a scriptable device side."""

    instances: list["FakeSerial"] = []

    def __init__(self, port: Optional[str] = None, baudrate: int = 9600, **kwargs: Any) -> None:
        self.port = port
        self.baudrate = baudrate
        self.kwargs = kwargs
        self.is_open = True
        self.written: list[bytes] = []
        self.on_write: Optional[Callable[["FakeSerial", bytes], None]] = None
        self.read_error: Optional[Exception] = None
        self._rx = bytearray()
        self._cond = threading.Condition()
        FakeSerial.instances.append(self)

    @property
    def in_waiting(self) -> int:
        with self._cond:
            return len(self._rx)

    def read(self, size: int = 1) -> bytes:
        with self._cond:
            if not self._rx and self.read_error is None:
                self._cond.wait(0.02)
            if self.read_error is not None:
                raise self.read_error
            if not self.is_open:
                raise SerialException("Port is closed")
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data: bytes) -> int:
        if not self.is_open:
            raise SerialException("Port is closed")
        self.written.append(bytes(data))
        if self.on_write is not None:
            self.on_write(self, bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        with self._cond:
            self.is_open = False
            self._cond.notify_all()

    # Device side ---------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        with self._cond:
            self._rx.extend(data)
            self._cond.notify_all()

    def fail_reads(self, exc: Exception) -> None:
        with self._cond:
            self.read_error = exc
            self._cond.notify_all()


class FakeLink:
    """Duck-typed SerialLink for engine-level tests."""

    def __init__(self) -> None:
        self.is_open = True
        self.written: list[bytes] = []
        self.on_write: Optional[Callable[[bytes], None]] = None
        self._listeners: dict[int, Callable[[bytes], None]] = {}
        self._next_id = 0

    def register_listener(self, callback: Callable[[bytes], None]) -> int:
        listener_id = self._next_id
        self._next_id += 1
        self._listeners[listener_id] = callback
        return listener_id

    def unregister_listener(self, listener_id: int) -> None:
        self._listeners.pop(listener_id, None)

    def write(self, data: bytes) -> bool:
        self.written.append(bytes(data))
        if self.on_write is not None:
            self.on_write(bytes(data))
        return True

    def receive(self, data: bytes) -> None:
        for callback in list(self._listeners.values()):
            callback(data)


class RecordingTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, channel: str, payload: Any) -> None:
        with self._lock:
            self.sent.append((channel, payload))

    def payloads(self, channel: str) -> list[Any]:
        with self._lock:
            return [payload for name, payload in self.sent if name == channel]


# Frame helpers -------------------------------------------------------------------


def data_frame(kind: ReadType, body: Any, correlation_id: int = 0) -> bytes:
    payload = bytes([kind]) + json.dumps(body).encode("utf-8")
    return FrameCodec.encode(GROUP_DATA, payload, correlation_id=correlation_id)


def ack_frame(command: WriteType, ok: bool = True, correlation_id: int = 0) -> bytes:
    return FrameCodec.encode(GROUP_ACK, bytes([command, 1 if ok else 0]), correlation_id=correlation_id)


def notification_frame(kind: NotificationKind, message: str) -> bytes:
    return FrameCodec.encode(GROUP_NOTIFICATION, bytes([kind]) + message.encode("utf-8"))


def parse_written(data: bytes) -> list[tuple[int, int, int, bytes]]:
    """Split host-written bytes into (group, correlation id, type byte, body) tuples."""
    frames = FrameCodec.extract_frames(bytearray(data))
    return [(f.group, f.correlation_id, f.payload[0], f.payload[1:]) for f in frames]


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, step: Optional[Callable[[], Any]] = None) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if step is not None:
            step()
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_serial(monkeypatch):
    FakeSerial.instances = []
    monkeypatch.setattr(link_module.serial, "Serial", FakeSerial)
    return FakeSerial


@pytest.fixture
def fake_link():
    return FakeLink()


@pytest.fixture
def transport():
    return RecordingTransport()
