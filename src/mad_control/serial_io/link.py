"""Ownership of the physical serial connection to the instrument."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import serial
from serial import SerialException
from serial.tools import list_ports

from ..config.models import SerialLinkConfig
from ..infra.exceptions import DeviceConnectionError
from ..services.event_bus import EventBus
from ..services.events import ConnectionEvent, ConnectionStatus

logger = logging.getLogger("serial.link")

DataListener = Callable[[bytes], None]


@dataclass(frozen=True)
class ConnectionHandle:
    port: str
    baudrate: int
    is_open: bool


def prefer_callout_nodes(paths: Iterable[str], exists: Optional[Callable[[str], bool]] = None) -> list[str]:
    """Swap ``/dev/tty.X`` dial-in nodes for ``/dev/cu.X`` when the callout node exists."""
    exists = exists or os.path.exists
    result: list[str] = []
    for path in paths:
        chosen = path
        if path.startswith("/dev/tty."):
            callout = "/dev/cu." + path[len("/dev/tty.") :]
            if exists(callout):
                logger.debug("Using %s instead of %s", callout, path)
                chosen = callout
        if chosen not in result:
            result.append(chosen)
    return result


class SerialLink:
    """Opens, closes, reads and writes the single serial connection.

    A background reader thread forwards every received chunk to the registered
    data listeners in arrival order. Lifecycle changes are published on the
    event bus as ``ConnectionEvent``. Open, close and write are serialised on one
    lock so a write never races a reopen.
    """

    def __init__(self, config: SerialLinkConfig, bus: EventBus) -> None:
        self._config = config
        self._bus = bus
        self._serial: Optional[serial.Serial] = None
        self._port: Optional[str] = None
        self._baudrate: Optional[int] = None
        self._lock = threading.RLock()
        self._reader_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self._listeners_lock = threading.Lock()
        self._listeners: Dict[int, DataListener] = {}
        self._next_listener_id = 0

    # Properties ----------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        with self._lock:
            return bool(self._serial and self._serial.is_open)

    @property
    def port(self) -> Optional[str]:
        with self._lock:
            return self._port if self._serial else None

    @property
    def baudrate(self) -> Optional[int]:
        with self._lock:
            return self._baudrate if self._serial else None

    @property
    def handle(self) -> Optional[ConnectionHandle]:
        with self._lock:
            if self._serial is None or self._port is None or self._baudrate is None:
                return None
            return ConnectionHandle(port=self._port, baudrate=self._baudrate, is_open=bool(self._serial.is_open))

    # Listener management -------------------------------------------------------

    def register_listener(self, callback: DataListener) -> int:
        with self._listeners_lock:
            listener_id = self._next_listener_id
            self._next_listener_id += 1
            self._listeners[listener_id] = callback
            return listener_id

    def unregister_listener(self, listener_id: int) -> None:
        with self._listeners_lock:
            self._listeners.pop(listener_id, None)

    # Lifecycle -----------------------------------------------------------------

    def open(self, port: str, baudrate: int) -> ConnectionHandle:
        """Open ``port``, closing any handle that is already open."""
        with self._lock:
            if self._serial is not None:
                try:
                    self._close_locked()
                except DeviceConnectionError:
                    logger.warning("Previous handle did not close cleanly; continuing with %s.", port)
            try:
                handle = serial.Serial(
                    port=port,
                    baudrate=baudrate,
                    bytesize=self._config.bytesize,
                    parity=self._config.parity,
                    stopbits=self._config.stopbits,
                    timeout=self._config.timeout,
                )
            except (SerialException, ValueError, OSError) as exc:
                logger.error("Cannot open port %s at %d baud: %s", port, baudrate, exc)
                self._bus.publish(ConnectionEvent(status=ConnectionStatus.ERROR, port=port, message=str(exc)))
                raise DeviceConnectionError(str(exc)) from exc

            self._serial = handle
            self._port = port
            self._baudrate = baudrate
            self._start_reader(handle)
            logger.info("Connected to %s at %d baud", port, baudrate)
            self._bus.publish(
                ConnectionEvent(status=ConnectionStatus.OPENED, port=port, message=f"Connected to {port}")
            )
            return ConnectionHandle(port=port, baudrate=baudrate, is_open=True)

    def close(self) -> None:
        """Close the open handle; a no-op when nothing is open."""
        with self._lock:
            if self._serial is None:
                return
            self._close_locked()

    def _close_locked(self) -> None:
        handle, port = self._serial, self._port
        self._serial = None
        self._stop_reader()
        if handle is None:
            return
        try:
            if handle.is_open:
                handle.close()
        except (SerialException, OSError) as exc:
            logger.error("Error closing serial port %s: %s", port, exc)
            self._bus.publish(ConnectionEvent(status=ConnectionStatus.ERROR, port=port, message=str(exc)))
            raise DeviceConnectionError(str(exc)) from exc
        finally:
            self._bus.publish(
                ConnectionEvent(status=ConnectionStatus.CLOSED, port=port, message="Serial port closed")
            )
        logger.info("Serial port %s closed", port)

    # I/O -----------------------------------------------------------------------

    def write(self, data: bytes) -> bool:
        """Send ``data``; dropped with a warning when no port is open."""
        with self._lock:
            handle = self._serial
            if handle is None or not handle.is_open:
                logger.warning("Attempted to write %d bytes to closed serial port", len(data))
                return False
            try:
                handle.write(data)
                handle.flush()
                logger.debug("Sent %d bytes -> %s", len(data), data.hex(" "))
                return True
            except (SerialException, OSError) as exc:
                logger.error("Write error on %s: %s", self._port, exc)
                self._bus.publish(ConnectionEvent(status=ConnectionStatus.ERROR, port=self._port, message=str(exc)))
                return False

    def list_ports(self) -> list[str]:
        """Enumerate serial ports; an enumeration failure yields an empty list."""
        try:
            raw_ports = [info.device for info in list_ports.comports()]
        except Exception as exc:  # backend-specific OS errors
            logger.error("Failed to list serial ports: %s", exc)
            return []
        logger.info("Raw ports detected: %s", raw_ports)
        ports = prefer_callout_nodes(raw_ports)
        logger.info("Available ports: %s", ports)
        return ports

    # Reader thread -------------------------------------------------------------

    def _start_reader(self, handle: serial.Serial) -> None:
        self._stop_event = threading.Event()
        self._reader_thread = threading.Thread(
            target=self._reader_loop,
            args=(handle, self._stop_event),
            name="SerialLink-reader",
            daemon=True,
        )
        self._reader_thread.start()

    def _stop_reader(self) -> None:
        self._stop_event.set()
        thread = self._reader_thread
        self._reader_thread = None
        if thread and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _reader_loop(self, handle: serial.Serial, stop_event: threading.Event) -> None:
        chunk_size = max(1, self._config.read_chunk_size)
        while not stop_event.is_set():
            try:
                waiting = handle.in_waiting
                data = handle.read(min(chunk_size, max(1, waiting)))
            except (SerialException, OSError, TypeError, AttributeError) as exc:
                if stop_event.is_set():
                    break
                logger.error("Serial read error: %s", exc)
                self._handle_read_failure(handle, exc)
                break
            if data:
                self._dispatch(bytes(data))
        logger.debug("Reader loop exiting.")

    def _handle_read_failure(self, handle: serial.Serial, exc: Exception) -> None:
        with self._lock:
            if self._serial is not handle:
                return
            port = self._port
            self._serial = None
            self._stop_event.set()
            self._reader_thread = None
            try:
                handle.close()
            except (SerialException, OSError):
                logger.debug("Ignoring close failure after read error.")
            self._bus.publish(ConnectionEvent(status=ConnectionStatus.ERROR, port=port, message=str(exc)))
            self._bus.publish(ConnectionEvent(status=ConnectionStatus.CLOSED, port=port, message="Serial port closed"))

    def _dispatch(self, data: bytes) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.values())
        for callback in listeners:
            try:
                callback(data)
            except Exception:
                logger.exception("Serial data listener failed.")
