from unittest.mock import MagicMock

import pytest
from serial import SerialException

from conftest import wait_until
from mad_control.config.models import SerialLinkConfig
from mad_control.infra.exceptions import DeviceConnectionError
from mad_control.serial_io import link as link_module
from mad_control.serial_io.link import SerialLink, prefer_callout_nodes
from mad_control.services.event_bus import EventBus
from mad_control.services.events import ConnectionEvent, ConnectionStatus


def _connection_events(bus: EventBus) -> list[ConnectionStatus]:
    return [event.status for event in bus.drain() if isinstance(event, ConnectionEvent)]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def link(bus):
    link = SerialLink(SerialLinkConfig(), bus)
    yield link
    link.close()


def test_open_publishes_opened_and_returns_handle(fake_serial, link, bus):
    handle = link.open("/dev/ttyUSB0", 115200)

    assert handle.port == "/dev/ttyUSB0"
    assert handle.baudrate == 115200
    assert link.is_open
    assert link.handle == handle
    events = bus.drain()
    assert events[0].status is ConnectionStatus.OPENED
    assert events[0].message == "Connected to /dev/ttyUSB0"


def test_reader_forwards_bytes_to_listeners(fake_serial, link):
    received: list[bytes] = []
    link.register_listener(received.append)
    link.open("/dev/ttyUSB0", 115200)

    fake_serial.instances[0].feed(b"hello")

    assert wait_until(lambda: b"".join(received) == b"hello")


def test_unregistered_listener_is_not_called(fake_serial, link):
    received: list[bytes] = []
    listener_id = link.register_listener(received.append)
    link.unregister_listener(listener_id)
    link.open("/dev/ttyUSB0", 115200)

    fake_serial.instances[0].feed(b"data")

    assert not wait_until(lambda: bool(received), timeout=0.2)


def test_open_failure_raises_and_publishes_error(monkeypatch, link, bus):
    monkeypatch.setattr(link_module.serial, "Serial", MagicMock(side_effect=SerialException("busy")))

    with pytest.raises(DeviceConnectionError, match="busy"):
        link.open("/dev/ttyUSB0", 115200)

    assert _connection_events(bus) == [ConnectionStatus.ERROR]
    assert link.handle is None


def test_reopen_closes_previous_handle(fake_serial, link, bus):
    link.open("/dev/ttyUSB0", 115200)
    link.open("/dev/ttyUSB1", 9600)

    first, second = fake_serial.instances
    assert not first.is_open
    assert second.is_open
    assert link.port == "/dev/ttyUSB1"
    assert _connection_events(bus) == [ConnectionStatus.OPENED, ConnectionStatus.CLOSED, ConnectionStatus.OPENED]


def test_close_is_idempotent(fake_serial, link, bus):
    link.open("/dev/ttyUSB0", 115200)
    link.close()
    link.close()

    assert not link.is_open
    assert _connection_events(bus) == [ConnectionStatus.OPENED, ConnectionStatus.CLOSED]


def test_write_sends_when_open_and_drops_when_closed(fake_serial, link):
    assert link.write(b"\x01") is False

    link.open("/dev/ttyUSB0", 115200)

    assert link.write(b"\x02") is True
    assert fake_serial.instances[0].written == [b"\x02"]


def test_write_failure_is_published_not_raised(fake_serial, link, bus):
    link.open("/dev/ttyUSB0", 115200)
    bus.drain()
    fake = fake_serial.instances[0]
    fake.write = MagicMock(side_effect=SerialException("write failed"))

    assert link.write(b"\x01") is False
    assert _connection_events(bus) == [ConnectionStatus.ERROR]


def test_read_failure_closes_handle(fake_serial, link, bus):
    link.open("/dev/ttyUSB0", 115200)
    bus.drain()

    fake_serial.instances[0].fail_reads(SerialException("device unplugged"))

    assert wait_until(lambda: not link.is_open)
    assert wait_until(lambda: bus._queue.qsize() >= 2)
    assert _connection_events(bus) == [ConnectionStatus.ERROR, ConnectionStatus.CLOSED]


def test_list_ports_prefers_callout_nodes(monkeypatch, link):
    ports = [MagicMock(device="/dev/tty.usbserial-1"), MagicMock(device="/dev/ttyS0")]
    monkeypatch.setattr(link_module.list_ports, "comports", lambda: ports)
    monkeypatch.setattr(link_module.os.path, "exists", lambda path: path == "/dev/cu.usbserial-1")

    assert link.list_ports() == ["/dev/cu.usbserial-1", "/dev/ttyS0"]


def test_list_ports_failure_returns_empty(monkeypatch, link):
    def _boom():
        raise OSError("no backend")

    monkeypatch.setattr(link_module.list_ports, "comports", _boom)

    assert link.list_ports() == []


def test_prefer_callout_nodes_keeps_unmatched_and_dedupes():
    paths = ["/dev/tty.a", "/dev/tty.b", "/dev/cu.a", "COM3"]

    result = prefer_callout_nodes(paths, exists=lambda path: path == "/dev/cu.a")

    assert result == ["/dev/cu.a", "/dev/tty.b", "COM3"]
