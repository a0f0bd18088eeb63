import threading
import time
from unittest.mock import MagicMock

import pytest

from conftest import ack_frame, data_frame, notification_frame, parse_written
from mad_control.infra.exceptions import OperationCanceledError, ResponseTimeoutError
from mad_control.serial_io.codec import FrameCodec
from mad_control.serial_io.engine import ProtocolEngine
from mad_control.serial_io.protocol import (
    GROUP_READ,
    Acknowledgment,
    MachineConfiguration,
    NotificationKind,
    ReadType,
    SampleData,
    WriteType,
)
from mad_control.services.cancel import CancelToken
from mad_control.services.event_bus import EventBus
from mad_control.services.events import (
    AcknowledgmentEvent,
    MachineStateEvent,
    NotificationEvent,
    SampleEvent,
    UnknownFrameEvent,
)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def engine(fake_link, bus):
    return ProtocolEngine(fake_link, bus)


def test_read_request_writes_read_frame(engine, fake_link):
    correlation_id = engine.read_request(ReadType.SAMPLE)

    assert parse_written(fake_link.written[0]) == [(GROUP_READ, correlation_id, ReadType.SAMPLE, b"")]


def test_correlation_ids_roll_over_within_one_byte(engine):
    ids = [engine.next_correlation_id() for _ in range(256)]

    assert ids[0] == 1
    assert ids[254] == 255
    assert ids[255] == 1


def test_inbound_frames_are_published_in_order(engine, fake_link, bus):
    fake_link.receive(
        data_frame(ReadType.SAMPLE, {"Sample Force (N)": 1.0})
        + data_frame(ReadType.STATE, {"motionEnabled": True})
        + notification_frame(NotificationKind.INFO, "Ready")
        + ack_frame(WriteType.GAUGE_FORCE)
    )

    events = bus.drain()
    assert [type(e) for e in events] == [SampleEvent, MachineStateEvent, NotificationEvent, AcknowledgmentEvent]


def test_split_frames_are_reassembled(engine, fake_link, bus):
    raw = data_frame(ReadType.SAMPLE, {"Sample Force (N)": 2.0})

    fake_link.receive(raw[:5])
    assert bus.drain() == []
    fake_link.receive(raw[5:])

    events = bus.drain()
    assert len(events) == 1
    assert events[0].sample["Sample Force (N)"] == 2.0


def test_unknown_frame_is_published_not_raised(engine, fake_link, bus):
    fake_link.receive(FrameCodec.encode(0x5A, b"\x00"))

    events = bus.drain()
    assert len(events) == 1
    assert isinstance(events[0], UnknownFrameEvent)


def test_sample_and_state_frames_signal_inbound(engine, fake_link):
    on_inbound = MagicMock()
    engine.set_inbound_callback(on_inbound)

    fake_link.receive(data_frame(ReadType.SAMPLE, {"Sample Force (N)": 1.0}))
    fake_link.receive(data_frame(ReadType.STATE, {}))
    fake_link.receive(data_frame(ReadType.MACHINE_CONFIGURATION, {}))

    assert on_inbound.call_count == 2


def test_request_returns_matching_reply(engine, fake_link):
    fake_link.on_write = lambda data: fake_link.receive(
        data_frame(ReadType.MACHINE_CONFIGURATION, {"Position Max (mm)": 120})
    )

    message = engine.request(
        ReadType.MACHINE_CONFIGURATION, lambda m: isinstance(m, MachineConfiguration), timeout_s=1.0
    )

    assert message["Position Max (mm)"] == 120


def test_request_times_out(engine):
    started = time.monotonic()

    with pytest.raises(ResponseTimeoutError):
        engine.request(ReadType.FIRMWARE_VERSION, lambda m: False, timeout_s=0.05)

    assert time.monotonic() - started < 1.0
    assert engine._pending == []


def test_request_is_cancelled_promptly(engine):
    cancel = CancelToken()
    threading.Timer(0.05, cancel.cancel).start()
    started = time.monotonic()

    with pytest.raises(OperationCanceledError):
        engine.request(ReadType.FIRMWARE_VERSION, lambda m: False, timeout_s=5.0, cancel=cancel)

    assert time.monotonic() - started < 1.0


def test_already_cancelled_token_aborts_immediately(engine):
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(OperationCanceledError):
        engine.request(ReadType.SAMPLE, lambda m: False, timeout_s=5.0, cancel=cancel)


def test_one_frame_resolves_only_the_oldest_waiter(engine, fake_link):
    is_sample = lambda m: isinstance(m, SampleData)  # noqa: E731
    first = engine.expect(is_sample, "first")
    second = engine.expect(is_sample, "second")

    fake_link.receive(data_frame(ReadType.SAMPLE, {"Sample Force (N)": 1.0}))

    assert first.event.is_set()
    assert not second.event.is_set()
    second.discard()


def test_write_request_stamps_given_correlation_id(engine, fake_link):
    fake_link.on_write = lambda data: fake_link.receive(ack_frame(WriteType.MOTION_ENABLE, True, correlation_id=77))

    ack = engine.request(
        WriteType.MOTION_ENABLE,
        lambda m: isinstance(m, Acknowledgment) and m.correlation_id == 77,
        timeout_s=1.0,
        payload="1",
        correlation_id=77,
    )

    assert ack.ok
    group, correlation_id, kind, body = parse_written(fake_link.written[0])[0]
    assert (correlation_id, kind, body) == (77, WriteType.MOTION_ENABLE, b"1")
