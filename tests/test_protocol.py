import pytest

from conftest import ack_frame, data_frame, notification_frame
from mad_control.serial_io.codec import FrameCodec
from mad_control.serial_io.protocol import (
    GROUP_WRITE,
    Acknowledgment,
    DeviceNotification,
    FirmwareVersion,
    MachineConfiguration,
    MachineState,
    NotificationKind,
    ReadType,
    SampleData,
    UnknownFrame,
    WriteType,
    ack_matches,
    build_read_request,
    build_write_request,
    decode_frame,
)


def _decode(raw: bytes):
    frames = FrameCodec.extract_frames(bytearray(raw))
    assert len(frames) == 1
    return decode_frame(frames[0])


def test_sample_frame_decodes_named_readings():
    message = _decode(
        data_frame(ReadType.SAMPLE, {"Sample Force (N)": 12.5, "Sample Position (mm)": 3})
    )

    assert isinstance(message, SampleData)
    assert message["Sample Force (N)"] == 12.5
    assert message.as_dict() == {"Sample Force (N)": 12.5, "Sample Position (mm)": 3.0}


def test_sample_values_are_read_only():
    message = _decode(data_frame(ReadType.SAMPLE, {"Machine Force (N)": 1.0}))

    with pytest.raises(TypeError):
        message.values["Machine Force (N)"] = 2.0  # type: ignore[index]


def test_state_frame_decodes_flags_and_reasons():
    message = _decode(
        data_frame(
            ReadType.STATE,
            {"faultedReason": "", "restrictedReason": "Door open", "motionEnabled": True, "testRunning": False},
        )
    )

    assert message == MachineState(
        faulted_reason=None, restricted_reason="Door open", motion_enabled=True, test_running=False
    )
    assert message.as_dict()["restrictedReason"] == "Door open"


def test_configuration_and_firmware_frames():
    config = _decode(data_frame(ReadType.MACHINE_CONFIGURATION, {"Tensile Force Max (N)": 500}))
    version = _decode(data_frame(ReadType.FIRMWARE_VERSION, {"version": "1.4.2", "build": 17}))

    assert isinstance(config, MachineConfiguration)
    assert config["Tensile Force Max (N)"] == 500
    assert version == FirmwareVersion(version="1.4.2", raw={"build": 17})
    assert version.as_dict() == {"build": 17, "version": "1.4.2"}


def test_acknowledgment_carries_correlation_id():
    message = _decode(ack_frame(WriteType.MOTION_ENABLE, ok=False, correlation_id=42))

    assert message == Acknowledgment(command=WriteType.MOTION_ENABLE, ok=False, correlation_id=42)


def test_notification_frame():
    message = _decode(notification_frame(NotificationKind.ERROR, "Limit switch hit"))

    assert message == DeviceNotification(kind=NotificationKind.ERROR, message="Limit switch hit")


@pytest.mark.parametrize(
    "raw",
    [
        FrameCodec.encode(0x5A, b"\x01"),
        FrameCodec.encode(0x44, b"\x01not-json"),
        FrameCodec.encode(0x44, b"\x09{}"),
        data_frame(ReadType.SAMPLE, {"Sample Force (N)": "high"}),
        data_frame(ReadType.FIRMWARE_VERSION, {"build": 3}),
        FrameCodec.encode(0x41, b"\x05"),
    ],
)
def test_malformed_frames_degrade_to_unknown(raw):
    message = _decode(raw)

    assert isinstance(message, UnknownFrame)
    assert message.reason


def test_bad_checksum_degrades_to_unknown():
    raw = bytearray(data_frame(ReadType.SAMPLE, {"Sample Force (N)": 1.0}))
    raw[-3] ^= 0x01

    message = _decode(bytes(raw))

    assert isinstance(message, UnknownFrame)
    assert message.reason == "checksum mismatch"


def test_build_requests():
    read = FrameCodec.extract_frames(bytearray(build_read_request(ReadType.STATE, correlation_id=9)))[0]
    write = FrameCodec.extract_frames(
        bytearray(build_write_request(WriteType.TEST_MOVE, "G1 X10", correlation_id=10))
    )[0]

    assert (read.group, read.correlation_id, read.payload) == (0x52, 9, b"\x02")
    assert write.group == GROUP_WRITE
    assert write.payload == b"\x08G1 X10"


def test_ack_matching_rules():
    ack = Acknowledgment(command=WriteType.TEST_MOVE, ok=True, correlation_id=5)
    legacy = Acknowledgment(command=WriteType.TEST_MOVE, ok=True, correlation_id=0)

    assert ack_matches(ack, WriteType.TEST_MOVE, 5)
    assert not ack_matches(ack, WriteType.TEST_MOVE, 6)
    assert not ack_matches(ack, WriteType.MOTION_ENABLE, 5)
    assert ack_matches(legacy, WriteType.TEST_MOVE, 200)
