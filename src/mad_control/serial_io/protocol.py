"""Frame builders and typed decoding for the instrument protocol."""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from ..infra.exceptions import ProtocolDecodeError
from .codec import DecodedFrame, FrameCodec

logger = logging.getLogger("serial.protocol")

GROUP_READ = 0x52  # 'R'
GROUP_WRITE = 0x57  # 'W'
GROUP_DATA = 0x44  # 'D'
GROUP_ACK = 0x41  # 'A'
GROUP_NOTIFICATION = 0x4E  # 'N'


class ReadType(enum.IntEnum):
    """Data the host may request from the device."""

    SAMPLE = 0x01
    STATE = 0x02
    MACHINE_CONFIGURATION = 0x03
    FIRMWARE_VERSION = 0x04


class WriteType(enum.IntEnum):
    """Commands and settings the host may send to the device."""

    MACHINE_CONFIGURATION = 0x03
    MOTION_ENABLE = 0x05
    MANUAL_MOVE = 0x06
    GAUGE_FORCE = 0x07
    TEST_MOVE = 0x08


class NotificationKind(enum.IntEnum):
    ERROR = 0x01
    WARN = 0x02
    INFO = 0x03
    SUCCESS = 0x04


def _freeze(values: Mapping[str, Any]) -> Mapping[str, Any]:
    return MappingProxyType(dict(values))


@dataclass(frozen=True)
class SampleData:
    """Readings for one measurement instant, keyed by channel name."""

    values: Mapping[str, float]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", _freeze(self.values))

    def __getitem__(self, key: str) -> float:
        return self.values[key]

    def as_dict(self) -> dict[str, float]:
        return dict(self.values)


@dataclass(frozen=True)
class MachineState:
    faulted_reason: Optional[str] = None
    restricted_reason: Optional[str] = None
    motion_enabled: bool = False
    test_running: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "faultedReason": self.faulted_reason,
            "restrictedReason": self.restricted_reason,
            "motionEnabled": self.motion_enabled,
            "testRunning": self.test_running,
        }


@dataclass(frozen=True)
class MachineConfiguration:
    """Named device settings, replaced wholesale on every read."""

    settings: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "settings", _freeze(self.settings))

    def __getitem__(self, key: str) -> Any:
        return self.settings[key]

    def as_dict(self) -> dict[str, Any]:
        return dict(self.settings)


@dataclass(frozen=True)
class FirmwareVersion:
    version: str
    raw: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", _freeze(self.raw))

    def as_dict(self) -> dict[str, Any]:
        data = dict(self.raw)
        data["version"] = self.version
        return data


@dataclass(frozen=True)
class Acknowledgment:
    command: WriteType
    ok: bool
    correlation_id: int = 0


@dataclass(frozen=True)
class DeviceNotification:
    kind: NotificationKind
    message: str


@dataclass(frozen=True)
class UnknownFrame:
    raw: bytes
    reason: str = ""


InboundMessage = Union[
    SampleData,
    MachineState,
    MachineConfiguration,
    FirmwareVersion,
    Acknowledgment,
    DeviceNotification,
    UnknownFrame,
]


# Outbound ----------------------------------------------------------------------


def build_read_request(kind: ReadType, correlation_id: int = 0) -> bytes:
    """Frame asking the device to report one kind of data."""
    return FrameCodec.encode(GROUP_READ, [ReadType(kind)], correlation_id=correlation_id)


def build_write_request(kind: WriteType, payload: bytes | str = b"", correlation_id: int = 0) -> bytes:
    """Frame carrying a command or setting; text payloads are UTF-8 encoded."""
    data = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    return FrameCodec.encode(GROUP_WRITE, bytes([WriteType(kind)]) + data, correlation_id=correlation_id)


# Inbound -----------------------------------------------------------------------


def decode_frame(frame: DecodedFrame) -> InboundMessage:
    """Turn a frame into a typed message; anything unparseable becomes UnknownFrame."""
    try:
        return _decode(frame)
    except ProtocolDecodeError as exc:
        logger.debug("Frame degraded to unknown: %s", exc)
        return UnknownFrame(raw=frame.raw, reason=str(exc))


def _decode(frame: DecodedFrame) -> InboundMessage:
    if not frame.crc_ok:
        raise ProtocolDecodeError("checksum mismatch")
    if frame.group == GROUP_DATA:
        return _decode_data(frame)
    if frame.group == GROUP_ACK:
        return _decode_ack(frame)
    if frame.group == GROUP_NOTIFICATION:
        return _decode_notification(frame)
    raise ProtocolDecodeError(f"unknown group 0x{frame.group:02X}")


def _decode_data(frame: DecodedFrame) -> InboundMessage:
    if not frame.payload:
        raise ProtocolDecodeError("empty data frame")
    try:
        kind = ReadType(frame.payload[0])
    except ValueError as exc:
        raise ProtocolDecodeError(f"unknown data type 0x{frame.payload[0]:02X}") from exc
    body = _load_json(frame.payload[1:])

    if kind is ReadType.SAMPLE:
        return parse_sample(body)
    if kind is ReadType.STATE:
        return parse_machine_state(body)
    if kind is ReadType.MACHINE_CONFIGURATION:
        if not isinstance(body, dict):
            raise ProtocolDecodeError("machine configuration must be an object")
        return MachineConfiguration(settings=body)
    return parse_firmware_version(body)


def _decode_ack(frame: DecodedFrame) -> Acknowledgment:
    data = frame.payload_as_ints()
    if len(data) < 2:
        raise ProtocolDecodeError("acknowledgment too short")
    try:
        command = WriteType(data[0])
    except ValueError as exc:
        raise ProtocolDecodeError(f"acknowledgment for unknown command 0x{data[0]:02X}") from exc
    return Acknowledgment(command=command, ok=bool(data[1]), correlation_id=frame.correlation_id)


def _decode_notification(frame: DecodedFrame) -> DeviceNotification:
    if not frame.payload:
        raise ProtocolDecodeError("empty notification")
    try:
        kind = NotificationKind(frame.payload[0])
    except ValueError:
        kind = NotificationKind.INFO
    message = frame.payload[1:].decode("utf-8", errors="replace")
    return DeviceNotification(kind=kind, message=message)


def _load_json(data: bytes) -> Any:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolDecodeError(f"malformed JSON payload: {exc}") from exc


def parse_sample(body: Any) -> SampleData:
    if not isinstance(body, dict):
        raise ProtocolDecodeError("sample must be an object")
    values: dict[str, float] = {}
    for key, value in body.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ProtocolDecodeError(f"sample field '{key}' is not numeric")
        values[str(key)] = float(value)
    return SampleData(values=values)


def parse_machine_state(body: Any) -> MachineState:
    if not isinstance(body, dict):
        raise ProtocolDecodeError("machine state must be an object")

    def _reason(key: str) -> Optional[str]:
        value = body.get(key)
        return None if value in (None, "") else str(value)

    return MachineState(
        faulted_reason=_reason("faultedReason"),
        restricted_reason=_reason("restrictedReason"),
        motion_enabled=bool(body.get("motionEnabled", False)),
        test_running=bool(body.get("testRunning", False)),
    )


def parse_firmware_version(body: Any) -> FirmwareVersion:
    if isinstance(body, str):
        return FirmwareVersion(version=body)
    if isinstance(body, dict) and "version" in body:
        raw = {key: value for key, value in body.items() if key != "version"}
        return FirmwareVersion(version=str(body["version"]), raw=raw)
    raise ProtocolDecodeError("firmware version missing 'version'")


def ack_matches(ack: Acknowledgment, command: WriteType, correlation_id: int) -> bool:
    """True if ``ack`` answers ``command``; id 0 means the device did not echo one."""
    if ack.command is not command:
        return False
    return ack.correlation_id == 0 or ack.correlation_id == correlation_id
