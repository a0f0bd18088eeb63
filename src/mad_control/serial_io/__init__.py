"""Serial connection, framing and protocol dispatch for the instrument."""

from .codec import DecodedFrame, FrameCodec
from .engine import PendingResponse, ProtocolEngine
from .link import ConnectionHandle, SerialLink, prefer_callout_nodes
from .protocol import (
    Acknowledgment,
    DeviceNotification,
    FirmwareVersion,
    InboundMessage,
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

__all__ = [
    "Acknowledgment",
    "ConnectionHandle",
    "DecodedFrame",
    "DeviceNotification",
    "FirmwareVersion",
    "FrameCodec",
    "InboundMessage",
    "MachineConfiguration",
    "MachineState",
    "NotificationKind",
    "PendingResponse",
    "ProtocolEngine",
    "ReadType",
    "SampleData",
    "SerialLink",
    "UnknownFrame",
    "WriteType",
    "ack_matches",
    "build_read_request",
    "build_write_request",
    "decode_frame",
    "prefer_callout_nodes",
]
