"""Encoding/decoding helpers for framed serial messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

logger = logging.getLogger("serial.codec")


@dataclass(frozen=True)
class DecodedFrame:
    """Represents one frame extracted from the serial stream."""

    raw: bytes
    group: int
    correlation_id: int
    payload: bytes
    declared_length: int
    crc_ok: bool

    def payload_as_ints(self) -> tuple[int, ...]:
        return tuple(b for b in self.payload)


class FrameCodec:
    """Frame layout: header, 2-byte length, group, correlation id, payload, checksum, footer."""

    HEADER = b"\x24\x24"
    FOOTER = b"\x23\x23"
    LENGTH_SIZE = 2
    PREFIX_SIZE = len(HEADER) + LENGTH_SIZE
    # header + length + group + correlation id + crc + footer
    MIN_FRAME_SIZE = PREFIX_SIZE + 1 + 1 + 1 + len(FOOTER)
    MAX_FRAME_SIZE = 4096

    @classmethod
    def compute_crc(cls, data: Sequence[int]) -> int:
        crc = 0
        for byte in data:
            crc = (crc + (byte & 0xFF)) & 0xFF
        return crc

    @classmethod
    def encode(cls, group: int, payload: bytes | Sequence[int] = b"", correlation_id: int = 0) -> bytes:
        """Wrap a group byte and payload into a complete frame."""
        payload_bytes = bytes(byte & 0xFF for byte in payload)
        length = 1 + 1 + len(payload_bytes) + 1 + len(cls.FOOTER)
        if cls.PREFIX_SIZE + length > cls.MAX_FRAME_SIZE:
            raise ValueError(f"Payload of {len(payload_bytes)} bytes exceeds the maximum frame size.")
        frame_bytes = bytearray()
        frame_bytes.extend(cls.HEADER)
        frame_bytes.extend(length.to_bytes(cls.LENGTH_SIZE, "big"))
        frame_bytes.append(group & 0xFF)
        frame_bytes.append(correlation_id & 0xFF)
        frame_bytes.extend(payload_bytes)
        frame_bytes.append(cls.compute_crc(frame_bytes))
        frame_bytes.extend(cls.FOOTER)
        return bytes(frame_bytes)

    @classmethod
    def extract_frames(cls, buffer: bytearray) -> list[DecodedFrame]:
        """Pull every complete frame out of the receive buffer.

        Leading garbage is discarded, incomplete frames stay in the buffer until
        more bytes arrive, and a frame whose declared length disagrees with the
        position of its footer is recovered from the first footer found. A frame
        cut short by a new header (device reset mid-frame) is dropped at that
        header so the following frame survives. A pending frame never spans more
        than ``MAX_FRAME_SIZE`` bytes, which bounds the buffer.
        """
        frames: list[DecodedFrame] = []
        while True:
            if len(buffer) < cls.MIN_FRAME_SIZE:
                break

            header_index = cls._find_header(buffer)
            if header_index < 0:
                # Keep a trailing header byte that may be completed by the next read.
                keep = 1 if buffer[-1:] == cls.HEADER[:1] else 0
                del buffer[: len(buffer) - keep]
                break
            if header_index > 0:
                logger.debug("Discarding %d bytes before frame header.", header_index)
                del buffer[:header_index]
                if len(buffer) < cls.MIN_FRAME_SIZE:
                    break

            declared_length = int.from_bytes(buffer[len(cls.HEADER) : cls.PREFIX_SIZE], "big")
            total_length = cls.PREFIX_SIZE + declared_length
            if total_length < cls.MIN_FRAME_SIZE or total_length > cls.MAX_FRAME_SIZE:
                logger.debug("Declared length %d out of range, dropping byte.", declared_length)
                del buffer[0]
                continue

            if len(buffer) < total_length:
                resync_index = cls._find_complete_frame(buffer)
                if resync_index > 0:
                    logger.debug("Dropping %d bytes of a truncated frame.", resync_index)
                    del buffer[:resync_index]
                    continue
                break

            frame_bytes = bytes(buffer[:total_length])
            if frame_bytes[-len(cls.FOOTER) :] != cls.FOOTER:
                resync_index = cls._find_header(buffer, start=len(cls.HEADER), end=total_length)
                if resync_index > 0:
                    logger.debug("Dropping %d bytes of a truncated frame.", resync_index)
                    del buffer[:resync_index]
                    continue
                tail_start = cls._find_footer(buffer, start=cls.PREFIX_SIZE + 2)
                if tail_start < 0:
                    if len(buffer) >= cls.MAX_FRAME_SIZE:
                        del buffer[0]
                        continue
                    logger.debug("Footer not yet present for frame, waiting for more data.")
                    break
                total_length = tail_start + len(cls.FOOTER)
                frame_bytes = bytes(buffer[:total_length])
                actual_declared = total_length - cls.PREFIX_SIZE
                logger.debug(
                    "Length mismatch detected (declared=%d, actual=%d). Using recovered frame.",
                    declared_length,
                    actual_declared,
                )
                declared_length = actual_declared

            crc_index = len(frame_bytes) - len(cls.FOOTER) - 1
            if crc_index < cls.PREFIX_SIZE + 2:
                logger.debug("Frame too short after footer validation; discarding.")
                del buffer[0]
                continue

            crc_byte = frame_bytes[crc_index]
            computed_crc = cls.compute_crc(frame_bytes[:crc_index])
            frames.append(
                DecodedFrame(
                    raw=frame_bytes,
                    group=frame_bytes[cls.PREFIX_SIZE],
                    correlation_id=frame_bytes[cls.PREFIX_SIZE + 1],
                    payload=frame_bytes[cls.PREFIX_SIZE + 2 : crc_index],
                    declared_length=declared_length,
                    crc_ok=(crc_byte == computed_crc),
                )
            )
            del buffer[:total_length]

        return frames

    @classmethod
    def _find_header(cls, buffer: bytearray, start: int = 0, end: Optional[int] = None) -> int:
        return buffer.find(cls.HEADER, start, len(buffer) if end is None else end)

    @classmethod
    def _find_complete_frame(cls, buffer: bytearray) -> int:
        """Offset of a later header that starts a complete, footer-terminated frame, or -1."""
        index = cls._find_header(buffer, start=len(cls.HEADER))
        while index > 0:
            prefix_end = index + cls.PREFIX_SIZE
            if prefix_end <= len(buffer):
                end = prefix_end + int.from_bytes(buffer[index + len(cls.HEADER) : prefix_end], "big")
                if (
                    cls.MIN_FRAME_SIZE <= end - index <= cls.MAX_FRAME_SIZE
                    and end <= len(buffer)
                    and buffer[end - len(cls.FOOTER) : end] == cls.FOOTER
                ):
                    return index
            index = cls._find_header(buffer, start=index + 1)
        return -1

    @classmethod
    def _find_footer(cls, buffer: bytearray, start: int) -> int:
        return buffer.find(cls.FOOTER, start)
