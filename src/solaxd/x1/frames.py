from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict


HEADER = b"\xAA\x55"
HEADER_LEN = 9  # marker, source, destination, control, function, length
CHECKSUM_LEN = 2
MIN_FRAME_LEN = HEADER_LEN + CHECKSUM_LEN
MAX_PAYLOAD_LEN = 100
MAX_FRAME_LEN = HEADER_LEN + MAX_PAYLOAD_LEN + CHECKSUM_LEN


class FrameError(Exception):
    """Recoverable protocol failure while decoding a received frame."""


class NoDataError(FrameError):
    pass


class InvalidFrameError(FrameError):
    pass


class ChecksumError(FrameError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"checksum mismatch (expected={expected:04X}, actual={actual:04X})")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class Frame:
    source: int
    destination: int
    control: int
    function: int
    payload: bytes = b""

    @property
    def data_length(self) -> int:
        return len(self.payload)


def checksum(data: bytes, length: int) -> int:
    """
    16-bit running sum over ``data[0..length]`` inclusive.

    The inclusive upper bound matches the inverter firmware; callers pass the
    index of the last header/payload byte, not the byte count.
    """
    if length + 1 > len(data):
        raise ValueError(f"checksum over {length + 1} bytes exceeds buffer of {len(data)}")
    total = 0
    for byte in data[: length + 1]:
        total = (total + byte) & 0xFFFF
    return total


def encode(frame: Frame) -> bytes:
    if frame.data_length > MAX_PAYLOAD_LEN:
        raise ValueError(f"payload of {frame.data_length} bytes exceeds {MAX_PAYLOAD_LEN}")
    body = bytearray(HEADER)
    body += frame.source.to_bytes(2, "big")
    body += frame.destination.to_bytes(2, "big")
    body += bytes([frame.control, frame.function, frame.data_length])
    body += frame.payload
    crc = checksum(body, len(body) - 1)
    body += bytes([(crc >> 8) & 0xFF, crc & 0xFF])
    return bytes(body)


def decode(raw: bytes, raw_length: int | None = None) -> Frame:
    """
    Decode one frame from ``raw``.

    Each call is a single attempt on whatever the transport delivered; bytes
    after the declared frame end are ignored and nothing is buffered.
    """
    if raw_length is None:
        raw_length = len(raw)
    raw_length = min(raw_length, len(raw))
    if raw_length == 0:
        raise NoDataError("no data received")
    if raw_length < MIN_FRAME_LEN:
        raise InvalidFrameError(f"frame too short ({raw_length} bytes)")
    if raw[0:2] != HEADER:
        raise InvalidFrameError(f"bad header {raw[0]:02X} {raw[1]:02X}")
    data_length = raw[8]
    if data_length > MAX_PAYLOAD_LEN:
        raise InvalidFrameError(f"declared payload length {data_length} exceeds {MAX_PAYLOAD_LEN}")
    frame_end = HEADER_LEN + data_length
    if frame_end + CHECKSUM_LEN > raw_length:
        raise InvalidFrameError(
            f"declared length {frame_end + CHECKSUM_LEN} exceeds received {raw_length}"
        )
    expected = (raw[frame_end] << 8) | raw[frame_end + 1]
    actual = checksum(raw, frame_end - 1)
    if actual != expected:
        raise ChecksumError(expected, actual)
    return Frame(
        source=int.from_bytes(raw[2:4], "big"),
        destination=int.from_bytes(raw[4:6], "big"),
        control=raw[6],
        function=raw[7],
        payload=bytes(raw[HEADER_LEN:frame_end]),
    )


def format_hex(data: bytes) -> str:
    if not data:
        return "No Data"
    groups = []
    for start in range(0, len(data), 8):
        groups.append(" ".join(f"{byte:02X}" for byte in data[start : start + 8]))
    return "  ".join(groups)


class FrameCodec:
    """
    Encoder/decoder that keeps per-session statistics and dumps every frame it
    touches at DEBUG level.
    """

    def __init__(self) -> None:
        self._stats: Dict[str, int] = {
            "frames_tx": 0,
            "frames_rx": 0,
            "no_data": 0,
            "invalid_frames": 0,
            "crc_errors": 0,
        }
        self._log = logging.getLogger(__name__)

    def encode(self, frame: Frame) -> bytes:
        raw = encode(frame)
        self._stats["frames_tx"] += 1
        self._log.debug("ComTx: %s", format_hex(raw))
        return raw

    def decode(self, raw: bytes) -> Frame:
        self._log.debug("ComRx: %s", format_hex(raw))
        try:
            frame = decode(raw)
        except NoDataError:
            self._stats["no_data"] += 1
            raise
        except InvalidFrameError as exc:
            self._stats["invalid_frames"] += 1
            self._log.debug("ComRx: %s", exc)
            raise
        except ChecksumError as exc:
            self._stats["crc_errors"] += 1
            self._log.debug("ComRx: %s", exc)
            raise
        self._stats["frames_rx"] += 1
        return frame

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)
