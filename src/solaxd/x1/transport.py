from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Dict, Optional

import serial

from .config import SerialConfig
from .frames import Frame, FrameError, decode, encode

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """I/O failure on the bus, distinct from the absence of data."""


class SerialTransport:
    """
    Raw RS485 channel. Reads never wait: each call returns whatever bytes the
    driver already holds, possibly none.
    """

    def __init__(self, settings: SerialConfig):
        self.settings = settings
        self._handle = None

    def open(self) -> None:
        try:
            self._handle = serial.Serial(
                port=self.settings.device,
                baudrate=self.settings.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=0,
            )
        except serial.SerialException as exc:
            raise TransportError(f"Error opening '{self.settings.device}': {exc}") from exc
        logger.info("Device '%s' opened successfully", self.settings.device)

    def read(self) -> bytes:
        if self._handle is None:
            raise TransportError("serial device is not open")
        try:
            return bytes(self._handle.read(self.settings.read_size))
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"Error receiving data: {exc}") from exc

    def write(self, data: bytes) -> None:
        if self._handle is None:
            raise TransportError("serial device is not open")
        try:
            written = self._handle.write(data)
        except (serial.SerialException, OSError) as exc:
            raise TransportError(f"Error transmitting data: {exc}") from exc
        if written is not None and written != len(data):
            raise TransportError(f"Short write ({written} of {len(data)} bytes)")

    def close(self) -> None:
        if self._handle is not None:
            try:
                self._handle.close()
            finally:
                self._handle = None


SIMULATED_SERIAL = b"12345677654321"

# Live-data payloads captured from an X1 Mini around noon.
SIMULATED_LIVE_DATA = (
    bytes.fromhex(
        "000B000106DD0000001F000000150921138701E7FFFF000012D300000A0F0002"
        "000000000000000000000000000000000000"
    ),
    bytes.fromhex(
        "000B000106CB0000001E000000140922138901D7FFFF000012D300000A0F0002"
        "000000000000000000000000000000000000"
    ),
)


class SimulatedTransport:
    """
    Stand-in inverter for test mode. Every request written is answered on the
    following read, mirroring the one-cycle delay of the real bus.
    """

    def __init__(self, serial_number: bytes = SIMULATED_SERIAL) -> None:
        self.serial_number = serial_number
        self._pending: Deque[bytes] = deque()
        self._live_index = 0
        self._address: Optional[int] = None
        self.requests: Dict[int, int] = {}

    def open(self) -> None:
        logger.info("Using simulated inverter (serial %s)", self.serial_number.decode("ascii"))

    def read(self) -> bytes:
        if not self._pending:
            return b""
        return self._pending.popleft()

    def write(self, data: bytes) -> None:
        try:
            request = decode(data)
        except FrameError as exc:
            logger.debug("Simulator ignoring malformed request: %s", exc)
            return
        self.requests[request.function] = self.requests.get(request.function, 0) + 1
        response = self._respond(request)
        if response is not None:
            self._pending.append(encode(response))

    def close(self) -> None:
        self._pending.clear()

    def _respond(self, request: Frame) -> Optional[Frame]:
        if request.control == 0x10 and request.function == 0x00:
            return Frame(0x00FF, 0x0100, 0x10, 0x80, self.serial_number)
        if request.control == 0x10 and request.function == 0x01:
            if request.payload[:14] != self.serial_number or len(request.payload) < 15:
                return None
            self._address = request.payload[14]
            return Frame(self._address, 0x0000, 0x10, 0x81, b"\x06")
        if request.control == 0x11 and request.function == 0x02:
            if self._address is None or request.destination != self._address:
                return None
            payload = SIMULATED_LIVE_DATA[self._live_index % len(SIMULATED_LIVE_DATA)]
            self._live_index += 1
            return Frame(self._address, 0x0100, 0x11, 0x82, payload)
        return None
