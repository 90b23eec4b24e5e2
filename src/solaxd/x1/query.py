from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .frames import ChecksumError, Frame, FrameCodec, FrameError, NoDataError
from .live_data import LiveDataSample, parse_live_data

logger = logging.getLogger(__name__)

DISCOVER_MAX_FAILURES = 10
ASSIGN_MAX_FAILURES = 3
POLL_MAX_FAILURES = 3
DEFAULT_ONLINE_TIMEOUT = 30
ACK = 0x06
SERIAL_NUMBER_LEN = 14


class QueryKind(str, enum.Enum):
    DISCOVER = "discover"
    ASSIGN_ADDRESS = "assign_address"
    FETCH_LIVE_DATA = "fetch_live_data"


class Phase(str, enum.Enum):
    DISCOVER = "discover"
    ASSIGNING = "assigning"
    POLLING = "polling"


class Outcome(str, enum.Enum):
    OK = "ok"
    NO_DATA = "no_data"
    INVALID_FRAME = "invalid_frame"
    CHECKSUM_ERROR = "checksum_error"
    UNEXPECTED_RESPONSE = "unexpected_response"


QUERY_FOR_PHASE = {
    Phase.DISCOVER: QueryKind.DISCOVER,
    Phase.ASSIGNING: QueryKind.ASSIGN_ADDRESS,
    Phase.POLLING: QueryKind.FETCH_LIVE_DATA,
}

# phase -> (phase on success, failure limit, phase once the limit is hit)
_RULES: Dict[Phase, Tuple[Phase, int, Phase]] = {
    Phase.DISCOVER: (Phase.ASSIGNING, DISCOVER_MAX_FAILURES, Phase.DISCOVER),
    Phase.ASSIGNING: (Phase.POLLING, ASSIGN_MAX_FAILURES, Phase.DISCOVER),
    Phase.POLLING: (Phase.POLLING, POLL_MAX_FAILURES, Phase.DISCOVER),
}


@dataclass(frozen=True)
class QueryState:
    """The query awaiting its answer, and how many answers in a row failed."""

    phase: Phase = Phase.DISCOVER
    failures: int = 0


def transition(state: QueryState, outcome: Outcome) -> Tuple[QueryState, QueryKind]:
    on_success, limit, on_limit = _RULES[state.phase]
    if outcome is Outcome.OK:
        nxt = QueryState(on_success, 0)
    else:
        failures = state.failures + 1
        if failures >= limit:
            nxt = QueryState(on_limit, 0)
        else:
            nxt = QueryState(state.phase, failures)
    return nxt, QUERY_FOR_PHASE[nxt.phase]


class OnlineMonitor:
    """
    Edge-triggered liveness flag. ``update`` returns the new state on a flip
    and None otherwise.
    """

    def __init__(self, timeout: int = DEFAULT_ONLINE_TIMEOUT):
        if timeout < 1:
            raise ValueError("online timeout must be at least one cycle")
        self.timeout = timeout
        self.online = False
        self.counter = timeout

    def update(self, polled: bool) -> Optional[bool]:
        if polled:
            self.counter = 0
        if self.online:
            self.counter += 1
            if self.counter >= self.timeout:
                self.online = False
                return False
        elif self.counter == 0:
            self.online = True
            return True
        return None


@dataclass
class InverterIdentity:
    serial_number: bytes
    address: int

    @property
    def serial_text(self) -> str:
        return self.serial_number.rstrip(b"\x00").decode("ascii", errors="replace")


def build_query(kind: QueryKind, address: int, identity: Optional[InverterIdentity]) -> Frame:
    if kind is QueryKind.DISCOVER:
        return Frame(source=0x0100, destination=0x0000, control=0x10, function=0x00)
    if kind is QueryKind.ASSIGN_ADDRESS:
        serial_number = identity.serial_number if identity is not None else b""
        payload = serial_number[:SERIAL_NUMBER_LEN].ljust(SERIAL_NUMBER_LEN, b"\x00")
        return Frame(
            source=0x0000,
            destination=0x0000,
            control=0x10,
            function=0x01,
            payload=payload + bytes([address]),
        )
    return Frame(source=0x0100, destination=address, control=0x11, function=0x02)


@dataclass
class CycleResult:
    outcome: Outcome
    sample: LiveDataSample
    sent: QueryKind
    online_changed: Optional[bool] = None


@dataclass
class InverterSession:
    """
    Drives one inverter through discovery, address assignment and polling.

    Each ``cycle`` reads the answer to the previous cycle's request and then
    sends the next request; the two are never collapsed into one exchange.
    Transport errors propagate to the caller.
    """

    transport: Any
    address: int
    online_timeout: int = DEFAULT_ONLINE_TIMEOUT
    state: QueryState = field(default_factory=QueryState)
    identity: Optional[InverterIdentity] = None
    codec: FrameCodec = field(default_factory=FrameCodec)

    def __post_init__(self) -> None:
        if not 0 <= self.address <= 0xFF:
            raise ValueError(f"bus address {self.address} does not fit in one byte")
        self.monitor = OnlineMonitor(self.online_timeout)
        self._cycles = 0
        self._unexpected = 0

    @property
    def online(self) -> bool:
        return self.monitor.online

    def cycle(self) -> CycleResult:
        raw = self.transport.read()
        phase = self.state.phase
        outcome, sample = self._interpret(phase, raw)
        self._cycles += 1
        if outcome is Outcome.UNEXPECTED_RESPONSE:
            self._unexpected += 1
        self.state, query = transition(self.state, outcome)
        if self.state.phase is not phase:
            logger.info("Query state %s -> %s", phase.value, self.state.phase.value)
        changed = self.monitor.update(phase is Phase.POLLING and outcome is Outcome.OK)
        if changed is False:
            logger.warning("Inverter offline")
        elif changed is True:
            logger.info("Live data received, inverter online")
        frame = build_query(query, self.address, self.identity)
        self.transport.write(self.codec.encode(frame))
        return CycleResult(outcome=outcome, sample=sample, sent=query, online_changed=changed)

    def stats(self) -> Dict[str, int]:
        stats = self.codec.stats()
        stats["cycles"] = self._cycles
        stats["unexpected_responses"] = self._unexpected
        return stats

    def _interpret(self, phase: Phase, raw: bytes) -> Tuple[Outcome, LiveDataSample]:
        invalid = LiveDataSample.invalid()
        try:
            frame = self.codec.decode(raw)
        except FrameError as exc:
            logger.debug("No valid %s response: %s", phase.value, exc)
            return _outcome_for(exc), invalid

        if phase is Phase.DISCOVER:
            if frame.control != 0x10 or frame.function != 0x80:
                logger.debug("Invalid broadcast response message")
                return Outcome.UNEXPECTED_RESPONSE, invalid
            self.identity = InverterIdentity(
                serial_number=frame.payload[:SERIAL_NUMBER_LEN], address=self.address
            )
            logger.info("Serial number: %s", self.identity.serial_text)
            return Outcome.OK, invalid

        if phase is Phase.ASSIGNING:
            if (
                frame.control != 0x10
                or frame.function != 0x81
                or not frame.payload
                or frame.payload[0] != ACK
            ):
                logger.debug("Invalid address confirmation message")
                return Outcome.UNEXPECTED_RESPONSE, invalid
            logger.info("Inverter bus address 0x%02X confirmed", self.address)
            return Outcome.OK, invalid

        if frame.control != 0x11 or frame.function != 0x82:
            logger.debug("Invalid live data message")
            return Outcome.UNEXPECTED_RESPONSE, invalid
        try:
            sample = parse_live_data(frame.payload)
        except ValueError as exc:
            logger.debug("Invalid live data message: %s", exc)
            return Outcome.UNEXPECTED_RESPONSE, invalid
        logger.debug(
            "Live data: power=%.0f W energy_today=%.1f kWh temperature=%.0f C",
            sample.power,
            sample.energy_today,
            sample.temperature,
        )
        return Outcome.OK, sample


def _outcome_for(exc: FrameError) -> Outcome:
    if isinstance(exc, NoDataError):
        return Outcome.NO_DATA
    if isinstance(exc, ChecksumError):
        return Outcome.CHECKSUM_ERROR
    return Outcome.INVALID_FRAME
