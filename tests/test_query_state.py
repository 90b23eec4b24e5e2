from __future__ import annotations

import pytest

from solaxd.x1.frames import Frame, decode, encode
from solaxd.x1.query import (
    InverterIdentity,
    InverterSession,
    OnlineMonitor,
    Outcome,
    Phase,
    QueryKind,
    QueryState,
    build_query,
    transition,
)
from solaxd.x1.transport import TransportError

SERIAL = b"12345677654321"


def discovery_ack(serial: bytes = SERIAL) -> bytes:
    return encode(Frame(0x00FF, 0x0100, 0x10, 0x80, serial))


def address_ack(ack: int = 0x06) -> bytes:
    return encode(Frame(0x000A, 0x0000, 0x10, 0x81, bytes([ack])))


def live_data(power: int = 0x06DD, energy_today: int = 0x0B) -> bytes:
    payload = bytearray(50)
    payload[2:4] = energy_today.to_bytes(2, "big")
    payload[18:20] = power.to_bytes(2, "big")
    return encode(Frame(0x000A, 0x0100, 0x11, 0x82, bytes(payload)))


class ScriptedTransport:
    """Returns one scripted response per read; b"" means nothing arrived."""

    def __init__(self, responses: list[bytes]):
        self._responses = list(responses)
        self.sent: list[Frame] = []

    def open(self) -> None:
        pass

    def read(self) -> bytes:
        if self._responses:
            return self._responses.pop(0)
        return b""

    def write(self, data: bytes) -> None:
        self.sent.append(decode(data))

    def close(self) -> None:
        pass


def test_discover_success_moves_to_assigning():
    state, query = transition(QueryState(Phase.DISCOVER, 4), Outcome.OK)
    assert state == QueryState(Phase.ASSIGNING, 0)
    assert query is QueryKind.ASSIGN_ADDRESS


def test_ten_discover_failures_loop_back_to_discover():
    state = QueryState(Phase.DISCOVER)
    for expected in range(1, 10):
        state, query = transition(state, Outcome.NO_DATA)
        assert state == QueryState(Phase.DISCOVER, expected)
        assert query is QueryKind.DISCOVER
    state, query = transition(state, Outcome.CHECKSUM_ERROR)
    assert state == QueryState(Phase.DISCOVER, 0)
    assert query is QueryKind.DISCOVER


@pytest.mark.parametrize("phase", [Phase.ASSIGNING, Phase.POLLING])
def test_three_failures_fall_back_to_discover(phase):
    state = QueryState(phase)
    state, _ = transition(state, Outcome.INVALID_FRAME)
    state, _ = transition(state, Outcome.UNEXPECTED_RESPONSE)
    assert state == QueryState(phase, 2)
    state, query = transition(state, Outcome.NO_DATA)
    assert state == QueryState(Phase.DISCOVER, 0)
    assert query is QueryKind.DISCOVER


def test_assigning_success_moves_to_polling():
    state, query = transition(QueryState(Phase.ASSIGNING, 2), Outcome.OK)
    assert state == QueryState(Phase.POLLING, 0)
    assert query is QueryKind.FETCH_LIVE_DATA


def test_polling_success_resets_failures():
    state, query = transition(QueryState(Phase.POLLING, 2), Outcome.OK)
    assert state == QueryState(Phase.POLLING, 0)
    assert query is QueryKind.FETCH_LIVE_DATA


def test_build_queries():
    assert encode(build_query(QueryKind.DISCOVER, 0x0A, None)) == bytes.fromhex("AA55010000001000000110")
    poll = build_query(QueryKind.FETCH_LIVE_DATA, 0x0A, None)
    assert (poll.source, poll.destination, poll.control, poll.function) == (0x0100, 0x000A, 0x11, 0x02)
    assign = build_query(QueryKind.ASSIGN_ADDRESS, 0x0A, InverterIdentity(b"ABC", 0x0A))
    assert assign.payload == b"ABC" + bytes(11) + b"\x0a"
    assert (assign.control, assign.function) == (0x10, 0x01)


def test_online_monitor_edges():
    monitor = OnlineMonitor(timeout=30)
    assert monitor.online is False
    assert monitor.update(False) is None
    assert monitor.update(True) is True
    events = [monitor.update(False) for _ in range(30)]
    assert events[:29] == [None] * 29
    assert events[29] is False
    assert [monitor.update(False) for _ in range(50)] == [None] * 50
    assert monitor.update(True) is True
    assert monitor.online is True


def test_online_monitor_steady_polling_does_not_report():
    monitor = OnlineMonitor(timeout=3)
    assert monitor.update(True) is True
    assert [monitor.update(True) for _ in range(10)] == [None] * 10
    assert monitor.online is True


def test_online_monitor_rejects_zero_timeout():
    with pytest.raises(ValueError):
        OnlineMonitor(timeout=0)


def test_session_pipelines_requests_one_cycle_ahead():
    transport = ScriptedTransport([b"", discovery_ack(), address_ack(), live_data()])
    session = InverterSession(transport, address=0x0A)

    first = session.cycle()
    assert first.outcome is Outcome.NO_DATA
    assert first.sent is QueryKind.DISCOVER
    assert session.state == QueryState(Phase.DISCOVER, 1)

    second = session.cycle()
    assert second.outcome is Outcome.OK
    assert second.sent is QueryKind.ASSIGN_ADDRESS
    assert session.identity is not None
    assert session.identity.serial_text == "12345677654321"
    assert transport.sent[-1].payload == SERIAL + b"\x0a"

    third = session.cycle()
    assert third.outcome is Outcome.OK
    assert third.sent is QueryKind.FETCH_LIVE_DATA
    assert transport.sent[-1].destination == 0x000A
    assert session.online is False

    fourth = session.cycle()
    assert fourth.outcome is Outcome.OK
    assert fourth.sample.valid
    assert fourth.sample.power == 1757
    assert fourth.sample.energy_today == 1.1
    assert fourth.online_changed is True
    assert session.online is True
    assert len(transport.sent) == 4


def test_session_rejects_bad_address_ack():
    transport = ScriptedTransport([discovery_ack(), address_ack(0x15)])
    session = InverterSession(transport, address=0x0A)
    session.cycle()
    result = session.cycle()
    assert result.outcome is Outcome.UNEXPECTED_RESPONSE
    assert session.state == QueryState(Phase.ASSIGNING, 1)


def test_session_rejects_wrong_response_kind_for_discover():
    transport = ScriptedTransport([address_ack()])
    session = InverterSession(transport, address=0x0A)
    result = session.cycle()
    assert result.outcome is Outcome.UNEXPECTED_RESPONSE
    assert session.identity is None


def test_session_short_live_payload_is_a_failure():
    short = encode(Frame(0x000A, 0x0100, 0x11, 0x82, bytes(20)))
    transport = ScriptedTransport([discovery_ack(), address_ack(), short])
    session = InverterSession(transport, address=0x0A)
    for _ in range(2):
        session.cycle()
    result = session.cycle()
    assert result.outcome is Outcome.UNEXPECTED_RESPONSE
    assert not result.sample.valid
    assert session.state == QueryState(Phase.POLLING, 1)


def test_session_goes_offline_once_and_recovers_once():
    script = [b"", discovery_ack(), address_ack(), live_data()]
    script += [b""] * 30
    script += [discovery_ack(), address_ack(), live_data()]
    transport = ScriptedTransport(script)
    session = InverterSession(transport, address=0x0A, online_timeout=30)

    events = []
    for _ in range(len(script)):
        changed = session.cycle().online_changed
        if changed is not None:
            events.append(changed)

    assert events == [True, False, True]
    assert session.online is True


def test_session_stats_count_outcomes():
    transport = ScriptedTransport([b"", b"\x00" * 12, discovery_ack()])
    session = InverterSession(transport, address=0x0A)
    for _ in range(3):
        session.cycle()
    stats = session.stats()
    assert stats["no_data"] == 1
    assert stats["invalid_frames"] == 1
    assert stats["frames_rx"] == 1
    assert stats["frames_tx"] == 3
    assert stats["cycles"] == 3
    assert stats["unexpected_responses"] == 0


def test_session_rejects_wide_address():
    with pytest.raises(ValueError):
        InverterSession(ScriptedTransport([]), address=0x100)


def test_transport_errors_propagate():
    class BrokenTransport(ScriptedTransport):
        def read(self) -> bytes:
            raise TransportError("Error receiving data: device reports readiness to read")

    session = InverterSession(BrokenTransport([]), address=0x0A)
    with pytest.raises(TransportError):
        session.cycle()
