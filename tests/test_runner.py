from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from solaxd.x1.config import DaemonConfig, HttpConfig
from solaxd.x1.frames import Frame, encode
from solaxd.x1.publisher import StatusServer
from solaxd.x1.runner import SolaxHost, app
from solaxd.x1.transport import SimulatedTransport, TransportError

runner = CliRunner()


class ScriptedTransport:
    def __init__(self, responses: list[bytes]):
        self._responses = list(responses)
        self.opened = False
        self.closed = False
        self.written: list[bytes] = []

    def open(self) -> None:
        self.opened = True

    def read(self) -> bytes:
        return self._responses.pop(0) if self._responses else b""

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        self.closed = True


def make_config(**kwargs) -> DaemonConfig:
    cfg = DaemonConfig(cycle_interval_sec=0.0, http=HttpConfig(port=0))
    for key, value in kwargs.items():
        setattr(cfg, key, value)
    return cfg.validate()


def test_end_to_end_discovery_to_snapshot():
    payload = bytearray(50)
    payload[2:4] = (0x0B).to_bytes(2, "big")
    payload[18:20] = (0x06DD).to_bytes(2, "big")
    transport = ScriptedTransport(
        [
            encode(Frame(0x00FF, 0x0100, 0x10, 0x80, b"12345677654321")),
            encode(Frame(0x000A, 0x0000, 0x10, 0x81, b"\x06")),
            encode(Frame(0x000A, 0x0100, 0x11, 0x82, bytes(payload))),
        ]
    )
    host = SolaxHost(make_config(), transport)
    for _ in range(3):
        snapshot = host.step()

    assert snapshot.power == 1757
    assert snapshot.energy_today == 1.1
    document = host.document()
    assert document["inverter"]["online"] == 1
    assert document["inverter"]["live_data"]["power"] == 1757
    assert document["inverter"]["live_data"]["energy_today"] == 1.1
    assert document["inverter"]["quality_of_service"] == 0.01


def test_host_run_with_simulated_inverter(tmp_path: Path):
    sleeps: list[float] = []
    cfg = make_config(output_csv=tmp_path / "samples.csv", cycle_interval_sec=1.0)
    transport = SimulatedTransport()
    host = SolaxHost(cfg, transport, sleep=sleeps.append)
    host.run(max_cycles=6)

    assert host.cycles == 6
    assert sleeps == [1.0] * 6
    assert host.session.online is True
    assert host.snapshot.samples == 3
    assert host.snapshot.quality_of_service == 0.03
    assert host.snapshot.power == pytest.approx((487 + 471 + 487) / 3)
    assert host.snapshot.energy_total == 481.9
    assert len((tmp_path / "samples.csv").read_text(encoding="utf-8").splitlines()) == 4


def test_host_run_aborts_on_transport_error():
    class FailingTransport(ScriptedTransport):
        def read(self) -> bytes:
            raise TransportError("Error receiving data: [Errno 5] Input/output error")

    transport = FailingTransport([])
    host = SolaxHost(make_config(), transport, sleep=lambda _: None)
    with pytest.raises(TransportError):
        host.run(max_cycles=3)
    assert transport.opened and transport.closed
    assert host.cycles == 0


def test_host_closes_transport_when_status_port_is_taken():
    occupied = StatusServer("127.0.0.1", 0)
    occupied.open()
    try:
        transport = ScriptedTransport([])
        server = StatusServer("127.0.0.1", occupied.port)
        host = SolaxHost(make_config(), transport, server=server, sleep=lambda _: None)
        with pytest.raises(OSError):
            host.run(max_cycles=1)
        assert transport.opened and transport.closed
        assert host.cycles == 0
    finally:
        occupied.close()


def test_host_logs_fault_changes(caplog):
    payload = bytearray(50)
    payload[46] = 0x20
    transport = ScriptedTransport(
        [
            encode(Frame(0x00FF, 0x0100, 0x10, 0x80, b"12345677654321")),
            encode(Frame(0x000A, 0x0000, 0x10, 0x81, b"\x06")),
            encode(Frame(0x000A, 0x0100, 0x11, 0x82, bytes(payload))),
        ]
    )
    host = SolaxHost(make_config(average_window=1), transport)
    with caplog.at_level("INFO", logger="solaxd.x1.runner"):
        for _ in range(4):
            host.step()
    assert "Inverter faults: Bus Voltage Fault" in caplog.text
    assert "Inverter faults cleared" in caplog.text


def test_cli_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("solaxd ")


def test_cli_decode_live_data_frame():
    raw = (
        "AA55000A0100118232000B000106DD0000001F000000150921138701E7FFFF000012D300000A0F0002"
        "000000000000000000000000000000000000079C"
    )
    result = runner.invoke(app, ["decode", raw])
    assert result.exit_code == 0
    assert "Checksum OK" in result.stdout
    assert "Function: 0x82" in result.stdout
    assert "power: 487.0" in result.stdout


def test_cli_decode_reports_checksum_failure():
    result = runner.invoke(app, ["decode", "AA55000A0000108101060100"])
    assert result.exit_code == 1
    assert "Decode FAILED" in result.stdout


def test_cli_run_simulated(monkeypatch):
    monkeypatch.setattr("solaxd.x1.runner.setup_logging", lambda *args, **kwargs: None)
    result = runner.invoke(
        app,
        ["run", "--simulate", "--port", "0", "--max-cycles", "5", "--set", "cycle_interval_sec=0"],
    )
    assert result.exit_code == 0, result.output


def test_cli_run_rejects_bad_window(monkeypatch):
    monkeypatch.setattr("solaxd.x1.runner.setup_logging", lambda *args, **kwargs: None)
    result = runner.invoke(app, ["run", "--simulate", "--samples", "500", "--max-cycles", "1"])
    assert result.exit_code != 0


def test_cli_run_exits_on_transport_error(monkeypatch):
    monkeypatch.setattr("solaxd.x1.runner.setup_logging", lambda *args, **kwargs: None)

    class BrokenSerial:
        def __init__(self, settings):
            self.settings = settings

        def open(self) -> None:
            raise TransportError(f"Error opening '{self.settings.device}': no such device")

        def close(self) -> None:
            pass

    monkeypatch.setattr("solaxd.x1.runner.SerialTransport", BrokenSerial)
    result = runner.invoke(app, ["run", "--device", "/dev/ttyFAKE", "--port", "0", "--max-cycles", "1"])
    assert result.exit_code == 1
