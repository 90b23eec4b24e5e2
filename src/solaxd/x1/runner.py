from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import typer

from .. import __version__
from ..logs import LEVELS, setup_logging
from .config import DaemonConfig, load_config
from .frames import FrameError, decode, format_hex
from .live_data import describe_error_bits, parse_live_data
from .processing import AveragedSnapshot, SamplePipeline
from .publisher import StatusServer, snapshot_document
from .query import InverterSession
from .transport import SerialTransport, SimulatedTransport, TransportError

logger = logging.getLogger(__name__)


class SolaxHost:
    """
    Daemon main loop. Each tick runs one query cycle, folds the sample into
    the history ring, answers pending status requests and sleeps.
    """

    def __init__(
        self,
        config: DaemonConfig,
        transport: Any,
        server: Optional[StatusServer] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.transport = transport
        self.server = server
        self.session = InverterSession(
            transport, address=config.address, online_timeout=config.online_timeout
        )
        self.pipeline = SamplePipeline(
            average_window=config.average_window,
            qos_window=config.qos_window,
            output_csv=config.output_csv,
        )
        self.cycles = 0
        self._sleep = sleep
        self._clock = clock
        self._error_bits = 0

    @property
    def snapshot(self) -> AveragedSnapshot:
        return self.pipeline.snapshot

    def document(self) -> Dict[str, Any]:
        return snapshot_document(self.config.address, self.session.online, self.pipeline.snapshot)

    def step(self) -> AveragedSnapshot:
        result = self.session.cycle()
        snapshot = self.pipeline.process(result.sample)
        if snapshot.error_bits != self._error_bits:
            faults = describe_error_bits(snapshot.error_bits)
            if faults:
                logger.warning("Inverter faults: %s", ", ".join(faults))
            else:
                logger.info("Inverter faults cleared")
            self._error_bits = snapshot.error_bits
        if self.server is not None:
            self.server.poll(self.document)
        self.cycles += 1
        return snapshot

    def run(self, max_cycles: Optional[int] = None) -> None:
        interval_sec = max(float(self.config.stats_log_interval), 5.0)
        next_log = self._clock() + interval_sec
        try:
            self.transport.open()
            if self.server is not None:
                self.server.open()
            while max_cycles is None or self.cycles < max_cycles:
                self.step()
                if self._clock() >= next_log:
                    self._emit_stats("Stats")
                    next_log = self._clock() + interval_sec
                self._sleep(self.config.cycle_interval_sec)
        except KeyboardInterrupt:
            logger.info("Stopping daemon (Ctrl+C)")
        finally:
            self.transport.close()
            if self.server is not None:
                self.server.close()
            self.pipeline.close()
            self._emit_stats("Final stats")

    def _emit_stats(self, label: str) -> None:
        stats = self.session.stats()
        logger.info(
            "%s: cycles=%d online=%d qos=%.2f tx=%d rx=%d no_data=%d invalid=%d crc_errors=%d",
            label,
            self.cycles,
            self.session.online,
            self.pipeline.snapshot.quality_of_service,
            stats.get("frames_tx", 0),
            stats.get("frames_rx", 0),
            stats.get("no_data", 0),
            stats.get("invalid_frames", 0),
            stats.get("crc_errors", 0),
        )


app = typer.Typer(add_completion=False, help="Daemon for a SolaX X1 Mini inverter on RS485.")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"solaxd {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit."
    ),
) -> None:
    """Poll the inverter, average live data and serve it as JSON."""


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(
        None, "--config", "-c", help="Path to a JSON daemon config.", exists=True, dir_okay=False
    ),
    device: Optional[str] = typer.Option(None, "--device", "-d", help="Serial device, e.g. /dev/ttyUSB0."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="HTTP status port (0 disables)."),
    samples: Optional[int] = typer.Option(None, "--samples", "-s", help="Samples used for averaging."),
    address: Optional[int] = typer.Option(None, "--address", "-a", help="Inverter bus address."),
    override: Optional[List[str]] = typer.Option(
        None,
        "--set",
        help="Override config keys, e.g. --set qos_window=60 --set http.host=127.0.0.1",
    ),
    simulate: bool = typer.Option(False, "--simulate", "-x", help="Use simulated inverter data."),
    log_level: str = typer.Option("info", "--log-level", "-L", help=f"One of {'|'.join(LEVELS)}."),
    log_file: Optional[Path] = typer.Option(None, "--log-file", "-l", help="Append log to FILE."),
    max_cycles: Optional[int] = typer.Option(None, "--max-cycles", help="Stop after N cycles."),
) -> None:
    """Run the polling daemon."""

    try:
        setup_logging(log_level, log_file)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--log-level") from exc
    try:
        cfg = load_config(config_path, override or None)
        if device is not None:
            cfg.serial.device = device
        if port is not None:
            cfg.http.port = port
        if samples is not None:
            cfg.average_window = samples
        if address is not None:
            cfg.address = address
        cfg.validate()
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    logger.info("solaxd %s started", __version__)
    logger.info(
        "device=%s address=0x%02X average_window=%d qos_window=%d http_port=%d simulate=%s",
        cfg.serial.device,
        cfg.address,
        cfg.average_window,
        cfg.qos_window,
        cfg.http.port,
        simulate,
    )
    transport = SimulatedTransport() if simulate else SerialTransport(cfg.serial)
    server = StatusServer(cfg.http.host, cfg.http.port) if cfg.http.port else None
    host = SolaxHost(cfg, transport, server=server)
    try:
        host.run(max_cycles=max_cycles)
    except TransportError as exc:
        logger.error("%s", exc)
        raise typer.Exit(code=1) from exc
    except OSError as exc:
        logger.error("HTTP server error: %s", exc)
        raise typer.Exit(code=1) from exc


@app.command("decode")
def decode_command(
    hex_frame: str = typer.Argument(..., help="Frame bytes as hex; spaces are ignored."),
) -> None:
    """Decode one captured frame and print its fields."""

    try:
        raw = bytes.fromhex(hex_frame.replace(" ", ""))
    except ValueError as exc:
        raise typer.BadParameter(f"Not a hex string: {exc}") from exc
    try:
        frame = decode(raw)
    except FrameError as exc:
        typer.echo(f"Decode FAILED: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo("Checksum OK")
    typer.echo(f"Source: 0x{frame.source:04X}")
    typer.echo(f"Destination: 0x{frame.destination:04X}")
    typer.echo(f"Control: 0x{frame.control:02X}")
    typer.echo(f"Function: 0x{frame.function:02X}")
    typer.echo(f"Payload ({frame.data_length} bytes): {format_hex(frame.payload)}")
    if frame.control == 0x11 and frame.function == 0x82:
        try:
            sample = parse_live_data(frame.payload)
        except ValueError as exc:
            typer.echo(f"Live data: {exc}")
            raise typer.Exit(code=1) from exc
        for name, value in sample.as_dict().items():
            if name != "valid":
                typer.echo(f"{name}: {value}")
        for fault in describe_error_bits(sample.error_bits):
            typer.echo(f"fault: {fault}")
