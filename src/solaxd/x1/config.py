from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence

from .frames import MAX_FRAME_LEN
from .processing import DEFAULT_AVERAGE_WINDOW, DEFAULT_QOS_WINDOW
from .query import DEFAULT_ONLINE_TIMEOUT

DEFAULT_INVERTER_ADDRESS = 0x0A
DEFAULT_HTTP_PORT = 6789


@dataclass
class SerialConfig:
    device: str = "/dev/ttyUSB0"
    baudrate: int = 9600
    read_size: int = MAX_FRAME_LEN


@dataclass
class HttpConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_HTTP_PORT  # 0 disables the status endpoint


@dataclass
class DaemonConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    address: int = DEFAULT_INVERTER_ADDRESS
    average_window: int = DEFAULT_AVERAGE_WINDOW
    qos_window: int = DEFAULT_QOS_WINDOW
    online_timeout: int = DEFAULT_ONLINE_TIMEOUT
    cycle_interval_sec: float = 1.0
    stats_log_interval: float = 300.0
    http: HttpConfig = field(default_factory=HttpConfig)
    output_csv: Path | None = None

    def validate(self) -> "DaemonConfig":
        if not 0 <= self.address <= 0xFF:
            raise ValueError(f"inverter.address must fit in one byte, got {self.address}")
        if self.qos_window < 1:
            raise ValueError("qos_window must be at least 1")
        if not 1 <= self.average_window <= self.qos_window:
            raise ValueError(
                f"average_window must be between 1 and qos_window ({self.qos_window}), "
                f"got {self.average_window}"
            )
        if self.online_timeout < 1:
            raise ValueError("online_timeout must be at least 1 cycle")
        if self.cycle_interval_sec < 0:
            raise ValueError("cycle_interval_sec may not be negative")
        if not 0 <= self.http.port <= 0xFFFF:
            raise ValueError(f"http.port out of range: {self.http.port}")
        return self


def _read_document(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        document = json.load(fh)
    if not isinstance(document, dict):
        raise ValueError(f"{path}: top level of the config must be a JSON object")
    return document


def _overlay(document: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``document`` with ``patch`` applied; nested sections combine key by key."""
    result = dict(document)
    for key, value in patch.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = _overlay(current, value)
        result[key] = value
    return result


def _section(document: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = document.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"config section '{name}' must be an object")
    return section


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> DaemonConfig:
    """
    Load the daemon configuration from JSON (optional) and apply CLI-style
    overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["serial.device=/dev/ttyUSB1", "inverter.address=0x0B"]
    """
    document: Dict[str, Any] = _read_document(Path(path)) if path is not None else {}
    patch: Dict[str, Any] = {}
    for item in overrides or []:
        _set_dotted(patch, *_split_override(item))
    merged = _overlay(document, patch)
    serial_data = _section(merged, "serial")
    inverter_data = _section(merged, "inverter")
    http_data = _section(merged, "http")
    config = DaemonConfig(
        serial=SerialConfig(
            device=str(serial_data.get("device", "/dev/ttyUSB0")),
            baudrate=int(serial_data.get("baudrate", 9600)),
            read_size=int(serial_data.get("read_size", MAX_FRAME_LEN)),
        ),
        address=int(inverter_data.get("address", DEFAULT_INVERTER_ADDRESS)),
        average_window=int(merged.get("average_window", DEFAULT_AVERAGE_WINDOW)),
        qos_window=int(merged.get("qos_window", DEFAULT_QOS_WINDOW)),
        online_timeout=int(merged.get("online_timeout", DEFAULT_ONLINE_TIMEOUT)),
        cycle_interval_sec=float(merged.get("cycle_interval_sec", 1.0)),
        stats_log_interval=float(merged.get("stats_log_interval", 300.0)),
        http=HttpConfig(
            host=str(http_data.get("host", "0.0.0.0")),
            port=int(http_data.get("port", DEFAULT_HTTP_PORT)),
        ),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
    )
    return config.validate()


def _split_override(item: str) -> tuple[str, Any]:
    key, sep, raw_value = item.partition("=")
    key = key.strip()
    if not sep:
        raise ValueError(f"--set '{item}': expected key=value")
    if not key or any(not part for part in key.split(".")):
        raise ValueError(f"--set '{item}': malformed key")
    return key, _coerce_value(raw_value.strip())


def _coerce_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered.startswith("0x"):
        try:
            return int(raw, 16)
        except ValueError:
            return raw
    for convert in (int, float):
        try:
            return convert(raw)
        except ValueError:
            continue
    if raw and raw[0] in "[{" and raw[-1] in "]}":
        return json.loads(raw)
    return raw


def _set_dotted(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    *sections, leaf = dotted_key.split(".")
    for name in sections:
        nested = target.setdefault(name, {})
        if not isinstance(nested, dict):
            raise ValueError(f"--set {dotted_key}: '{name}' is already set to a value")
        target = nested
    target[leaf] = value
