"""
Protocol and daemon logic for the SolaX X1 Mini inverter.

The subpackage exposes the frame codec, the discovery/polling state machine,
the history ring used for averaging, and the host loop that ties them to a
serial port and the HTTP status endpoint.
"""

from .config import DaemonConfig, HttpConfig, SerialConfig, load_config
from .frames import (
    ChecksumError,
    Frame,
    FrameCodec,
    FrameError,
    InvalidFrameError,
    NoDataError,
    checksum,
    decode,
    encode,
)
from .live_data import LiveDataSample, describe_error_bits, parse_live_data
from .processing import AveragedSnapshot, HistoryRing, SamplePipeline
from .publisher import StatusServer, snapshot_document
from .query import InverterSession, OnlineMonitor, Phase, QueryKind, QueryState, transition
from .runner import SolaxHost
from .transport import SerialTransport, SimulatedTransport, TransportError

__all__ = [
    "DaemonConfig",
    "HttpConfig",
    "SerialConfig",
    "load_config",
    "ChecksumError",
    "Frame",
    "FrameCodec",
    "FrameError",
    "InvalidFrameError",
    "NoDataError",
    "checksum",
    "decode",
    "encode",
    "LiveDataSample",
    "describe_error_bits",
    "parse_live_data",
    "AveragedSnapshot",
    "HistoryRing",
    "SamplePipeline",
    "StatusServer",
    "snapshot_document",
    "InverterSession",
    "OnlineMonitor",
    "Phase",
    "QueryKind",
    "QueryState",
    "transition",
    "SolaxHost",
    "SerialTransport",
    "SimulatedTransport",
    "TransportError",
]
