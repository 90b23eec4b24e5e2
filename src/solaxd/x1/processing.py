from __future__ import annotations

import csv
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Callable, List, Optional, TextIO

import numpy as np

from .live_data import LiveDataSample

DEFAULT_QOS_WINDOW = 100
DEFAULT_AVERAGE_WINDOW = 10

MEAN_FIELDS = (
    "temperature",
    "dc1_voltage",
    "dc2_voltage",
    "dc1_current",
    "dc2_current",
    "ac_current",
    "ac_voltage",
    "frequency",
    "power",
)
MAX_FIELDS = ("energy_today", "energy_total", "runtime_total", "status")
_COLUMNS = MEAN_FIELDS + MAX_FIELDS


@dataclass(frozen=True)
class AveragedSnapshot:
    """Smoothed view of the most recent samples, rebuilt every cycle."""

    temperature: float = 0.0
    dc1_voltage: float = 0.0
    dc2_voltage: float = 0.0
    dc1_current: float = 0.0
    dc2_current: float = 0.0
    ac_current: float = 0.0
    ac_voltage: float = 0.0
    frequency: float = 0.0
    power: float = 0.0
    energy_today: float = 0.0
    energy_total: float = 0.0
    runtime_total: float = 0.0
    status: int = 0
    error_bits: int = 0
    samples: int = 0
    quality_of_service: float = 0.0


class HistoryRing:
    """
    Fixed-capacity circular store of live-data samples.

    Samples live in a numpy matrix (one row per slot) plus a validity mask, so
    window statistics reduce to masked column operations.
    """

    def __init__(self, capacity: int = DEFAULT_QOS_WINDOW):
        if capacity < 1:
            raise ValueError("ring capacity must be at least 1")
        self.capacity = capacity
        self._values = np.zeros((capacity, len(_COLUMNS)), dtype=float)
        self._errors = np.zeros(capacity, dtype=np.uint32)
        self._valid = np.zeros(capacity, dtype=bool)
        self._index = capacity - 1

    @property
    def index(self) -> int:
        return self._index

    def push(self, sample: LiveDataSample) -> int:
        self._index = (self._index + 1) % self.capacity
        if sample.valid:
            self._values[self._index] = [float(getattr(sample, name)) for name in _COLUMNS]
            self._errors[self._index] = sample.error_bits
        else:
            self._values[self._index] = 0.0
            self._errors[self._index] = 0
        self._valid[self._index] = sample.valid
        return self._index

    def valid_count(self) -> int:
        return int(np.count_nonzero(self._valid))

    def quality_of_service(self) -> float:
        return self.valid_count() / self.capacity

    def average(self, window: int = DEFAULT_AVERAGE_WINDOW) -> AveragedSnapshot:
        window = max(1, min(window, self.capacity))
        slots = (self._index - np.arange(window)) % self.capacity
        mask = self._valid[slots]
        count = int(np.count_nonzero(mask))
        qos = self.quality_of_service()
        if count == 0:
            return AveragedSnapshot(quality_of_service=qos)
        rows = self._values[slots][mask]
        means = rows[:, : len(MEAN_FIELDS)].sum(axis=0) / count
        maxima = rows[:, len(MEAN_FIELDS) :].max(axis=0)
        error_bits = int(np.bitwise_or.reduce(self._errors[slots][mask]))
        values = {name: float(value) for name, value in zip(MEAN_FIELDS, means)}
        values.update({name: float(value) for name, value in zip(MAX_FIELDS, maxima)})
        values["status"] = int(values["status"])
        return AveragedSnapshot(
            **values,
            error_bits=error_bits,
            samples=count,
            quality_of_service=qos,
        )


class CsvLogger:
    """
    Lazily creates a CSV writer when the first valid sample arrives. Invalid
    samples are never written.
    """

    FIELDNAMES = ["timestamp"] + [f.name for f in fields(LiveDataSample) if f.name != "valid"]

    def __init__(self, path: Path, clock: Callable[[], float] = time.time):
        self.path = path
        self._clock = clock
        self._handle: Optional[csv.DictWriter[str]] = None
        self._file_handle: Optional[TextIO] = None

    def append(self, sample: LiveDataSample) -> None:
        if not sample.valid:
            return
        if self._handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_header = not self.path.exists() or self.path.stat().st_size == 0
            self._file_handle = self.path.open("a", newline="", encoding="utf-8")
            self._handle = csv.DictWriter(self._file_handle, fieldnames=self.FIELDNAMES)
            if write_header:
                self._handle.writeheader()
        row = asdict(sample)
        del row["valid"]
        row["timestamp"] = f"{self._clock():.3f}"
        self._handle.writerow(row)
        if self._file_handle is not None:
            self._file_handle.flush()

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None
            self._handle = None


class SamplePipeline:
    """
    Glue that appends one sample per cycle to the history ring, rebuilds the
    averaged snapshot and optionally logs raw samples.
    """

    def __init__(
        self,
        average_window: int = DEFAULT_AVERAGE_WINDOW,
        qos_window: int = DEFAULT_QOS_WINDOW,
        output_csv: Optional[Path] = None,
    ):
        if not 1 <= average_window <= qos_window:
            raise ValueError("average_window must be between 1 and qos_window")
        self.average_window = average_window
        self.ring = HistoryRing(qos_window)
        self.logger = CsvLogger(output_csv) if output_csv else None
        self.snapshot = AveragedSnapshot()
        self._callbacks: List[Callable[[AveragedSnapshot], None]] = []

    def process(self, sample: LiveDataSample) -> AveragedSnapshot:
        self.ring.push(sample)
        self.snapshot = self.ring.average(self.average_window)
        if self.logger:
            self.logger.append(sample)
        for callback in self._callbacks:
            callback(self.snapshot)
        return self.snapshot

    def register_callback(self, callback: Callable[[AveragedSnapshot], None]) -> None:
        self._callbacks.append(callback)

    def close(self) -> None:
        if self.logger:
            self.logger.close()
