from __future__ import annotations

import struct
from dataclasses import asdict, dataclass
from typing import Dict, List


LIVE_DATA_MIN_PAYLOAD = 50

# One name per bit of the little-endian fault word, bit 0 first.
ERROR_TEXTS = (
    "Tz Protection Fault",
    "Mains Lost Fault",
    "Grid Voltage Fault",
    "Grid Frequency Fault",
    "PLL Lost Fault",
    "Bus Voltage Fault",
    "Error Bit 06",
    "Oscillator Fault",
    "DCI OCP Fault",
    "Residual Current Fault",
    "PV Voltage Fault",
    "Ac10Mins Voltage Fault",
    "Isolation Fault",
    "Over Temperature Fault",
    "Ventilator Fault",
    "Error Bit 15",
    "SPI Communication Fault",
    "SCI Communication Fault",
    "Error Bit 18",
    "Input Configuration Fault",
    "EEPROM Fault",
    "Relay Fault",
    "Sample Consistence Fault",
    "Residual-Current Device Fault",
    "Error Bit 24",
    "Error Bit 25",
    "Error Bit 26",
    "Error Bit 27",
    "Error Bit 28",
    "DCI Device Fault",
    "Other Device Fault",
    "Error Bit 31",
)


@dataclass(frozen=True)
class LiveDataSample:
    """One parsed live-data response. Invalid samples carry zeroed fields."""

    valid: bool = False
    temperature: float = 0.0
    energy_today: float = 0.0
    dc1_voltage: float = 0.0
    dc2_voltage: float = 0.0
    dc1_current: float = 0.0
    dc2_current: float = 0.0
    ac_current: float = 0.0
    ac_voltage: float = 0.0
    frequency: float = 0.0
    power: float = 0.0
    energy_total: float = 0.0
    runtime_total: float = 0.0
    status: int = 0
    error_bits: int = 0

    @classmethod
    def invalid(cls) -> "LiveDataSample":
        return cls()

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def parse_live_data(payload: bytes) -> LiveDataSample:
    """
    Decode the payload of a live-data response (control 0x11, function 0x82).

    Raises ValueError when the payload is too short to hold every field.
    """
    if len(payload) < LIVE_DATA_MIN_PAYLOAD:
        raise ValueError(
            f"live data payload has {len(payload)} bytes, expected at least {LIVE_DATA_MIN_PAYLOAD}"
        )
    (
        temperature,
        energy_today,
        dc1_voltage,
        dc2_voltage,
        dc1_current,
        dc2_current,
        ac_current,
        ac_voltage,
        frequency,
        power,
        _unused,
        energy_total,
        runtime_total,
        status,
    ) = struct.unpack_from(">10HHIIH", payload, 0)
    (error_bits,) = struct.unpack_from("<I", payload, 46)
    return LiveDataSample(
        valid=True,
        temperature=float(temperature),
        energy_today=energy_today / 10,
        dc1_voltage=dc1_voltage / 10,
        dc2_voltage=dc2_voltage / 10,
        dc1_current=dc1_current / 10,
        dc2_current=dc2_current / 10,
        ac_current=ac_current / 10,
        ac_voltage=ac_voltage / 10,
        frequency=frequency / 100,
        power=float(power),
        energy_total=energy_total / 10,
        runtime_total=float(runtime_total),
        status=status & 0xFF,
        error_bits=error_bits,
    )


def describe_error_bits(error_bits: int) -> List[str]:
    return [text for bit, text in enumerate(ERROR_TEXTS) if error_bits & (1 << bit)]
