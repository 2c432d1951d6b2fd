"""
Shared test fixtures for the grabber test suite.

Provides:
- Environment isolation for GrabberSettings tests (all SG_* vars removed,
  working directory moved to tmp_path so no .env file is picked up).
- Ready-made InverterTarget / SinkTarget / Measurement values.
- A builder for Solarman V5 response frames carrying SUN600 registers.

CHANGELOG:
- 2026-10-19: Sign built Modbus responses with umodbus get_crc
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import pytest
from grabber.src.models import InverterTarget, Measurement, SinkTarget
from umodbus.client.serial.redundancy_check import get_crc

# All GrabberSettings environment variable names, used for cleanup.
_ALL_GRABBER_ENV_VARS = (
    "SG_SOURCES",
    "SG_INFLUXDBS",
    "SG_POLL_TIMEOUT_S",
    "SG_POLL_RETRIES",
    "SG_RETRY_DELAY_S",
    "SG_WRITE_TIMEOUT_S",
    "SG_CONCURRENT",
    "SG_STATUS_FILE",
    "SG_LOG_LEVEL",
)

LOGGER_SERIAL = 2712345678
"""Logger stick serial used by the default test target."""

ResponseBuilder = Callable[..., bytes]


@pytest.fixture(autouse=True)
def _clean_grabber_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all grabber env vars and isolate from .env files before each test."""
    for var in _ALL_GRABBER_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def target() -> InverterTarget:
    """A SUN600 target on localhost with name and location tags."""
    return InverterTarget(
        host="127.0.0.1",
        port=8899,
        logger_serial=LOGGER_SERIAL,
        device_name="garage",
        device_location="roof",
    )


@pytest.fixture()
def sink() -> SinkTarget:
    """An InfluxDB 2 sink."""
    return SinkTarget(
        url="http://influx.local:8086",
        org="home",
        bucket="solar",
        token="influx-secret-token",
    )


@pytest.fixture()
def measurement() -> Measurement:
    """A plausible measurement for writer tests."""
    return Measurement(
        source=str(LOGGER_SERIAL),
        ts=datetime(2026, 6, 21, 12, 0, 0, tzinfo=UTC),
        power_watts=123.4,
        energy_today_wh=1500,
        energy_total_wh=1234500,
        labels={"deviceName": "garage", "deviceLocation": "roof"},
    )


def build_response(
    *,
    power_raw: int = 1234,
    today_raw: int = 15,
    total_raw: int = 12345,
    serial: int = LOGGER_SERIAL,
    sequence: int = 0x42,
    slave_id: int = 1,
    control: int = 0x1510,
    frame_type: int = 0x02,
    modbus: bytes | None = None,
) -> bytes:
    """Build a well-formed V5 response frame for a SUN600 read.

    Register words (28 from 0x003C):
        [0]      energy today, 0.1 kWh
        [3..4]   energy total, 0.1 kWh, low word first
        [26..27] AC power, 0.1 W, signed, low word first

    Pass *modbus* to replace the tunnelled Modbus response entirely.
    """
    if modbus is None:
        words = [0] * 28
        words[0] = today_raw
        words[3] = total_raw & 0xFFFF
        words[4] = (total_raw >> 16) & 0xFFFF
        power = power_raw & 0xFFFFFFFF
        words[26] = power & 0xFFFF
        words[27] = power >> 16
        modbus = bytes((slave_id, 0x03, 56)) + struct.pack(">28H", *words)
        modbus += get_crc(modbus)

    payload = bytes((frame_type, 0x01)) + bytes(12) + modbus
    frame = bytearray(struct.pack("<BHHHI", 0xA5, len(payload), control, sequence, serial))
    frame += payload + b"\x00\x15"
    frame[-2] = sum(frame[1:-2]) & 0xFF
    return bytes(frame)


@pytest.fixture()
def response_builder() -> ResponseBuilder:
    """Expose :func:`build_response` to tests."""
    return build_response
