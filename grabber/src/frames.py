"""
Solarman V5 frame layout and Deye SUN600 register map -- single source of truth.

The SUN600 microinverter is reached through its Wi-Fi logger stick on TCP
port 8899. The stick speaks Solarman V5: a little-endian envelope addressed
by the stick's serial number that tunnels a Modbus RTU frame to the
inverter. One fixed Modbus read (holding registers 0x003C-0x0057) returns
every register this project needs.

Envelope layout::

    A5 | len(2,LE) | control(2,LE) | seq(2,LE) | serial(4,LE) | payload | cs | 15

Request payload: frame type (1), sensor type (2), three zeroed 4-byte
times, then the 8-byte Modbus RTU read request.

Response payload: frame type (1), status (1), three 4-byte times, then the
Modbus RTU response (slave, 0x03, byte count, data, CRC16 LE).

The envelope checksum is the low byte of the sum of every byte between the
start marker and the checksum itself.

References:
    - https://pysolarmanv5.readthedocs.io/en/latest/solarmanv5_protocol.html
    - https://github.com/StephanJoubert/home_assistant_solarman (deye_2mppt)

CHANGELOG:
- 2026-10-19: Drop ReadBlock.response_frame_len (no caller)
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Solarman V5 envelope
# ---------------------------------------------------------------------------

START: int = 0xA5
END: int = 0x15

CONTROL_REQUEST: int = 0x4510
CONTROL_RESPONSE: int = 0x1510

FRAME_TYPE_INVERTER: int = 0x02

HEADER_LEN: int = 11
"""Start marker, payload length, control code, sequence, logger serial."""

TRAILER_LEN: int = 2
"""Checksum and end marker."""

ENVELOPE_LEN: int = HEADER_LEN + TRAILER_LEN

REQUEST_PAYLOAD_PREFIX_LEN: int = 15
"""Frame type, sensor type and three 4-byte time fields in a request."""

RESPONSE_PAYLOAD_PREFIX_LEN: int = 14
"""Frame type, status and three 4-byte time fields in a response."""

MODBUS_OFFSET: int = HEADER_LEN + RESPONSE_PAYLOAD_PREFIX_LEN
"""Byte offset of the tunnelled Modbus RTU response inside a frame."""

MAX_FRAME_LEN: int = 1024
"""Upper bound on any frame the logger can legitimately send."""

# ---------------------------------------------------------------------------
# Tunnelled Modbus RTU
# ---------------------------------------------------------------------------

MODBUS_READ_HOLDING: int = 0x03
MODBUS_EXCEPTION_FLAG: int = 0x80

MODBUS_HEADER_LEN: int = 3
"""Slave id, function code, byte count."""

MODBUS_CRC_LEN: int = 2

MIN_FRAME_LEN: int = MODBUS_OFFSET + MODBUS_HEADER_LEN + MODBUS_CRC_LEN + TRAILER_LEN
"""Smallest frame that can carry a (possibly empty) Modbus response."""


# ---------------------------------------------------------------------------
# Register definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of one telemetry value inside the Modbus read block.

    Attributes:
        address: Modbus holding register address of the first word.
        name: Measurement field fed by this register.
        reg_type: ``"U16"``, ``"U32"`` or ``"S32"``. 32-bit values are
            transmitted low word first.
        unit: Engineering unit of the scaled value.
        scale: Multiplier applied to the raw integer.
        divisor: Divisor applied after scaling. Values with a divisor
            other than 1 are returned as floats.
    """

    address: int
    name: str
    reg_type: str
    unit: str
    scale: int = 1
    divisor: int = 1

    @property
    def word_count(self) -> int:
        return 1 if self.reg_type == "U16" else 2


@dataclass(frozen=True, slots=True)
class ReadBlock:
    """A contiguous register range fetched with a single Modbus read.

    Attributes:
        start_address: First register address in the read.
        count: Number of 16-bit registers to read.
        registers: Register definitions located inside the range.
    """

    start_address: int
    count: int
    registers: tuple[RegisterDef, ...]

    @property
    def byte_count(self) -> int:
        return self.count * 2


# ---------------------------------------------------------------------------
# Deye SUN600 (registers 0x003C-0x0057)
# ---------------------------------------------------------------------------

# Energy is reported in 0.1 kWh steps, power in 0.1 W steps.
SUN600_REGISTERS: tuple[RegisterDef, ...] = (
    RegisterDef(address=0x003C, name="energy_today_wh", reg_type="U16", unit="Wh", scale=100),
    RegisterDef(address=0x003F, name="energy_total_wh", reg_type="U32", unit="Wh", scale=100),
    RegisterDef(address=0x0056, name="power_watts", reg_type="S32", unit="W", divisor=10),
)

SUN600_BLOCK = ReadBlock(
    start_address=0x003C,
    count=28,  # 0x003C..0x0057 inclusive
    registers=SUN600_REGISTERS,
)
