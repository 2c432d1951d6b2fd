"""
Pure request encoder and response decoder for the supported device variants.

No I/O, no clock: the capture timestamp and the target are passed in by the
caller. Every byte sequence the network can deliver either decodes into a
:class:`~grabber.src.models.Measurement` or raises a
:class:`~grabber.src.errors.DecodeError` subclass.

Variants are a closed table keyed by :class:`~grabber.src.models.DeviceModel`;
adding a device family means adding one :class:`Codec` entry.

CHANGELOG:
- 2026-10-19: Build and parse the tunnelled Modbus RTU ADU with umodbus
- 2026-10-19: Filter frames where every telemetry value is zero
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from umodbus.client.serial import rtu
from umodbus.client.serial.redundancy_check import CRCError
from umodbus.exceptions import ModbusError

from grabber.src import frames
from grabber.src.errors import EmptyFrameError, MalformedFrameError, OutOfRangeError
from grabber.src.frames import SUN600_BLOCK, ReadBlock, RegisterDef
from grabber.src.models import DeviceModel, InverterTarget, Measurement

# ---------------------------------------------------------------------------
# Solarman V5 framing
# ---------------------------------------------------------------------------


def v5_checksum(frame: bytes | bytearray) -> int:
    """Sum of every byte between the start marker and the checksum slot."""
    return sum(frame[1:-2]) & 0xFF


def v5_frame_length(buffer: bytes | bytearray) -> int:
    """Return how many bytes make up the frame starting at *buffer[0]*.

    Used by the client to know when to stop reading. Until the length field
    is available the minimum frame length is returned. When the buffer
    cannot be the start of a valid frame (wrong marker, absurd length) the
    current buffer length is returned so that reading stops and the
    decoder reports the problem.
    """
    if len(buffer) < 3:
        return frames.MIN_FRAME_LEN
    if buffer[0] != frames.START:
        return len(buffer)
    (payload_len,) = struct.unpack_from("<H", buffer, 1)
    declared = frames.ENVELOPE_LEN + payload_len
    if declared > frames.MAX_FRAME_LEN:
        return len(buffer)
    return declared


def _encode_v5(*, control: int, sequence: int, logger_serial: int, payload: bytes) -> bytes:
    header = struct.pack(
        "<BHHHI",
        frames.START,
        len(payload),
        control,
        sequence & 0xFFFF,
        logger_serial,
    )
    frame = bytearray(header + payload + bytes((0x00, frames.END)))
    frame[-2] = v5_checksum(frame)
    return bytes(frame)


def _unwrap_v5(
    data: bytes,
    *,
    logger_serial: int,
    sequence: int | None,
) -> bytes:
    """Validate the V5 envelope and return the tunnelled Modbus response."""
    received = len(data)
    if received == 0:
        raise EmptyFrameError()
    if received < frames.MIN_FRAME_LEN:
        raise MalformedFrameError(
            f"shorter than minimum frame length {frames.MIN_FRAME_LEN}",
            received=received,
        )
    if data[0] != frames.START:
        raise MalformedFrameError(f"bad start marker 0x{data[0]:02X}", received=received)

    payload_len, control, frame_seq, frame_serial = struct.unpack_from("<HHHI", data, 1)
    frame_len = frames.ENVELOPE_LEN + payload_len
    if frame_len > received:
        raise MalformedFrameError(
            f"truncated: length field declares {frame_len} bytes",
            received=received,
        )

    # Trailing bytes beyond the declared frame are ignored.
    frame = data[:frame_len]
    if frame[-1] != frames.END:
        raise MalformedFrameError(f"bad end marker 0x{frame[-1]:02X}", received=received)
    expected_cs = v5_checksum(frame)
    if frame[-2] != expected_cs:
        raise MalformedFrameError(
            f"checksum mismatch (got 0x{frame[-2]:02X}, expected 0x{expected_cs:02X})",
            received=received,
        )
    if control != frames.CONTROL_RESPONSE:
        raise MalformedFrameError(f"unexpected control code 0x{control:04X}", received=received)
    if frame_serial != logger_serial:
        raise MalformedFrameError(
            f"logger serial mismatch (got {frame_serial})",
            received=received,
        )
    # Loggers only echo the low byte of the sequence number reliably.
    if sequence is not None and (frame_seq & 0xFF) != (sequence & 0xFF):
        raise MalformedFrameError("sequence number mismatch", received=received)
    if payload_len < frames.RESPONSE_PAYLOAD_PREFIX_LEN:
        raise MalformedFrameError("payload shorter than V5 response prefix", received=received)
    if frame[frames.HEADER_LEN] != frames.FRAME_TYPE_INVERTER:
        raise MalformedFrameError(
            f"unexpected frame type 0x{frame[frames.HEADER_LEN]:02X}",
            received=received,
        )

    return frame[frames.MODBUS_OFFSET : -frames.TRAILER_LEN]


# ---------------------------------------------------------------------------
# Tunnelled Modbus RTU
# ---------------------------------------------------------------------------


def _modbus_read_request(*, slave_id: int, block: ReadBlock) -> bytes:
    return rtu.read_holding_registers(slave_id, block.start_address, block.count)


def _modbus_read_words(
    modbus: bytes,
    *,
    slave_id: int,
    block: ReadBlock,
    received: int,
) -> tuple[int, ...]:
    """Validate a Modbus RTU read response and return its 16-bit words.

    The ADU is cut to its own length first because umodbus checks the CRC
    against the last two bytes it is given.
    """
    if len(modbus) < frames.MODBUS_HEADER_LEN + frames.MODBUS_CRC_LEN:
        # The logger answers with an empty payload when the inverter is asleep.
        raise MalformedFrameError("no modbus response from inverter", received=received)

    slave, function, byte_count = modbus[0], modbus[1], modbus[2]
    if function & frames.MODBUS_EXCEPTION_FLAG:
        # Exception ADU: slave, function | 0x80, exception code, CRC.
        adu_len = frames.MODBUS_HEADER_LEN + frames.MODBUS_CRC_LEN
    else:
        if function != frames.MODBUS_READ_HOLDING:
            raise MalformedFrameError(f"unexpected modbus function 0x{function:02X}", received=received)
        adu_len = frames.MODBUS_HEADER_LEN + byte_count + frames.MODBUS_CRC_LEN
        if byte_count != block.byte_count or len(modbus) < adu_len:
            raise MalformedFrameError(f"unexpected modbus byte count {byte_count}", received=received)
    if slave != slave_id:
        raise MalformedFrameError(f"unexpected modbus slave id {slave}", received=received)

    request = _modbus_read_request(slave_id=slave_id, block=block)
    try:
        words = rtu.parse_response_adu(modbus[:adu_len], request)
    except CRCError:
        raise MalformedFrameError("modbus checksum mismatch", received=received) from None
    except ModbusError as exc:
        raise MalformedFrameError(f"modbus exception code {exc.error_code}", received=received) from None
    except KeyError:
        # Exception codes unknown to umodbus.
        raise MalformedFrameError(f"modbus exception code {byte_count}", received=received) from None
    return tuple(words)


def _register_value(reg: RegisterDef, block: ReadBlock, words: tuple[int, ...]) -> int | float:
    """Assemble, sign-convert and scale one register value."""
    offset = reg.address - block.start_address
    if reg.reg_type == "U16":
        raw = words[offset]
    else:
        # 32-bit values are sent low word first.
        raw = words[offset] | (words[offset + 1] << 16)
        if reg.reg_type == "S32" and raw >= 0x80000000:
            raw -= 0x100000000
    value = raw * reg.scale
    if reg.divisor != 1:
        return value / reg.divisor
    return value


# ---------------------------------------------------------------------------
# Deye SUN600
# ---------------------------------------------------------------------------


def _encode_sun600(target: InverterTarget, *, sequence: int = 0) -> bytes:
    payload = (
        struct.pack("<BH", frames.FRAME_TYPE_INVERTER, 0x0000)
        + bytes(12)  # delivery, power-on and offset times
        + _modbus_read_request(slave_id=target.slave_id, block=SUN600_BLOCK)
    )
    return _encode_v5(
        control=frames.CONTROL_REQUEST,
        sequence=sequence,
        logger_serial=target.logger_serial,
        payload=payload,
    )


def _decode_sun600(
    data: bytes,
    *,
    target: InverterTarget,
    ts: datetime,
    sequence: int | None = None,
) -> Measurement:
    received = len(data)
    modbus = _unwrap_v5(data, logger_serial=target.logger_serial, sequence=sequence)
    words = _modbus_read_words(modbus, slave_id=target.slave_id, block=SUN600_BLOCK, received=received)

    values = {reg.name: _register_value(reg, SUN600_BLOCK, words) for reg in SUN600_BLOCK.registers}
    power = values["power_watts"]
    today = values["energy_today_wh"]
    total = values["energy_total_wh"]

    if power < 0:
        raise OutOfRangeError("power_watts", power, received=received)
    if today > total:
        raise OutOfRangeError("energy_today_wh", today, received=received)
    if power == 0 and today == 0 and total == 0:
        # Freshly booted sticks report all zeros before the first real read.
        raise OutOfRangeError("all_values", 0, received=received)

    return Measurement(
        source=target.device_id,
        ts=ts,
        power_watts=float(power),
        energy_today_wh=int(today),
        energy_total_wh=int(total),
        labels=target.labels(),
    )


# ---------------------------------------------------------------------------
# Variant dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Codec:
    """The encode/decode/reassembly functions of one device variant.

    Attributes:
        model: Device model this codec speaks.
        encode_request: ``(target, *, sequence) -> bytes``.
        decode_response: ``(data, *, target, ts, sequence) -> Measurement``.
        frame_length: ``(buffer) -> int`` reassembly hint for the client.
    """

    model: DeviceModel
    encode_request: Callable[..., bytes]
    decode_response: Callable[..., Measurement]
    frame_length: Callable[[bytes | bytearray], int]


_CODECS: dict[DeviceModel, Codec] = {
    DeviceModel.SUN600: Codec(
        model=DeviceModel.SUN600,
        encode_request=_encode_sun600,
        decode_response=_decode_sun600,
        frame_length=v5_frame_length,
    ),
}


def codec_for(model: DeviceModel) -> Codec:
    """Return the codec for *model*.

    Raises:
        ValueError: If no codec is registered for the model.
    """
    try:
        return _CODECS[model]
    except KeyError:
        raise ValueError(f"unsupported device model: {model}") from None


def encode_request(target: InverterTarget, *, sequence: int = 0) -> bytes:
    """Build the poll request frame for *target*."""
    return codec_for(target.model).encode_request(target, sequence=sequence)


def decode_response(
    data: bytes,
    *,
    target: InverterTarget,
    ts: datetime,
    sequence: int | None = None,
) -> Measurement:
    """Decode a raw response from *target* into a Measurement.

    Args:
        data: Raw bytes received from the device. May be empty, truncated,
            garbage, or carry trailing bytes after the frame.
        target: The polled device, used for address checks and tagging.
        ts: Capture timestamp to embed in the measurement.
        sequence: Sequence number of the request, checked against the
            response when given.

    Raises:
        EmptyFrameError: *data* is empty.
        MalformedFrameError: Framing, marker, length or checksum failure.
        OutOfRangeError: Decoded values are physically impossible.
    """
    return codec_for(target.model).decode_response(data, target=target, ts=ts, sequence=sequence)
