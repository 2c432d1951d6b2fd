"""
Error taxonomy for the poll-and-deliver pipeline.

Three families, one per layer:

- :class:`DecodeError` -- the device answered but the frame is unusable.
- :class:`ClientError` -- talking to the device failed (wraps DecodeError).
- :class:`WriteError` -- delivering points to a sink failed.

Lower layers raise these; the orchestrator turns them into outcome records
and is the only component that decides whether to retry.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from grabber.src.models import InverterTarget, SinkTarget


class ConfigError(Exception):
    """Configuration could not be located, read or parsed."""


# ---------------------------------------------------------------------------
# Decode errors
# ---------------------------------------------------------------------------


class DecodeError(Exception):
    """Base class for frames that cannot be turned into a Measurement.

    Args:
        message: Human-readable description.
        received: Number of raw bytes handed to the decoder.
    """

    def __init__(self, message: str, *, received: int) -> None:
        super().__init__(message)
        self.received = received


class EmptyFrameError(DecodeError):
    """The device closed the exchange without sending a single byte."""

    def __init__(self) -> None:
        super().__init__("empty response", received=0)


class MalformedFrameError(DecodeError):
    """Framing, marker, length or checksum validation failed.

    Attributes:
        reason: Short machine-friendly description of the failed check,
            e.g. ``"checksum mismatch"``.
    """

    def __init__(self, reason: str, *, received: int) -> None:
        super().__init__(f"malformed frame ({received} bytes): {reason}", received=received)
        self.reason = reason


class OutOfRangeError(DecodeError):
    """The frame is well formed but carries physically impossible values."""

    def __init__(self, field: str, value: float, *, received: int) -> None:
        super().__init__(f"value out of range: {field}={value}", received=received)
        self.field = field
        self.value = value


# ---------------------------------------------------------------------------
# Device client errors
# ---------------------------------------------------------------------------


class ClientError(Exception):
    """Base class for a failed poll of one inverter."""

    def __init__(self, message: str, *, target: InverterTarget) -> None:
        super().__init__(message)
        self.target = target


class DeviceUnreachableError(ClientError):
    """Connection refused, host unreachable, DNS failure or reset."""


class DeviceTimeoutError(ClientError):
    """The device did not deliver a complete frame before the deadline.

    Attributes:
        received: Bytes accumulated before the deadline expired.
    """

    def __init__(self, message: str, *, target: InverterTarget, received: int) -> None:
        super().__init__(message, target=target)
        self.received = received


class DeviceProtocolError(ClientError):
    """The device answered with a frame the codec rejected."""

    def __init__(self, cause: DecodeError, *, target: InverterTarget) -> None:
        super().__init__(f"protocol error: {cause}", target=target)
        self.cause = cause


# ---------------------------------------------------------------------------
# Sink writer errors
# ---------------------------------------------------------------------------


class WriteError(Exception):
    """Base class for a failed write to one sink."""

    def __init__(self, message: str, *, sink: SinkTarget) -> None:
        super().__init__(message)
        self.sink = sink


class SinkUnreachableError(WriteError):
    """DNS, connection, TLS or timeout failure before a response arrived."""


class SinkRejectedError(WriteError):
    """The sink answered with a non-2xx status.

    Attributes:
        status_code: HTTP status returned by the sink.
        body: Response body, truncated for diagnostics.
    """

    def __init__(self, *, sink: SinkTarget, status_code: int, body: str) -> None:
        super().__init__(f"write rejected (HTTP {status_code}): {body}", sink=sink)
        self.status_code = status_code
        self.body = body
