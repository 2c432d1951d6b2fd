"""
Async TCP client that polls one microinverter through its logger stick.

Opens a fresh connection per poll, sends the codec's request frame, and
accumulates partial reads until the codec says a whole frame is present or
the peer closes. Every poll is a single attempt: the client never retries
and keeps no state between calls, so retry policy stays with the caller.

State machine per poll::

    Connecting -> Sending -> Receiving -> Success(Measurement)
         |            |          |
         +------------+----------+------> Failed(ClientError)

- Connect failure, unresolvable host or connect timeout -> DeviceUnreachableError.
- No complete frame before the deadline -> DeviceTimeoutError.
- Frame rejected by the codec -> DeviceProtocolError.

The connection is closed on every exit path, including task cancellation.

CHANGELOG:
- 2026-10-19: Report unencodable host names as unreachable
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from grabber.src.codec import Codec, codec_for
from grabber.src.errors import (
    DecodeError,
    DeviceProtocolError,
    DeviceTimeoutError,
    DeviceUnreachableError,
)

if TYPE_CHECKING:
    from grabber.src.models import InverterTarget, Measurement

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_S: float = 10.0
"""Deadline for connect, and separately for the request/response exchange."""

READ_CHUNK: int = 1024
"""Maximum bytes requested from the stream per read call."""


class DeviceClient:
    """Single-attempt poller for microinverters.

    Args:
        timeout_s: Seconds allowed for connecting, and for sending the
            request plus receiving the complete response.

    Usage::

        client = DeviceClient(timeout_s=5)
        measurement = await client.poll(target)
    """

    def __init__(self, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self._timeout_s = timeout_s

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    async def poll(self, target: InverterTarget) -> Measurement:
        """Execute one request/response exchange with *target*.

        Returns:
            The decoded :class:`~grabber.src.models.Measurement`, stamped
            with the time the response was completed.

        Raises:
            DeviceUnreachableError: Connection failed or was reset.
            DeviceTimeoutError: No complete frame before the deadline.
            DeviceProtocolError: The codec rejected the response.
        """
        codec = codec_for(target.model)
        sequence = random.randint(0x01, 0xFF)
        request = codec.encode_request(target, sequence=sequence)

        reader, writer = await self._connect(target)
        buffer = bytearray()
        try:
            async with asyncio.timeout(self._timeout_s):
                writer.write(request)
                await writer.drain()
                await _receive(reader, codec, buffer)
        except TimeoutError:
            raise DeviceTimeoutError(
                f"no complete response from {target.host}:{target.port} "
                f"within {self._timeout_s}s ({len(buffer)} bytes received)",
                target=target,
                received=len(buffer),
            ) from None
        except OSError as exc:
            raise DeviceUnreachableError(
                f"connection to {target.host}:{target.port} lost: {exc}",
                target=target,
            ) from exc
        finally:
            await _close(writer)

        ts = datetime.now(tz=UTC)
        try:
            return codec.decode_response(bytes(buffer), target=target, ts=ts, sequence=sequence)
        except DecodeError as exc:
            logger.debug("Rejected response from %s: %s", target.device_id, buffer.hex())
            raise DeviceProtocolError(exc, target=target) from exc

    async def _connect(
        self,
        target: InverterTarget,
    ) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(target.host, target.port),
                timeout=self._timeout_s,
            )
        except TimeoutError as exc:
            raise DeviceUnreachableError(
                f"connect to {target.host}:{target.port} timed out after {self._timeout_s}s",
                target=target,
            ) from exc
        except OSError as exc:
            raise DeviceUnreachableError(
                f"cannot connect to {target.host}:{target.port}: {exc}",
                target=target,
            ) from exc
        except ValueError as exc:
            # Host names the resolver refuses to encode, e.g. a label over 63 chars.
            raise DeviceUnreachableError(
                f"cannot resolve {target.host!r}: {exc}",
                target=target,
            ) from exc


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------


async def _receive(reader: asyncio.StreamReader, codec: Codec, buffer: bytearray) -> None:
    """Append reads to *buffer* until a full frame is present or EOF."""
    while len(buffer) < codec.frame_length(buffer):
        chunk = await reader.read(READ_CHUNK)
        if not chunk:
            logger.debug("Peer closed connection after %d bytes", len(buffer))
            return
        buffer.extend(chunk)


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
