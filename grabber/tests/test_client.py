"""
Tests for the async device client.

Each test runs a real asyncio TCP server on the loopback interface that
plays the part of a logger stick.

Tests verify:
- A well-formed response is decoded into a Measurement.
- Responses split across many TCP segments are reassembled.
- A silent device yields DeviceTimeoutError within the deadline.
- A closed port or an unresolvable host name yields DeviceUnreachableError,
  on every poll of the same client.
- EOF or garbage yields DeviceProtocolError carrying the decode cause.
- The connection is closed on success, failure and cancellation.

CHANGELOG:
- 2026-10-19: Cover repeated polls of a dead port and overlong host labels
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import socket
import struct
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
from conftest import LOGGER_SERIAL, build_response
from grabber.src.client import DeviceClient
from grabber.src.errors import (
    DeviceProtocolError,
    DeviceTimeoutError,
    DeviceUnreachableError,
    EmptyFrameError,
    MalformedFrameError,
)
from grabber.src.models import InverterTarget

Handler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]

# ---------------------------------------------------------------------------
# Fake logger stick
# ---------------------------------------------------------------------------


class FakeStick:
    """Records requests and signals when the client closed its side."""

    def __init__(self) -> None:
        self.requests: list[bytes] = []
        self.client_closed = asyncio.Event()

    async def read_request(self, reader: asyncio.StreamReader) -> int:
        request = await reader.readexactly(36)
        self.requests.append(request)
        return struct.unpack_from("<H", request, 5)[0]

    async def wait_for_close(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while await reader.read(1024):
            pass
        self.client_closed.set()
        writer.close()


@contextlib.asynccontextmanager
async def _serve(handler: Handler) -> AsyncIterator[int]:
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        yield port


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _at(target: InverterTarget, port: int) -> InverterTarget:
    return target.model_copy(update={"port": port})


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


class TestPollSuccess:
    """Well-formed responses are decoded."""

    @pytest.mark.asyncio
    async def test_single_segment(self, target: InverterTarget) -> None:
        """A response sent in one write decodes to the expected values."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            writer.write(build_response(sequence=seq))
            await writer.drain()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            m = await DeviceClient(timeout_s=2).poll(_at(target, port))
            await asyncio.wait_for(stick.client_closed.wait(), timeout=2)

        assert m.power_watts == 123.4
        assert m.energy_today_wh == 1500
        assert m.energy_total_wh == 1234500
        assert m.source == str(LOGGER_SERIAL)

    @pytest.mark.asyncio
    async def test_request_addressed_to_logger(self, target: InverterTarget) -> None:
        """The request frame carries the configured logger serial."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            writer.write(build_response(sequence=seq))
            await writer.drain()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            await DeviceClient(timeout_s=2).poll(_at(target, port))

        (request,) = stick.requests
        assert request[0] == 0xA5
        assert struct.unpack_from("<I", request, 7)[0] == LOGGER_SERIAL

    @pytest.mark.asyncio
    async def test_byte_by_byte_response(self, target: InverterTarget) -> None:
        """A response dribbled one byte at a time is reassembled."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            for byte in build_response(sequence=seq):
                writer.write(bytes((byte,)))
                await writer.drain()
                await asyncio.sleep(0)
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            m = await DeviceClient(timeout_s=5).poll(_at(target, port))

        assert m.power_watts == 123.4

    @pytest.mark.asyncio
    async def test_header_split_across_segments(self, target: InverterTarget) -> None:
        """A split inside the length field does not end the read early."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            frame = build_response(sequence=seq)
            for chunk in (frame[:2], frame[2:40], frame[40:]):
                writer.write(chunk)
                await writer.drain()
                await asyncio.sleep(0.01)
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            m = await DeviceClient(timeout_s=2).poll(_at(target, port))

        assert m.energy_total_wh == 1234500


# ---------------------------------------------------------------------------
# Timeouts and unreachable devices
# ---------------------------------------------------------------------------


class TestPollTimeout:
    """Silent or stalled devices time out within the configured deadline."""

    @pytest.mark.asyncio
    async def test_silent_device(self, target: InverterTarget) -> None:
        """A device that accepts but never answers raises DeviceTimeoutError."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            loop = asyncio.get_running_loop()
            started = loop.time()
            with pytest.raises(DeviceTimeoutError) as exc_info:
                await DeviceClient(timeout_s=0.2).poll(_at(target, port))
            elapsed = loop.time() - started
            await asyncio.wait_for(stick.client_closed.wait(), timeout=2)

        assert exc_info.value.received == 0
        assert elapsed < 2.0

    @pytest.mark.asyncio
    async def test_partial_response_then_silence(self, target: InverterTarget) -> None:
        """The timeout reports how many bytes arrived before the stall."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            writer.write(build_response(sequence=seq)[:10])
            await writer.drain()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            with pytest.raises(DeviceTimeoutError) as exc_info:
                await DeviceClient(timeout_s=0.2).poll(_at(target, port))

        assert exc_info.value.received == 10

    @pytest.mark.asyncio
    async def test_closed_port(self, target: InverterTarget) -> None:
        """Nothing listening raises DeviceUnreachableError."""
        with pytest.raises(DeviceUnreachableError) as exc_info:
            await DeviceClient(timeout_s=1).poll(_at(target, _unused_port()))
        assert exc_info.value.target.host == "127.0.0.1"

    @pytest.mark.asyncio
    async def test_closed_port_twice(self, target: InverterTarget) -> None:
        """A client stays usable: a second poll of a dead port fails the same way."""
        client = DeviceClient(timeout_s=1)
        dead = _at(target, _unused_port())

        for _ in range(2):
            with pytest.raises(DeviceUnreachableError):
                await client.poll(dead)

    @pytest.mark.asyncio
    async def test_unencodable_host_is_unreachable(self) -> None:
        """A host label over 63 characters cannot be resolved and is unreachable."""
        target = InverterTarget(host="a" * 64 + ".lan", logger_serial=LOGGER_SERIAL)

        with pytest.raises(DeviceUnreachableError, match="cannot resolve"):
            await DeviceClient(timeout_s=1).poll(target)

    @pytest.mark.asyncio
    async def test_connect_timeout_is_unreachable(
        self, target: InverterTarget, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A connect that does not complete in time raises DeviceUnreachableError."""

        async def never_connects(*args: object, **kwargs: object) -> None:
            await asyncio.sleep(10)

        monkeypatch.setattr("grabber.src.client.asyncio.open_connection", never_connects)
        with pytest.raises(DeviceUnreachableError, match="timed out"):
            await DeviceClient(timeout_s=0.1).poll(target)


# ---------------------------------------------------------------------------
# Protocol failures
# ---------------------------------------------------------------------------


class TestPollProtocolError:
    """Unusable responses surface as DeviceProtocolError."""

    @pytest.mark.asyncio
    async def test_eof_without_data(self, target: InverterTarget) -> None:
        """A device that hangs up without answering is an empty frame."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await stick.read_request(reader)
            writer.close()

        async with _serve(handler) as port:
            with pytest.raises(DeviceProtocolError) as exc_info:
                await DeviceClient(timeout_s=2).poll(_at(target, port))

        assert isinstance(exc_info.value.cause, EmptyFrameError)

    @pytest.mark.asyncio
    async def test_garbage(self, target: InverterTarget) -> None:
        """A non-V5 answer is rejected as malformed without waiting for the deadline."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await stick.read_request(reader)
            writer.write(b"HTTP/1.1 400 Bad Request\r\n\r\n")
            await writer.drain()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            with pytest.raises(DeviceProtocolError) as exc_info:
                await DeviceClient(timeout_s=5).poll(_at(target, port))
            await asyncio.wait_for(stick.client_closed.wait(), timeout=2)

        assert isinstance(exc_info.value.cause, MalformedFrameError)

    @pytest.mark.asyncio
    async def test_stale_sequence(self, target: InverterTarget) -> None:
        """A response to an earlier request is rejected."""
        stick = FakeStick()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            seq = await stick.read_request(reader)
            writer.write(build_response(sequence=(seq + 1) & 0xFF))
            await writer.drain()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            with pytest.raises(DeviceProtocolError, match="sequence"):
                await DeviceClient(timeout_s=2).poll(_at(target, port))


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestClientLifecycle:
    """Construction checks and cleanup on cancellation."""

    def test_timeout_must_be_positive(self) -> None:
        """A zero or negative timeout is rejected."""
        with pytest.raises(ValueError, match="timeout_s"):
            DeviceClient(timeout_s=0)

    def test_timeout_exposed(self) -> None:
        """The configured timeout is readable."""
        assert DeviceClient(timeout_s=3.5).timeout_s == 3.5

    @pytest.mark.asyncio
    async def test_cancel_closes_connection(self, target: InverterTarget) -> None:
        """Cancelling an in-flight poll closes the device connection."""
        stick = FakeStick()
        connected = asyncio.Event()

        async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await stick.read_request(reader)
            connected.set()
            await stick.wait_for_close(reader, writer)

        async with _serve(handler) as port:
            task = asyncio.create_task(DeviceClient(timeout_s=10).poll(_at(target, port)))
            await asyncio.wait_for(connected.wait(), timeout=2)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            await asyncio.wait_for(stick.client_closed.wait(), timeout=2)

        assert stick.client_closed.is_set()
