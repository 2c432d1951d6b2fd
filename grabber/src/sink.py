"""
HTTP(S) writer that delivers measurements to one InfluxDB sink.

Serializes the given measurements into a single newline-delimited
line-protocol body and POSTs it to the sink's write endpoint:

- ``influxdb2``: ``{url}/api/v2/write?org=..&bucket=..&precision=s`` with an
  ``Authorization: Token ..`` header.
- ``influxdb1``: ``{url}/write?db=..&precision=s`` with optional ``u``/``p``
  query parameters.

One attempt per call. A 2xx response yields an :class:`Ack`; any other
status raises :class:`~grabber.src.errors.SinkRejectedError`. Transport
failures (DNS, refused, TLS, timeout) and requests httpx cannot build
(invalid URL, non-ASCII header values) raise
:class:`~grabber.src.errors.SinkUnreachableError`.

CHANGELOG:
- 2026-10-19: Map unbuildable requests to SinkUnreachableError
- 2026-10-19: Add InfluxDB 1.x write endpoint
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import httpx

from grabber.src.errors import SinkRejectedError, SinkUnreachableError
from grabber.src.line_protocol import to_body
from grabber.src.models import Measurement, SinkApi, SinkTarget

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: float = 10.0

MAX_ERROR_BODY_CHARS: int = 256
"""Response bodies attached to rejections are truncated to this length."""


@dataclass(frozen=True, slots=True)
class Ack:
    """Acknowledgement of a completed write.

    Attributes:
        sink_name: :attr:`SinkTarget.name` of the sink written to.
        points: Number of records in the request body.
        status_code: HTTP status of the response, or None when there was
            nothing to send.
    """

    sink_name: str
    points: int
    status_code: int | None


class SinkWriter:
    """Single-attempt line-protocol writer.

    Args:
        timeout_s: Default HTTP timeout in seconds; a sink's own
            ``timeout_s`` takes precedence.
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``
            in tests.

    Usage::

        writer = SinkWriter(timeout_s=5)
        ack = await writer.write(sink, [measurement])
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._transport = transport

    async def write(self, sink: SinkTarget, points: Sequence[Measurement]) -> Ack:
        """POST *points* to *sink* as one batch.

        Args:
            sink: Destination database.
            points: Measurements to write. May hold a single point.

        Returns:
            An :class:`Ack` on any 2xx response, or immediately when
            *points* is empty.

        Raises:
            SinkUnreachableError: No response could be obtained.
            SinkRejectedError: The sink answered with a non-2xx status.
        """
        if not points:
            logger.debug("No points for sink %s, skipping write.", sink.name)
            return Ack(sink_name=sink.name, points=0, status_code=None)

        url, params, headers = _request_parts(sink)
        body = to_body(points, name=sink.measurement)
        timeout = sink.timeout_s if sink.timeout_s is not None else self._timeout_s

        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                transport=self._transport,
                verify=True,
            ) as client:
                response = await client.post(
                    url,
                    params=params,
                    headers=headers,
                    content=body.encode("utf-8"),
                )
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeError) as exc:
            # UnicodeError: header values (tokens, credentials) must be ASCII.
            raise SinkUnreachableError(
                f"write to {sink.name} failed ({type(exc).__name__}): {exc}",
                sink=sink,
            ) from exc

        if not response.is_success:
            raise SinkRejectedError(
                sink=sink,
                status_code=response.status_code,
                body=response.text[:MAX_ERROR_BODY_CHARS],
            )

        logger.info("Wrote %d point(s) to %s (HTTP %d).", len(points), sink.name, response.status_code)
        return Ack(sink_name=sink.name, points=len(points), status_code=response.status_code)


def _request_parts(sink: SinkTarget) -> tuple[str, dict[str, str], dict[str, str]]:
    """Return the write URL, query parameters and headers for *sink*."""
    headers = {"Content-Type": "text/plain; charset=utf-8"}
    if sink.api is SinkApi.INFLUXDB1:
        params = {"db": sink.database, "precision": "s"}
        if sink.username:
            params["u"] = sink.username
            params["p"] = sink.password
        if sink.token:
            headers["Authorization"] = f"Token {sink.token}"
        return f"{sink.url}/write", params, headers

    params = {"org": sink.org, "bucket": sink.bucket, "precision": "s"}
    headers["Authorization"] = f"Token {sink.token}"
    return f"{sink.url}/api/v2/write", params, headers
