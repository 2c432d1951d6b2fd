"""
Run orchestrator: poll every inverter and fan each measurement out to its sinks.

Each route (one inverter plus its sinks) is an independent pipeline::

    poll (with retry) --+--> write sink 1
                        +--> write sink 2 ...

Routes run concurrently via asyncio.gather, or one after another when
``concurrent=False``. Pipelines share no mutable state, so the choice only
affects total run time. Every failure becomes an outcome record; nothing
raised by the client or writer escapes :meth:`Orchestrator.run`. Errors
outside the ClientError/WriteError taxonomy are logged with a traceback and
wrapped in the base class of their layer.

This is the only place that decides whether to retry: unreachable and
timed-out polls are retried with exponential backoff, protocol errors are
not (a bad frame will not get better), and sink writes are never retried
within a run (the next scheduled run is the retry).

CHANGELOG:
- 2026-10-19: Turn unexpected client and writer errors into outcomes
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from grabber.src.errors import (
    ClientError,
    DeviceTimeoutError,
    DeviceUnreachableError,
    WriteError,
)
from grabber.src.outcomes import Delivered, DeliveryOutcome, PollFailed, WriteFailed

if TYPE_CHECKING:
    from grabber.src.client import DeviceClient
    from grabber.src.models import InverterTarget, Measurement, Route, SinkTarget
    from grabber.src.sink import SinkWriter

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_RETRIES: int = 1
"""Extra poll attempts after a retryable failure."""

DEFAULT_RETRY_DELAY_S: float = 1.0
"""Delay before the first retry; doubles for every further retry."""

MAX_RETRY_DELAY_S: float = 30.0
"""Cap for the exponential retry delay."""

_RETRYABLE = (DeviceUnreachableError, DeviceTimeoutError)


class Orchestrator:
    """Drives one poll-and-deliver pass over a set of routes.

    Args:
        client: Device client used for polling.
        writer: Sink writer used for delivery.
        retries: Extra poll attempts on unreachable/timeout failures.
        retry_delay_s: Delay before the first retry in seconds.
        concurrent: Run routes concurrently (True) or sequentially.
    """

    def __init__(
        self,
        *,
        client: DeviceClient,
        writer: SinkWriter,
        retries: int = DEFAULT_RETRIES,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        concurrent: bool = True,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self._client = client
        self._writer = writer
        self._retries = retries
        self._retry_delay_s = retry_delay_s
        self._concurrent = concurrent

    async def run(self, routes: Sequence[Route]) -> list[DeliveryOutcome]:
        """Poll every route's inverter and deliver to its sinks.

        Returns:
            One outcome per attempted (inverter, sink) pair and one
            PollFailed per inverter that could not be polled. Order is
            unspecified.
        """
        logger.info("Starting run over %d route(s) (concurrent=%s)", len(routes), self._concurrent)
        if self._concurrent:
            per_route = await asyncio.gather(*(self._run_route(route) for route in routes))
        else:
            per_route = [await self._run_route(route) for route in routes]
        return [outcome for outcomes in per_route for outcome in outcomes]

    async def _run_route(self, route: Route) -> list[DeliveryOutcome]:
        inverter = route.inverter
        if not route.sinks:
            logger.warning("No sinks configured for device=%s, skipping poll", inverter.device_id)
            return []

        result = await self._poll(inverter)
        if isinstance(result, PollFailed):
            return [result]

        return list(
            await asyncio.gather(*(self._deliver(inverter, sink, result) for sink in route.sinks))
        )

    async def _poll(self, inverter: InverterTarget) -> Measurement | PollFailed:
        """Poll *inverter*, retrying transient failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                measurement = await self._client.poll(inverter)
            except _RETRYABLE as exc:
                if attempt > self._retries:
                    logger.warning(
                        "Poll failed: device=%s after %d attempt(s): %s",
                        inverter.device_id,
                        attempt,
                        exc,
                        extra={"device": inverter.device_id},
                    )
                    return PollFailed(inverter=inverter, error=exc, attempts=attempt)
                delay = min(self._retry_delay_s * (2 ** (attempt - 1)), MAX_RETRY_DELAY_S)
                logger.warning(
                    "Poll failed: device=%s (%s), retrying in %.1fs (attempt %d/%d)",
                    inverter.device_id,
                    exc,
                    delay,
                    attempt,
                    self._retries + 1,
                )
                await asyncio.sleep(delay)
            except ClientError as exc:
                logger.warning(
                    "Poll failed: device=%s, not retrying: %s",
                    inverter.device_id,
                    exc,
                    extra={"device": inverter.device_id},
                )
                return PollFailed(inverter=inverter, error=exc, attempts=attempt)
            except Exception as exc:
                logger.error(
                    "Poll failed: device=%s, unexpected error",
                    inverter.device_id,
                    exc_info=True,
                    extra={"device": inverter.device_id},
                )
                error = ClientError(f"unexpected error: {exc!r}", target=inverter)
                return PollFailed(inverter=inverter, error=error, attempts=attempt)
            else:
                logger.info(
                    "Poll success: device=%s power=%.1fW today=%dWh total=%dWh",
                    inverter.device_id,
                    measurement.power_watts,
                    measurement.energy_today_wh,
                    measurement.energy_total_wh,
                    extra={"device": inverter.device_id},
                )
                return measurement

    async def _deliver(
        self,
        inverter: InverterTarget,
        sink: SinkTarget,
        measurement: Measurement,
    ) -> DeliveryOutcome:
        try:
            ack = await self._writer.write(sink, [measurement])
        except WriteError as exc:
            logger.warning(
                "Write failed: device=%s sink=%s: %s",
                inverter.device_id,
                sink.name,
                exc,
                extra={"device": inverter.device_id, "sink": sink.name},
            )
            return WriteFailed(inverter=inverter, sink=sink, error=exc)
        except Exception as exc:
            logger.error(
                "Write failed: device=%s sink=%s, unexpected error",
                inverter.device_id,
                sink.name,
                exc_info=True,
                extra={"device": inverter.device_id, "sink": sink.name},
            )
            return WriteFailed(
                inverter=inverter,
                sink=sink,
                error=WriteError(f"unexpected error: {exc!r}", sink=sink),
            )
        return Delivered(inverter=inverter, sink=sink, ack=ack)
