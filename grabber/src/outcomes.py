"""
Delivery outcomes of one run, the human-readable report and the exit status.

One outcome exists per (inverter, sink) pair that was attempted, plus one
PollFailed per inverter whose poll failed after retries. Outcomes are
plain data: nothing in the pipeline raises past the orchestrator.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from grabber.src.errors import ClientError, WriteError
from grabber.src.models import InverterTarget, SinkTarget
from grabber.src.sink import Ack

EXIT_OK: int = 0
EXIT_DELIVERY_FAILED: int = 1
EXIT_CONFIG_ERROR: int = 2
EXIT_INTERRUPTED: int = 130


@dataclass(frozen=True, slots=True)
class Delivered:
    """The measurement of *inverter* was written to *sink*."""

    inverter: InverterTarget
    sink: SinkTarget
    ack: Ack

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class PollFailed:
    """*inverter* could not be polled; none of its sinks were written.

    Attributes:
        attempts: Number of poll attempts made before giving up.
    """

    inverter: InverterTarget
    error: ClientError
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class WriteFailed:
    """The measurement of *inverter* could not be written to *sink*."""

    inverter: InverterTarget
    sink: SinkTarget
    error: WriteError

    @property
    def ok(self) -> bool:
        return False


DeliveryOutcome = Delivered | PollFailed | WriteFailed


def _sort_key(outcome: DeliveryOutcome) -> tuple[str, str]:
    sink_name = "" if isinstance(outcome, PollFailed) else outcome.sink.name
    return (outcome.inverter.device_id, sink_name)


def describe(outcome: DeliveryOutcome) -> str:
    """Return a one-line description of *outcome*."""
    device = outcome.inverter.device_id
    if isinstance(outcome, Delivered):
        return f"OK    {device} -> {outcome.sink.name} ({outcome.ack.points} point(s))"
    if isinstance(outcome, PollFailed):
        return (
            f"FAIL  {device} poll failed after {outcome.attempts} attempt(s): "
            f"{type(outcome.error).__name__}: {outcome.error}"
        )
    return f"FAIL  {device} -> {outcome.sink.name}: {type(outcome.error).__name__}: {outcome.error}"


def format_summary(outcomes: Iterable[DeliveryOutcome]) -> str:
    """Render every outcome, sorted by device then sink, plus a totals line."""
    ordered = sorted(outcomes, key=_sort_key)
    failed = sum(1 for o in ordered if not o.ok)
    lines = [describe(o) for o in ordered]
    lines.append(f"{len(ordered) - failed} delivered, {failed} failed")
    return "\n".join(lines)


def exit_status(outcomes: Sequence[DeliveryOutcome]) -> int:
    """Return 0 when every outcome succeeded, 1 otherwise."""
    if all(o.ok for o in outcomes):
        return EXIT_OK
    return EXIT_DELIVERY_FAILED
