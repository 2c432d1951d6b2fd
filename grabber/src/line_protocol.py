"""
InfluxDB line-protocol serializer for measurements.

Each Measurement becomes one ``influxdb_client.Point`` and is rendered with
second precision::

    <measurement>,device=<id>[,<label>=<value>...] power_w=<float>,energy_today_wh=<int>i,energy_total_wh=<int>i <epoch_s>

Tags (the ``device`` tag plus the measurement labels) are written in key
order and tags with empty values are dropped; both are done by the Point
renderer, as is escaping. Whole-number power is rendered without a decimal
point (``power_w=600``); InfluxDB still stores it as a float because it has
no ``i`` suffix.

The HTTP side stays with :mod:`grabber.src.sink`: only the line-protocol
rendering of the client library is used, not its write API.

CHANGELOG:
- 2026-10-19: Render records with influxdb_client.Point
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from collections.abc import Iterable

from influxdb_client import Point, WritePrecision

from grabber.src.models import Measurement


def to_point(measurement: Measurement, *, name: str) -> Point:
    """Build the InfluxDB point for one measurement.

    Raises:
        ValueError: Power is NaN or infinite. The Point renderer would
            silently drop such a field instead.
    """
    if not math.isfinite(measurement.power_watts):
        raise ValueError(f"line protocol cannot carry non-finite value {measurement.power_watts}")

    point = Point(name).tag("device", measurement.source)
    for key, value in measurement.labels.items():
        point.tag(key, value)
    return (
        point.field("power_w", float(measurement.power_watts))
        .field("energy_today_wh", int(measurement.energy_today_wh))
        .field("energy_total_wh", int(measurement.energy_total_wh))
        .time(measurement.ts, WritePrecision.S)
    )


def to_line(measurement: Measurement, *, name: str) -> str:
    """Serialize one measurement as a line-protocol record.

    Args:
        measurement: The point to serialize.
        name: Line-protocol measurement name.

    Returns:
        One record without a trailing newline, timestamped in seconds.
    """
    return to_point(measurement, name=name).to_line_protocol()


def to_body(measurements: Iterable[Measurement], *, name: str) -> str:
    """Serialize a batch of measurements as a newline-delimited request body."""
    return "\n".join(to_line(m, name=name) for m in measurements)
