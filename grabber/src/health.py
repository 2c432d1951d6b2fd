"""
Run status file writer.

Writes a JSON status file after every run with:
- last_run_ts: ISO timestamp of the run that just finished.
- delivered: Number of successful (inverter, sink) deliveries.
- failed: Number of failed outcomes (poll or write).
- failures: One line per failed outcome.

The file is overwritten on every run, giving external monitoring a simple
liveness and health signal next to the process exit status.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from grabber.src.outcomes import DeliveryOutcome, describe


class StatusWriter:
    """Writes the result of the latest run to a JSON file.

    Args:
        path: Filesystem path for the status JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def record_run(self, outcomes: Sequence[DeliveryOutcome]) -> None:
        """Summarize *outcomes* and write the status file."""
        failures = [describe(o) for o in outcomes if not o.ok]
        data = {
            "last_run_ts": datetime.now(tz=UTC).isoformat(),
            "delivered": len(outcomes) - len(failures),
            "failed": len(failures),
            "failures": failures,
        }
        self.path.write_text(json.dumps(data))
