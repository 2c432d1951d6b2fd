"""
Entrypoint for one poll-and-deliver pass.

Loads the configuration, polls every configured inverter, writes each
measurement to its sinks, prints a human-readable summary to stdout and
exits. Meant to be started once per sampling interval by a systemd timer
or cron.

Exit status:
- 0: every (inverter, sink) pair succeeded.
- 1: at least one poll or write failed.
- 2: the configuration could not be loaded.
- 130: interrupted by SIGTERM/SIGINT.

On SIGTERM/SIGINT the run task is cancelled; in-flight device connections
and HTTP clients are closed by their own cleanup before the process exits.

Structured JSON logging is used for all events on stderr.

CHANGELOG:
- 2026-10-19: Module-level JSON formatter with extra fields; validate log level names
- 2026-10-19: Write optional run status file after each run
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from grabber.src.client import DeviceClient
from grabber.src.config import load_settings, resolve_log_level
from grabber.src.errors import ConfigError
from grabber.src.health import StatusWriter
from grabber.src.orchestrator import Orchestrator
from grabber.src.outcomes import (
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    DeliveryOutcome,
    exit_status,
    format_summary,
)
from grabber.src.sink import SinkWriter

if TYPE_CHECKING:
    from grabber.src.config import GrabberSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: ``ts`` (UTC ISO 8601), ``level``, ``logger``, ``msg``, any fields
    passed via ``extra=``, and ``exception`` when a traceback is attached.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_"):
                entry[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on a stderr handler of the root logger.

    Args:
        level: Root log level name, case-insensitive.

    Raises:
        ValueError: *level* is not a standard logging level name. Nothing
            is changed in that case.
    """
    numeric = resolve_log_level(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonLogFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric)


def _fingerprint(secret: str | None) -> str:
    """Identify a credential in logs without revealing it."""
    if not secret:
        return "unset"
    return f"sha256:{hashlib.sha256(secret.encode('utf-8')).hexdigest()[:8]} ({len(secret)} chars)"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: GrabberSettings) -> None:
    """Log a config summary at startup, excluding secrets.

    Sink tokens and passwords are replaced by a short fingerprint so that
    operators can tell credentials apart without exposing them.
    """
    logger.info(
        "Grabber starting with config: sources=%d, sinks=%d, "
        "poll_timeout_s=%s, poll_retries=%s, retry_delay_s=%s, "
        "write_timeout_s=%s, concurrent=%s, status_file=%s",
        len(settings.sources),
        len(settings.influxdbs),
        settings.poll_timeout_s,
        settings.poll_retries,
        settings.retry_delay_s,
        settings.write_timeout_s,
        settings.concurrent,
        settings.status_file,
    )
    for source in settings.sources:
        logger.info(
            "Source: device_id=%s model=%s host=%s port=%s logger_serial=%s slave_id=%s",
            source.device_id,
            source.model,
            source.host,
            source.port,
            source.logger_serial,
            source.slave_id,
        )
    for sink in settings.influxdbs:
        logger.info(
            "Sink: %s api=%s measurement=%s sources=%s token=%s password=%s",
            sink.name,
            sink.api,
            sink.measurement,
            list(sink.sources) or "all",
            _fingerprint(sink.token),
            _fingerprint(sink.password),
        )


# ---------------------------------------------------------------------------
# Single run
# ---------------------------------------------------------------------------


async def run_once(
    settings: GrabberSettings,
    *,
    client: DeviceClient | None = None,
    writer: SinkWriter | None = None,
) -> list[DeliveryOutcome]:
    """Build the pipeline from *settings* and execute one pass.

    Args:
        settings: Validated configuration.
        client: Device client override (tests).
        writer: Sink writer override (tests).
    """
    orchestrator = Orchestrator(
        client=client or DeviceClient(timeout_s=settings.poll_timeout_s),
        writer=writer or SinkWriter(timeout_s=settings.write_timeout_s),
        retries=settings.poll_retries,
        retry_delay_s=settings.retry_delay_s,
        concurrent=settings.concurrent,
    )
    return await orchestrator.run(settings.routes())


def _record_status(path: str, outcomes: Sequence[DeliveryOutcome]) -> None:
    try:
        StatusWriter(path).record_run(outcomes)
    except OSError:
        logger.warning("Failed to write status file %s", path, exc_info=True)


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="solar-grabber",
        description="Poll solar microinverters once and write their telemetry to InfluxDB.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON config file (default: SG_SOURCES/SG_INFLUXDBS, else /etc/solar-grabber.conf)",
    )
    parser.add_argument("--sequential", action="store_true", help="Poll inverters one at a time")
    parser.add_argument("--status-file", default=None, help="Write a JSON run status file here")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override the configured log level",
    )
    return parser


async def async_main(argv: Sequence[str] | None = None) -> int:
    """Async entrypoint: load config, run once, report.

    Returns:
        The process exit status.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or "INFO")

    try:
        settings = load_settings(args.config)
    except (ConfigError, ValidationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    overrides: dict[str, object] = {}
    if args.sequential:
        overrides["concurrent"] = False
    if args.status_file:
        overrides["status_file"] = args.status_file
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = settings.model_copy(update=overrides)
    logging.getLogger().setLevel(resolve_log_level(settings.log_level))
    log_config_summary(settings)

    task = asyncio.create_task(run_once(settings))
    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, lambda: _handle_signal(task))
    try:
        outcomes = await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        logger.warning("Run interrupted before completion")
        return EXIT_INTERRUPTED
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    if not outcomes:
        logger.warning("No deliveries were attempted; check that every source has a sink")
    sys.stdout.write(format_summary(outcomes) + "\n")
    if settings.status_file:
        _record_status(settings.status_file, outcomes)
    return exit_status(outcomes)


def _handle_signal(task: asyncio.Task[list[DeliveryOutcome]]) -> None:
    """Handle SIGTERM/SIGINT by cancelling the run task.

    Args:
        task: The task executing the current run.
    """
    logger.info("Received shutdown signal, cancelling run")
    task.cancel()


def main() -> None:
    """Synchronous entrypoint for the grabber."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
