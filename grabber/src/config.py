"""
Run configuration loaded from environment variables or a JSON config file.

Uses Pydantic BaseSettings for env var loading and validation. Sources and
sinks are JSON lists, either in ``SG_SOURCES`` / ``SG_INFLUXDBS`` or under
the ``sources`` / ``influxdbs`` keys of a JSON config file (default
``/etc/solar-grabber.conf``). ``targets`` is accepted in place of
``influxdbs``. Every run re-reads the configuration, so
edits take effect on the next scheduled run without restarting anything.

Example config file::

    {
      "sources": [
        {"host": "192.168.1.60", "logger_serial": 2712345678,
         "device_name": "garage", "device_location": "roof"}
      ],
      "influxdbs": [
        {"url": "http://influx:8086", "org": "home", "bucket": "solar",
         "token": "..."}
      ]
    }

CHANGELOG:
- 2026-10-19: Share log level name resolution with the entrypoint
- 2026-10-19: Accept "targets" as the sink list key
- 2026-10-19: Validate sink source filters against configured devices
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from grabber.src.errors import ConfigError
from grabber.src.models import InverterTarget, Route, SinkTarget

DEFAULT_CONFIG_PATH = Path("/etc/solar-grabber.conf")

SOURCES_ENV = "SG_SOURCES"
SINKS_ENV = "SG_INFLUXDBS"


def resolve_log_level(level: str) -> int:
    """Map a level name in any case to its number.

    Raises:
        ValueError: *level* is not a standard logging level name.
    """
    try:
        return logging.getLevelNamesMapping()[level.upper()]
    except KeyError:
        raise ValueError(f"unknown log level '{level}'") from None


class GrabberSettings(BaseSettings):
    """Validated configuration for one run.

    Attributes:
        sources: Inverters to poll (``SG_SOURCES``). At least one.
        influxdbs: Sinks to write to (``SG_INFLUXDBS``). At least one.
        poll_timeout_s: Device connect and exchange timeout in seconds.
        poll_retries: Extra poll attempts on unreachable/timeout (0-5).
        retry_delay_s: Delay before the first poll retry in seconds.
        write_timeout_s: Default HTTP timeout for sink writes in seconds.
        concurrent: Poll inverters concurrently instead of in order.
        status_file: Optional path of a JSON run-status file.
        log_level: Root log level name.
    """

    sources: list[InverterTarget]
    influxdbs: list[SinkTarget]
    poll_timeout_s: float = 10.0
    poll_retries: int = 1
    retry_delay_s: float = 1.0
    write_timeout_s: float = 10.0
    concurrent: bool = True
    status_file: str | None = None
    log_level: str = "INFO"

    @field_validator("sources")
    @classmethod
    def sources_must_not_be_empty(cls, v: list[InverterTarget]) -> list[InverterTarget]:
        """At least one inverter must be configured."""
        if not v:
            raise ValueError("No sources given, try 'sources' (SG_SOURCES)")
        return v

    @field_validator("influxdbs")
    @classmethod
    def influxdbs_must_not_be_empty(cls, v: list[SinkTarget]) -> list[SinkTarget]:
        """At least one sink must be configured."""
        if not v:
            raise ValueError("No publishers given, try 'influxdbs' (SG_INFLUXDBS)")
        return v

    @field_validator("poll_timeout_s", "write_timeout_s")
    @classmethod
    def timeouts_must_be_positive(cls, v: float) -> float:
        """Timeouts bound the whole run and must be positive."""
        if v <= 0:
            raise ValueError("timeouts must be > 0")
        return v

    @field_validator("poll_retries")
    @classmethod
    def poll_retries_must_be_small(cls, v: int) -> int:
        """Keep the worst-case run time bounded."""
        if v < 0 or v > 5:
            raise ValueError("POLL_RETRIES must be between 0 and 5")
        return v

    @field_validator("retry_delay_s")
    @classmethod
    def retry_delay_must_be_non_negative(cls, v: float) -> float:
        """Validate retry delay is non-negative."""
        if v < 0:
            raise ValueError("RETRY_DELAY_S must be >= 0")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Accept standard logging level names in any case."""
        resolve_log_level(v)
        return v.upper()

    @model_validator(mode="before")
    @classmethod
    def _accept_targets_key(cls, data: Any) -> Any:
        """Read the sink list from ``targets`` as older config files name it."""
        if isinstance(data, dict) and "targets" in data:
            if "influxdbs" in data:
                raise ValueError("give sinks under 'influxdbs' or 'targets', not both")
            data = {**data, "influxdbs": data["targets"]}
            del data["targets"]
        return data

    @model_validator(mode="after")
    def _check_device_ids(self) -> GrabberSettings:
        """Device ids must be unique and every sink filter must name one."""
        ids = [s.device_id for s in self.sources]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate device ids: {', '.join(duplicates)}")
        known = set(ids)
        for sink in self.influxdbs:
            unknown = sorted(set(sink.sources) - known)
            if unknown:
                raise ValueError(f"sink {sink.name} lists unknown sources: {', '.join(unknown)}")
        return self

    def routes(self) -> list[Route]:
        """Pair every inverter with the sinks that accept its points."""
        return [
            Route(
                inverter=inverter,
                sinks=tuple(s for s in self.influxdbs if s.accepts(inverter.device_id)),
            )
            for inverter in self.sources
        ]

    model_config = {"env_prefix": "SG_", "env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


def load_settings(path: str | Path | None = None) -> GrabberSettings:
    """Load settings from the environment or a JSON config file.

    Without *path*, ``SG_SOURCES`` and ``SG_INFLUXDBS`` are used when both
    are set; setting only one of them is an error. Otherwise the JSON file
    at *path* (or :data:`DEFAULT_CONFIG_PATH`) is read. Other ``SG_*``
    variables still fill any setting the file leaves out.

    Raises:
        ConfigError: The file is missing, unreadable or not a JSON object,
            or only one of the two list variables is set.
        pydantic.ValidationError: The values fail validation.
    """
    if path is None:
        has_sources = SOURCES_ENV in os.environ
        has_sinks = SINKS_ENV in os.environ
        if has_sources and has_sinks:
            return GrabberSettings()
        if has_sources or has_sinks:
            raise ConfigError(f"Supply both {SOURCES_ENV} and {SINKS_ENV} or neither")
        path = DEFAULT_CONFIG_PATH

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to load config file: {path}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return GrabberSettings(**data)
