"""
Pydantic models for poll targets, sink targets and decoded measurements.

InverterTarget and SinkTarget are produced by configuration and never
mutated afterwards. Measurement is produced by the codec once per
successful decode and consumed by the sink writers.

CHANGELOG:
- 2026-10-19: Accept legacy ``influxUrl`` key for sink URLs
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class DeviceModel(StrEnum):
    """Supported device protocol variants."""

    SUN600 = "sun600"


class SinkApi(StrEnum):
    """InfluxDB write API flavours."""

    INFLUXDB2 = "influxdb2"
    INFLUXDB1 = "influxdb1"


class InverterTarget(BaseModel):
    """One physical microinverter reachable through its logger stick.

    Attributes:
        model: Protocol variant used to talk to the device.
        host: Logger stick IP address or hostname.
        port: Logger stick TCP port (default 8899).
        logger_serial: Serial number printed on the logger stick; used to
            address request frames.
        slave_id: Modbus unit id of the inverter behind the stick.
        device_id: Identifier used to tag emitted points. Defaults to the
            logger serial when not set.
        device_name: Optional human-readable name, written as a tag.
        device_location: Optional location, written as a tag.
    """

    model_config = ConfigDict(frozen=True)

    model: DeviceModel = DeviceModel.SUN600
    host: str
    port: int = 8899
    logger_serial: int = Field(ge=1, le=0xFFFFFFFF)
    slave_id: int = 1
    device_id: str = ""
    device_name: str | None = None
    device_location: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_device_id(cls, data: Any) -> Any:
        """Default device_id to the logger serial when not explicitly set."""
        if isinstance(data, dict) and not data.get("device_id") and data.get("logger_serial"):
            data = {**data, "device_id": str(data["logger_serial"])}
        return data

    @field_validator("port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate TCP port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("slave_id")
    @classmethod
    def slave_id_must_be_valid(cls, v: int) -> int:
        """Validate Modbus slave ID is in valid range (1-247)."""
        if v < 1 or v > 247:
            raise ValueError("slave_id must be between 1 and 247")
        return v

    def labels(self) -> dict[str, str]:
        """Return the optional descriptive tags configured for this device."""
        labels: dict[str, str] = {}
        if self.device_name:
            labels["deviceName"] = self.device_name
        if self.device_location:
            labels["deviceLocation"] = self.device_location
        return labels


class SinkTarget(BaseModel):
    """One InfluxDB destination.

    Attributes:
        url: Base URL of the InfluxDB server.
        api: Write API flavour (``influxdb2`` or ``influxdb1``).
        token: API token for ``influxdb2``.
        org: Organisation for ``influxdb2``.
        bucket: Bucket for ``influxdb2``.
        database: Database for ``influxdb1``.
        username: Optional ``influxdb1`` user.
        password: Optional ``influxdb1`` password.
        measurement: Line-protocol measurement name.
        sources: Device ids this sink receives from. Empty means all.
        timeout_s: Per-sink HTTP timeout override in seconds.
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(validation_alias=AliasChoices("url", "influxUrl"))
    api: SinkApi = SinkApi.INFLUXDB2
    token: str = ""
    org: str = ""
    bucket: str = ""
    database: str = ""
    username: str = ""
    password: str = ""
    measurement: str = "solar"
    sources: tuple[str, ...] = ()
    timeout_s: float | None = None

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        """Validate the sink URL uses http:// or https://."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(f"sink url must start with http:// or https:// (got: '{v[:20]}')")
        return v.rstrip("/")

    @field_validator("measurement")
    @classmethod
    def measurement_must_not_be_empty(cls, v: str) -> str:
        """Reject an empty measurement name."""
        if not v:
            raise ValueError("measurement must not be empty")
        return v

    @model_validator(mode="after")
    def _require_api_fields(self) -> SinkTarget:
        """Check the fields the selected write API needs are present."""
        if self.api is SinkApi.INFLUXDB2 and not (self.bucket and self.org):
            raise ValueError("influxdb2 sinks require 'bucket' and 'org'")
        if self.api is SinkApi.INFLUXDB1 and not self.database:
            raise ValueError("influxdb1 sinks require 'database'")
        return self

    @property
    def name(self) -> str:
        """Short label used in logs and reports."""
        target = self.bucket if self.api is SinkApi.INFLUXDB2 else self.database
        return f"{self.url} {target}"

    def accepts(self, device_id: str) -> bool:
        """Return True if points from *device_id* should go to this sink."""
        return not self.sources or device_id in self.sources


class Measurement(BaseModel):
    """A decoded telemetry snapshot from one successful poll.

    The timestamp is injected by the device client rather than read from
    the device.

    Attributes:
        source: device_id of the InverterTarget that produced it.
        ts: UTC capture time.
        power_watts: Instantaneous AC output power in watts.
        energy_today_wh: Energy generated since local midnight in Wh.
        energy_total_wh: Lifetime energy generated in Wh.
        labels: Extra descriptive tags copied from the target.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    ts: datetime
    power_watts: float = Field(ge=0)
    energy_today_wh: int = Field(ge=0)
    energy_total_wh: int = Field(ge=0)
    labels: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Route:
    """An inverter together with every sink that receives its points."""

    inverter: InverterTarget
    sinks: tuple[SinkTarget, ...]
