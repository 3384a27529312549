"""
Pydantic models for meter readings, queued entries and API exchanges.

Reading is a single decoded snapshot from the power meter in engineering
units. QueueEntry is a Reading persisted in the local store-and-forward
queue. Credentials, RegistrationMetadata and RegistrationResult describe the
registration handshake with the ingestion API.

CHANGELOG:
- 2026-10-14: Add ServiceStatus snapshot model (STORY-109)
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Reading(BaseModel):
    """A single decoded measurement from the power meter.

    The timestamp is injected by the caller at decode time, not read from
    the device.

    Attributes:
        timestamp: When the sample was taken (timezone-aware).
        voltage: RMS voltage in volts.
        current: RMS current in amperes.
        power: Active power in watts.
        energy: Cumulative active energy in watt-hours.
        frequency: Line frequency in hertz.
        power_factor: Power factor between 0 and 1.
        alarm: True when the meter's power alarm is raised.
    """

    timestamp: datetime
    voltage: float
    current: float
    power: float
    energy: float
    frequency: float
    power_factor: float
    alarm: bool = False

    def to_api(self) -> dict[str, Any]:
        """Return the JSON-ready body the ingestion API expects."""
        return self.model_dump(mode="json", exclude={"alarm"})

    def __str__(self) -> str:
        return (
            f"Voltage: {self.voltage:.1f}V, Current: {self.current:.3f}A, "
            f"Power: {self.power:.1f}W, Energy: {self.energy:.0f}Wh, "
            f"Frequency: {self.frequency:.1f}Hz, PowerFactor: {self.power_factor:.2f}, "
            f"Alarm: {self.alarm}"
        )


class QueueEntry(BaseModel):
    """A reading waiting in (or already forwarded from) the local queue."""

    id: int
    collector_id: str
    timestamp: datetime
    voltage: float
    current: float
    power: float
    energy: float
    frequency: float
    power_factor: float
    uploaded: bool = False
    created_at: datetime
    updated_at: datetime

    def to_reading(self) -> Reading:
        """Rebuild the Reading this entry was stored from.

        The alarm flag is not persisted, so it comes back as False.
        """
        return Reading(
            timestamp=self.timestamp,
            voltage=self.voltage,
            current=self.current,
            power=self.power,
            energy=self.energy,
            frequency=self.frequency,
            power_factor=self.power_factor,
        )


class Credentials(BaseModel):
    """Collector identity and bearer token issued at registration."""

    model_config = ConfigDict(frozen=True)

    collector_id: str
    token: str


class RegistrationMetadata(BaseModel):
    """Descriptive fields sent along with a registration code."""

    collector_id: str
    name: str
    description: str = ""
    location: str = ""
    version: str


class RegistrationConfig(BaseModel):
    """Server-pushed overrides returned by a successful registration.

    Zero or missing values mean "keep the local setting".
    """

    collector_id: str = ""
    sample_interval: int = 0
    upload_interval: int = 0
    max_cache_size: int = 0
    auto_upload: bool = True
    compression_level: int = 0


class RegistrationResult(BaseModel):
    """Payload of a successful registration response."""

    token: str
    token_expires: str | None = None
    config: RegistrationConfig = Field(default_factory=RegistrationConfig)


class ServiceStatus(BaseModel):
    """Point-in-time view of the collector service for status reporting."""

    is_running: bool
    is_registered: bool
    is_online: bool
    last_data_time: datetime | None
    error_count: int
    cache_stats: dict[str, int] | None = None


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(tz=UTC)
