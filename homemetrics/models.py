"""Data models shared across the ingestion pipeline."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ----------------------------------------------------------------------
# Readings
# ----------------------------------------------------------------------


class Reading(BaseModel):
    """Immutable base for every persisted reading.

    A reading always carries a UTC timestamp; naive datetimes are taken
    to be UTC already.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(description="Instant of the measurement (UTC)")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)


class SensorReading(Reading):
    """One temperature/humidity sample from an X-Sense style thermometer."""

    sensor_id: str = Field(min_length=1, description="Sensor name derived from the export file name")
    temperature: float = Field(description="Temperature in degrees Celsius")
    humidity: float | None = Field(default=None, description="Relative humidity in percent")
    location: str | None = Field(default=None, description="Free-form location of the sensor")


class PoolReading(Reading):
    """Pool chemistry snapshot extracted from a report email body.

    Metrics are individually optional but at least one must be present.
    """

    email_id: str = Field(min_length=1, description="Mailbox message id the reading came from")
    temperature: float | None = Field(default=None, description="Water temperature in degrees Celsius")
    ph: float | None = Field(default=None, description="pH value")
    orp: float | None = Field(default=None, description="Oxidation-reduction potential in mV")

    @model_validator(mode="after")
    def _require_one_metric(self) -> PoolReading:
        if self.temperature is None and self.ph is None and self.orp is None:
            raise ValueError("a pool reading needs at least one metric")
        return self

    @property
    def metric_count(self) -> int:
        return sum(v is not None for v in (self.temperature, self.ph, self.orp))


# ----------------------------------------------------------------------
# Mailbox envelope
# ----------------------------------------------------------------------


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    content_type: str = "application/octet-stream"
    payload: bytes = b""


class MessageEnvelope(BaseModel):
    """Read-only view of a fetched message, owned by the mailbox client."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    subject: str = ""
    sender: str = ""
    date: datetime | None = None
    body_text: str | None = None
    body_html: str | None = None
    attachments: tuple[Attachment, ...] = ()
    labels: frozenset[str] = frozenset()


# ----------------------------------------------------------------------
# Batch reporting
# ----------------------------------------------------------------------


class OutcomeKind(str, Enum):
    PROCESSED = "processed"
    SKIPPED_NO_METRICS = "skipped_no_metrics"
    FAILED = "failed"


class MessageOutcome(BaseModel):
    """Result of pushing one message through a stream."""

    message_id: str
    kind: OutcomeKind
    reason: str | None = None
    readings: int = Field(default=0, description="Readings extracted from the message")
    saved: int = Field(default=0, description="Readings newly written to the store")
    summary: str | None = Field(default=None, description="Human readable digest of extracted values")


class BatchReport(BaseModel):
    """Counts and per-message outcomes of one stream batch.

    Always producible, even when every message failed.  ``error`` is set
    when the batch itself could not run (missing label, dead credentials).
    """

    stream: str
    dry_run: bool = False
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    found: int = 0
    outcomes: list[MessageOutcome] = Field(default_factory=list)
    error: str | None = None
    fatal: bool = Field(default=False, description="The error needs operator action (configuration, credentials)")

    def _count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind is kind)

    @property
    def processed(self) -> int:
        return self._count(OutcomeKind.PROCESSED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeKind.SKIPPED_NO_METRICS)

    @property
    def failed(self) -> int:
        return self._count(OutcomeKind.FAILED)

    @property
    def readings(self) -> int:
        return sum(o.readings for o in self.outcomes)

    @property
    def failures(self) -> list[tuple[str, str]]:
        return [
            (o.message_id, o.reason or "unknown error")
            for o in self.outcomes
            if o.kind is OutcomeKind.FAILED
        ]

    def summary(self) -> dict[str, object]:
        return {
            "stream": self.stream,
            "dry_run": self.dry_run,
            "found": self.found,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "readings": self.readings,
            "error": self.error,
            "fatal": self.fatal,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# ----------------------------------------------------------------------
# Daemon health
# ----------------------------------------------------------------------


class DaemonStatus(str, Enum):
    """Runtime status of the daemon process."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class HealthStatus(BaseModel):
    """Response model for the /health endpoint."""

    status: DaemonStatus = Field(description="Current daemon status")
    uptime_seconds: float = Field(description="Seconds since the daemon started")
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Last batch reports, session refresh state, next trigger",
    )
