"""Daemon configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars or a
``.env`` file next to the process.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .errors import InvalidScheduleError
from .scheduler import parse_schedule

LABEL_ROOT = "homemetrics"


class GmailConfig(BaseSettings):
    """Gmail REST API access through a cached OAuth2 token."""

    model_config = SettingsConfigDict(env_prefix="GMAIL_", env_file=".env", extra="ignore")

    token_path: str = Field(
        default="token.json",
        description="Authorized-user token cache, rewritten after each renewal",
    )
    user_id: str = Field(default="me", description="Gmail user id")
    timeout_seconds: float = Field(default=30.0, description="Timeout for a single API call")
    refresh_margin_minutes: int = Field(
        default=10,
        description="Renew the access token when it expires within this margin",
    )


class ImapConfig(BaseSettings):
    """Gmail IMAP access with an app password."""

    model_config = SettingsConfigDict(env_prefix="IMAP_", env_file=".env", extra="ignore")

    host: str = Field(default="imap.gmail.com", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(
        default="[Gmail]/All Mail",
        description="Folder searched for labelled messages",
    )
    timeout_seconds: float = Field(default=30.0, description="Timeout for a single IMAP command")


class DatabaseConfig(BaseSettings):
    """Reading store connection settings."""

    model_config = SettingsConfigDict(env_prefix="DB_", env_file=".env", extra="ignore")

    url: str = Field(
        default="postgresql+asyncpg://postgres@localhost:5432/homemetrics",
        description="Async SQLAlchemy URL of the time-series database",
    )
    pool_size: int = Field(default=5, description="Connection pool size")
    timeout_seconds: float = Field(default=30.0, description="Timeout for a single write")
    create_schema: bool = Field(
        default=True,
        description="Create missing tables on startup",
    )


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = SettingsConfigDict(env_prefix="RETRY_", env_file=".env", extra="ignore")

    max_attempts: int = Field(default=3, description="Maximum attempts per mailbox call")
    initial_wait_seconds: float = Field(default=1.0, description="Initial backoff wait in seconds")
    max_wait_seconds: float = Field(default=30.0, description="Maximum backoff wait in seconds")
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class SchedulerConfig(BaseSettings):
    """Daemon mode: trigger times and background task periods."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", env_file=".env", extra="ignore")

    enabled: bool = Field(default=False, description="Allow daemon mode")
    times: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="Local times of day (HH:MM) at which a batch runs",
    )
    timezone: str | None = Field(
        default=None,
        description="IANA zone for the trigger times (e.g. Europe/Paris); unset means the host's local time",
    )
    heartbeat_minutes: int = Field(default=60, ge=1, description="Period of the liveness log line")
    refresh_interval_minutes: int = Field(
        default=45,
        ge=1,
        le=55,
        description="Session refresh period; access tokens live 60 minutes",
    )

    @field_validator("times", mode="before")
    @classmethod
    def _split_times(cls, value: object) -> object:
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("times")
    @classmethod
    def _validate_times(cls, value: list[str]) -> list[str]:
        try:
            return [t.strftime("%H:%M") for t in parse_schedule(value)]
        except InvalidScheduleError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        if value:
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as exc:
                raise ValueError(f"Unknown time zone {value!r}") from exc
        return value or None

    @property
    def zone(self) -> ZoneInfo | None:
        return ZoneInfo(self.timezone) if self.timezone else None


class SlackConfig(BaseSettings):
    """Slack incoming-webhook notifications (disabled when no URL)."""

    model_config = SettingsConfigDict(env_prefix="SLACK_", env_file=".env", extra="ignore")

    webhook_url: str | None = Field(default=None, description="Incoming webhook URL")
    timeout_seconds: float = Field(default=10.0, description="HTTP request timeout")


class StreamConfig(BaseModel):
    """One logical category of ingested email and its label pair.

    Label names default to ``homemetrics/todo/<name>``,
    ``homemetrics/done/<name>`` and the archive mailbox ``/homemetrics/<name>``.
    """

    name: str
    kind: Literal["sensor", "pool"]
    enabled: bool = True
    todo_label: str | None = None
    done_label: str | None = None
    archive_mailbox: str | None = None

    @property
    def todo(self) -> str:
        return self.todo_label or f"{LABEL_ROOT}/todo/{self.name}"

    @property
    def done(self) -> str:
        return self.done_label or f"{LABEL_ROOT}/done/{self.name}"

    @property
    def archive(self) -> str:
        return self.archive_mailbox or f"/{LABEL_ROOT}/{self.name}"


def _default_streams() -> list[StreamConfig]:
    return [
        StreamConfig(name="xsense", kind="sensor"),
        StreamConfig(name="blueriot", kind="pool"),
    ]


class HomeMetricsConfig(BaseSettings):
    """Root configuration.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = SettingsConfigDict(env_prefix="HOMEMETRICS_", env_file=".env", extra="ignore")

    mailbox_backend: Literal["gmail", "imap"] = Field(
        default="gmail",
        description="Which mailbox client to use",
    )
    limit: int | None = Field(default=None, ge=1, description="Max messages per stream and batch")
    data_dir: Path | None = Field(
        default=None,
        description="Directory keeping a dated copy of every stored sensor export (unset disables)",
    )
    health_port: int = Field(default=8080, description="Port for health endpoints in daemon mode (0 disables)")
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="JSON log lines instead of console output")
    streams: list[StreamConfig] = Field(default_factory=_default_streams)

    gmail: GmailConfig = Field(default_factory=GmailConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)

    @property
    def enabled_streams(self) -> list[StreamConfig]:
        return [s for s in self.streams if s.enabled]
