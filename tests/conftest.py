"""Shared fixtures, sample emails and in-memory collaborators."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import pytest

from homemetrics.config import RetryConfig, StreamConfig
from homemetrics.errors import MessageNotFoundError
from homemetrics.interface import MailboxClient, ReadingStore
from homemetrics.labels import LabelStateCache
from homemetrics.mailbox.parser import MimeParser
from homemetrics.models import Attachment, MessageEnvelope, PoolReading, SensorReading

XSENSE_CSV = (
    "Temps,Température_Celsius,Humidité relative_Pourcentage\n"
    "2025/11/04 23:58,15.2,84.0\n"
    "2025/11/04 23:59,15.0,84.5\n"
).encode("utf-8")

POOL_REPORT = "Pool Status Report\nTemperature: 25.5°C\npH: 7.2\nORP: 720 mV\n"

LABELS = {
    "INBOX": "INBOX",
    "UNREAD": "UNREAD",
    "homemetrics/todo/xsense": "Label_1",
    "homemetrics/done/xsense": "Label_2",
    "homemetrics/todo/blueriot": "Label_3",
    "homemetrics/done/blueriot": "Label_4",
    "homemetrics/xsense": "Label_5",
    "homemetrics/blueriot": "Label_6",
}


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def build_pool_email(
    *,
    body_text: str | None = POOL_REPORT,
    body_html: str | None = None,
    date: str = "Tue, 04 Nov 2025 08:30:00 +0100",
) -> bytes:
    """Build a Blue Riot style report with a text and/or HTML body."""
    if body_text is not None and body_html is not None:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body_text, "plain", "utf-8"))
        msg.attach(MIMEText(body_html, "html", "utf-8"))
    elif body_html is not None:
        msg = MIMEText(body_html, "html", "utf-8")
    else:
        msg = MIMEText(body_text or "", "plain", "utf-8")
    msg["Subject"] = "Your pool status"
    msg["From"] = "noreply@blueriiot.com"
    msg["To"] = "me@example.com"
    msg["Date"] = date
    return msg.as_bytes()


def build_xsense_email(
    attachments: Sequence[tuple[str, str, bytes]] = (
        ("Thermo-cabane_Exporter les données_20251104.csv", "text/csv", XSENSE_CSV),
    ),
    *,
    body_text: str = "Exported data attached.",
) -> bytes:
    """Build a multipart X-Sense export email with attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "X-Sense data export"
    msg["From"] = "noreply@x-sense.com"
    msg["To"] = "me@example.com"
    msg["Date"] = "Tue, 04 Nov 2025 23:59:59 +0000"
    msg.attach(MIMEText(body_text, "plain", "utf-8"))

    for filename, content_type, payload in attachments:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


def sensor_envelope(message_id: str, *attachments: tuple[str, bytes]) -> MessageEnvelope:
    return MessageEnvelope(
        message_id=message_id,
        subject="X-Sense data export",
        date=datetime(2025, 11, 4, 23, 59, tzinfo=UTC),
        attachments=tuple(Attachment(filename=name, payload=payload) for name, payload in attachments),
    )


def pool_envelope(message_id: str, body: str | None = POOL_REPORT, *, html: str | None = None) -> MessageEnvelope:
    return MessageEnvelope(
        message_id=message_id,
        subject="Your pool status",
        date=datetime(2025, 11, 4, 7, 30, tzinfo=UTC),
        body_text=body,
        body_html=html,
    )


# ------------------------------------------------------------------
# In-memory collaborators
# ------------------------------------------------------------------


class FakeMailbox(MailboxClient):
    """Label-aware mailbox kept in memory; records every mutation."""

    def __init__(self, labels: dict[str, str] | None = None) -> None:
        self.labels = dict(LABELS if labels is None else labels)
        self.messages: dict[str, MessageEnvelope] = {}
        self.message_labels: dict[str, set[str]] = {}
        self.read: set[str] = set()
        self.archived: list[tuple[str, str]] = []
        self.calls: list[tuple[str, tuple]] = []
        self.fetch_errors: dict[str, list[Exception]] = {}
        self.search_errors: list[Exception] = []
        self.probe_errors: list[Exception] = []
        self.list_labels_calls = 0
        self.probe_calls = 0

    def add(self, envelope: MessageEnvelope, *label_names: str) -> None:
        self.messages[envelope.message_id] = envelope
        self.message_labels[envelope.message_id] = {self.labels[name] for name in label_names}

    def labelled(self, label_name: str) -> list[str]:
        label_id = self.labels[label_name]
        return [m for m, ids in self.message_labels.items() if label_id in ids]

    @property
    def mutations(self) -> list[tuple[str, tuple]]:
        return [c for c in self.calls if c[0] in ("relabel", "archive", "mark_read")]

    async def search(self, label_id: str, limit: int | None = None) -> list[str]:
        self.calls.append(("search", (label_id, limit)))
        if self.search_errors:
            raise self.search_errors.pop(0)
        found = [m for m, ids in self.message_labels.items() if label_id in ids]
        return found[:limit] if limit is not None else found

    async def fetch(self, message_id: str) -> MessageEnvelope:
        self.calls.append(("fetch", (message_id,)))
        errors = self.fetch_errors.get(message_id)
        if errors:
            raise errors.pop(0)
        if message_id not in self.messages:
            raise MessageNotFoundError(message_id)
        return self.messages[message_id]

    async def list_labels(self) -> list[tuple[str, str]]:
        self.list_labels_calls += 1
        return list(self.labels.items())

    async def relabel(self, message_id: str, remove: str, add: str) -> None:
        self.calls.append(("relabel", (message_id, remove, add)))
        ids = self.message_labels[message_id]
        ids.discard(remove)
        ids.add(add)

    async def archive(self, message_id: str, destination: str) -> None:
        self.calls.append(("archive", (message_id, destination)))
        self.message_labels[message_id].discard("INBOX")
        self.archived.append((message_id, destination))

    async def mark_read(self, message_id: str) -> None:
        self.calls.append(("mark_read", (message_id,)))
        self.read.add(message_id)

    async def probe(self) -> None:
        self.probe_calls += 1
        if self.probe_errors:
            raise self.probe_errors.pop(0)


class FakeStore(ReadingStore):
    """Store keyed by natural keys: duplicates are silently ignored."""

    def __init__(self) -> None:
        self.sensor_rows: dict[tuple[str, datetime], SensorReading] = {}
        self.pool_rows: dict[tuple[datetime, str], PoolReading] = {}
        self.save_calls = 0
        self.errors: list[Exception] = []

    async def save_sensor_readings(self, readings: Sequence[SensorReading]) -> int:
        self.save_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        inserted = 0
        for reading in readings:
            key = (reading.sensor_id, reading.timestamp)
            if key not in self.sensor_rows:
                self.sensor_rows[key] = reading
                inserted += 1
        return inserted

    async def save_pool_reading(self, reading: PoolReading) -> bool:
        self.save_calls += 1
        if self.errors:
            raise self.errors.pop(0)
        key = (reading.timestamp, reading.email_id)
        if key in self.pool_rows:
            return False
        self.pool_rows[key] = reading
        return True


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_attempts=3, initial_wait_seconds=0.0, max_wait_seconds=0.0, multiplier=1.0)


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def label_cache(mailbox: FakeMailbox) -> LabelStateCache:
    return LabelStateCache(mailbox)


@pytest.fixture
def sensor_stream() -> StreamConfig:
    return StreamConfig(name="xsense", kind="sensor")


@pytest.fixture
def pool_stream() -> StreamConfig:
    return StreamConfig(name="blueriot", kind="pool")


@pytest.fixture
def parser() -> MimeParser:
    return MimeParser()
