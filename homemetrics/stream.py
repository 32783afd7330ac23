"""Stream processors: search → fetch → extract → store → mark processed.

One processor runs per logical stream (X-Sense sensor exports, Blue
Riot pool reports).  Messages of a batch are handled one at a time; a
failing message is recorded in the report and the batch moves on.

A message is relabelled from *todo* to *done* only after its readings
were written, so a crash in between leads at worst to a duplicate write
on the next run, which the store ignores.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import structlog

from .config import RetryConfig, StreamConfig
from .errors import (
    AuthExpiredError,
    ConstraintViolationError,
    CredentialsExhaustedError,
    ExtractionError,
    HomeMetricsError,
    InvalidTransitionError,
    LabelNotFoundError,
    MailboxError,
    MalformedValueError,
    NoDataError,
)
from .extraction import (
    describe_pool_reading,
    extract_pool_metrics,
    extract_sensor_readings,
    html_to_text,
    is_data_attachment,
    pool_alerts,
)
from .interface import MailboxClient, ReadingStore
from .labels import LabelStateCache
from .models import (
    Attachment,
    BatchReport,
    MessageEnvelope,
    MessageOutcome,
    OutcomeKind,
    PoolReading,
    Reading,
    SensorReading,
)
from .notify import SlackNotifier
from .retry import with_retry

logger = structlog.get_logger()

T = TypeVar("T")


# ----------------------------------------------------------------------
# Per-message state machine
# ----------------------------------------------------------------------


class MessageState(str, Enum):
    TODO = "todo"
    FETCHED = "fetched"
    EXTRACTED = "extracted"
    STORED = "stored"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[MessageState, frozenset[MessageState]] = {
    MessageState.TODO: frozenset({MessageState.FETCHED, MessageState.FAILED}),
    MessageState.FETCHED: frozenset({MessageState.EXTRACTED, MessageState.FAILED}),
    MessageState.EXTRACTED: frozenset({MessageState.STORED, MessageState.FAILED}),
    MessageState.STORED: frozenset({MessageState.DONE, MessageState.FAILED}),
    MessageState.DONE: frozenset(),
    MessageState.FAILED: frozenset(),
}


class MessageTracker:
    """Current state of one message, moving only along legal transitions."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        self.state = MessageState.TODO
        self.history: list[MessageState] = [MessageState.TODO]

    def advance(self, target: MessageState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"{self.message_id}: cannot go from {self.state.value} to {target.value}"
            )
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if self.state is not MessageState.FAILED and self.state is not MessageState.DONE:
            self.advance(MessageState.FAILED)


@dataclass
class Extraction:
    """Readings pulled out of one message, ready to be stored."""

    readings: list[Reading]
    summary: str
    alerts: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    received: datetime | None = None


# ----------------------------------------------------------------------
# Base processor
# ----------------------------------------------------------------------


class StreamProcessor(abc.ABC):
    """Drives one stream's batch through the message state machine.

    Subclasses implement :meth:`extract` (pure, may return ``None`` when
    the message holds nothing this stream understands) and
    :meth:`persist`.
    """

    def __init__(
        self,
        stream: StreamConfig,
        mailbox: MailboxClient,
        store: ReadingStore,
        labels: LabelStateCache,
        retry_config: RetryConfig,
        *,
        notifier: SlackNotifier | None = None,
        data_dir: Path | None = None,
    ) -> None:
        self.stream = stream
        self._mailbox = mailbox
        self._store = store
        self._labels = labels
        self._retry_config = retry_config
        self._notifier = notifier
        self._data_dir = data_dir

    @property
    def name(self) -> str:
        return self.stream.name

    @abc.abstractmethod
    def extract(self, envelope: MessageEnvelope) -> Extraction | None: ...

    @abc.abstractmethod
    async def persist(self, extraction: Extraction) -> int:
        """Write the readings; return how many were newly stored."""

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def process_batch(self, limit: int | None = None, dry_run: bool = False) -> BatchReport:
        """Process every message labelled *todo*, at most *limit* of them.

        Raises :class:`LabelNotFoundError` when the stream's labels do
        not exist and :class:`CredentialsExhaustedError` when the
        mailbox keeps rejecting the credentials; every other failure is
        recorded per message.
        """
        report = BatchReport(stream=self.name, dry_run=dry_run)

        with structlog.contextvars.bound_contextvars(stream=self.name):
            logger.info("batch_started", limit=limit, dry_run=dry_run)

            await self._labels.refresh()
            todo_id = await self._labels.resolve(self.stream.todo)
            if todo_id is None:
                raise LabelNotFoundError(self.stream.todo)

            done_id: str | None = None
            if not dry_run:
                done_id = await self._labels.resolve(self.stream.done)
                if done_id is None:
                    raise LabelNotFoundError(self.stream.done)

            message_ids = await self._mailbox_call(self._mailbox.search, todo_id, limit)
            if limit is not None:
                message_ids = message_ids[:limit]
            report.found = len(message_ids)
            logger.info("messages_found", count=report.found)

            for message_id in message_ids:
                outcome = await self._process_message(message_id, todo_id, done_id, dry_run)
                report.outcomes.append(outcome)

            report.finished_at = datetime.now(UTC)
            logger.info(
                "batch_finished",
                found=report.found,
                processed=report.processed,
                skipped=report.skipped,
                failed=report.failed,
                readings=report.readings,
            )
        return report

    async def _process_message(
        self,
        message_id: str,
        todo_id: str,
        done_id: str | None,
        dry_run: bool,
    ) -> MessageOutcome:
        tracker = MessageTracker(message_id)
        log = logger.bind(message_id=message_id)

        try:
            envelope = await self._mailbox_call(self._mailbox.fetch, message_id)
            tracker.advance(MessageState.FETCHED)

            extraction = self.extract(envelope)
            if extraction is None:
                log.info("message_skipped", reason="no_metrics", subject=envelope.subject)
                return MessageOutcome(
                    message_id=message_id,
                    kind=OutcomeKind.SKIPPED_NO_METRICS,
                    reason="no data attachment",
                )
            tracker.advance(MessageState.EXTRACTED)

            if dry_run:
                log.info(
                    "message_dry_run",
                    readings=len(extraction.readings),
                    summary=extraction.summary,
                    alerts=extraction.alerts,
                )
                return MessageOutcome(
                    message_id=message_id,
                    kind=OutcomeKind.PROCESSED,
                    readings=len(extraction.readings),
                    summary=extraction.summary,
                )

            try:
                saved = await self.persist(extraction)
            except ConstraintViolationError as exc:
                # Readings already stored by an earlier, interrupted run.
                log.info("message_already_stored", error=str(exc))
                saved = 0
            tracker.advance(MessageState.STORED)

            assert done_id is not None
            await self._mailbox_call(self._mailbox.mark_read, message_id)
            await self._mailbox_call(self._mailbox.archive, message_id, self.stream.archive)
            await self._mailbox_call(self._mailbox.relabel, message_id, todo_id, done_id)
            tracker.advance(MessageState.DONE)

        except CredentialsExhaustedError:
            raise
        except HomeMetricsError as exc:
            tracker.fail()
            log.warning("message_failed", error=str(exc), error_type=type(exc).__name__)
            return await self._failed(message_id, str(exc), dry_run)
        except Exception as exc:
            tracker.fail()
            log.exception("message_failed_unexpectedly")
            return await self._failed(message_id, f"{type(exc).__name__}: {exc}", dry_run)

        outcome = MessageOutcome(
            message_id=message_id,
            kind=OutcomeKind.PROCESSED,
            readings=len(extraction.readings),
            saved=saved,
            summary=extraction.summary,
        )
        log.info("message_processed", readings=outcome.readings, saved=saved, summary=outcome.summary)
        if self._notifier is not None:
            await self._notifier.message_stored(self.name, outcome, extraction.alerts)
        return outcome

    async def _failed(self, message_id: str, reason: str, dry_run: bool) -> MessageOutcome:
        outcome = MessageOutcome(message_id=message_id, kind=OutcomeKind.FAILED, reason=reason)
        if self._notifier is not None and not dry_run:
            await self._notifier.message_failed(self.name, outcome)
        return outcome

    # ------------------------------------------------------------------
    # Mailbox call policy
    # ------------------------------------------------------------------

    async def _mailbox_call(self, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call the mailbox with backoff on rate limits / transient errors.

        An expired session gets one probe (letting the credential layer
        renew) and one more attempt; if that is rejected too the
        credentials are considered exhausted.
        """
        retrying = with_retry(self._retry_config)(func)
        try:
            return await retrying(*args)
        except AuthExpiredError:
            logger.warning("mailbox_auth_expired", operation=getattr(func, "__name__", repr(func)))

        try:
            await self._mailbox.probe()
        except CredentialsExhaustedError:
            raise
        except MailboxError as exc:
            logger.warning("mailbox_reauth_probe_failed", error=str(exc))

        try:
            return await retrying(*args)
        except AuthExpiredError as exc:
            raise CredentialsExhaustedError(
                f"mailbox still rejects credentials after renewal: {exc}"
            ) from exc


# ----------------------------------------------------------------------
# Concrete streams
# ----------------------------------------------------------------------


class SensorStreamProcessor(StreamProcessor):
    """X-Sense exports: one or more data attachments per message."""

    def extract(self, envelope: MessageEnvelope) -> Extraction | None:
        attachments = [a for a in envelope.attachments if is_data_attachment(a.filename)]
        if not attachments:
            return None

        readings: list[SensorReading] = []
        errors: list[ExtractionError] = []
        for attachment in attachments:
            try:
                readings.extend(extract_sensor_readings(attachment.filename, attachment.payload))
            except ExtractionError as exc:
                logger.warning(
                    "attachment_extraction_failed",
                    message_id=envelope.message_id,
                    filename=attachment.filename,
                    error=str(exc),
                )
                errors.append(exc)

        if not readings:
            raise errors[0]

        return Extraction(
            readings=list(readings),
            summary=_describe_sensor_readings(readings),
            attachments=attachments,
            received=envelope.date,
        )

    async def persist(self, extraction: Extraction) -> int:
        if self._data_dir is not None and extraction.attachments:
            await asyncio.to_thread(self._save_attachments, self._data_dir, extraction)
        readings: Sequence[SensorReading] = extraction.readings  # type: ignore[assignment]
        return await self._store.save_sensor_readings(readings)

    @staticmethod
    def _save_attachments(data_dir: Path, extraction: Extraction) -> None:
        """Keep a copy of each export as ``<YYYYMMDD_HHMMSS>_<filename>``.

        The prefix is the email date, or now when the email has none.
        A failed copy is logged and does not fail the message.
        """
        stamp = (extraction.received or datetime.now(UTC)).strftime("%Y%m%d_%H%M%S")
        for attachment in extraction.attachments:
            path = data_dir / f"{stamp}_{Path(attachment.filename).name}"
            try:
                data_dir.mkdir(parents=True, exist_ok=True)
                path.write_bytes(attachment.payload)
            except OSError as exc:
                logger.warning("attachment_save_failed", path=str(path), error=str(exc))
                continue
            logger.info("attachment_saved", path=str(path), size=len(attachment.payload))


class PoolStreamProcessor(StreamProcessor):
    """Blue Riot reports: metrics in the message body."""

    def extract(self, envelope: MessageEnvelope) -> Extraction | None:
        text = envelope.body_text
        if not text and envelope.body_html:
            text = html_to_text(envelope.body_html)
        if not text or not text.strip():
            raise NoDataError("message has no text body")
        if envelope.date is None:
            raise MalformedValueError("message has no Date header")

        reading = extract_pool_metrics(text, timestamp=envelope.date, email_id=envelope.message_id)
        return Extraction(
            readings=[reading],
            summary=describe_pool_reading(reading),
            alerts=pool_alerts(reading),
        )

    async def persist(self, extraction: Extraction) -> int:
        saved = 0
        for reading in extraction.readings:
            assert isinstance(reading, PoolReading)
            if await self._store.save_pool_reading(reading):
                saved += 1
        return saved


def _describe_sensor_readings(readings: Sequence[SensorReading]) -> str:
    sensors = sorted({r.sensor_id for r in readings})
    temperatures = [r.temperature for r in readings]
    return (
        f"{len(readings)} readings from {', '.join(sensors)} "
        f"({min(temperatures):.1f} to {max(temperatures):.1f}°C)"
    )


PROCESSORS: dict[str, type[StreamProcessor]] = {
    "sensor": SensorStreamProcessor,
    "pool": PoolStreamProcessor,
}


def build_processor(
    stream: StreamConfig,
    mailbox: MailboxClient,
    store: ReadingStore,
    labels: LabelStateCache,
    retry_config: RetryConfig,
    *,
    notifier: SlackNotifier | None = None,
    data_dir: Path | None = None,
) -> StreamProcessor:
    return PROCESSORS[stream.kind](
        stream, mailbox, store, labels, retry_config, notifier=notifier, data_dir=data_dir
    )
