"""Tests for homemetrics.stream (stream processors and message states)."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from homemetrics.config import RetryConfig, StreamConfig
from homemetrics.errors import (
    AuthExpiredError,
    ConnectionLostError,
    ConstraintViolationError,
    CredentialsExhaustedError,
    InvalidTransitionError,
    LabelNotFoundError,
    RateLimitedError,
    TransientMailboxError,
)
from homemetrics.labels import LabelStateCache
from homemetrics.models import MessageEnvelope, OutcomeKind
from homemetrics.notify import SlackNotifier
from homemetrics.stream import (
    MessageState,
    MessageTracker,
    PoolStreamProcessor,
    SensorStreamProcessor,
    build_processor,
)
from tests.conftest import (
    LABELS,
    XSENSE_CSV,
    FakeMailbox,
    FakeStore,
    pool_envelope,
    sensor_envelope,
)

CABANE = "Thermo-cabane_Exporter les données_20251104.csv"
BUREAU = "Bureau_Exporter les données_20251031.csv"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def sensor_processor(
    sensor_stream: StreamConfig,
    mailbox: FakeMailbox,
    store: FakeStore,
    label_cache: LabelStateCache,
    retry_config: RetryConfig,
) -> SensorStreamProcessor:
    return SensorStreamProcessor(sensor_stream, mailbox, store, label_cache, retry_config)


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=SlackNotifier)


@pytest.fixture
def pool_processor(
    pool_stream: StreamConfig,
    mailbox: FakeMailbox,
    store: FakeStore,
    label_cache: LabelStateCache,
    retry_config: RetryConfig,
    notifier: AsyncMock,
) -> PoolStreamProcessor:
    return PoolStreamProcessor(pool_stream, mailbox, store, label_cache, retry_config, notifier=notifier)


def _add_sensor(mailbox: FakeMailbox, message_id: str, *attachments: tuple[str, bytes]) -> None:
    if not attachments:
        attachments = ((CABANE, XSENSE_CSV),)
    mailbox.add(sensor_envelope(message_id, *attachments), "INBOX", "homemetrics/todo/xsense")


# ---------------------------------------------------------------------------
# Message state machine
# ---------------------------------------------------------------------------


class TestMessageTracker:
    def test_happy_path(self):
        tracker = MessageTracker("m1")
        for state in (MessageState.FETCHED, MessageState.EXTRACTED, MessageState.STORED, MessageState.DONE):
            tracker.advance(state)
        assert tracker.state is MessageState.DONE
        assert tracker.history[0] is MessageState.TODO
        assert len(tracker.history) == 5

    def test_cannot_skip_store(self):
        tracker = MessageTracker("m1")
        tracker.advance(MessageState.FETCHED)
        tracker.advance(MessageState.EXTRACTED)
        with pytest.raises(InvalidTransitionError):
            tracker.advance(MessageState.DONE)

    def test_fail_from_any_open_state(self):
        tracker = MessageTracker("m1")
        tracker.advance(MessageState.FETCHED)
        tracker.fail()
        assert tracker.state is MessageState.FAILED
        tracker.fail()
        assert tracker.history.count(MessageState.FAILED) == 1

    def test_done_is_terminal(self):
        tracker = MessageTracker("m1")
        for state in (MessageState.FETCHED, MessageState.EXTRACTED, MessageState.STORED, MessageState.DONE):
            tracker.advance(state)
        tracker.fail()
        assert tracker.state is MessageState.DONE


# ---------------------------------------------------------------------------
# Sensor stream
# ---------------------------------------------------------------------------


class TestSensorBatch:
    @pytest.mark.asyncio
    async def test_processes_and_relabels(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1")

        report = await sensor_processor.process_batch()

        assert report.stream == "xsense"
        assert report.found == 1
        assert report.processed == 1
        assert report.readings == 2
        assert report.finished_at is not None
        assert len(store.sensor_rows) == 2
        assert mailbox.labelled("homemetrics/todo/xsense") == []
        assert mailbox.labelled("homemetrics/done/xsense") == ["m1"]
        assert "m1" in mailbox.read
        assert mailbox.archived == [("m1", "/homemetrics/xsense")]
        assert [name for name, _ in mailbox.mutations] == ["mark_read", "archive", "relabel"]

    @pytest.mark.asyncio
    async def test_summary_describes_readings(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        report = await sensor_processor.process_batch()
        assert report.outcomes[0].summary == "2 readings from cabane (15.0 to 15.2°C)"

    @pytest.mark.asyncio
    async def test_several_attachments(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1", (CABANE, XSENSE_CSV), (BUREAU, XSENSE_CSV), ("logo.png", b"\x89PNG"))

        report = await sensor_processor.process_batch()

        assert report.readings == 4
        assert {sensor for sensor, _ in store.sensor_rows} == {"cabane", "Bureau"}

    @pytest.mark.asyncio
    async def test_one_bad_attachment_does_not_lose_the_others(
        self, sensor_processor, mailbox: FakeMailbox, store: FakeStore
    ):
        _add_sensor(mailbox, "m1", ("export.csv", XSENSE_CSV), (CABANE, XSENSE_CSV))

        report = await sensor_processor.process_batch()

        assert report.processed == 1
        assert len(store.sensor_rows) == 2

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1")
        await sensor_processor.process_batch()

        # Simulate a crash between the write and the relabel.
        mailbox.message_labels["m1"] = {LABELS["homemetrics/todo/xsense"]}
        report = await sensor_processor.process_batch()

        assert report.processed == 1
        assert report.outcomes[0].saved == 0
        assert len(store.sensor_rows) == 2
        assert mailbox.labelled("homemetrics/done/xsense") == ["m1"]

    @pytest.mark.asyncio
    async def test_dry_run_mutates_nothing(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1")

        report = await sensor_processor.process_batch(dry_run=True)

        assert report.dry_run is True
        assert report.processed == 1
        assert report.readings == 2
        assert store.save_calls == 0
        assert mailbox.mutations == []
        assert mailbox.labelled("homemetrics/todo/xsense") == ["m1"]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_need_done_label(self, sensor_stream, store, retry_config):
        labels = {k: v for k, v in LABELS.items() if k != "homemetrics/done/xsense"}
        mailbox = FakeMailbox(labels)
        _add_sensor(mailbox, "m1")
        processor = SensorStreamProcessor(sensor_stream, mailbox, store, LabelStateCache(mailbox), retry_config)

        report = await processor.process_batch(dry_run=True)
        assert report.processed == 1

        with pytest.raises(LabelNotFoundError):
            await processor.process_batch()

    @pytest.mark.asyncio
    async def test_failure_does_not_block_the_batch(
        self, sensor_processor, mailbox: FakeMailbox, store: FakeStore
    ):
        _add_sensor(mailbox, "m1", ("export.csv", XSENSE_CSV))
        _add_sensor(mailbox, "m2")

        report = await sensor_processor.process_batch()

        assert report.found == 2
        assert report.failed == 1
        assert report.processed == 1
        ((failed_id, reason),) = report.failures
        assert failed_id == "m1"
        assert "export.csv" in reason
        assert mailbox.labelled("homemetrics/todo/xsense") == ["m1"]
        assert mailbox.labelled("homemetrics/done/xsense") == ["m2"]

    @pytest.mark.asyncio
    async def test_message_without_data_attachment_is_skipped(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1", ("report.pdf", b"%PDF-1.7"))

        report = await sensor_processor.process_batch()

        assert report.skipped == 1
        assert report.outcomes[0].kind is OutcomeKind.SKIPPED_NO_METRICS
        assert mailbox.mutations == []
        assert mailbox.labelled("homemetrics/todo/xsense") == ["m1"]

    @pytest.mark.asyncio
    async def test_limit(self, sensor_processor, mailbox: FakeMailbox):
        for i in range(3):
            _add_sensor(mailbox, f"m{i}")

        report = await sensor_processor.process_batch(limit=2)

        assert report.found == 2
        assert ("search", (LABELS["homemetrics/todo/xsense"], 2)) in mailbox.calls

    @pytest.mark.asyncio
    async def test_empty_mailbox(self, sensor_processor, store: FakeStore):
        report = await sensor_processor.process_batch()
        assert report.found == 0
        assert report.outcomes == []
        assert store.save_calls == 0

    @pytest.mark.asyncio
    async def test_missing_todo_label(self, sensor_stream, store, retry_config):
        mailbox = FakeMailbox({"INBOX": "INBOX"})
        processor = SensorStreamProcessor(sensor_stream, mailbox, store, LabelStateCache(mailbox), retry_config)

        with pytest.raises(LabelNotFoundError) as exc_info:
            await processor.process_batch()
        assert exc_info.value.label_name == "homemetrics/todo/xsense"

    @pytest.mark.asyncio
    async def test_store_failure_leaves_message_todo(
        self, sensor_processor, mailbox: FakeMailbox, store: FakeStore
    ):
        _add_sensor(mailbox, "m1")
        store.errors.append(ConnectionLostError("database unreachable"))

        report = await sensor_processor.process_batch()

        assert report.failed == 1
        assert report.failures == [("m1", "database unreachable")]
        assert mailbox.mutations == []

    @pytest.mark.asyncio
    async def test_duplicate_key_counts_as_stored(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1")
        store.errors.append(ConstraintViolationError("duplicate key value violates unique constraint"))

        report = await sensor_processor.process_batch()

        assert report.processed == 1
        assert report.failed == 0
        assert report.outcomes[0].saved == 0
        assert mailbox.labelled("homemetrics/done/xsense") == ["m1"]
        assert mailbox.labelled("homemetrics/todo/xsense") == []
        assert "m1" in mailbox.read

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, sensor_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_sensor(mailbox, "m1")
        store.errors.append(RuntimeError("boom"))

        report = await sensor_processor.process_batch()

        assert report.failures == [("m1", "RuntimeError: boom")]


class TestAttachmentCopies:
    @pytest.fixture
    def copying_processor(self, sensor_stream, mailbox, store, label_cache, retry_config, tmp_path: Path):
        return SensorStreamProcessor(
            sensor_stream, mailbox, store, label_cache, retry_config, data_dir=tmp_path / "data"
        )

    @pytest.mark.asyncio
    async def test_exports_are_copied_with_email_date(self, copying_processor, mailbox: FakeMailbox, tmp_path: Path):
        _add_sensor(mailbox, "m1", (CABANE, XSENSE_CSV), ("logo.png", b"\x89PNG"))

        await copying_processor.process_batch()

        copies = sorted(p.name for p in (tmp_path / "data").iterdir())
        assert copies == [f"20251104_235900_{CABANE}"]
        assert (tmp_path / "data" / copies[0]).read_bytes() == XSENSE_CSV

    @pytest.mark.asyncio
    async def test_dry_run_copies_nothing(self, copying_processor, mailbox: FakeMailbox, tmp_path: Path):
        _add_sensor(mailbox, "m1")

        await copying_processor.process_batch(dry_run=True)

        assert not (tmp_path / "data").exists()

    @pytest.mark.asyncio
    async def test_unwritable_directory_does_not_fail_the_message(
        self, sensor_stream, mailbox: FakeMailbox, store: FakeStore, label_cache, retry_config, tmp_path: Path
    ):
        blocker = tmp_path / "data"
        blocker.write_text("not a directory")
        processor = SensorStreamProcessor(sensor_stream, mailbox, store, label_cache, retry_config, data_dir=blocker)
        _add_sensor(mailbox, "m1")

        report = await processor.process_batch()

        assert report.processed == 1
        assert len(store.sensor_rows) == 2

    @pytest.mark.asyncio
    async def test_disabled_by_default(self, sensor_processor, mailbox: FakeMailbox, tmp_path: Path):
        _add_sensor(mailbox, "m1")
        await sensor_processor.process_batch()
        assert list(tmp_path.iterdir()) == []


class TestMailboxCallPolicy:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        mailbox.fetch_errors["m1"] = [TransientMailboxError("timeout"), RateLimitedError("slow down")]

        report = await sensor_processor.process_batch()

        assert report.processed == 1
        assert [c for c in mailbox.calls if c[0] == "fetch"] == [("fetch", ("m1",))] * 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        _add_sensor(mailbox, "m2")
        mailbox.fetch_errors["m1"] = [RateLimitedError("slow down")] * 3

        report = await sensor_processor.process_batch()

        assert report.failures == [("m1", "slow down")]
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_expired_session_recovers_after_probe(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        mailbox.fetch_errors["m1"] = [AuthExpiredError("token expired")]

        report = await sensor_processor.process_batch()

        assert report.processed == 1
        assert mailbox.probe_calls == 1

    @pytest.mark.asyncio
    async def test_credentials_exhausted_aborts_the_batch(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        _add_sensor(mailbox, "m2")
        mailbox.fetch_errors["m1"] = [AuthExpiredError("expired"), AuthExpiredError("still expired")]

        with pytest.raises(CredentialsExhaustedError):
            await sensor_processor.process_batch()
        assert mailbox.mutations == []

    @pytest.mark.asyncio
    async def test_probe_reporting_exhaustion_propagates(self, sensor_processor, mailbox: FakeMailbox):
        _add_sensor(mailbox, "m1")
        mailbox.fetch_errors["m1"] = [AuthExpiredError("expired")]
        mailbox.probe_errors.append(CredentialsExhaustedError("re-authorize"))

        with pytest.raises(CredentialsExhaustedError, match="re-authorize"):
            await sensor_processor.process_batch()


# ---------------------------------------------------------------------------
# Pool stream
# ---------------------------------------------------------------------------


def _add_pool(mailbox: FakeMailbox, envelope: MessageEnvelope) -> None:
    mailbox.add(envelope, "INBOX", "homemetrics/todo/blueriot")


class TestPoolBatch:
    @pytest.mark.asyncio
    async def test_processes_report(self, pool_processor, mailbox: FakeMailbox, store: FakeStore, notifier):
        _add_pool(mailbox, pool_envelope("p1"))

        report = await pool_processor.process_batch()

        assert report.processed == 1
        ((key, reading),) = store.pool_rows.items()
        assert key == (datetime(2025, 11, 4, 7, 30, tzinfo=UTC), "p1")
        assert (reading.temperature, reading.ph, reading.orp) == (25.5, 7.2, 720.0)
        assert mailbox.labelled("homemetrics/done/blueriot") == ["p1"]
        assert mailbox.archived == [("p1", "/homemetrics/blueriot")]

        notifier.message_stored.assert_awaited_once()
        stream, outcome, alerts = notifier.message_stored.await_args.args
        assert stream == "blueriot"
        assert outcome.summary == "25.5°C, pH 7.20, ORP 720 mV"
        assert alerts == []

    @pytest.mark.asyncio
    async def test_html_only_body_and_alerts(self, pool_processor, mailbox: FakeMailbox, store: FakeStore, notifier):
        _add_pool(mailbox, pool_envelope("p1", None, html="<div><p>pH: 7.9</p><p>ORP: 600 mV</p></div>"))

        report = await pool_processor.process_batch()

        assert report.processed == 1
        _, _, alerts = notifier.message_stored.await_args.args
        assert alerts == ["pH 7.90 above 7.6", "ORP 600 mV below 650"]

    @pytest.mark.asyncio
    async def test_partial_report_is_stored(self, pool_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_pool(mailbox, pool_envelope("p1", "pH : 7.2"))

        report = await pool_processor.process_batch()

        assert report.processed == 1
        (reading,) = store.pool_rows.values()
        assert reading.ph == 7.2
        assert reading.temperature is None

    @pytest.mark.asyncio
    async def test_no_metrics_fails_and_notifies(self, pool_processor, mailbox: FakeMailbox, store: FakeStore, notifier):
        _add_pool(mailbox, pool_envelope("p1", "Thanks for using Blue Riiot!"))

        report = await pool_processor.process_batch()

        assert report.failed == 1
        assert store.save_calls == 0
        assert mailbox.labelled("homemetrics/todo/blueriot") == ["p1"]
        notifier.message_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_dry_run_never_notifies_failures(self, pool_processor, mailbox: FakeMailbox, notifier):
        _add_pool(mailbox, pool_envelope("p1", "nothing to see"))

        report = await pool_processor.process_batch(dry_run=True)

        assert report.failed == 1
        notifier.message_failed.assert_not_awaited()
        notifier.message_stored.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_date_fails(self, pool_processor, mailbox: FakeMailbox):
        envelope = pool_envelope("p1").model_copy(update={"date": None})
        _add_pool(mailbox, envelope)

        report = await pool_processor.process_batch()

        assert report.failed == 1
        assert "Date" in report.failures[0][1]

    @pytest.mark.asyncio
    async def test_empty_body_fails(self, pool_processor, mailbox: FakeMailbox):
        _add_pool(mailbox, pool_envelope("p1", None))

        report = await pool_processor.process_batch()

        assert report.failed == 1

    @pytest.mark.asyncio
    async def test_duplicate_report_is_not_stored_twice(self, pool_processor, mailbox: FakeMailbox, store: FakeStore):
        _add_pool(mailbox, pool_envelope("p1"))
        await pool_processor.process_batch()
        mailbox.message_labels["p1"] = {LABELS["homemetrics/todo/blueriot"]}

        report = await pool_processor.process_batch()

        assert report.outcomes[0].saved == 0
        assert len(store.pool_rows) == 1


class TestBuildProcessor:
    def test_picks_class_by_kind(self, sensor_stream, pool_stream, mailbox, store, label_cache, retry_config):
        sensor = build_processor(sensor_stream, mailbox, store, label_cache, retry_config)
        pool = build_processor(pool_stream, mailbox, store, label_cache, retry_config)
        assert isinstance(sensor, SensorStreamProcessor)
        assert isinstance(pool, PoolStreamProcessor)
        assert pool.name == "blueriot"
