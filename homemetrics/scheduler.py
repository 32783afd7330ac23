"""Batch scheduling: single-shot runs and the daily-times daemon loop."""

from __future__ import annotations

import asyncio
import contextlib
import re
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, time, timedelta, tzinfo
from time import monotonic
from typing import TYPE_CHECKING

import structlog

from .errors import (
    ConfigError,
    CredentialsExhaustedError,
    HomeMetricsError,
    InvalidScheduleError,
)
from .models import BatchReport

if TYPE_CHECKING:
    from .notify import SlackNotifier
    from .stream import StreamProcessor

logger = structlog.get_logger()

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

# Longest single sleep; bounds how late a wall-clock jump is noticed.
MAX_SLEEP_SECONDS = 60.0


def parse_schedule(times: Iterable[str]) -> list[time]:
    """Parse ``HH:MM`` strings into sorted, de-duplicated times of day."""
    parsed: set[time] = set()
    for raw in times:
        match = _TIME_RE.match(raw.strip())
        if not match:
            raise InvalidScheduleError(f"Invalid time of day {raw!r}, expected HH:MM")
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise InvalidScheduleError(f"Invalid time of day {raw!r}, out of range")
        parsed.add(time(hour, minute))
    return sorted(parsed)


def next_run(schedule: Sequence[time], now: datetime) -> datetime:
    """Return the first scheduled instant strictly after *now*.

    Candidates take *now*'s tzinfo, so *now* must be naive local time or
    carry a ``ZoneInfo``; a fixed UTC offset does not follow DST changes.
    """
    if not schedule:
        raise InvalidScheduleError("No trigger times configured")
    for day in (now.date(), now.date() + timedelta(days=1)):
        for moment in schedule:
            candidate = datetime.combine(day, moment, tzinfo=now.tzinfo)
            if candidate > now:
                return candidate
    raise AssertionError("unreachable: a schedule always has a run tomorrow")


class BatchScheduler:
    """Runs every stream processor, once or at fixed times of day.

    Streams of one batch run concurrently; an exception in one stream is
    turned into an errored :class:`BatchReport` and never touches the
    others.
    """

    def __init__(
        self,
        processors: Sequence[StreamProcessor],
        shutdown_event: asyncio.Event,
        *,
        times: Iterable[str] = (),
        heartbeat_minutes: int = 60,
        notifier: SlackNotifier | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] | None = None,
        max_sleep_seconds: float = MAX_SLEEP_SECONDS,
    ) -> None:
        self._processors = list(processors)
        self._shutdown = shutdown_event
        self._schedule = parse_schedule(times)
        self._heartbeat_seconds = heartbeat_minutes * 60.0
        self._notifier = notifier
        # Without a zone, wall-clock local time (naive) is compared directly.
        self._clock = clock or (lambda: datetime.now(tz))
        self._max_sleep = max_sleep_seconds
        self._last_heartbeat = monotonic()

        self.last_reports: dict[str, BatchReport] = {}
        self.batches_run = 0
        self.next_run_at: datetime | None = None
        self._batch: asyncio.Task | None = None

    @property
    def schedule(self) -> list[time]:
        return list(self._schedule)

    @property
    def batch_in_flight(self) -> bool:
        return self._batch is not None and not self._batch.done()

    # ------------------------------------------------------------------
    # Single shot
    # ------------------------------------------------------------------

    async def run_once(self, limit: int | None = None, dry_run: bool = False) -> list[BatchReport]:
        """Run every stream once, concurrently, and return their reports."""
        logger.info("batch_run_started", streams=[p.name for p in self._processors], dry_run=dry_run)
        reports = await asyncio.gather(
            *(self._run_stream(p, limit, dry_run) for p in self._processors)
        )
        for report in reports:
            self.last_reports[report.stream] = report
        self.batches_run += 1
        logger.info("batch_run_finished", reports=[r.summary() for r in reports])
        return list(reports)

    async def _run_stream(self, processor: StreamProcessor, limit: int | None, dry_run: bool) -> BatchReport:
        try:
            return await processor.process_batch(limit=limit, dry_run=dry_run)
        except (ConfigError, CredentialsExhaustedError) as exc:
            logger.error("stream_batch_aborted", stream=processor.name, error=str(exc))
            report = self._errored(processor.name, dry_run, exc, fatal=True)
        except HomeMetricsError as exc:
            logger.warning("stream_batch_failed", stream=processor.name, error=str(exc))
            report = self._errored(processor.name, dry_run, exc)
        except Exception as exc:
            logger.exception("stream_batch_crashed", stream=processor.name)
            report = self._errored(processor.name, dry_run, exc)

        if self._notifier is not None and not dry_run:
            await self._notifier.batch_failed(report)
        return report

    @staticmethod
    def _errored(stream: str, dry_run: bool, exc: BaseException, *, fatal: bool = False) -> BatchReport:
        return BatchReport(
            stream=stream,
            dry_run=dry_run,
            finished_at=datetime.now(UTC),
            error=f"{type(exc).__name__}: {exc}",
            fatal=fatal,
        )

    # ------------------------------------------------------------------
    # Daemon
    # ------------------------------------------------------------------

    async def run_forever(self, limit: int | None = None, dry_run: bool = False) -> None:
        """Trigger a batch at each scheduled time until shutdown.

        An in-flight batch is cancelled and awaited on shutdown; the label
        state machine makes the next run pick up where it stopped.
        """
        if not self._schedule:
            raise InvalidScheduleError("No trigger times configured")

        logger.info("scheduler_started", times=[t.strftime("%H:%M") for t in self._schedule])
        while not self._shutdown.is_set():
            if not await self._sleep_until_next():
                break
            batch = self._batch = asyncio.create_task(self.run_once(limit=limit, dry_run=dry_run))
            stop = asyncio.create_task(self._shutdown.wait())
            done, _ = await asyncio.wait({batch, stop}, return_when=asyncio.FIRST_COMPLETED)
            if batch not in done:
                batch.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await batch
                logger.warning("batch_abandoned_on_shutdown")
            stop.cancel()
            self._batch = None
        logger.info("scheduler_stopped", batches_run=self.batches_run)

    async def _sleep_until_next(self) -> bool:
        """Sleep until the next trigger; ``False`` if shutdown came first."""
        target = next_run(self._schedule, self._clock())
        self.next_run_at = target
        logger.info("next_batch_scheduled", at=target.isoformat())

        while True:
            now = self._clock()
            remaining = (target - now).total_seconds()
            if remaining <= 0:
                return True
            if remaining > 86400:
                # Clock went backwards by more than a day.
                target = next_run(self._schedule, now)
                self.next_run_at = target
                logger.warning("clock_jump_detected", next_run=target.isoformat())
                continue

            self._maybe_heartbeat(target)
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=min(remaining, self._max_sleep))
            except TimeoutError:
                continue
            return False

    def _maybe_heartbeat(self, target: datetime) -> None:
        elapsed = monotonic() - self._last_heartbeat
        if elapsed >= self._heartbeat_seconds:
            self._last_heartbeat = monotonic()
            logger.info("heartbeat", next_run=target.isoformat(), batches_run=self.batches_run)
