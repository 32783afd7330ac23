"""Application wiring: collaborators, background tasks and lifecycle."""

from __future__ import annotations

import asyncio
import signal
import time

import structlog
import uvicorn

from .config import HomeMetricsConfig
from .db import SqlReadingStore
from .errors import ConfigError, InvalidScheduleError
from .health import create_health_app
from .interface import MailboxClient, ReadingStore
from .labels import LabelStateCache
from .mailbox import build_mailbox
from .models import BatchReport, DaemonStatus
from .notify import SlackNotifier
from .scheduler import BatchScheduler
from .session import SessionRefresher
from .shutdown import install_signal_handlers
from .stream import StreamProcessor, build_processor

logger = structlog.get_logger()


class HomeMetricsApp:
    """Owns the shared mailbox, store and label cache.

    ``run_daemon()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the batch scheduler (daily trigger times + heartbeat)
    * the session refresher (keeps the mailbox credential alive)
    * the FastAPI health server, unless ``health_port`` is 0
    """

    def __init__(
        self,
        config: HomeMetricsConfig,
        *,
        mailbox: MailboxClient | None = None,
        store: ReadingStore | None = None,
        notifier: SlackNotifier | None = None,
    ) -> None:
        self.config = config
        self.start_time = time.monotonic()
        self._status = DaemonStatus.STARTING
        self._shutdown_event = asyncio.Event()

        self.mailbox = mailbox or build_mailbox(config)
        self.store = store or SqlReadingStore(config.database)
        self.notifier = notifier or SlackNotifier(config.slack)
        self.labels = LabelStateCache(self.mailbox)

        self.processors: list[StreamProcessor] = [
            build_processor(
                stream,
                self.mailbox,
                self.store,
                self.labels,
                config.retry,
                notifier=self.notifier,
                data_dir=config.data_dir,
            )
            for stream in config.enabled_streams
        ]
        self.scheduler = BatchScheduler(
            self.processors,
            self._shutdown_event,
            times=config.scheduler.times,
            tz=config.scheduler.zone,
            heartbeat_minutes=config.scheduler.heartbeat_minutes,
            notifier=self.notifier,
        )
        self.refresher = SessionRefresher(
            self.mailbox,
            self._shutdown_event,
            interval_minutes=config.scheduler.refresh_interval_minutes,
        )

    @property
    def shutdown_event(self) -> asyncio.Event:
        return self._shutdown_event

    @property
    def status(self) -> DaemonStatus:
        if self._status is DaemonStatus.RUNNING and any(
            r.fatal for r in self.scheduler.last_reports.values()
        ):
            return DaemonStatus.DEGRADED
        return self._status

    def health_details(self) -> dict[str, object]:
        next_run = self.scheduler.next_run_at
        return {
            "streams": [p.name for p in self.processors],
            "mailbox_backend": self.config.mailbox_backend,
            "next_run": next_run.isoformat() if next_run else None,
            "batches_run": self.scheduler.batches_run,
            "last_reports": {
                name: report.summary() for name, report in self.scheduler.last_reports.items()
            },
            "session": self.refresher.status(),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, with_store: bool = True) -> None:
        """Open the mailbox session, then the store and the notifier."""
        await self.mailbox.start()
        if with_store:
            await self.store.start()
        await self.notifier.start()

    async def stop(self) -> None:
        self._status = DaemonStatus.STOPPING
        await self.notifier.stop()
        await self.store.stop()
        await self.mailbox.stop()
        self._status = DaemonStatus.STOPPED
        logger.info("homemetrics_stopped")

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def run_once(self, limit: int | None = None, dry_run: bool = False) -> list[BatchReport]:
        """Single-shot mode: every enabled stream once, then stop.

        The store is left closed in dry-run mode since nothing is written.
        """
        logger.info("homemetrics_starting", mode="once", dry_run=dry_run, limit=limit)
        await self.start(with_store=not dry_run)
        self._status = DaemonStatus.RUNNING
        try:
            return await self.scheduler.run_once(limit=limit, dry_run=dry_run)
        finally:
            await self.stop()

    async def run_daemon(self, limit: int | None = None, dry_run: bool = False) -> None:
        """Daemon mode: run until SIGINT/SIGTERM."""
        if not self.config.scheduler.enabled:
            raise ConfigError("daemon mode needs SCHEDULER_ENABLED=true")
        if not self.scheduler.schedule:
            raise InvalidScheduleError("daemon mode needs at least one SCHEDULER_TIMES entry")

        self.start_time = time.monotonic()
        logger.info(
            "homemetrics_starting",
            mode="daemon",
            times=self.config.scheduler.times,
            refresh_interval_minutes=self.config.scheduler.refresh_interval_minutes,
            dry_run=dry_run,
        )

        remove_handlers = install_signal_handlers(self._shutdown_event, on_signal=self._on_shutdown_signal)
        try:
            await self.start(with_store=not dry_run)
            self._status = DaemonStatus.RUNNING
            try:
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self.scheduler.run_forever(limit=limit, dry_run=dry_run))
                    tg.create_task(self.refresher.run())
                    if self.config.health_port:
                        tg.create_task(self._run_health_server())
            except* Exception:
                logger.exception("homemetrics_task_group_error")
            finally:
                await self.stop()
        finally:
            remove_handlers()

    def _on_shutdown_signal(self, sig: signal.Signals) -> None:
        self._status = DaemonStatus.STOPPING
        logger.info(
            "homemetrics_stopping",
            signal=sig.name,
            batch_in_flight=self.scheduler.batch_in_flight,
        )

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task
