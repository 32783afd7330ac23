"""Periodic session refresh keeping the mailbox credential alive."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import structlog

from .errors import HomeMetricsError
from .interface import MailboxClient

logger = structlog.get_logger()

DEFAULT_INTERVAL_MINUTES = 45
# Access tokens live 60 minutes; keep a safety margin.
MAX_INTERVAL_MINUTES = 55


class SessionRefresher:
    """Calls ``mailbox.probe()`` every *interval_minutes*.

    The probe lets the credential layer notice token age and renew it
    ahead of expiry; the refresher never renews anything itself.  A
    failed tick is logged and retried at the next one.
    """

    def __init__(
        self,
        mailbox: MailboxClient,
        shutdown_event: asyncio.Event,
        *,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
    ) -> None:
        if not 1 <= interval_minutes <= MAX_INTERVAL_MINUTES:
            raise ValueError(
                f"refresh interval must be between 1 and {MAX_INTERVAL_MINUTES} minutes, "
                f"got {interval_minutes}"
            )
        self._mailbox = mailbox
        self._shutdown = shutdown_event
        self._interval = interval_minutes * 60.0
        self.last_success: datetime | None = None
        self.last_error: str | None = None
        self.consecutive_failures = 0

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def tick(self) -> bool:
        """Run one probe; return whether it succeeded."""
        try:
            await self._mailbox.probe()
        except (HomeMetricsError, OSError) as exc:
            self._record_failure(exc)
            logger.warning(
                "session_refresh_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                consecutive_failures=self.consecutive_failures,
            )
            return False
        except Exception as exc:
            self._record_failure(exc)
            logger.exception("session_refresh_crashed", consecutive_failures=self.consecutive_failures)
            return False

        self.last_success = datetime.now(UTC)
        self.last_error = None
        self.consecutive_failures = 0
        logger.info("session_refreshed")
        return True

    def _record_failure(self, exc: BaseException) -> None:
        self.consecutive_failures += 1
        self.last_error = f"{type(exc).__name__}: {exc}"

    async def run(self) -> None:
        """Tick until the shutdown event is set."""
        logger.info("session_refresher_started", interval_minutes=self._interval / 60)
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._interval)
            except TimeoutError:
                await self.tick()
        logger.info("session_refresher_stopped")

    def status(self) -> dict[str, object]:
        return {
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
        }
