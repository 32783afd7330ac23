"""Slack incoming-webhook notifications (fire-and-forget)."""

from __future__ import annotations

import httpx
import structlog

from .config import SlackConfig
from .models import BatchReport, MessageOutcome

logger = structlog.get_logger()


class SlackNotifier:
    """Posts short status messages to a Slack incoming webhook.

    Disabled when no webhook URL is configured.  Delivery problems are
    logged and swallowed: a notification never fails a batch.
    """

    def __init__(self, config: SlackConfig, *, client: httpx.AsyncClient | None = None) -> None:
        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self._config.webhook_url)

    async def start(self) -> None:
        if not self.enabled:
            logger.info("slack_notifier_disabled", reason="no_webhook_url")
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout_seconds))
        logger.info("slack_notifier_started")

    async def stop(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, text: str) -> bool:
        """POST *text*; return whether Slack accepted it."""
        if not self.enabled or self._client is None:
            return False
        try:
            response = await self._client.post(self._config.webhook_url, json={"text": text})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("slack_notification_failed", error=str(exc))
            return False
        return True

    # ------------------------------------------------------------------
    # Message templates
    # ------------------------------------------------------------------

    async def message_stored(self, stream: str, outcome: MessageOutcome, alerts: list[str]) -> bool:
        lines = [f":white_check_mark: *{stream}*: {outcome.summary or f'{outcome.readings} readings'}"]
        lines.extend(f":warning: {alert}" for alert in alerts)
        return await self.send("\n".join(lines))

    async def message_failed(self, stream: str, outcome: MessageOutcome) -> bool:
        return await self.send(
            f":x: *{stream}*: message {outcome.message_id} failed: {outcome.reason}"
        )

    async def batch_failed(self, report: BatchReport) -> bool:
        return await self.send(f":rotating_light: *{report.stream}*: batch aborted: {report.error}")
