"""Gmail REST API mailbox backend.

``googleapiclient`` is blocking and its ``httplib2`` transport is not
thread-safe, so every call runs in a worker thread under one lock.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeVar

import httplib2
import structlog
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..config import GmailConfig
from ..errors import (
    AuthExpiredError,
    MailboxError,
    MessageNotFoundError,
    RateLimitedError,
    TransientMailboxError,
)
from ..interface import MailboxClient
from ..models import MessageEnvelope
from .credentials import GmailCredentials
from .parser import MimeParser

logger = structlog.get_logger()

T = TypeVar("T")

_RATE_LIMIT_REASONS = ("ratelimitexceeded", "userratelimitexceeded", "quotaexceeded")
_PAGE_SIZE = 500


def _translate_http_error(exc: HttpError) -> MailboxError:
    status = exc.resp.status
    reason = str(exc.reason or "").lower().replace(" ", "")
    if status == 404:
        return MessageNotFoundError(str(exc))
    if status == 429 or (status == 403 and any(r in reason for r in _RATE_LIMIT_REASONS)):
        return RateLimitedError(str(exc))
    if status == 401:
        return AuthExpiredError(str(exc))
    if status >= 500:
        return TransientMailboxError(str(exc))
    # 400, or a 403 other than a quota: not retried
    return MailboxError(f"gmail rejected the request (HTTP {status}): {exc}")


class GmailMailboxClient(MailboxClient):
    """Async :class:`MailboxClient` over the Gmail v1 REST API."""

    def __init__(
        self,
        config: GmailConfig,
        *,
        credentials: GmailCredentials | None = None,
        parser: MimeParser | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials or GmailCredentials(
            config.token_path,
            refresh_margin=timedelta(minutes=config.refresh_margin_minutes),
        )
        self._parser = parser or MimeParser()
        self._service: Any = None
        self._lock = asyncio.Lock()
        self._label_ids: dict[str, str] = {}

    @property
    def credentials(self) -> GmailCredentials:
        return self._credentials

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._build_service)
        logger.info("gmail_client_started", user_id=self._config.user_id)

    def _build_service(self) -> None:
        creds = self._credentials.ensure_fresh()
        self._service = build("gmail", "v1", credentials=creds, cache_discovery=False)

    async def stop(self) -> None:
        if self._service is not None:
            await asyncio.to_thread(self._service.close)
            self._service = None
            logger.info("gmail_client_stopped")

    # ------------------------------------------------------------------
    # MailboxClient
    # ------------------------------------------------------------------

    async def search(self, label_id: str, limit: int | None = None) -> list[str]:
        return await self._call("search", self._search_sync, label_id, limit)

    async def fetch(self, message_id: str) -> MessageEnvelope:
        return await self._call("fetch", self._fetch_sync, message_id)

    async def list_labels(self) -> list[tuple[str, str]]:
        return await self._call("list_labels", self._list_labels_sync)

    async def relabel(self, message_id: str, remove: str, add: str) -> None:
        await self._call("relabel", self._modify_sync, message_id, [remove], [add])

    async def archive(self, message_id: str, destination: str) -> None:
        name = destination.lstrip("/")
        if name not in self._label_ids:
            await self.list_labels()
        add = [self._label_ids[name]] if name in self._label_ids else []
        if not add:
            logger.warning("archive_label_missing", label=name, message_id=message_id)
        await self._call("archive", self._modify_sync, message_id, ["INBOX"], add)

    async def mark_read(self, message_id: str) -> None:
        await self._call("mark_read", self._modify_sync, message_id, ["UNREAD"], [])

    async def probe(self) -> None:
        profile = await self._call("probe", self._profile_sync)
        logger.debug(
            "gmail_probe_ok",
            email=profile.get("emailAddress"),
            expires_in=str(self._credentials.expires_in()),
        )

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            if self._service is None:
                await asyncio.to_thread(self._build_service)
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._invoke, func, *args),
                    timeout=self._config.timeout_seconds,
                )
            except TimeoutError:
                # The worker thread may still be inside the old transport.
                self._service = None
                raise TransientMailboxError(
                    f"gmail {operation} timed out after {self._config.timeout_seconds}s"
                ) from None

    def _invoke(self, func: Callable[..., T], *args: Any) -> T:
        self._credentials.ensure_fresh()
        try:
            return func(*args)
        except HttpError as exc:
            raise _translate_http_error(exc) from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise TransientMailboxError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_sync(self, label_id: str, limit: int | None) -> list[str]:
        messages = self._service.users().messages()
        page_size = min(limit, _PAGE_SIZE) if limit else _PAGE_SIZE
        request = messages.list(
            userId=self._config.user_id,
            labelIds=[label_id],
            maxResults=page_size,
            includeSpamTrash=False,
        )

        ids: list[str] = []
        while request is not None:
            response = request.execute()
            ids.extend(m["id"] for m in response.get("messages", []))
            if limit is not None and len(ids) >= limit:
                return ids[:limit]
            request = messages.list_next(request, response)
        return ids

    def _fetch_sync(self, message_id: str) -> MessageEnvelope:
        response = (
            self._service.users()
            .messages()
            .get(userId=self._config.user_id, id=message_id, format="raw")
            .execute()
        )
        data = response.get("raw", "")
        raw_bytes = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
        return self._parser.parse(
            raw_bytes,
            message_id=message_id,
            labels=response.get("labelIds", []),
        )

    def _list_labels_sync(self) -> list[tuple[str, str]]:
        response = self._service.users().labels().list(userId=self._config.user_id).execute()
        pairs = [(label["name"], label["id"]) for label in response.get("labels", [])]
        self._label_ids = dict(pairs)
        return pairs

    def _modify_sync(self, message_id: str, remove: list[str], add: list[str]) -> None:
        body: dict[str, list[str]] = {}
        if remove:
            body["removeLabelIds"] = remove
        if add:
            body["addLabelIds"] = add
        self._service.users().messages().modify(
            userId=self._config.user_id,
            id=message_id,
            body=body,
        ).execute()

    def _profile_sync(self) -> dict[str, Any]:
        return self._service.users().getProfile(userId=self._config.user_id).execute()
