"""Gmail-over-IMAP mailbox backend wrapping stdlib imaplib.

Gmail exposes labels through the ``X-GM-LABELS`` extension, so a label
id is simply its name.  All blocking ``imaplib`` operations run through
``asyncio.to_thread()`` under one lock: an IMAP connection carries a
single command stream.
"""

from __future__ import annotations

import asyncio
import imaplib
import re
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from ..config import ImapConfig
from ..errors import (
    AuthExpiredError,
    MessageNotFoundError,
    TransientMailboxError,
)
from ..interface import MailboxClient
from ..models import MessageEnvelope
from .parser import MimeParser

logger = structlog.get_logger()

T = TypeVar("T")

# (\HasNoChildren) "/" "homemetrics/todo/xsense"
_LIST_RE = re.compile(rb'^\((?P<flags>[^)]*)\)\s+(?:"[^"]*"|NIL)\s+(?P<name>.+)$')


def _quote(name: str) -> str:
    if name.startswith("\\"):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _parse_list_line(line: bytes) -> str | None:
    match = _LIST_RE.match(line)
    if not match:
        return None
    name = match.group("name").decode("utf-8", errors="replace").strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return name


class ImapMailboxClient(MailboxClient):
    """Async :class:`MailboxClient` over Gmail's IMAP extensions."""

    def __init__(self, config: ImapConfig, *, parser: MimeParser | None = None) -> None:
        self._config = config
        self._parser = parser or MimeParser()
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, login, and select the configured mailbox."""
        async with self._lock:
            await self._run("connect", self._connect_sync)
        logger.info("imap_connected", host=self._config.host, mailbox=self._config.mailbox)

    def _connect_sync(self) -> None:
        if self._config.use_ssl:
            conn = imaplib.IMAP4_SSL(self._config.host, self._config.port)
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port)
        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
        except imaplib.IMAP4.error as exc:
            raise AuthExpiredError(f"IMAP login rejected: {exc}") from exc
        status, _ = conn.select(_quote(self._config.mailbox))
        if status != "OK":
            raise TransientMailboxError(f"cannot select {self._config.mailbox!r}")
        self._conn = conn

    async def stop(self) -> None:
        """Close mailbox and logout."""
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._disconnect_sync)
                self._conn = None
                logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    # ------------------------------------------------------------------
    # MailboxClient
    # ------------------------------------------------------------------

    async def search(self, label_id: str, limit: int | None = None) -> list[str]:
        uids = await self._call("search", self._search_sync, label_id)
        return uids[:limit] if limit is not None else uids

    async def fetch(self, message_id: str) -> MessageEnvelope:
        return await self._call("fetch", self._fetch_sync, message_id)

    async def list_labels(self) -> list[tuple[str, str]]:
        names = await self._call("list_labels", self._list_sync)
        return [(name, name) for name in names]

    async def relabel(self, message_id: str, remove: str, add: str) -> None:
        await self._call("relabel", self._store_sync, message_id, "-X-GM-LABELS", remove)
        await self._call("relabel", self._store_sync, message_id, "+X-GM-LABELS", add)

    async def archive(self, message_id: str, destination: str) -> None:
        await self._call("archive", self._store_sync, message_id, "-X-GM-LABELS", "\\Inbox")
        await self._call("archive", self._store_sync, message_id, "+X-GM-LABELS", destination.lstrip("/"))

    async def mark_read(self, message_id: str) -> None:
        await self._call("mark_read", self._store_sync, message_id, "+FLAGS", "\\Seen")

    async def probe(self) -> None:
        """NOOP, reconnecting first if the session was dropped."""
        await self._call("probe", self._noop_sync)

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            if self._conn is None:
                await self._run("connect", self._connect_sync)
            return await self._run(operation, func, *args)

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self._config.timeout_seconds,
            )
        except TimeoutError:
            self._conn = None
            raise TransientMailboxError(
                f"imap {operation} timed out after {self._config.timeout_seconds}s"
            ) from None
        except (imaplib.IMAP4.abort, OSError) as exc:
            # The connection is unusable; the next call reconnects.
            self._conn = None
            raise TransientMailboxError(f"imap {operation} failed: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise TransientMailboxError(f"imap {operation} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _search_sync(self, label: str) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, "X-GM-LABELS", _quote(label))
        if status != "OK":
            raise TransientMailboxError(f"SEARCH failed for label {label!r}")
        if not data or not data[0]:
            return []
        return [uid.decode() for uid in data[0].split()]

    def _fetch_sync(self, uid: str) -> MessageEnvelope:
        assert self._conn is not None
        status, msg_data = self._conn.uid("FETCH", uid, "(RFC822)")
        if status != "OK":
            raise TransientMailboxError(f"FETCH failed for UID {uid}")
        for item in msg_data or []:
            if isinstance(item, tuple) and len(item) >= 2:
                return self._parser.parse(item[1], message_id=uid)
        raise MessageNotFoundError(f"UID {uid} not found")

    def _list_sync(self) -> list[str]:
        assert self._conn is not None
        status, data = self._conn.list()
        if status != "OK":
            raise TransientMailboxError("LIST failed")
        names = []
        for line in data or []:
            if isinstance(line, bytes):
                name = _parse_list_line(line)
                if name:
                    names.append(name)
        return names

    def _store_sync(self, uid: str, command: str, value: str) -> None:
        assert self._conn is not None
        status, _ = self._conn.uid("STORE", uid, command, f"({_quote(value)})")
        if status != "OK":
            raise TransientMailboxError(f"STORE {command} failed for UID {uid}")

    def _noop_sync(self) -> None:
        assert self._conn is not None
        status, _ = self._conn.noop()
        if status != "OK":
            raise TransientMailboxError("NOOP failed")
