"""Label name → provider label id cache shared by all streams."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from types import MappingProxyType

import structlog

from .errors import CredentialsExhaustedError, LabelCacheError, MailboxError
from .interface import MailboxClient

logger = structlog.get_logger()


class LabelStateCache:
    """Read-mostly map with serialized refreshes.

    Readers never take the lock: they read ``self._labels``, which is
    only ever replaced by a new complete mapping, so they see either the
    old or the new snapshot.  Refreshes are serialized by an
    :class:`asyncio.Lock`; a caller that waited behind an in-flight
    refresh reuses its result instead of calling the provider again.
    """

    def __init__(self, mailbox: MailboxClient) -> None:
        self._mailbox = mailbox
        self._labels: Mapping[str, str] = MappingProxyType({})
        self._lock = asyncio.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        """Number of completed refreshes."""
        return self._generation

    def snapshot(self) -> Mapping[str, str]:
        return self._labels

    async def refresh(self) -> None:
        seen = self._generation
        async with self._lock:
            if self._generation != seen:
                # Another caller refreshed while we waited.
                return
            try:
                pairs = await self._mailbox.list_labels()
            except CredentialsExhaustedError:
                raise
            except MailboxError as exc:
                logger.warning("label_refresh_failed", error=str(exc))
                raise LabelCacheError(f"cannot list labels: {exc}") from exc

            self._labels = MappingProxyType(dict(pairs))
            self._generation += 1
            logger.debug("labels_refreshed", count=len(self._labels), generation=self._generation)

    async def resolve(self, name: str) -> str | None:
        """Return the id of *name*, refreshing once on a miss."""
        label_id = self._labels.get(name)
        if label_id is not None:
            return label_id
        await self.refresh()
        return self._labels.get(name)
