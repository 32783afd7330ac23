"""Abstract collaborators consumed by the ingestion core."""

from __future__ import annotations

import abc
from collections.abc import Sequence

from .models import MessageEnvelope, PoolReading, SensorReading


class MailboxClient(abc.ABC):
    """Async capability over a label-aware mailbox.

    Implementations own the session/credential object and must be safe
    to call from concurrent tasks (the session refresher and every
    stream processor share one instance).  Every call is bounded by a
    timeout; an expired call raises :class:`TransientMailboxError`.
    """

    async def start(self) -> None:
        """Open the session.  Default: nothing to do."""

    async def stop(self) -> None:
        """Release the session.  Default: nothing to do."""

    @abc.abstractmethod
    async def search(self, label_id: str, limit: int | None = None) -> list[str]:
        """Return ids of messages carrying *label_id*, at most *limit*."""

    @abc.abstractmethod
    async def fetch(self, message_id: str) -> MessageEnvelope:
        """Return headers, bodies and attachments of one message."""

    @abc.abstractmethod
    async def list_labels(self) -> list[tuple[str, str]]:
        """Return every label as ``(name, id)`` pairs."""

    @abc.abstractmethod
    async def relabel(self, message_id: str, remove: str, add: str) -> None: ...

    @abc.abstractmethod
    async def archive(self, message_id: str, destination: str) -> None: ...

    @abc.abstractmethod
    async def mark_read(self, message_id: str) -> None: ...

    @abc.abstractmethod
    async def probe(self) -> None:
        """Issue one cheap authenticated call.

        Its only purpose is to let the credential layer notice token age
        and renew ahead of expiry.
        """


class ReadingStore(abc.ABC):
    """Async capability over the time-series store.

    Writes are idempotent on the readings' natural keys: re-saving a
    reading is a no-op, never an error.
    """

    async def start(self) -> None:
        """Open connections / create schema.  Default: nothing to do."""

    async def stop(self) -> None:
        """Dispose connections.  Default: nothing to do."""

    @abc.abstractmethod
    async def save_sensor_readings(self, readings: Sequence[SensorReading]) -> int:
        """Persist *readings*, returning how many were newly inserted."""

    @abc.abstractmethod
    async def save_pool_reading(self, reading: PoolReading) -> bool:
        """Persist *reading*, returning ``False`` when it already existed."""
