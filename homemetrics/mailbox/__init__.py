"""Mailbox backends implementing :class:`~homemetrics.interface.MailboxClient`."""

from __future__ import annotations

from ..config import HomeMetricsConfig
from ..interface import MailboxClient
from .gmail import GmailMailboxClient
from .imap import ImapMailboxClient
from .parser import MimeParser


def build_mailbox(config: HomeMetricsConfig) -> MailboxClient:
    """Instantiate the backend selected by ``mailbox_backend``."""
    if config.mailbox_backend == "imap":
        return ImapMailboxClient(config.imap)
    return GmailMailboxClient(config.gmail)


__all__ = ["GmailMailboxClient", "ImapMailboxClient", "MimeParser", "build_mailbox"]
