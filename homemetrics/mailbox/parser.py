"""MIME parser: raw RFC 822 bytes → :class:`MessageEnvelope`.

Shared by both mailbox backends (Gmail ``format=raw`` and IMAP
``RFC822`` fetches return the same bytes).
"""

from __future__ import annotations

import email
import email.message
import email.policy
import email.utils
from collections.abc import Iterable
from datetime import datetime

from ..models import Attachment, MessageEnvelope


class MimeParser:
    """Stateless parser: walks every MIME part for bodies and attachments."""

    def parse(
        self,
        raw_bytes: bytes,
        *,
        message_id: str,
        labels: Iterable[str] = (),
    ) -> MessageEnvelope:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)

        body_text, body_html = self._extract_bodies(msg)

        return MessageEnvelope(
            message_id=message_id,
            subject=str(msg.get("Subject", "")),
            sender=str(msg.get("From", "")),
            date=self._parse_date(msg.get("Date")),
            body_text=body_text,
            body_html=body_html,
            attachments=tuple(self._extract_attachments(msg)),
            labels=frozenset(labels),
        )

    def _parse_date(self, value: object) -> datetime | None:
        if not value:
            return None
        try:
            return email.utils.parsedate_to_datetime(str(value))
        except (TypeError, ValueError):
            return None

    def _extract_bodies(self, msg: email.message.EmailMessage) -> tuple[str | None, str | None]:
        """Return the first (plain_text, html_text) parts found."""
        body_text: str | None = None
        body_html: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue

            content_type = part.get_content_type()
            payload = part.get_content()
            if content_type == "text/plain" and isinstance(payload, str) and body_text is None:
                body_text = payload
            elif content_type == "text/html" and isinstance(payload, str) and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: email.message.EmailMessage) -> list[Attachment]:
        attachments: list[Attachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()

            # Content-Disposition: attachment, or any named leaf part
            if "attachment" not in disposition and not filename:
                continue

            # Raw transfer-decoded bytes: exports often omit their charset.
            raw = part.get_payload(decode=True)
            if not isinstance(raw, bytes):
                continue

            attachments.append(
                Attachment(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    payload=raw,
                )
            )

        return attachments
