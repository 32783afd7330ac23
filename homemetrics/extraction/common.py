"""Decoding and value parsing helpers shared by the extractors."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime

from ..errors import MalformedValueError

# Naive formats are taken to be UTC, like the exports they come from.
_TIMESTAMP_FORMATS = (
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
)

_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<\s*(?:br\s*/?|/p|/div|/tr|/li|/h\d)\s*>", re.IGNORECASE)
_BLOCK_RE = re.compile(r"<\s*(script|style)[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)


def decode_text(payload: bytes) -> str:
    """Decode attachment bytes: UTF-8 (BOM tolerated), else Windows-1252."""
    try:
        return payload.decode("utf-8-sig")
    except UnicodeDecodeError:
        return payload.decode("cp1252", errors="replace")


def parse_number(raw: str) -> float:
    """Parse a float written with a decimal point or a decimal comma."""
    cleaned = raw.strip().replace("\u00a0", "").replace(" ", "")
    if "," in cleaned and "." not in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        return float(cleaned)
    except ValueError:
        raise MalformedValueError(f"Not a number: {raw!r}") from None


def parse_timestamp(raw: str) -> datetime:
    """Parse the timestamp layouts seen in sensor exports into UTC."""
    value = raw.strip()
    if not value:
        raise MalformedValueError("Empty timestamp")

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        parsed = None

    if parsed is None:
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        raise MalformedValueError(f"Unsupported timestamp format: {raw!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def html_to_text(markup: str) -> str:
    """Flatten an HTML body to text, one line per block element."""
    text = _BLOCK_RE.sub("", markup)
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    lines = (line.strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)
