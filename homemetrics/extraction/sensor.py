"""Temperature/humidity extraction from thermometer export attachments.

Three content kinds are understood:

* delimited text (the X-Sense CSV export, or any CSV with recognisable
  headers),
* structured JSON (an array of records, or ``{"data": [...]}`` /
  ``{"readings": [...]}``),
* free text made of ``Key: value`` lines, one block per reading.

The sensor id never comes from the content: it is derived from the
attachment file name, see :func:`sensor_name_from_filename`.
"""

from __future__ import annotations

import csv
import json
import re
import unicodedata
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

import structlog

from ..errors import (
    AmbiguousSensorNameError,
    MalformedValueError,
    NoDataError,
    UnsupportedFormatError,
)
from ..models import SensorReading
from .common import decode_text, parse_number, parse_timestamp

logger = structlog.get_logger()

# "Thermo-cabane_Exporter les données_20251104.csv"
_PREFIXED_NAME_RE = re.compile(r"Thermo-([^_]+)_")
# "Bureau_Exporter les données_20251031.csv", "Kitchen_Export data_20251103.csv"
_EXPORT_NAME_RE = re.compile(r"^([^_]+)_(?:Exporter|Export)\b")

_NUMBER_RE = re.compile(r"-?\d+(?:[.,]\d+)?")
_KEY_VALUE_RE = re.compile(r"^\s*([^:]+?)\s*:\s*(.+?)\s*$")

_TIMESTAMP_TOKENS = {"timestamp", "time", "datetime", "date", "temps", "heure", "horodatage"}
_SENSOR_TOKENS = {"sensor", "capteur", "device", "thermometer"}
_LOCATION_TOKENS = {"location", "room", "lieu", "piece", "emplacement"}


class ContentKind(str, Enum):
    DELIMITED = "delimited"
    STRUCTURED = "structured"
    TEXT = "text"


_EXTENSION_KINDS = {
    ".csv": ContentKind.DELIMITED,
    ".tsv": ContentKind.DELIMITED,
    ".json": ContentKind.STRUCTURED,
    ".txt": ContentKind.TEXT,
}


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------


def sensor_name_from_filename(filename: str) -> str:
    """Derive the sensor id from an export file name.

    Conventions, tried in order:

    1. ``Thermo-<X>_...`` gives ``X``;
    2. ``<X>_Exporter ...`` / ``<X>_Export ...`` gives ``X``.

    Anything else raises :class:`AmbiguousSensorNameError` rather than
    guessing an id that would pollute the aggregation keys.
    """
    name = PurePosixPath(filename.replace("\\", "/")).name

    match = _PREFIXED_NAME_RE.search(name)
    if match:
        return match.group(1)

    match = _EXPORT_NAME_RE.match(name)
    if match:
        return match.group(1)

    raise AmbiguousSensorNameError(filename)


def detect_content_kind(filename: str, text: str) -> ContentKind:
    """Use the extension when it is known, otherwise sniff the content."""
    suffix = PurePosixPath(filename).suffix.lower()
    if suffix in _EXTENSION_KINDS:
        return _EXTENSION_KINDS[suffix]

    stripped = text.strip()
    if not stripped:
        raise UnsupportedFormatError(f"{filename}: empty content")
    if stripped[0] in "{[":
        return ContentKind.STRUCTURED

    lines = [line for line in stripped.splitlines() if line.strip()]
    if len(lines) >= 2 and any(d in lines[0] for d in ",;\t"):
        return ContentKind.DELIMITED
    if any(_KEY_VALUE_RE.match(line) for line in lines):
        return ContentKind.TEXT

    raise UnsupportedFormatError(f"{filename}: unrecognised content")


def extract_sensor_readings(attachment_name: str, attachment_bytes: bytes) -> list[SensorReading]:
    """Turn one export attachment into sensor readings.

    Raises :class:`AmbiguousSensorNameError`, :class:`UnsupportedFormatError`,
    :class:`MalformedValueError` or :class:`NoDataError`.
    """
    sensor_id = sensor_name_from_filename(attachment_name)
    text = decode_text(attachment_bytes)
    kind = detect_content_kind(attachment_name, text)

    if kind is ContentKind.DELIMITED:
        readings = _from_delimited(text, sensor_id)
    elif kind is ContentKind.STRUCTURED:
        readings = _from_structured(text, sensor_id)
    else:
        readings = _from_key_values(text, sensor_id)

    if not readings:
        raise NoDataError(f"{attachment_name}: no well-formed reading")

    logger.debug(
        "sensor_readings_extracted",
        filename=attachment_name,
        sensor_id=sensor_id,
        kind=kind.value,
        count=len(readings),
    )
    return readings


# ----------------------------------------------------------------------
# Column classification
# ----------------------------------------------------------------------


def _normalize_key(key: str) -> list[str]:
    folded = unicodedata.normalize("NFKD", key).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^a-z0-9]+", " ", folded.lower()).split()


def _classify(key: str) -> str | None:
    tokens = _normalize_key(key)
    if not tokens:
        return None
    if any(t in _TIMESTAMP_TOKENS for t in tokens):
        return "timestamp"
    if any(t.startswith("temperat") or t == "temp" for t in tokens):
        return "temperature"
    if any(t.startswith("humid") or t in ("hum", "rh") for t in tokens):
        return "humidity"
    if any(t in _SENSOR_TOKENS for t in tokens):
        return "sensor"
    if any(t in _LOCATION_TOKENS for t in tokens):
        return "location"
    return None


def _measure(raw: Any) -> float:
    if isinstance(raw, bool):
        raise MalformedValueError(f"Not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    match = _NUMBER_RE.search(str(raw))
    if not match:
        raise MalformedValueError(f"Not a number: {raw!r}")
    return parse_number(match.group(0))


def _optional_measure(raw: Any) -> float | None:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    return _measure(raw)


def _build(fields: Mapping[str, Any], sensor_id: str) -> SensorReading:
    if "timestamp" not in fields or "temperature" not in fields:
        raise MalformedValueError("timestamp and temperature are required")
    location = fields.get("location")
    location = str(location).strip() if location not in (None, "") else sensor_id
    return SensorReading(
        sensor_id=sensor_id,
        timestamp=parse_timestamp(str(fields["timestamp"])),
        temperature=_measure(fields["temperature"]),
        humidity=_optional_measure(fields.get("humidity")),
        location=location,
    )


def _collect(records: Iterable[tuple[int, Mapping[str, Any]]], sensor_id: str) -> list[SensorReading]:
    readings: list[SensorReading] = []
    for position, fields in records:
        try:
            readings.append(_build(fields, sensor_id))
        except MalformedValueError as exc:
            logger.warning("sensor_row_skipped", sensor_id=sensor_id, row=position, reason=str(exc))
    return readings


# ----------------------------------------------------------------------
# Delimited text
# ----------------------------------------------------------------------


def _pick_delimiter(header_line: str) -> str:
    counts = {d: header_line.count(d) for d in (",", ";", "\t")}
    best = max(counts, key=lambda d: (counts[d], d == ","))
    return best if counts[best] else ","


def _looks_like_timestamp(value: str) -> bool:
    try:
        parse_timestamp(value)
    except MalformedValueError:
        return False
    return True


def _from_delimited(text: str, sensor_id: str) -> list[SensorReading]:
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return []

    delimiter = _pick_delimiter(lines[0])
    rows = list(csv.reader(lines, delimiter=delimiter))
    first = rows[0]
    if len(first) < 2:
        raise MalformedValueError(f"expected at least 2 columns, found {len(first)}")

    if _looks_like_timestamp(first[0]):
        header: list[str] | None = None
        body = rows
    else:
        header = first
        body = rows[1:]

    columns: dict[str, int] = {}
    if header is not None:
        for index, name in enumerate(header):
            role = _classify(name)
            if role and role not in columns:
                columns[role] = index
    if "timestamp" not in columns or "temperature" not in columns:
        # X-Sense positional layout: timestamp, temperature, humidity
        columns = {"timestamp": 0, "temperature": 1, "humidity": 2}

    def records() -> Iterable[tuple[int, dict[str, str]]]:
        offset = 1 if header is None else 2
        for number, row in enumerate(body, start=offset):
            yield number, {
                role: row[index].strip()
                for role, index in columns.items()
                if index < len(row)
            }

    return _collect(records(), sensor_id)


# ----------------------------------------------------------------------
# Structured (JSON)
# ----------------------------------------------------------------------


def _from_structured(text: str, sensor_id: str) -> list[SensorReading]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedValueError(f"invalid JSON: {exc}") from exc

    if isinstance(document, dict):
        for key in ("data", "readings"):
            if isinstance(document.get(key), list):
                document = document[key]
                break
        else:
            document = [document]

    if not isinstance(document, list):
        raise MalformedValueError("JSON document holds no list of readings")

    def records() -> Iterable[tuple[int, dict[str, Any]]]:
        for position, item in enumerate(document):
            if not isinstance(item, dict):
                continue
            fields: dict[str, Any] = {}
            for key, value in item.items():
                role = _classify(str(key))
                if role and role not in fields:
                    fields[role] = value
            yield position, fields

    return _collect(records(), sensor_id)


# ----------------------------------------------------------------------
# Free text
# ----------------------------------------------------------------------


def _from_key_values(text: str, sensor_id: str) -> list[SensorReading]:
    blocks: list[dict[str, str]] = []
    current: dict[str, str] = {}

    for line in text.splitlines():
        if not line.strip():
            if current:
                blocks.append(current)
                current = {}
            continue
        match = _KEY_VALUE_RE.match(line)
        if not match:
            continue
        role = _classify(match.group(1))
        if role is None:
            continue
        if role in current:
            # a repeated key starts the next reading
            blocks.append(current)
            current = {}
        current[role] = match.group(2)

    if current:
        blocks.append(current)

    return _collect(enumerate(blocks, start=1), sensor_id)
