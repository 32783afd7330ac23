"""Pool chemistry extraction from Blue Riiot style report bodies."""

from __future__ import annotations

import re
from datetime import datetime

import structlog

from ..errors import MalformedValueError, NoMetricsFoundError
from ..models import PoolReading
from .common import parse_number

logger = structlog.get_logger()

# Used for alerting only; out-of-range values are still stored.
PH_OPTIMAL_RANGE = (7.0, 7.6)
ORP_OPTIMAL_RANGE = (650.0, 750.0)

# Values outside these bounds are physically impossible and are ignored.
_PH_BOUNDS = (0.0, 14.0)
_ORP_BOUNDS = (0.0, 1000.0)

_NUMBER = r"([0-9]+(?:[.,][0-9]+)?)"

_TEMPERATURE_PATTERNS = (
    re.compile(rf"(?i)\btemp[ée]rature\s*[:=\s]\s*{_NUMBER}"),
    re.compile(rf"(?i)\btemp\s*[:=\s]\s*{_NUMBER}"),
    re.compile(rf"{_NUMBER}\s*°\s*C"),
)
_PH_PATTERNS = (
    re.compile(rf"(?i)\bph\s*[:=\s]\s*{_NUMBER}"),
)
_ORP_PATTERNS = (
    re.compile(rf"(?i)\borp\s*[:=\s]\s*{_NUMBER}\s*(?:mv)?"),
    re.compile(rf"(?i)\bredox\s*[:=\s]\s*{_NUMBER}\s*(?:mv)?"),
    re.compile(rf"\b{_NUMBER}\s*mV\b"),
)


def _first_match(
    text: str,
    patterns: tuple[re.Pattern[str], ...],
    metric: str,
    bounds: tuple[float, float] | None = None,
) -> float | None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            try:
                value = parse_number(match.group(1))
            except MalformedValueError:
                continue
            if bounds and not bounds[0] <= value <= bounds[1]:
                logger.warning("pool_value_out_of_bounds", metric=metric, value=value)
                continue
            return value
    return None


def extract_pool_metrics(text: str, *, timestamp: datetime, email_id: str) -> PoolReading:
    """Scan a report body for water temperature, pH and ORP.

    Each metric is matched independently and tolerates decimal commas
    and ``Label : value unit`` layouts.  A partial reading is returned
    as long as one metric was found; otherwise
    :class:`NoMetricsFoundError` is raised.

    The reading's timestamp is the email's date, never a value from the
    body.
    """
    temperature = _first_match(text, _TEMPERATURE_PATTERNS, "temperature")
    ph = _first_match(text, _PH_PATTERNS, "ph", _PH_BOUNDS)
    orp = _first_match(text, _ORP_PATTERNS, "orp", _ORP_BOUNDS)

    if temperature is None and ph is None and orp is None:
        raise NoMetricsFoundError("no temperature, pH or ORP value in message body")

    logger.debug("pool_metrics_extracted", email_id=email_id, temperature=temperature, ph=ph, orp=orp)
    return PoolReading(
        timestamp=timestamp,
        email_id=email_id,
        temperature=temperature,
        ph=ph,
        orp=orp,
    )


def pool_alerts(reading: PoolReading) -> list[str]:
    """Describe every metric of *reading* outside its optimal range."""
    alerts: list[str] = []
    if reading.ph is not None:
        low, high = PH_OPTIMAL_RANGE
        if reading.ph < low:
            alerts.append(f"pH {reading.ph:.2f} below {low}")
        elif reading.ph > high:
            alerts.append(f"pH {reading.ph:.2f} above {high}")
    if reading.orp is not None:
        low, high = ORP_OPTIMAL_RANGE
        if reading.orp < low:
            alerts.append(f"ORP {reading.orp:.0f} mV below {low:.0f}")
        elif reading.orp > high:
            alerts.append(f"ORP {reading.orp:.0f} mV above {high:.0f}")
    return alerts


def describe_pool_reading(reading: PoolReading) -> str:
    parts = []
    if reading.temperature is not None:
        parts.append(f"{reading.temperature:.1f}°C")
    if reading.ph is not None:
        parts.append(f"pH {reading.ph:.2f}")
    if reading.orp is not None:
        parts.append(f"ORP {reading.orp:.0f} mV")
    return ", ".join(parts)
