"""LibreLinkUp graph payload → canonical GlucoseReading mapper.

Inbound anti-corruption layer: translates LibreLinkUp field-name variants,
timestamp formats and trend codes into the canonical GlucoseReading model.

Output policy: newest first, one reading per timestamp (first seen after the
sort wins, so the "current" measurement beats an identical graph point).
"""

import math
import warnings
from datetime import UTC, datetime
from typing import Any

import structlog

from glucose.domain.models import GlucoseReading, ReadingOrigin
from shared.exceptions import TimestampParseWarning

logger = structlog.get_logger()

# Example: "1/9/2026 10:41:01 AM"
LIBREVIEW_TIMESTAMP_FORMAT = "%m/%d/%Y %I:%M:%S %p"

_TIMESTAMP_FIELDS = ("FactoryTimestamp", "Timestamp")
_VALUE_FIELDS = ("ValueInMgPerDl", "Value", "value")
_TREND_FIELDS = ("TrendArrow", "trendArrow")


def parse_libreview_timestamp(raw: Any) -> datetime | None:
    """Parse a LibreLinkUp timestamp (US 12-hour format or ISO 8601) as UTC."""
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    try:
        parsed = datetime.strptime(text, LIBREVIEW_TIMESTAMP_FORMAT)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _first_present(point: dict[str, Any], fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = point.get(name)
        if value:
            return value
    return None


def _coerce_value(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    return value if math.isfinite(value) and value > 0 else 0.0


def normalize_point(point: dict[str, Any], now: datetime | None = None) -> GlucoseReading:
    """Map one LibreLinkUp measurement dict onto a GlucoseReading."""
    raw_timestamp = _first_present(point, _TIMESTAMP_FIELDS)
    timestamp = parse_libreview_timestamp(raw_timestamp)
    if timestamp is None:
        timestamp = now or datetime.now(UTC)
        message = f"Unparseable LibreView timestamp {raw_timestamp!r}; using current time"
        warnings.warn(message, TimestampParseWarning, stacklevel=2)
        logger.warning("libreview_timestamp_invalid", raw_timestamp=raw_timestamp)

    return GlucoseReading(
        value=_coerce_value(_first_present(point, _VALUE_FIELDS)),
        trend=_first_present(point, _TREND_FIELDS),
        timestamp=timestamp,
        origin=ReadingOrigin.LIBREVIEW,
    )


def dedupe_newest_first(readings: list[GlucoseReading]) -> list[GlucoseReading]:
    """Sort readings newest first and keep the first reading per timestamp."""
    ordered = sorted(readings, key=lambda r: r.timestamp, reverse=True)
    unique: list[GlucoseReading] = []
    seen: set[int] = set()
    for reading in ordered:
        if reading.epoch_ms in seen:
            continue
        seen.add(reading.epoch_ms)
        unique.append(reading)
    return unique


class LibreViewMapper:
    source_name = "libreview"

    def parse(self, graph_data: dict[str, Any]) -> list[GlucoseReading]:
        """Parse the "data" object of a /connections/{id}/graph response.

        The current measurement lives under connection.glucoseMeasurement and
        the history under graphData; either may be missing.
        """
        now = datetime.now(UTC)
        readings: list[GlucoseReading] = []

        connection = graph_data.get("connection")
        current = connection.get("glucoseMeasurement") if isinstance(connection, dict) else None
        if isinstance(current, dict) and current:
            readings.append(normalize_point(current, now))
        else:
            logger.info("libreview_current_measurement_missing")

        history = graph_data.get("graphData")
        if isinstance(history, list):
            for point in history:
                if not point:
                    continue
                if not isinstance(point, dict):
                    logger.warning("libreview_point_malformed", point=repr(point)[:100])
                    continue
                readings.append(normalize_point(point, now))

        return dedupe_newest_first(readings)
