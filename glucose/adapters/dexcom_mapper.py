"""Canonical GlucoseReading → Dexcom Share EGV record mapper.

Outbound anti-corruption layer. Dexcom Share numbers its trend arrows in
the opposite direction to LibreView (1 = rising quickly, 7 = falling
quickly), so a LibreView code v becomes 8 - v. Dates travel as the
"/Date(<epoch ms>)/" wrapper string.
"""

import re
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from glucose.domain.models import GlucoseReading, coerce_trend

SHARE_DATE_PATTERN = re.compile(r"Date\((-?\d+)")


def to_share_trend(trend: Any) -> int:
    """Map a LibreView trend code (1-7) to the Dexcom Share numeric code.

    Non-numeric or out-of-range input maps to flat (4).
    """
    # coerce_trend sends anything unusable to 4, which is its own mirror image
    return 8 - coerce_trend(trend)


def to_share_date(moment: datetime) -> str:
    return f"/Date({int(moment.timestamp() * 1000)})/"


def parse_share_date(raw: Any) -> datetime | None:
    """Decode "/Date(1700000000000)/" (optionally with a zone suffix) to UTC."""
    if not isinstance(raw, str):
        return None
    match = SHARE_DATE_PATTERN.search(raw)
    if match is None:
        return None
    return datetime.fromtimestamp(int(match.group(1)) / 1000, UTC)


def to_share_egv(reading: GlucoseReading) -> dict[str, Any]:
    """Build one EGV record: the same instant as display, system and wall time."""
    stamp = to_share_date(reading.timestamp)
    return {
        "DT": stamp,
        "ST": stamp,
        "WT": stamp,
        "Value": int(round(reading.value)),
        "Trend": to_share_trend(reading.trend),
    }


class ShareGlucoseValue(BaseModel):
    """One record returned by ReadPublisherLatestGlucoseValues."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    value: float | None = Field(None, alias="Value")
    trend: Any = Field(None, alias="Trend")
    system_time: datetime | None = Field(None, alias="ST")

    @field_validator("system_time", mode="before")
    @classmethod
    def decode_share_date(cls, v: Any) -> datetime | None:
        if isinstance(v, datetime):
            return v
        return parse_share_date(v)
