"""Canonical glucose reading and the sync engine's result types.

GlucoseReading is the unit exchanged between the LibreView source and the
Dexcom Share destination. It is always normalized:
- timestamp: timezone-aware UTC instant, the key for ordering and dedup
- trend: 1-7 on the LibreView scale (1 = falling fast, 4 = flat, 7 = rising fast)
- value: mg/dL, never negative; 0 means the vendor sent no value
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReadingOrigin(StrEnum):
    LIBREVIEW = "libreview"


class TrendArrow(IntEnum):
    """LibreView trend arrow codes."""

    FALLING_QUICKLY = 1
    FALLING = 2
    FALLING_SLOWLY = 3
    FLAT = 4
    RISING_SLOWLY = 5
    RISING = 6
    RISING_QUICKLY = 7


def coerce_trend(value: Any) -> int:
    """Return value as a 1-7 trend code, or FLAT when absent or malformed."""
    if isinstance(value, bool):
        return int(TrendArrow.FLAT)
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and TrendArrow.FALLING_QUICKLY <= value <= TrendArrow.RISING_QUICKLY:
        return int(value)
    return int(TrendArrow.FLAT)


class GlucoseReading(BaseModel):
    """Canonical representation of one glucose measurement."""

    model_config = ConfigDict(frozen=True)

    value: float = Field(..., ge=0)
    trend: int = Field(TrendArrow.FLAT, validate_default=True)
    timestamp: datetime
    origin: ReadingOrigin = ReadingOrigin.LIBREVIEW

    @field_validator("trend", mode="before")
    @classmethod
    def normalize_trend(cls, v: Any) -> int:
        return coerce_trend(v)

    @field_validator("timestamp", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive datetimes are taken as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def epoch_ms(self) -> int:
        return int(self.timestamp.timestamp() * 1000)

    @property
    def is_missing_value(self) -> bool:
        return self.value == 0


@dataclass
class SyncResult:
    """Outcome of one sync cycle."""

    synced: int = 0
    skipped: int = 0


@dataclass
class SyncStats:
    """Cumulative counters for the lifetime of a sync engine."""

    total_synced: int = 0
    total_skipped: int = 0
    errors: int = 0
    last_sync: datetime | None = None
    last_error: str | None = None


@dataclass
class ServiceCheck:
    """Result of probing one remote service. Failures are data, not exceptions."""

    success: bool
    region: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionTestReport:
    libreview: ServiceCheck
    dexcom: ServiceCheck

    @property
    def all_ok(self) -> bool:
        return self.libreview.success and self.dexcom.success
