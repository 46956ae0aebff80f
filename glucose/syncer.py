"""Sync engine: LibreView readings → dedup window → Dexcom Share.

One cycle:
    fetch → filter-new → cap-batch → upload → mark-synced → purge-old → update-stats

A failure anywhere before the upload completes leaves the dedup window
untouched, so the same readings are offered again next cycle. The error
counter is bumped and the exception propagates: run_once() lets it reach
the process boundary, run_continuously() logs it and keeps the schedule.

Cycles never overlap. The continuous loop waits for a cycle to finish
before sleeping for the interval, and a stop request is only honored
between cycles.
"""

import asyncio
import hashlib
import secrets
import signal
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from glucose.adapters.protocol import ReadingPublisher, ReadingSource
from glucose.domain.models import ConnectionTestReport, GlucoseReading, SyncResult, SyncStats
from shared.metrics import (
    dedup_window_size,
    readings_skipped_total,
    readings_synced_total,
    sync_cycles_total,
    sync_duration_seconds,
)

logger = structlog.get_logger()

SERIAL_PREFIX = "SM"
SERIAL_DIGITS = 8
VERIFY_TOLERANCE_SECONDS = 60


def derive_serial_number(account_name: str | None) -> str:
    """Virtual receiver serial: SM + 8 digits.

    Derived from the Dexcom account name when there is one, so the same account
    keeps the same receiver identity across restarts; random otherwise.
    """
    if account_name:
        digest = hashlib.sha256(account_name.encode("utf-8")).hexdigest()
        number = int(digest, 16) % 10**SERIAL_DIGITS
    else:
        number = secrets.randbelow(10**SERIAL_DIGITS)
    return f"{SERIAL_PREFIX}{number:0{SERIAL_DIGITS}d}"


class SyncedTimestamps:
    """Epoch-millisecond timestamps of readings already forwarded."""

    def __init__(self, retention: timedelta = timedelta(hours=24)) -> None:
        self.retention = retention
        self._entries: set[int] = set()

    def __contains__(self, reading: GlucoseReading) -> bool:
        return reading.epoch_ms in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def mark(self, readings: list[GlucoseReading]) -> None:
        self._entries.update(r.epoch_ms for r in readings)

    def purge(self, now: datetime | None = None) -> int:
        """Drop entries strictly older than the retention window; return how many."""
        cutoff = int(((now or datetime.now(UTC)) - self.retention).timestamp() * 1000)
        stale = {ts for ts in self._entries if ts < cutoff}
        self._entries -= stale
        return len(stale)


class GlucoseSyncer:
    """Orchestrates one LibreView source and one Dexcom Share publisher."""

    def __init__(
        self,
        source: ReadingSource,
        publisher: ReadingPublisher,
        *,
        max_readings: int = 12,
        sync_interval_seconds: float = 300.0,
        serial_number: str | None = None,
        dedup_window_hours: int = 24,
        verify_uploads: bool = True,
    ) -> None:
        self.source = source
        self.publisher = publisher
        self.max_readings = max_readings
        self.sync_interval_seconds = sync_interval_seconds
        self.verify_uploads = verify_uploads
        self.synced = SyncedTimestamps(timedelta(hours=dedup_window_hours))
        self.stats = SyncStats()
        self._configured_serial = serial_number

    # --- Lifecycle ---

    def _assign_serial(self) -> str:
        if self.publisher.serial_number:
            return self.publisher.serial_number
        serial = self._configured_serial or derive_serial_number(self.publisher.username)
        self.publisher.set_receiver_serial(serial)
        return serial

    async def initialize(self) -> None:
        """Authenticate LibreView, then Dexcom Share, then pick the receiver serial."""
        logger.info("sync_initializing")
        await self.source.authenticate()
        await self.publisher.authenticate()
        serial = self._assign_serial()
        logger.info(
            "sync_ready",
            serial_number=serial,
            interval_minutes=self.sync_interval_seconds / 60,
            max_readings=self.max_readings,
        )

    async def aclose(self) -> None:
        for client in (self.source, self.publisher):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()

    # --- One cycle ---

    async def sync(self) -> SyncResult:
        start_time = time.monotonic()
        logger.info("sync_started")

        try:
            readings = await self.source.fetch_readings()

            if not readings:
                logger.info("sync_no_readings")
                result = SyncResult()
                self._record_success(result, status="empty")
                return result

            new_readings = [r for r in readings if r not in self.synced]
            to_sync = new_readings[: self.max_readings]
            skipped = len(readings) - len(to_sync)

            if not to_sync:
                logger.info("sync_no_new_readings", fetched=len(readings))
                result = SyncResult(synced=0, skipped=skipped)
                self._record_success(result, status="empty")
                return result

            latest = to_sync[0]
            logger.info(
                "sync_uploading",
                latest_value=latest.value,
                latest_at=latest.timestamp.isoformat(),
                count=len(to_sync),
            )
            uploaded = await self.publisher.publish(to_sync)
        except Exception as exc:
            self.stats.errors += 1
            self.stats.last_error = str(exc)
            sync_cycles_total.labels(status="failed").inc()
            logger.error("sync_failed", error=str(exc), error_type=type(exc).__name__)
            raise
        finally:
            sync_duration_seconds.observe(time.monotonic() - start_time)

        self.synced.mark(to_sync)
        result = SyncResult(synced=uploaded, skipped=skipped)
        self._record_success(result, status="success")
        logger.info("sync_completed", synced=result.synced, skipped=result.skipped)

        if self.verify_uploads:
            await self._confirm_latest(latest)
        return result

    def _record_success(self, result: SyncResult, status: str) -> None:
        removed = self.synced.purge()
        if removed:
            logger.info("sync_dedup_purged", removed=removed)
        dedup_window_size.set(len(self.synced))

        self.stats.total_synced += result.synced
        self.stats.total_skipped += result.skipped
        self.stats.last_sync = datetime.now(UTC)
        sync_cycles_total.labels(status=status).inc()
        readings_synced_total.inc(result.synced)
        readings_skipped_total.inc(result.skipped)

    async def _confirm_latest(self, latest: GlucoseReading) -> None:
        """Read back the newest Dexcom value and log whether it matches the upload.

        The upload already succeeded, so a failing read-back is only logged.
        """
        try:
            values = await self.publisher.read_recent(count=1, minutes=60)
        except Exception as exc:
            logger.warning("sync_verify_unavailable", error=str(exc))
            return
        if not values:
            logger.warning("sync_verify_no_data")
            return

        current = values[0]
        drift = (
            abs((current.system_time - latest.timestamp).total_seconds())
            if current.system_time
            else None
        )
        if current.value == latest.value and drift is not None and drift < VERIFY_TOLERANCE_SECONDS:
            logger.info("sync_verified", value=current.value)
        else:
            logger.warning(
                "sync_verify_mismatch",
                dexcom_value=current.value,
                expected_value=latest.value,
                drift_seconds=drift,
            )

    # --- Entry operations ---

    async def run_once(self) -> SyncResult:
        await self.initialize()
        result = await self.sync()
        logger.info("sync_once_completed", synced=result.synced, skipped=result.skipped)
        return result

    async def run_continuously(self, stop_event: asyncio.Event | None = None) -> None:
        """Sync now, then every interval until stop_event is set.

        Without a stop_event, SIGINT and SIGTERM request the stop.
        """
        installed: list[signal.Signals] = []
        if stop_event is None:
            stop_event = asyncio.Event()
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, stop_event.set)
                except (NotImplementedError, RuntimeError):
                    continue
                installed.append(sig)

        try:
            await self.initialize()
            logger.info("daemon_running", interval_seconds=self.sync_interval_seconds)

            while not stop_event.is_set():
                try:
                    await self.sync()
                except Exception as exc:
                    logger.warning(
                        "daemon_cycle_failed",
                        error=str(exc),
                        next_attempt_in_seconds=self.sync_interval_seconds,
                    )
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.sync_interval_seconds)
                except TimeoutError:
                    continue
        finally:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)

        logger.info(
            "daemon_stopped",
            total_synced=self.stats.total_synced,
            total_skipped=self.stats.total_skipped,
            errors=self.stats.errors,
        )

    async def test_connections(self) -> ConnectionTestReport:
        """Probe both services independently; never raises, never touches sync state."""
        logger.info("connection_test_started")
        libreview = await self.source.test_connection()
        dexcom = await self.publisher.test_connection()
        report = ConnectionTestReport(libreview=libreview, dexcom=dexcom)
        logger.info(
            "connection_test_finished",
            libreview_ok=libreview.success,
            dexcom_ok=dexcom.success,
        )
        return report

    async def verify(self, count: int = 5, minutes: int = 60) -> bool:
        """Initialize, then log the newest records Dexcom Share holds.

        Returns False when Dexcom Share has nothing in the window.
        """
        await self.initialize()
        values = await self.publisher.read_recent(count=count, minutes=minutes)
        if not values:
            logger.warning("verify_no_data", minutes=minutes)
            return False
        for value in values:
            logger.info(
                "verify_record",
                system_time=value.system_time.isoformat() if value.system_time else "unknown",
                value=value.value,
            )
        return True

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_synced": self.stats.total_synced,
            "total_skipped": self.stats.total_skipped,
            "errors": self.stats.errors,
            "last_sync": self.stats.last_sync,
            "last_error": self.stats.last_error,
            "synced_timestamps_count": len(self.synced),
            "serial_number": self.publisher.serial_number,
        }
