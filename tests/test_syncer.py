"""Tests for the sync engine with in-memory source and publisher."""

import asyncio
import re
from datetime import UTC, datetime, timedelta

import pytest

from glucose.adapters.dexcom_mapper import ShareGlucoseValue
from glucose.adapters.protocol import ReadingPublisher, ReadingSource
from glucose.domain.models import GlucoseReading
from glucose.syncer import GlucoseSyncer, SyncedTimestamps, derive_serial_number
from shared.exceptions import NoConnectionsError, UploadError
from tests.conftest import FakePublisher, FakeSource, make_readings


def _recent(count: int) -> list[GlucoseReading]:
    return make_readings(count, newest=datetime.now(UTC).replace(microsecond=0))


class TestSerialNumber:
    def test_format(self):
        assert re.fullmatch(r"SM\d{8}", derive_serial_number("dexcom-user"))

    def test_deterministic_per_account(self):
        assert derive_serial_number("dexcom-user") == derive_serial_number("dexcom-user")
        assert derive_serial_number("dexcom-user") != derive_serial_number("other-user")

    def test_random_without_account(self):
        assert re.fullmatch(r"SM\d{8}", derive_serial_number(None))
        assert re.fullmatch(r"SM\d{8}", derive_serial_number(""))


class TestSyncedTimestamps:
    def test_membership(self):
        window = SyncedTimestamps()
        readings = make_readings(2)
        window.mark(readings[:1])
        assert readings[0] in window
        assert readings[1] not in window
        assert len(window) == 1

    def test_purge_drops_strictly_older_entries(self):
        now = datetime(2024, 3, 15, 12, 0, tzinfo=UTC)
        window = SyncedTimestamps(timedelta(hours=24))
        old = GlucoseReading(value=100, timestamp=now - timedelta(hours=24, seconds=1))
        boundary = GlucoseReading(value=101, timestamp=now - timedelta(hours=24))
        fresh = GlucoseReading(value=102, timestamp=now - timedelta(hours=23))
        window.mark([old, boundary, fresh])

        assert window.purge(now) == 1
        assert old not in window
        assert boundary in window
        assert fresh in window


class TestProtocols:
    def test_fakes_satisfy_protocols(self):
        assert isinstance(FakeSource(), ReadingSource)
        assert isinstance(FakePublisher(), ReadingPublisher)


class TestInitialize:
    async def test_authenticates_both_and_assigns_serial(self):
        source, publisher = FakeSource(), FakePublisher()
        syncer = GlucoseSyncer(source, publisher)
        await syncer.initialize()
        assert source.authenticated
        assert publisher.authenticated
        assert publisher.serial_number == derive_serial_number("dexcom-user")

    async def test_configured_serial_wins(self):
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(), publisher, serial_number="SM00000042")
        await syncer.initialize()
        assert publisher.serial_number == "SM00000042"

    async def test_serial_kept_across_initialize(self):
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(), publisher)
        await syncer.initialize()
        publisher.serial_number = "SM11111111"
        await syncer.initialize()
        assert publisher.serial_number == "SM11111111"


class TestSync:
    async def test_caps_batch_to_newest(self):
        readings = _recent(15)
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(readings), publisher, max_readings=12)
        await syncer.initialize()

        result = await syncer.sync()

        assert result.synced == 12
        assert result.skipped == 3
        assert publisher.batches == [readings[:12]]
        assert len(syncer.synced) == 12

    async def test_does_not_reupload(self):
        readings = _recent(15)
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(readings), publisher, max_readings=12)
        await syncer.initialize()

        await syncer.sync()
        second = await syncer.sync()
        third = await syncer.sync()

        assert second.synced == 3
        assert second.skipped == 12
        assert publisher.batches[1] == readings[12:]
        assert third.synced == 0
        assert third.skipped == 15
        assert len(publisher.batches) == 2
        assert syncer.stats.total_synced == 15

    async def test_no_readings(self):
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource([]), publisher)
        await syncer.initialize()
        result = await syncer.sync()
        assert (result.synced, result.skipped) == (0, 0)
        assert publisher.batches == []
        assert syncer.stats.last_sync is not None

    async def test_upload_failure_keeps_window_unchanged(self):
        readings = _recent(3)
        publisher = FakePublisher(error=UploadError("HTTP 400"))
        syncer = GlucoseSyncer(FakeSource(readings), publisher)
        await syncer.initialize()

        with pytest.raises(UploadError):
            await syncer.sync()

        assert len(syncer.synced) == 0
        assert syncer.stats.errors == 1
        assert syncer.stats.last_error == "HTTP 400"

        publisher.error = None
        result = await syncer.sync()
        assert result.synced == 3

    async def test_fetch_failure_counts_error(self):
        syncer = GlucoseSyncer(FakeSource(error=NoConnectionsError()), FakePublisher())
        await syncer.initialize()
        with pytest.raises(NoConnectionsError):
            await syncer.sync()
        assert syncer.stats.errors == 1
        assert "No LibreLinkUp connections" in syncer.stats.last_error

    async def test_old_entries_purged_after_cycle(self):
        publisher = FakePublisher()
        stale = make_readings(2, newest=datetime.now(UTC) - timedelta(hours=30))
        syncer = GlucoseSyncer(FakeSource(stale), publisher)
        await syncer.initialize()
        result = await syncer.sync()
        assert result.synced == 2
        assert len(syncer.synced) == 0

    async def test_verifies_latest_upload(self):
        readings = _recent(2)
        publisher = FakePublisher()
        publisher.recent = [ShareGlucoseValue(value=readings[0].value, system_time=readings[0].timestamp)]
        syncer = GlucoseSyncer(FakeSource(readings), publisher)
        await syncer.initialize()
        await syncer.sync()
        publisher.read_recent.assert_awaited_once_with(count=1, minutes=60)

    async def test_verify_failure_does_not_fail_cycle(self):
        readings = _recent(2)
        publisher = FakePublisher()
        publisher.read_recent.side_effect = UploadError("HTTP 500")
        syncer = GlucoseSyncer(FakeSource(readings), publisher)
        await syncer.initialize()
        result = await syncer.sync()
        assert result.synced == 2
        assert len(syncer.synced) == 2

    async def test_uploaded_batch_marked_before_read_back(self):
        readings = _recent(2)
        publisher = FakePublisher()
        publisher.read_recent.side_effect = asyncio.CancelledError()
        syncer = GlucoseSyncer(FakeSource(readings), publisher)
        await syncer.initialize()

        with pytest.raises(asyncio.CancelledError):
            await syncer.sync()

        assert len(publisher.batches) == 1
        assert len(syncer.synced) == 2

    async def test_verification_can_be_disabled(self):
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(_recent(2)), publisher, verify_uploads=False)
        await syncer.initialize()
        await syncer.sync()
        publisher.read_recent.assert_not_awaited()


class TestEntryOperations:
    async def test_run_once(self):
        source, publisher = FakeSource(_recent(4)), FakePublisher()
        syncer = GlucoseSyncer(source, publisher)
        result = await syncer.run_once()
        assert result.synced == 4
        assert source.authenticated

    async def test_run_continuously_survives_failures_until_stopped(self):
        stop = asyncio.Event()
        readings = _recent(3)

        class FlakySource(FakeSource):
            async def fetch_readings(self, patient_id=None):
                self.fetch_count += 1
                if self.fetch_count == 1:
                    raise NoConnectionsError()
                if self.fetch_count >= 3:
                    stop.set()
                return list(self.readings)

        source, publisher = FlakySource(readings), FakePublisher()
        syncer = GlucoseSyncer(source, publisher, sync_interval_seconds=0.01)
        await asyncio.wait_for(syncer.run_continuously(stop), timeout=5)

        assert source.fetch_count == 3
        assert syncer.stats.errors == 1
        assert syncer.stats.total_synced == 3
        assert len(publisher.batches) == 1

    async def test_run_continuously_stops_immediately_when_already_set(self):
        stop = asyncio.Event()
        stop.set()
        source = FakeSource(_recent(1))
        await GlucoseSyncer(source, FakePublisher()).run_continuously(stop)
        assert source.fetch_count == 0

    async def test_connection_report(self):
        syncer = GlucoseSyncer(FakeSource(error=RuntimeError("blocked")), FakePublisher())
        report = await syncer.test_connections()
        assert not report.libreview.success
        assert report.libreview.error == "blocked"
        assert report.dexcom.success
        assert not report.all_ok
        assert syncer.stats.errors == 0
        assert len(syncer.synced) == 0

    async def test_verify_with_data(self):
        publisher = FakePublisher()
        publisher.recent = [
            ShareGlucoseValue(value=112, system_time=datetime.now(UTC)),
            ShareGlucoseValue(value=108, system_time=None),
        ]
        syncer = GlucoseSyncer(FakeSource(), publisher)
        assert await syncer.verify() is True
        publisher.read_recent.assert_awaited_once_with(count=5, minutes=60)

    async def test_verify_without_data(self):
        syncer = GlucoseSyncer(FakeSource(), FakePublisher())
        assert await syncer.verify() is False

    async def test_aclose_closes_both(self):
        source, publisher = FakeSource(), FakePublisher()
        await GlucoseSyncer(source, publisher).aclose()
        assert source.closed
        assert publisher.closed


class TestStats:
    async def test_snapshot(self):
        publisher = FakePublisher()
        syncer = GlucoseSyncer(FakeSource(_recent(5)), publisher, max_readings=3)
        await syncer.run_once()

        stats = syncer.get_stats()
        assert stats["total_synced"] == 3
        assert stats["total_skipped"] == 2
        assert stats["errors"] == 0
        assert stats["last_error"] is None
        assert isinstance(stats["last_sync"], datetime)
        assert stats["synced_timestamps_count"] == 3
        assert stats["serial_number"] == publisher.serial_number

    def test_fresh_engine(self):
        stats = GlucoseSyncer(FakeSource(), FakePublisher()).get_stats()
        assert stats["total_synced"] == 0
        assert stats["last_sync"] is None
        assert stats["serial_number"] is None
