"""Shared test fixtures."""

import json
import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from glucose.adapters.dexcom_mapper import ShareGlucoseValue  # noqa: E402
from glucose.domain.models import GlucoseReading, ServiceCheck  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"
BASE_TIME = datetime(2024, 3, 14, 10, 5, tzinfo=UTC)


def load_fixture(name: str):
    return json.loads((FIXTURES_DIR / name).read_text())


def make_readings(count: int, newest: datetime = BASE_TIME, step_minutes: int = 5) -> list[GlucoseReading]:
    """count readings five minutes apart, newest first."""
    return [
        GlucoseReading(value=100 + i, trend=4, timestamp=newest - timedelta(minutes=step_minutes * i))
        for i in range(count)
    ]


class VendorStub:
    """httpx.MockTransport handler that replays queued responses per path.

    Each route holds a queue of (status, kwargs) pairs; the last one repeats
    once the queue is down to a single entry. Every request is recorded.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses):
        self.routes.setdefault((method, path), []).extend(responses)
        return self

    def calls(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"status": 404})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        status, kwargs = entry
        return httpx.Response(status, **kwargs)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class FakeSource:
    """In-memory ReadingSource."""

    source_name = "libreview"

    def __init__(self, readings=None, error: Exception | None = None):
        self.readings = list(readings or [])
        self.error = error
        self.authenticated = False
        self.fetch_count = 0
        self.closed = False

    async def authenticate(self):
        self.authenticated = True

    async def fetch_readings(self, patient_id=None):
        self.fetch_count += 1
        if self.error is not None:
            raise self.error
        return list(self.readings)

    async def test_connection(self):
        if self.error is not None:
            return ServiceCheck(success=False, error=str(self.error))
        return ServiceCheck(success=True, details={"connections": 1})

    async def aclose(self):
        self.closed = True


class FakePublisher:
    """In-memory ReadingPublisher that records every uploaded batch."""

    source_name = "dexcom"

    def __init__(self, username: str = "dexcom-user", error: Exception | None = None):
        self.username = username
        self.account_id = None
        self.serial_number = None
        self.error = error
        self.batches: list[list[GlucoseReading]] = []
        self.recent: list[ShareGlucoseValue] = []
        self.read_recent = AsyncMock(side_effect=self._read_recent)
        self.authenticated = False
        self.closed = False

    async def authenticate(self):
        self.authenticated = True
        self.account_id = "account-1"

    def set_receiver_serial(self, serial_number):
        self.serial_number = serial_number

    async def publish(self, readings):
        if self.error is not None:
            raise self.error
        self.batches.append(list(readings))
        return len(readings)

    async def _read_recent(self, count=1, minutes=10):
        return self.recent[:count]

    async def test_connection(self):
        if self.error is not None:
            return ServiceCheck(success=False, region="OUS", error=str(self.error))
        return ServiceCheck(success=True, region="OUS", details={"has_data": bool(self.recent)})

    async def aclose(self):
        self.closed = True


@pytest.fixture
def login_response():
    return load_fixture("libreview_login_response.json")


@pytest.fixture
def connections_response():
    return load_fixture("libreview_connections_response.json")


@pytest.fixture
def graph_response():
    return load_fixture("libreview_graph_response.json")


@pytest.fixture
def dexcom_values_response():
    return load_fixture("dexcom_latest_values_response.json")


@pytest.fixture
def vendor():
    return VendorStub()


@pytest.fixture
def sleep():
    """Stand-in for asyncio.sleep so backoff waits are recorded, not slept."""
    return AsyncMock()
