"""Client contracts the sync engine depends on.

The live LibreView and Dexcom Share clients implement these; tests use
in-memory fakes. The engine never talks to either service directly.
"""

from typing import Protocol, runtime_checkable

from glucose.adapters.dexcom_mapper import ShareGlucoseValue
from glucose.domain.models import GlucoseReading, ServiceCheck


@runtime_checkable
class ReadingSource(Protocol):
    """Where readings come from (LibreLinkUp)."""

    source_name: str

    async def authenticate(self) -> None: ...

    async def fetch_readings(self, patient_id: str | None = None) -> list[GlucoseReading]:
        """Return readings newest first, unique per timestamp."""
        ...

    async def test_connection(self) -> ServiceCheck: ...


@runtime_checkable
class ReadingPublisher(Protocol):
    """Where readings go (Dexcom Share virtual receiver)."""

    source_name: str
    username: str
    account_id: str | None
    serial_number: str | None

    async def authenticate(self) -> None: ...

    def set_receiver_serial(self, serial_number: str) -> None: ...

    async def publish(self, readings: list[GlucoseReading]) -> int:
        """Upload readings; return the number accepted."""
        ...

    async def read_recent(self, count: int = 1, minutes: int = 10) -> list[ShareGlucoseValue]: ...

    async def test_connection(self) -> ServiceCheck: ...
