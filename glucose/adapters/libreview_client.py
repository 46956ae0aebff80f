"""LibreLinkUp live client: authenticates as a follower and fetches readings.

The service only serves accounts that have been invited as followers of a
patient through the LibreLinkUp app; the patient's own account cannot be
used. Requests imitate the Android app (product/version headers).

Session state held per instance:
- bearer token + expiry (re-authenticated once expired)
- regional host (switched once when the login answers with a redirect)
- patient id of the first connection (cached)
- Account-Id header value: SHA-256 of the LibreView user id
"""

import asyncio
import hashlib
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from glucose.adapters.http_client import SleepFn, fetch_with_retry
from glucose.adapters.libreview_mapper import LibreViewMapper
from glucose.domain.models import GlucoseReading, ServiceCheck
from shared.exceptions import AuthenticationError, ConnectionsError, NoConnectionsError

logger = structlog.get_logger()

DEFAULT_HOST = "api.libreview.io"
MAX_REGION_REDIRECTS = 1

BASE_HEADERS = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Content-Type": "application/json",
}


def libreview_host(region: str) -> str:
    region = (region or "").strip().lower()
    return f"api-{region}.libreview.io" if region else DEFAULT_HOST


def account_hash(user_id: str) -> str:
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


class LibreViewClient:
    """Source client for the LibreLinkUp follower API."""

    source_name = "libreview"

    def __init__(
        self,
        email: str,
        password: str,
        region: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 10.0,
        product: str = "llu.android",
        version: str = "4.12.0",
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.email = email
        self._password = password
        self.region = (region or "").strip().lower()
        self.host = libreview_host(self.region)
        self.token: str | None = None
        self.token_expires_at: datetime | None = None
        self.patient_id: str | None = None
        self.account_id: str | None = None

        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._retry_attempts = retry_attempts
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep
        self._headers = {**BASE_HEADERS, "product": product, "version": version}
        self._mapper = LibreViewMapper()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _request_headers(self, authenticated: bool) -> dict[str, str]:
        headers = dict(self._headers)
        if authenticated and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
            if self.account_id:
                headers["Account-Id"] = self.account_id
        return headers

    async def _request(
        self, method: str, path: str, *, json: Any = None, authenticated: bool = True
    ) -> dict[str, Any]:
        return await fetch_with_retry(
            self._http,
            method,
            f"https://{self.host}/llu{path}",
            attempts=self._retry_attempts,
            base_delay=self._retry_base_delay,
            sleep=self._sleep,
            headers=self._request_headers(authenticated),
            json=json,
        )

    def _switch_region(self, region: str) -> None:
        self.region = region.strip().lower()
        self.host = libreview_host(self.region)
        logger.info("libreview_region_redirect", region=self.region, host=self.host)

    async def authenticate(self) -> None:
        """Log in, following at most one regional redirect."""
        logger.info("libreview_authenticating", host=self.host)
        redirects = 0

        while True:
            body = await self._request(
                "POST",
                "/auth/login",
                json={"email": self.email, "password": self._password},
                authenticated=False,
            )
            data = body.get("data") if isinstance(body, dict) else None
            data = data if isinstance(data, dict) else {}

            if data.get("redirect"):
                region = str(data.get("region") or "").strip()
                if not region or redirects >= MAX_REGION_REDIRECTS:
                    raise AuthenticationError(
                        "libreview", f"unexpected region redirect (region={region!r})", body
                    )
                redirects += 1
                self._switch_region(region)
                continue
            break

        ticket = data.get("authTicket") or {}
        if body.get("status") != 0 or not ticket.get("token"):
            raise AuthenticationError("libreview", "no auth ticket in login response", body)

        self.token = ticket["token"]
        self.token_expires_at = datetime.fromtimestamp(int(ticket.get("expires") or 0), UTC)
        user_id = (data.get("user") or {}).get("id")
        self.account_id = account_hash(str(user_id)) if user_id else None

        logger.info(
            "libreview_authenticated",
            region=self.region or "global",
            expires_at=self.token_expires_at.isoformat(),
        )

    def token_is_valid(self, now: datetime | None = None) -> bool:
        if not self.token or self.token_expires_at is None:
            return False
        return (now or datetime.now(UTC)) < self.token_expires_at

    async def ensure_authenticated(self) -> None:
        if not self.token_is_valid():
            await self.authenticate()

    async def list_connections(self) -> list[dict[str, Any]]:
        """Return the patients this follower account is linked to."""
        await self.ensure_authenticated()
        body = await self._request("GET", "/connections")

        connections = body.get("data")
        if body.get("status") != 0 or not isinstance(connections, list):
            raise ConnectionsError(f"Failed to get LibreLinkUp connections: {body}", body)

        logger.info("libreview_connections_found", count=len(connections))
        return connections

    async def resolve_patient_id(self) -> str:
        if self.patient_id:
            return self.patient_id

        connections = await self.list_connections()
        if not connections:
            raise NoConnectionsError()

        first = connections[0]
        if not isinstance(first, dict) or not first.get("patientId"):
            raise ConnectionsError(f"LibreLinkUp connection has no patientId: {first}", connections)

        self.patient_id = str(first["patientId"])
        logger.info("libreview_patient_selected", patient_id=self.patient_id)
        return self.patient_id

    async def fetch_readings(self, patient_id: str | None = None) -> list[GlucoseReading]:
        """Fetch current + graph readings, newest first, unique per timestamp."""
        await self.ensure_authenticated()
        pid = patient_id or await self.resolve_patient_id()

        body = await self._request("GET", f"/connections/{pid}/graph")
        data = body.get("data")
        if body.get("status") != 0 or not isinstance(data, dict):
            raise ConnectionsError(f"Failed to get glucose readings: {body}", body)

        readings = self._mapper.parse(data)
        logger.info("libreview_readings_fetched", count=len(readings))
        return readings

    async def latest_reading(self) -> GlucoseReading | None:
        readings = await self.fetch_readings()
        return readings[0] if readings else None

    async def test_connection(self) -> ServiceCheck:
        """Authenticate and probe the API; every failure is reported, not raised."""
        try:
            await self.authenticate()
            connections = await self.list_connections()
            latest = await self.latest_reading()
        except Exception as exc:
            logger.warning("libreview_probe_failed", error=str(exc))
            return ServiceCheck(success=False, region=self.region or None, error=str(exc))

        return ServiceCheck(
            success=True,
            region=self.region or None,
            details={"connections": len(connections), "latest_reading": latest},
        )
