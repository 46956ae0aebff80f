"""Dexcom Share publisher client: uploads EGVs as a virtual receiver.

Authentication is two steps: account name + password → account id, then
account id + password → session id. Both answers are a bare JSON string.
The server drops sessions whenever it likes and reports it with a
SessionIdNotFound code in a 500 body; the client then logs in again and
repeats the request once. HTTP 429 is retried after a fixed cooldown, a
bounded number of times.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from glucose.adapters.dexcom_mapper import ShareGlucoseValue, to_share_egv
from glucose.adapters.http_client import SleepFn
from glucose.domain.models import GlucoseReading, ServiceCheck
from shared.exceptions import (
    AuthenticationError,
    ConfigurationError,
    RateLimitedError,
    SessionExpiredError,
    UploadError,
)
from shared.metrics import (
    dexcom_session_renewals_total,
    vendor_api_duration_seconds,
    vendor_blocked_responses_total,
)

logger = structlog.get_logger()

DEXCOM_HOSTS = {
    "US": "share2.dexcom.com",
    "OUS": "shareous1.dexcom.com",
    "JP": "shareous1.dexcom.com",
}

# Public application id of the Dexcom Share mobile apps
APPLICATION_ID = "d89443d2-327c-4a6f-89e5-496bbb0317db"
SESSION_EXPIRED_CODE = "SessionIdNotFound"
SERVICES_PATH = "/ShareWebServices/Services"

HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
    "User-Agent": "Dexcom Share/3.0.2.11",
}

T = TypeVar("T")


class ShareThrottledError(Exception):
    """HTTP 429 from Dexcom Share."""


def _decode_body(response: httpx.Response) -> Any:
    """JSON when possible, raw text otherwise, None for an empty body."""
    if not response.text.strip():
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _unwrap_id(payload: Any) -> str:
    """Ids arrive as a bare JSON string; anything else is not an id."""
    if not isinstance(payload, str):
        return ""
    return payload.replace('"', "").strip()


class DexcomShareClient:
    """Publisher client for the Dexcom Share web services."""

    source_name = "dexcom"

    def __init__(
        self,
        username: str,
        password: str,
        region: str = "US",
        *,
        http_client: httpx.AsyncClient | None = None,
        rate_limit_cooldown: float = 60.0,
        rate_limit_attempts: int = 3,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.username = username
        self._password = password
        self.region = (region or "US").upper()
        if self.region not in DEXCOM_HOSTS:
            logger.warning("dexcom_unknown_region", region=self.region, fallback="US")
        self.host = DEXCOM_HOSTS.get(self.region, DEXCOM_HOSTS["US"])
        self.account_id: str | None = None
        self.session_id: str | None = None
        self.serial_number: str | None = None

        self._http = http_client or httpx.AsyncClient()
        self._owns_http = http_client is None
        self._rate_limit_cooldown = rate_limit_cooldown
        self._rate_limit_attempts = rate_limit_attempts
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _post(
        self, endpoint: str, *, json: Any = None, params: dict[str, Any] | None = None
    ) -> tuple[int, Any]:
        with vendor_api_duration_seconds.labels(source="dexcom").time():
            response = await self._http.post(
                f"https://{self.host}{SERVICES_PATH}{endpoint}",
                headers=HEADERS,
                json=json,
                params=params,
            )
        return response.status_code, _decode_body(response)

    # --- Authentication ---

    async def _authenticate_account(self) -> str:
        status, payload = await self._post(
            "/General/AuthenticatePublisherAccount",
            json={
                "accountName": self.username,
                "password": self._password,
                "applicationId": APPLICATION_ID,
            },
        )
        account_id = _unwrap_id(payload) if status == 200 else ""
        if not account_id:
            raise AuthenticationError("dexcom", f"account lookup returned HTTP {status}", payload)
        self.account_id = account_id
        return account_id

    async def _login_session(self) -> str:
        if not self.account_id:
            await self._authenticate_account()

        status, payload = await self._post(
            "/General/LoginPublisherAccountById",
            json={
                "accountId": self.account_id,
                "password": self._password,
                "applicationId": APPLICATION_ID,
            },
        )
        session_id = _unwrap_id(payload) if status == 200 else ""
        if not session_id:
            raise AuthenticationError("dexcom", f"session login returned HTTP {status}", payload)
        self.session_id = session_id
        return session_id

    async def authenticate(self) -> None:
        logger.info("dexcom_authenticating", region=self.region, host=self.host)
        await self._authenticate_account()
        await self._login_session()
        logger.info("dexcom_authenticated", region=self.region)

    async def ensure_authenticated(self) -> None:
        if not self.session_id:
            await self.authenticate()

    async def reauthenticate(self) -> None:
        """Drop both ids and log in from scratch (session-expiry recovery only)."""
        self.session_id = None
        self.account_id = None
        dexcom_session_renewals_total.inc()
        await self.authenticate()

    def set_receiver_serial(self, serial_number: str) -> None:
        self.serial_number = serial_number

    # --- Request policy ---

    def _raise_for_share_status(self, status: int, payload: Any, action: str) -> None:
        if status == 500 and isinstance(payload, dict) and payload.get("Code") == SESSION_EXPIRED_CODE:
            raise SessionExpiredError(payload)
        if status == 429:
            raise ShareThrottledError()
        if status != 200:
            raise UploadError(f"Failed to {action} (HTTP {status}): {payload}", payload)

    async def _session_call(
        self,
        endpoint: str,
        action: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """POST with the current session id, waiting out 429s up to the attempt budget."""

        def log_throttled(retry_state: RetryCallState) -> None:
            vendor_blocked_responses_total.labels(source="dexcom").inc()
            logger.warning(
                "dexcom_rate_limited_waiting",
                attempt=retry_state.attempt_number,
                wait_seconds=self._rate_limit_cooldown,
            )

        try:
            async for attempt in AsyncRetrying(
                sleep=self._sleep,
                retry=retry_if_exception_type(ShareThrottledError),
                wait=wait_fixed(self._rate_limit_cooldown),
                stop=stop_after_attempt(self._rate_limit_attempts),
                before_sleep=log_throttled,
            ):
                with attempt:
                    status, payload = await self._post(
                        endpoint,
                        json=json,
                        params={"sessionId": self.session_id, **(params or {})},
                    )
                    self._raise_for_share_status(status, payload, action)
        except RetryError as exc:
            raise RateLimitedError(
                "dexcom",
                f"Dexcom Share kept answering HTTP 429 after {self._rate_limit_attempts} attempts",
            ) from exc
        return payload

    async def _with_session_recovery(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation; on SessionIdNotFound, log in again and run it once more."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SessionExpiredError),
            stop=stop_after_attempt(2),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info("dexcom_session_expired_reauthenticating")
                    await self.reauthenticate()
                result = await operation()
        return result

    # --- Operations ---

    async def publish(self, readings: list[GlucoseReading]) -> int:
        """Upload readings as EGV records of the virtual receiver.

        Returns the number of records accepted.
        """
        await self.ensure_authenticated()
        if not self.serial_number:
            raise ConfigurationError("Receiver serial number not set; call set_receiver_serial() first")

        if not readings:
            logger.info("dexcom_nothing_to_upload")
            return 0

        body = {"SN": self.serial_number, "Egvs": [to_share_egv(r) for r in readings]}
        await self._with_session_recovery(
            lambda: self._session_call(
                "/Publisher/PostReceiverEgvRecords", "upload readings", json=body
            )
        )
        logger.info("dexcom_readings_uploaded", count=len(body["Egvs"]))
        return len(body["Egvs"])

    async def read_recent(self, count: int = 1, minutes: int = 10) -> list[ShareGlucoseValue]:
        """Read back the newest published values within the trailing window."""
        await self.ensure_authenticated()
        payload = await self._with_session_recovery(
            lambda: self._session_call(
                "/Publisher/ReadPublisherLatestGlucoseValues",
                "read values",
                params={"minutes": minutes, "maxCount": count},
            )
        )
        if not isinstance(payload, list):
            return []
        return [ShareGlucoseValue.model_validate(item) for item in payload if isinstance(item, dict)]

    async def test_connection(self) -> ServiceCheck:
        """Authenticate and read the last day; every failure is reported, not raised."""
        try:
            await self.authenticate()
            values = await self.read_recent(count=1, minutes=1440)
        except Exception as exc:
            logger.warning("dexcom_probe_failed", error=str(exc))
            return ServiceCheck(success=False, region=self.region, error=str(exc))

        return ServiceCheck(
            success=True,
            region=self.region,
            details={"has_data": bool(values), "latest_value": values[0] if values else None},
        )
