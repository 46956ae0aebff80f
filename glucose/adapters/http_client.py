"""HTTP transport with tenacity retry for LibreView calls.

LibreView sits behind an anti-automation proxy that answers scripted
traffic with status codes, challenge pages or empty bodies instead of
errors. Retry policy:
- Retry only on responses classified as blocked (see decode_libreview_response)
- Exponential backoff with multiplier 3: base, base*3, base*9, ...
- Do NOT retry anything else (network errors, unparseable non-HTML bodies)
- Exhausting the attempt budget raises RateLimitedError

Bodies may arrive gzip, deflate or brotli encoded; httpx decodes them from
Content-Encoding before any inspection below, so content-based detection
works regardless of encoding.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.exceptions import RateLimitedError, UpstreamResponseError
from shared.metrics import vendor_api_duration_seconds, vendor_blocked_responses_total

logger = structlog.get_logger()

BLOCKED_STATUS_CODES = {403, 429}
CHALLENGE_ERROR_CODES = ("error code: 1015", "error code: 1020")
BACKOFF_EXP_BASE = 3

SleepFn = Callable[[float], Awaitable[Any]]


class BlockedResponseError(Exception):
    """Raised for responses that look like rate limiting or a challenge page."""

    def __init__(self, status_code: int, reason: str, detail: str = ""):
        self.status_code = status_code
        self.reason = reason
        self.detail = detail
        super().__init__(f"HTTP {status_code} blocked ({reason}): {detail}")


def decode_libreview_response(response: httpx.Response) -> dict[str, Any]:
    """Return the JSON body of a LibreView response or raise BlockedResponseError.

    A response is blocked when the status is 403/429, the body carries a
    challenge error code, the body is empty or "{}" once whitespace is
    removed, or the body is an HTML page instead of JSON.
    """
    body = response.text

    if response.status_code in BLOCKED_STATUS_CODES:
        raise BlockedResponseError(response.status_code, "status", body[:100])

    for code in CHALLENGE_ERROR_CODES:
        if code in body:
            raise BlockedResponseError(response.status_code, "challenge", code)

    # Heuristic: an empty object has also been seen as a soft block. It is
    # reported under its own reason so it can be told apart in the logs.
    if "".join(body.split()) in ("", "{}"):
        raise BlockedResponseError(response.status_code, "empty_body")

    try:
        return response.json()
    except ValueError as exc:
        lowered = body.lower()
        if "<html" in lowered or "<!doctype" in lowered:
            raise BlockedResponseError(response.status_code, "html_page") from exc
        raise UpstreamResponseError(
            f"Failed to parse LibreView response (HTTP {response.status_code}): {body[:200]}"
        ) from exc


def _log_blocked_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "libreview_blocked_retrying",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        reason=getattr(exc, "reason", None),
        status_code=getattr(exc, "status_code", None),
    )


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    attempts: int = 3,
    base_delay: float = 10.0,
    sleep: SleepFn = asyncio.sleep,
    **kwargs,
) -> dict[str, Any]:
    """Make a LibreView request, retrying the same request while it is blocked."""
    retrying = AsyncRetrying(
        sleep=sleep,
        retry=retry_if_exception_type(BlockedResponseError),
        wait=wait_exponential(multiplier=base_delay, exp_base=BACKOFF_EXP_BASE),
        stop=stop_after_attempt(attempts),
        before_sleep=_log_blocked_retry,
    )

    try:
        async for attempt in retrying:
            with attempt:
                with vendor_api_duration_seconds.labels(source="libreview").time():
                    response = await client.request(method, url, **kwargs)
                try:
                    payload = decode_libreview_response(response)
                except BlockedResponseError:
                    vendor_blocked_responses_total.labels(source="libreview").inc()
                    raise
    except RetryError as exc:
        last = exc.last_attempt.exception()
        logger.error("libreview_blocked_giving_up", attempts=attempts, error=str(last))
        raise RateLimitedError(
            "libreview",
            "LibreView API blocked. Your IP may be temporarily blocked by the API's "
            "bot protection. Wait 10-15 minutes before trying again.",
        ) from last

    return payload
