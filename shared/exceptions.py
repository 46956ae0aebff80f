"""Error taxonomy for the LibreView to Dexcom Share bridge.

Domain errors extend GlucoseBridgeError. Transport-level classification
signals (blocked responses, throttling) stay inside the client modules;
only the terminal errors below cross into the sync engine.

The status API keeps the RFC 9457 Problem Details hierarchy: errors raised
there extend ProblemDetailError and are rendered as application/problem+json.
"""

from typing import Any


class GlucoseBridgeError(Exception):
    """Base class for every terminal sync error."""

    def __init__(self, detail: str, payload: Any = None):
        self.detail = detail
        self.payload = payload
        super().__init__(detail)


class ConfigurationError(GlucoseBridgeError):
    pass


class AuthenticationError(GlucoseBridgeError):
    def __init__(self, service: str, detail: str, payload: Any = None):
        self.service = service
        super().__init__(f"{service} authentication failed: {detail}", payload)


class NoConnectionsError(GlucoseBridgeError):
    def __init__(self):
        super().__init__(
            "No LibreLinkUp connections found. "
            "Set up follower sharing in the LibreLinkUp app for this account first."
        )


class ConnectionsError(GlucoseBridgeError):
    """The source returned a non-success or malformed payload."""


class RateLimitedError(GlucoseBridgeError):
    def __init__(self, service: str, detail: str):
        self.service = service
        super().__init__(detail)


class SessionExpiredError(GlucoseBridgeError):
    """The destination reported that the session id is no longer valid."""

    def __init__(self, payload: Any = None):
        super().__init__("Dexcom Share session expired", payload)


class UploadError(GlucoseBridgeError):
    """The destination rejected a request with an unexpected status."""


class UpstreamResponseError(GlucoseBridgeError):
    """A response that is neither valid JSON nor a recognizable block page."""


class TimestampParseWarning(UserWarning):
    """A source timestamp could not be parsed and was replaced by the current time."""


class ProblemDetailError(Exception):
    def __init__(
        self,
        type_uri: str,
        title: str,
        status: int,
        detail: str,
    ):
        self.type_uri = type_uri
        self.title = title
        self.status = status
        self.detail = detail
        super().__init__(detail)


class EngineNotRunningError(ProblemDetailError):
    def __init__(self):
        super().__init__(
            type_uri="urn:lib2dex:problem:engine-not-running",
            title="Sync Engine Not Running",
            status=503,
            detail=(
                "No sync engine is attached to this process. "
                "Check that the source and destination credentials are configured."
            ),
        )
