"""
Error taxonomy for the relay pipeline.

Access denials and invalid requests are terminal and render directly to the
caller. Upstream non-2xx statuses are not errors: they are relayed verbatim.
Sink failures are logged at the point of use and never reach a client.
"""

from typing import Mapping, Optional

from fastapi.responses import JSONResponse, PlainTextResponse, Response


INTERNAL_ERROR_MESSAGE = "Internal Server Error"


class GatewayError(Exception):
    """Base class for errors that end a request with a gateway-built response."""

    status_code: int = 500
    kind: str = "internal"
    message: str = INTERNAL_ERROR_MESSAGE
    plain_text: bool = False

    def __init__(self, kind: Optional[str] = None, message: Optional[str] = None, cause: Optional[str] = None):
        if kind is not None:
            self.kind = kind
        if message is not None:
            self.message = message
        # Internal detail for logs and audit rows, never sent to the client
        self.cause = cause or self.message
        super().__init__(self.cause)

    def to_response(self, cors_headers: Optional[Mapping[str, str]] = None) -> Response:
        headers = dict(cors_headers or {})
        if self.plain_text:
            return PlainTextResponse(self.message, status_code=self.status_code, headers=headers)
        return JSONResponse({"error": self.message}, status_code=self.status_code, headers=headers)


class AccessDenied(GatewayError):
    status_code = 403
    plain_text = True

    BANNED = "banned"
    ORIGIN = "origin"

    MESSAGES = {
        BANNED: "Your IP is banned from accessing this service.",
        ORIGIN: "Unauthorized Origin",
    }

    def __init__(self, kind: str, cause: Optional[str] = None):
        super().__init__(kind=kind, message=self.MESSAGES[kind], cause=cause)


class InvalidRequest(GatewayError):
    MISSING_SECRET = "missing_secret"
    UNRESOLVABLE_PATH = "unresolvable_path"

    STATUS = {
        MISSING_SECRET: 401,
        UNRESOLVABLE_PATH: 400,
    }
    MESSAGES = {
        MISSING_SECRET: "API key is required",
        UNRESOLVABLE_PATH: "Unresolvable upstream path",
    }

    def __init__(self, kind: str, cause: Optional[str] = None):
        self.status_code = self.STATUS[kind]
        super().__init__(kind=kind, message=self.MESSAGES[kind], cause=cause)


class UpstreamFailure(GatewayError):
    """Transport-level failure talking to the upstream (network or timeout)."""

    NETWORK = "network"
    TIMEOUT = "timeout"

    def __init__(self, kind: str, cause: Optional[str] = None):
        super().__init__(kind=kind, message=INTERNAL_ERROR_MESSAGE, cause=cause)


class RelayFailure(GatewayError):
    """Upstream declared a body that could not be read."""

    NO_BODY = "no_body"

    def __init__(self, kind: str = NO_BODY, cause: Optional[str] = None):
        super().__init__(kind=kind, message=INTERNAL_ERROR_MESSAGE, cause=cause or "No response body")


class SinkFailure(Exception):
    """Raised by audit and notification sinks. Always swallowed by the dispatcher."""

    AUDIT = "audit"
    NOTIFY = "notify"

    def __init__(self, kind: str, cause: str):
        self.kind = kind
        self.cause = cause
        super().__init__(f"{kind} sink failed: {cause}")
