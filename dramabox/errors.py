"""
Error taxonomy for the Dramabox core.

Every failure that leaves the core is one of the classes below, and every
message presented to callers goes through :func:`describe_error` so it reads
the same way regardless of where it was raised.
"""
from typing import Optional

import httpx


class DramaboxError(Exception):
    """Base class for all core errors."""

    context: Optional[str] = None

    def annotate(self, context: str) -> "DramaboxError":
        """Rewrite the message once with the classified, context-prefixed text."""
        if self.context is None:
            message = describe_error(self, context)
            self.context = context
            self.args = (message,)
        return self


class ValidationError(DramaboxError):
    """Bad caller input. Never retried."""


class NotFound(DramaboxError):
    """The upstream has no data for the requested resource."""


class TransportError(DramaboxError):
    """The request never produced an upstream response."""

    TIMEOUT = "timeout"
    DNS = "dns"
    REFUSED = "refused"
    RESET = "reset"
    NETWORK = "network"

    def __init__(self, message: str, kind: str = NETWORK):
        super().__init__(message)
        self.kind = kind


class UpstreamStatusError(DramaboxError):
    def __init__(self, status_code: int, reason: str = ""):
        super().__init__(f"HTTP {status_code} {reason}".strip())
        self.status_code = status_code
        self.reason = reason


class UpstreamRejected(DramaboxError):
    """A 2xx response whose payload says ``success: false``."""

    def __init__(self, message: str, retry_with_fresh_token: bool = False):
        super().__init__(message)
        self.retry_with_fresh_token = retry_with_fresh_token


class MalformedResponse(DramaboxError):
    """A 2xx response whose body is not valid JSON."""

    def __init__(self, url: str):
        super().__init__(f"Malformed response from {url}")
        self.url = url


class InvalidTokenResponse(DramaboxError):
    """Bootstrap answered but without a user token or user id."""


class TokenAcquisitionFailed(DramaboxError):
    """Token minting failed after exhausting its retries."""


STATUS_MESSAGES = {
    400: "Bad request - invalid parameter",
    401: "Unauthorized - token invalid or expired",
    403: "Forbidden - access denied by the server",
    404: "Not found - no data located",
    408: "Request timeout - server did not respond",
    429: "Too many requests - rate limit reached, try again later",
    500: "Internal server error - temporary problem",
    502: "Bad gateway - upstream did not respond (try again)",
    503: "Service unavailable - server under maintenance",
    504: "Gateway timeout - connection to the server expired",
}

TRANSPORT_MESSAGES = {
    TransportError.TIMEOUT: "Request timeout - connection took too long",
    TransportError.DNS: "DNS error - server not found",
    TransportError.REFUSED: "Connection refused - server rejected the connection",
    TransportError.RESET: "Connection reset - connection was interrupted",
}


def classify_transport_error(exc: httpx.TransportError) -> TransportError:
    """Map an httpx transport exception onto a :class:`TransportError` kind."""
    text = str(exc).lower()
    cause = exc.__cause__ or exc.__context__

    if isinstance(exc, httpx.TimeoutException):
        kind = TransportError.TIMEOUT
    elif isinstance(cause, ConnectionRefusedError) or "refused" in text:
        kind = TransportError.REFUSED
    elif isinstance(cause, ConnectionResetError) or "reset" in text:
        kind = TransportError.RESET
    elif isinstance(exc, httpx.ConnectError) and (
        "name or service not known" in text
        or "nodename nor servname" in text
        or "name resolution" in text
        or "getaddrinfo" in text
    ):
        kind = TransportError.DNS
    elif isinstance(exc, httpx.RemoteProtocolError):
        kind = TransportError.RESET
    else:
        kind = TransportError.NETWORK

    return TransportError(str(exc) or exc.__class__.__name__, kind)


def describe_error(error: BaseException, context: Optional[str] = None) -> str:
    prefix = f"[{context}] " if context else ""

    if isinstance(error, httpx.TransportError):
        error = classify_transport_error(error)
    elif isinstance(error, httpx.HTTPStatusError):
        error = UpstreamStatusError(error.response.status_code, error.response.reason_phrase)

    if isinstance(error, UpstreamStatusError):
        message = STATUS_MESSAGES.get(error.status_code)
        if message is None:
            return f"{prefix}HTTP {error.status_code} {error.reason}".rstrip()
        return f"{prefix}{message}"

    if isinstance(error, MalformedResponse):
        return f"{prefix}Malformed response - upstream did not return JSON"

    if isinstance(error, TransportError) and error.kind in TRANSPORT_MESSAGES:
        return f"{prefix}{TRANSPORT_MESSAGES[error.kind]}"

    return f"{prefix}{error}"
