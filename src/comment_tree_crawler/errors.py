from typing import Optional


class FetchError(Exception):
    """Base for every failure raised while fetching a thread."""

    retryable = False
    kind = "fetch_failed"

    def __init__(self, message: str = "", *, platform: str = ""):
        super().__init__(message)
        self.message = message
        self.platform = platform


class TransientNetworkError(FetchError):
    retryable = True
    kind = "transient_network"


class RateLimited(FetchError):
    retryable = True
    kind = "rate_limited"

    def __init__(self, message: str = "", *, platform: str = "", retry_after: Optional[float] = None):
        super().__init__(message, platform=platform)
        self.retry_after = retry_after


class AuthenticationFailed(FetchError):
    kind = "authentication_failed"


class MalformedPayload(FetchError):
    kind = "malformed_payload"


class NotFound(FetchError):
    kind = "not_found"


class InvalidReference(FetchError):
    kind = "invalid_reference"


class TerminalHttpError(FetchError):
    kind = "fetch_failed"

    def __init__(self, message: str = "", *, platform: str = "", status_code: int = 0):
        super().__init__(message, platform=platform)
        self.status_code = status_code


class CeilingReached(FetchError):
    """Soft stop: a node or request ceiling was hit. Not a failure."""

    kind = "ceiling_reached"


def error_for_kind(kind: str, message: str, *, platform: str = "", retry_after: Optional[float] = None) -> FetchError:
    if kind == "rate_limited":
        return RateLimited(message, platform=platform, retry_after=retry_after)
    cls = {
        "not_found": NotFound,
        "authentication_failed": AuthenticationFailed,
        "invalid_reference": InvalidReference,
        "transient_network": TransientNetworkError,
        "malformed_payload": MalformedPayload,
    }.get(kind, FetchError)
    return cls(message, platform=platform)
