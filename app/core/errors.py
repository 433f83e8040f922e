"""
Push error taxonomy plus the mapping to HTTP responses.

Client-side errors (permission, capability, registration) end up as
Subscription Manager state; server-side ones are either absorbed into
fan-out counts or mapped to an HTTPException by `push_error_to_http`.
"""
from __future__ import annotations

from fastapi import HTTPException

STATUS_SERVICE_UNAVAILABLE = 503
STATUS_INTERNAL_ERROR = 500

MSG_AUDIENCE_UNAVAILABLE = "Failed to fetch subscriptions"
MSG_PERSISTENCE_FAILED = "Failed to save your notification preferences."
MSG_PUSH_NOT_CONFIGURED = "Push notification keys not configured"


class PushError(Exception):
    """Base class. `retryable` tells callers whether a user-initiated retry makes sense."""

    retryable = False

    def __init__(self, message: str = "", *, cause: Exception | None = None):
        super().__init__(message or self.__class__.__name__)
        self.cause = cause


class PermissionDenied(PushError):
    """User declined notification permission; only a browser-level settings change fixes it."""


class Unsupported(PushError):
    """Runtime has no push capability."""


class RegistrationFailed(PushError):
    retryable = True


class PersistenceFailed(PushError):
    retryable = True


class PayloadMalformed(PushError):
    """Push body is not structured data. Never surfaced to the sender."""


class EndpointGone(PushError):
    """Delivery target rejected the endpoint for good (404/410)."""

    def __init__(self, message: str = "", *, status_code: int | None = None, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status_code = status_code


class TransientDeliveryError(PushError):
    """Network failure, timeout, 429 or 5xx from the push service."""

    retryable = True

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int | None = None,
        timed_out: bool = False,
        cause: Exception | None = None,
    ):
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.timed_out = timed_out


class DeliveryRejected(PushError):
    """Any other non-success answer (400, 401, 403, 413...). Not retried, endpoint kept."""

    def __init__(self, message: str = "", *, status_code: int | None = None, cause: Exception | None = None):
        super().__init__(message, cause=cause)
        self.status_code = status_code


class AudienceUnavailable(PushError):
    """Subscription store unreachable; the only hard failure of a fan-out."""

    retryable = True


class PushNotConfigured(PushError):
    """VAPID keys missing on the server."""


# (exception type, status code, detail). First match wins.
PUSH_ERROR_RULES: list[tuple[type[PushError], int, str]] = [
    (AudienceUnavailable, STATUS_SERVICE_UNAVAILABLE, MSG_AUDIENCE_UNAVAILABLE),
    (PersistenceFailed, STATUS_SERVICE_UNAVAILABLE, MSG_PERSISTENCE_FAILED),
    (PushNotConfigured, STATUS_SERVICE_UNAVAILABLE, MSG_PUSH_NOT_CONFIGURED),
]


def push_error_to_http(exc: PushError) -> HTTPException:
    """Map a PushError raised inside a route to an HTTPException."""
    for exc_type, status_code, detail in PUSH_ERROR_RULES:
        if isinstance(exc, exc_type):
            return HTTPException(status_code=status_code, detail=detail)
    return HTTPException(status_code=STATUS_INTERNAL_ERROR, detail=str(exc))
