"""
Client-facing error taxonomy.

Every GatewayError is rendered as JSON ``{"error": ..., "message": ...}`` by
the handler registered in ``main.create_app``. The ``error`` strings are part
of the public contract; scripts match on them.
"""

from typing import Dict, Optional

KEY_HELP = "Generate a temporary key with POST /api/keys/generate"


class GatewayError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        error: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        if error is not None:
            self.error = error
        self.message = message
        self.headers = headers or {}
        super().__init__(message or self.error)

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.message:
            body["message"] = self.message
        return body


class AuthRequired(GatewayError):
    status_code = 401
    error = "API key is required"


class AuthInvalid(GatewayError):
    status_code = 401
    error = "Invalid API key"


class AuthExpired(GatewayError):
    status_code = 401
    error = "API key has expired"


class RouteForbidden(GatewayError):
    status_code = 403
    error = "Access to this route is forbidden"


class PermissionDenied(GatewayError):
    status_code = 403
    error = "Permission denied"


class RateLimited(GatewayError):
    status_code = 429
    error = "Too Many Requests"


class RateLimiterUnavailable(GatewayError):
    status_code = 503
    error = "Rate limiter unavailable"


class ApiNotFound(GatewayError):
    status_code = 404
    error = "API not found"


class EndpointNotFound(GatewayError):
    status_code = 404
    error = "Endpoint not found"

    def __init__(self, method: str, path: str):
        super().__init__(f"{method} {path} is not available for this API")
        self.method = method
        self.path = path


class ResourceNotFound(GatewayError):
    status_code = 404
    error = "Not found"


class SlugConflict(GatewayError):
    status_code = 409
    error = "API with this slug already exists"


class EndpointConflict(GatewayError):
    status_code = 409
    error = "Endpoint already exists"


class PayloadTooLarge(GatewayError):
    status_code = 413
    error = "Payload Too Large"


class UpstreamTransportFailure(GatewayError):
    status_code = 500
    error = "Proxy request failed"


class RegistryFailure(GatewayError):
    status_code = 500
    error = "Registry lookup failed"


class UsageLogFailure(Exception):
    """A batch of usage rows could not be written. Never shown to callers."""

    def __init__(self, dropped: int, cause: BaseException):
        super().__init__(f"dropped {dropped} usage record(s): {cause}")
        self.dropped = dropped
        self.cause = cause

