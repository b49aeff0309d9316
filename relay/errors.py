# ==== RELAY ERROR HIERARCHY ==== #

"""
Typed exceptions for every failure mode of the relay.

Each error carries a stable code and the HTTP status it maps to at the
FastAPI boundary. FileError is the exception: it is logged where it happens
and never reaches a client.
"""

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for all relay errors."""

    code = "RELAY_ERROR"
    http_status = 500

    def __init__(self, message: str, *, http_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if http_status is not None:
            self.http_status = http_status

    def details(self) -> Dict[str, Any]:
        """Extra fields merged into the error response."""
        return {}

    def to_response(self, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """Convert to the JSON error envelope returned to clients."""
        body = {
            "error": self.message,
            "code": self.code,
            **self.details(),
        }
        if correlation_id:
            body["correlation_id"] = correlation_id
        return body


class ValidationError(RelayError):
    """Missing message, or an oversized or wrong-type attachment."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(self, message: str, *, field: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message, http_status=http_status)
        self.field = field

    def details(self) -> Dict[str, Any]:
        return {"field": self.field} if self.field else {}


class RateLimitExceeded(RelayError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, client_key: str, retry_after: float):
        super().__init__("Too many requests, please slow down")
        self.client_key = client_key
        self.retry_after = retry_after

    def details(self) -> Dict[str, Any]:
        return {"retry_after": self.retry_after}


class CredentialError(RelayError):
    """The tenant access token exchange failed or returned malformed data."""

    code = "CREDENTIAL_ERROR"
    http_status = 500


class UpstreamError(RelayError):
    """A Feishu message or image call failed, timed out, or was rejected."""

    code = "UPSTREAM_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        status_code: Optional[int] = None,
        platform_code: Optional[int] = None,
        detail: Any = None,
        unauthorized: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code
        self.platform_code = platform_code
        self.detail = detail
        self.unauthorized = unauthorized or status_code == 401

    def details(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "upstream_status": self.status_code,
            "upstream_code": self.platform_code,
            "detail": self.detail,
        }


class PartialDeliveryError(UpstreamError):
    """The text leg was delivered but the image leg failed."""

    code = "PARTIAL_DELIVERY"

    def __init__(self, cause: RelayError, operation: str = "image"):
        super().__init__(
            "Text message delivered, image delivery failed",
            operation=getattr(cause, "operation", operation),
            status_code=getattr(cause, "status_code", None),
            platform_code=getattr(cause, "platform_code", None),
            detail=getattr(cause, "detail", None) or cause.message,
            unauthorized=getattr(cause, "unauthorized", False),
        )
        self.cause = cause

    def details(self) -> Dict[str, Any]:
        return {**super().details(), "partial": True, "delivered": ["text"]}


class DispatchQueueClosed(RelayError):
    code = "QUEUE_CLOSED"
    http_status = 503

    def __init__(self):
        super().__init__("Relay is shutting down, message not accepted")


class FileError(RelayError):
    """Temp file write or delete failure. Logged only, never surfaced."""

    code = "FILE_ERROR"

    def __init__(self, message: str, *, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
