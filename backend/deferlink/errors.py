"""
Deep Link Exceptions
====================

Custom exception types for the attribution and redirect layer.

WHY THIS FILE EXISTS
--------------------
Attribution capture has a small, fixed set of failure modes:
- Missing or malformed required input (400)
- Unknown or expired identifiers (404)
- Admission control rejections (429)
- Persistence medium problems (absorbed, fatal only at startup)

Each error carries its HTTP status so the application-level exception
handlers can render the stable `{success: false, error}` envelope without
route-specific try/except blocks.

RELATED FILES
-------------
- deferlink/main.py: Registers the exception handlers
- deferlink/middleware.py: Renders RateLimitedError for rejected requests
- deferlink/services/attribution_service.py: Raises ValidationError / NotFoundError
- deferlink/services/referral_store.py: Raises PersistenceError
"""

from typing import Any, Dict, Optional


class DeepLinkError(Exception):
    """
    Base exception for all deep link errors.

    WHAT:
        Parent class carrying a human-readable message and an HTTP status.

    USAGE:
        try:
            service.get_click(click_id)
        except DeepLinkError as e:
            return JSONResponse(e.to_response(), status_code=e.status_code)
    """

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> Dict[str, Any]:
        """Return the JSON body sent to HTTP callers."""
        return {"success": False, "error": self.message}


class ValidationError(DeepLinkError):
    """A required field is missing or malformed."""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(DeepLinkError):
    """Unknown or expired identifier."""

    status_code = 404

    def __init__(self, message: str = "Not found", identifier: Optional[str] = None):
        super().__init__(message)
        self.identifier = identifier


class RateLimitedError(DeepLinkError):
    """
    Admission controller rejected the request.

    ATTRIBUTES:
        retry_after: Seconds the client should wait before retrying
        key: The client identity that was limited
    """

    status_code = 429

    def __init__(
        self,
        retry_after: int,
        key: Optional[str] = None,
        message: str = "Too many requests. Please try again later.",
    ):
        super().__init__(message)
        self.retry_after = retry_after
        self.key = key

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["retryAfter"] = self.retry_after
        return body


class PersistenceError(DeepLinkError):
    """
    The backing medium could not be initialized or used.

    Only fatal during store initialization. Read and write failures on
    request paths are logged and absorbed by the store instead.
    """

    status_code = 500

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
