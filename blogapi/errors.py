"""
Error taxonomy shared by the services and the HTTP layer.

Every failure a caller can observe is one of these kinds; the app maps them to
a structured JSON body with the kind and message.
"""

from __future__ import annotations


class BlogError(Exception):
    """Base class for failures surfaced to callers."""

    kind = "UnknownError"
    status_code = 500
    default_detail = "Unexpected error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class NotFound(BlogError):
    kind = "NotFound"
    status_code = 404
    default_detail = "Resource not found"


class Forbidden(BlogError):
    kind = "Forbidden"
    status_code = 403
    default_detail = "Not allowed to modify this resource"


class ValidationError(BlogError):
    """Bad input shape, e.g. a non-image upload or an oversized file."""

    kind = "ValidationError"
    status_code = 422
    default_detail = "Invalid input"


class ConflictError(BlogError):
    """Uniqueness violation (duplicate username or email)."""

    kind = "ConflictError"
    status_code = 409
    default_detail = "Resource already exists"


class StoreError(BlogError):
    """
    A remote asset operation failed.

    Fatal when raised by an upload; cleanup deletions catch and log it.
    """

    kind = "StoreError"
    status_code = 502
    default_detail = "Asset store operation failed"


class UnknownError(BlogError):
    pass
