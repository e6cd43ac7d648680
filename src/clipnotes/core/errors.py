"""
Error Taxonomy

Exception hierarchy shared by the note store, the provider client, the
index maintainer and the retrieval engine. The HTTP layer renders every
subclass of ``ClipnotesError`` in the API envelope using ``status_code``
and ``code``.

Cancellation is not part of this hierarchy: ``asyncio.CancelledError``
propagates untouched.
"""

from __future__ import annotations

from typing import Any


class ClipnotesError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInputError(ClipnotesError):
    """Caller-correctable input (empty text, bad id, wrong vector size)."""

    status_code = 400
    code = "INVALID_INPUT"


class UnauthorizedError(ClipnotesError):
    """Request arrived without an owner identity."""

    status_code = 401
    code = "UNAUTHORIZED"


class NotFoundError(ClipnotesError):
    """Missing note, foreign note, or empty candidate set."""

    status_code = 404
    code = "NOT_FOUND"


class ConflictError(ClipnotesError):
    """Unique constraint violation that survived a retry."""

    status_code = 409
    code = "CONFLICT"


class TransientError(ClipnotesError):
    """Retryable failure: database timeout, connection reset, rate limit."""

    status_code = 503
    code = "TRANSIENT"


class TransportError(TransientError):
    """Provider unreachable or timed out."""

    code = "TRANSPORT"


class RateLimitedError(TransientError):
    """Provider answered 429."""

    code = "RATE_LIMITED"


class UpstreamError(ClipnotesError):
    """Provider returned a non-success status or an unusable body."""

    status_code = 502
    code = "UPSTREAM"


class DecodeError(UpstreamError):
    """Provider body could not be decoded into the expected shape."""

    code = "DECODE"
