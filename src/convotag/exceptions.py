"""Custom exceptions for Convotag."""

from typing import Any, Optional


class ConvotagError(Exception):
    """Base class for errors raised by the record store and tagging engine."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ConvotagError):
    """Malformed or out-of-range input. Never retried automatically."""


class NotFoundError(ConvotagError):
    """A conversation, tag, analysis result or recommendation does not exist."""

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} {identifier} not found",
            {"resource": resource, "id": str(identifier)},
        )


class ForbiddenError(ConvotagError):
    """The caller does not own the record, or the record is protected."""


class ConflictError(ConvotagError):
    """Stale-version feedback, an already-resolved recommendation, or a duplicate key."""


class TransientStoreError(ConvotagError):
    """Storage connection or timeout failure that outlived the retry budget."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, {"attempts": attempts})


class AnalysisUnavailableError(ConvotagError):
    """The analysis backend failed or timed out.

    Recorded for observability only; never propagated to the caller of a
    message append.
    """
