"""Exception taxonomy for the pipeline.

Only ``PersistenceError`` and ``ValidationError`` are meant to reach callers.
The side-effect failures are raised by their own components and caught at
the call site so that a successful primary write is never reported as failed.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class PersistenceError(PipelineError):
    """Primary store unreachable or constraint violated."""

    def __init__(self, message: str, *, constraint: bool = False):
        super().__init__(message)
        self.constraint = constraint


class ValidationError(PipelineError):
    """Invalid state transition or malformed input.

    Raised before any persistence attempt.
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class EncodingError(PipelineError):
    """Text field contains malformed character sequences."""

    def __init__(self, message: str, field: str | None = None, removed: int = 0):
        super().__init__(message)
        self.field = field
        self.removed = removed


class AuditWriteFailure(PipelineError):
    """Audit journal append failed. Logged, never surfaced."""


class LedgerSubmissionFailure(PipelineError):
    """Ledger node rejected or did not answer a submission."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(PipelineError):
    """Entity does not exist (HTTP layer only)."""


__all__ = [
    "PipelineError",
    "PersistenceError",
    "ValidationError",
    "EncodingError",
    "AuditWriteFailure",
    "LedgerSubmissionFailure",
    "NotFoundError",
]
