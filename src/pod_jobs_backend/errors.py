"""
Domain errors raised by the job orchestration core.

Each error carries a stable machine-readable ``code`` that clients branch on,
a human-readable ``message``, and an HTTP status used by the API layer when
rendering the error. Worker-reported processing failures are not errors in
this sense: they are stored on the job as ``FAILED`` + ``error_message``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class JobServiceError(Exception):
    """Base class for errors surfaced synchronously to API callers."""

    status_code = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidInputError(JobServiceError):
    """The caller's request is malformed; no job was created."""

    status_code = 400


class NotFoundError(JobServiceError):
    """An unknown job id or an unresolvable file id."""

    status_code = 404


class JobStateError(JobServiceError):
    """A status update that the job state machine does not allow."""

    status_code = 409


class QueueError(JobServiceError):
    """The work item could not be handed to its queue."""

    status_code = 503


class UnprocessableError(JobServiceError):
    """The request is well-formed but the session it refers to cannot be processed."""

    status_code = 422


class DuplicateRequestError(JobStateError):
    """A job with the same idempotency key was stored concurrently."""
