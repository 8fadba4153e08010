"""Error taxonomy for turn handling.

Guard blocks are not errors; they are returned as ``BlockedReply`` values.
"""
from typing import Optional


class CompanionError(Exception):
    """Base error carrying an HTTP-equivalent status and a stable code."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class TurnValidationError(CompanionError):
    """Missing/empty message or unknown persona."""

    status_code = 400
    error_code = "invalid_request"


class UnauthorizedError(CompanionError):
    """No authenticated user for an endpoint that requires one."""

    status_code = 401
    error_code = "unauthorized"


class UpstreamDegraded(CompanionError):
    """Triage provider unavailable or unparseable; always recovered locally."""

    status_code = 503
    error_code = "upstream_degraded"


class UpstreamFailure(CompanionError):
    """Primary completion provider failed."""

    status_code = 502
    error_code = "upstream_failure"


class PersistenceFailure(CompanionError):
    """Message store write failed."""

    status_code = 500
    error_code = "persistence_failure"
