"""Error taxonomy shared by the engines and the HTTP layer.

Benign outcomes (``DuplicateAwardError``, ``AlreadyApprovedError``) are still
exceptions so callers can branch on them explicitly; the engines catch and log
them where they mean "already done" rather than failure.
"""

from typing import Optional


class StarboardError(Exception):
    """Base class for every error raised by the task lifecycle engines."""

    def __init__(self, message: str, *, entity_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.entity_id = entity_id


class ValidationError(StarboardError):
    """Bad input: unknown template or member, disabled template, bad amounts."""


class NotFoundError(StarboardError):
    """A referenced entity does not exist in the caller's family."""


class AuthorizationError(StarboardError):
    """The acting member's role does not allow the operation."""


class InvalidStateError(StarboardError):
    """Transition attempted from the wrong status, or the status changed underneath."""

    def __init__(self, message: str, *, entity_id: Optional[int] = None, current_status=None):
        super().__init__(message, entity_id=entity_id)
        self.current_status = current_status


class AlreadyApprovedError(InvalidStateError):
    """Re-approval of an instance that is already approved."""


class DuplicateAwardError(StarboardError):
    """A positive ledger entry already exists for the task instance."""


class TransientError(StarboardError):
    """Network or timeout failure talking to the store. Retry reads only."""


__all__ = [
    "StarboardError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "InvalidStateError",
    "AlreadyApprovedError",
    "DuplicateAwardError",
    "TransientError",
]
