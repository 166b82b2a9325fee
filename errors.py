"""
Error taxonomy shared by the store, the ledger and the HTTP layer.

Every error carries the HTTP status it maps to and a message that is safe to
show to clients. Driver or verifier details never go into ``message``.
"""

from contextlib import contextmanager
from typing import Optional


class LendingError(Exception):
    status_code = 500
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class InvalidReference(LendingError):
    status_code = 400
    message = "Invalid ID format"


class ValidationFailed(LendingError):
    status_code = 400
    message = "Invalid request"


class NotFound(LendingError):
    status_code = 404
    message = "Not found"


class Unavailable(LendingError):
    status_code = 400
    message = "Book not available."


class AlreadyBorrowed(LendingError):
    status_code = 400
    message = "You have already borrowed this book."


class Unauthorized(LendingError):
    status_code = 401
    message = "unauthorized access"


class Forbidden(LendingError):
    status_code = 403
    message = "forbidden access"


class StoreFailure(LendingError):
    status_code = 500
    message = "Database operation failed"


class DuplicateDocument(StoreFailure):
    """A write was rejected by a unique index."""


class LedgerInconsistency(StoreFailure):
    """Book quantity and borrow records no longer agree."""


class IdentityServiceFailure(LendingError):
    status_code = 500
    message = "Failed to verify credentials"


@contextmanager
def failure_message(message: str):
    """Report store faults raised inside the block with an endpoint-specific message."""
    try:
        yield
    except StoreFailure as e:
        e.message = message
        raise
