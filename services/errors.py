"""Typed failures raised by the borrowing and catalog services.

Every error carries a stable ``code`` and the HTTP status the routes answer
with, so callers can render a specific message instead of a generic one.
"""
from __future__ import annotations


class BorrowServiceError(RuntimeError):
    """Base class for borrow/return failures."""

    code = 'internal_error'
    status_code = 500

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.__class__.__doc__)
        self.details = details

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        payload = {'error': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class NotFound(BorrowServiceError):
    """The requested record does not exist."""

    code = 'not_found'
    status_code = 404


class InactiveStudent(BorrowServiceError):
    """The student account is inactive."""

    code = 'inactive_student'
    status_code = 403


class DuplicateRequest(BorrowServiceError):
    """A pending request for this book already exists."""

    code = 'duplicate_request'
    status_code = 409


class AlreadyReviewed(BorrowServiceError):
    """The request is no longer pending."""

    code = 'already_reviewed'
    status_code = 409


class AlreadyReturned(BorrowServiceError):
    """The book has already been returned."""

    code = 'already_returned'
    status_code = 409


class NoCopiesAvailable(BorrowServiceError):
    """No copies of this book are available."""

    code = 'no_copies_available'
    status_code = 409


class BorrowLimitReached(BorrowServiceError):
    """The student already holds the maximum number of books."""

    code = 'borrow_limit_reached'
    status_code = 409


class ActiveBorrowingsExist(BorrowServiceError):
    """The record still has books out on loan."""

    code = 'active_borrowings_exist'
    status_code = 409


class ValidationError(BorrowServiceError):
    """The input is invalid."""

    code = 'validation_error'
    status_code = 400


class ConsistencyViolation(BorrowServiceError):
    """Inventory counters are out of step with the loan records."""

    code = 'consistency_violation'
    status_code = 500
