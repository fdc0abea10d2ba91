"""Error types raised by the circulation services.

Each error knows the HTTP status the API answers with, so services can raise
them without importing anything from the web layer.
"""

from typing import Optional


class LibraryError(Exception):
    """Base class for all library errors."""

    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(LibraryError):
    default_message = "Invalid updates!"


class DuplicateEntity(ValidationError):
    """Unique field (email, ISBN) already taken."""
    default_message = "Record already exists"


class NotFound(LibraryError):
    status_code = 404
    default_message = "Not found"


class AuthenticationError(LibraryError):
    status_code = 401
    default_message = "Please authenticate"


class Forbidden(LibraryError):
    status_code = 403
    default_message = "Access denied. Insufficient privileges."


class IneligibleBorrower(LibraryError):
    default_message = "Please pay your outstanding fines."


class BookUnavailable(LibraryError):
    default_message = "Book is not available for borrowing"


class DuplicateBorrowing(LibraryError):
    default_message = "You already have an active borrowing for this book"


class RenewalLimitExceeded(LibraryError):
    default_message = "Maximum renewals reached"


class DuplicateReservation(LibraryError):
    default_message = "You already have a pending reservation for this book"


class InvalidStateTransition(LibraryError):
    default_message = "Operation not allowed in the current state"


class NoOutstandingFine(LibraryError):
    default_message = "No unpaid fines for this borrowing"


class InvalidAmount(LibraryError):
    default_message = "Valid amount required"


class AmountExceedsBalance(LibraryError):
    default_message = "Amount exceeds outstanding fines"


class InternalError(LibraryError):
    status_code = 500
    default_message = "Internal server error"


class EmailDeliveryError(InternalError):
    default_message = "Could not send email"
