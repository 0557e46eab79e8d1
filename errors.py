from enum import Enum


class RejectReason(str, Enum):
    MEMBER_SUSPENDED = "MEMBER_SUSPENDED"
    MEMBER_HAS_OVERDUE = "MEMBER_HAS_OVERDUE"
    MEMBER_LIMIT_EXCEEDED = "MEMBER_LIMIT_EXCEEDED"
    BOOK_UNAVAILABLE = "BOOK_UNAVAILABLE"
    DUPLICATE_LOAN = "DUPLICATE_LOAN"
    ALREADY_RETURNED = "ALREADY_RETURNED"
    NOT_ISSUED = "NOT_ISSUED"
    RENEWAL_LIMIT_EXCEEDED = "RENEWAL_LIMIT_EXCEEDED"
    BOOK_RESERVED = "BOOK_RESERVED"
    CANNOT_RENEW_OVERDUE = "CANNOT_RENEW_OVERDUE"
    AMOUNT_EXCEEDS_FINE = "AMOUNT_EXCEEDS_FINE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    COPIES_IN_USE = "COPIES_IN_USE"
    BOOK_HAS_ACTIVE_LOANS = "BOOK_HAS_ACTIVE_LOANS"
    MEMBER_HAS_ACTIVE_LOANS = "MEMBER_HAS_ACTIVE_LOANS"
    MEMBER_HAS_OUTSTANDING_FINES = "MEMBER_HAS_OUTSTANDING_FINES"


class LibraryError(Exception):
    """Base exception for library errors."""

    kind = "Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(LibraryError):
    """Referenced member, book, borrowing or user does not exist."""

    kind = "NotFound"

    def __init__(self, entity: str, identifier=None):
        if identifier is None:
            message = f"{entity} not found"
        else:
            message = f"{entity} not found: id={identifier}"
        super().__init__(message)
        self.entity = entity
        self.identifier = identifier


class Rejected(LibraryError):
    """Business rule violation. Nothing was changed."""

    kind = "Rejected"

    def __init__(self, reason: RejectReason, message: str):
        super().__init__(message)
        self.reason = reason


class Conflict(LibraryError):
    """Uniqueness violation (duplicate ISBN, email or username)."""

    kind = "Conflict"


class Transient(LibraryError):
    """Store-level failure that is safe to retry."""

    kind = "Transient"
