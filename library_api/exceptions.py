"""Exception hierarchy for the lending core.

Every error carries the HTTP status the API layer answers with and a short
machine-readable ``code``.  The classes fall into four families:

* ``ValidationError`` - bad or stale user input, mapped to 4xx.
* ``CapacityError`` - a business rule refused the operation (409).
* ``ConsistencyError`` - the ledger and the catalog disagree; always logged
  at ERROR and surfaced as 500.
* ``StoreUnavailable`` - the database timed out or is locked (503).
"""

from __future__ import annotations


class LibraryError(Exception):
    status_code = 400
    code = "library_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ------------------------- Validation ------------------------- #
class ValidationError(LibraryError):
    status_code = 400
    code = "invalid"


class NotFoundError(ValidationError):
    status_code = 404
    code = "not_found"


class BookNotFound(NotFoundError):
    code = "book_not_found"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book with ID {book_id} not found.")
        self.book_id = book_id


class AuthorNotFound(NotFoundError):
    code = "author_not_found"

    def __init__(self, author_id: int) -> None:
        super().__init__(f"Author with ID {author_id} not found.")
        self.author_id = author_id


class MemberNotFound(NotFoundError):
    code = "member_not_found"

    def __init__(self, member_id: int) -> None:
        super().__init__(f"Member with ID {member_id} not found.")
        self.member_id = member_id


class LoanNotFound(NotFoundError):
    code = "loan_not_found"

    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan with ID {loan_id} not found.")
        self.loan_id = loan_id


class MemberInactive(ValidationError):
    code = "member_inactive"

    def __init__(self, member_id: int) -> None:
        super().__init__(f"Member with ID {member_id} is not active.")
        self.member_id = member_id


class AlreadyReturned(ValidationError):
    status_code = 409
    code = "already_returned"

    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan with ID {loan_id} has already been returned.")
        self.loan_id = loan_id


class InvalidDueDate(ValidationError):
    code = "invalid_due_date"


class DuplicateError(ValidationError):
    code = "duplicate"


# ------------------------- Capacity ------------------------- #
class CapacityError(LibraryError):
    status_code = 409
    code = "conflict"


class NoCopyAvailable(CapacityError):
    code = "no_copy_available"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"No copies of book {book_id} are available.")
        self.book_id = book_id


class BelowOpenLoanCount(CapacityError):
    code = "below_open_loan_count"

    def __init__(self, book_id: int, new_total: int, open_loans: int) -> None:
        super().__init__(
            f"Cannot set total copies of book {book_id} to {new_total}: {open_loans} loan(s) are open."
        )
        self.book_id = book_id
        self.new_total = new_total
        self.open_loans = open_loans


class MemberHasOpenLoans(CapacityError):
    code = "member_has_open_loans"

    def __init__(self, member_id: int, open_loans: int) -> None:
        super().__init__(
            f"Member {member_id} has {open_loans} open loan(s); return them or pass force to deactivate."
        )
        self.member_id = member_id
        self.open_loans = open_loans


class ReferencedError(CapacityError):
    code = "in_use"


# ------------------------- Consistency ------------------------- #
class ConsistencyError(LibraryError):
    status_code = 500
    code = "consistency_error"


class OverRelease(ConsistencyError):
    code = "over_release"

    def __init__(self, book_id: int, available: int, total: int) -> None:
        super().__init__(
            f"Releasing a copy of book {book_id} would exceed its total ({available}/{total})."
        )
        self.book_id = book_id


class InvariantViolation(ConsistencyError):
    code = "invariant_violation"


# ------------------------- Store ------------------------- #
class StoreUnavailable(LibraryError):
    status_code = 503
    code = "store_unavailable"


# ------------------------- Auth ------------------------- #
class AuthenticationError(LibraryError):
    status_code = 401
    code = "not_authenticated"
