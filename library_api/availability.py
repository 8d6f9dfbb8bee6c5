"""Copy availability for books.

``AvailabilityEngine`` is the only code that changes ``available_copies``.
It keeps ``0 <= available_copies <= total_copies`` and, together with the
lending service, ``available_copies == total_copies - open loans``.

Reservations and releases are single compare-and-swap UPDATE statements, so
two writers racing for the last copy cannot both win even without the
surrounding ``BEGIN IMMEDIATE`` transaction.  Breaches of the invariant are
consistency faults: they are logged at ERROR and raised, never clamped.
"""

import logging
import sqlite3
from typing import Optional

from library_api.database import Database
from library_api.exceptions import (
    BelowOpenLoanCount,
    BookNotFound,
    InvariantViolation,
    NoCopyAvailable,
    OverRelease,
    StoreUnavailable,
    ValidationError,
)
from library_api.models import Book
from library_api.stores import CatalogStore, LoanLedger

logger = logging.getLogger(__name__)


class AvailabilityEngine:

    def __init__(self, db: Database, catalog: CatalogStore, ledger: LoanLedger) -> None:
        self.db = db
        self.catalog = catalog
        self.ledger = ledger

    def reserve_copy(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Take one copy of ``book_id``; ``NoCopyAvailable`` when none is left."""
        with self.db.transaction(conn) as c:
            if not self._write(lambda: self.catalog.take_copy(book_id, c), book_id):
                book = self.catalog.get_book(book_id, c)
                if book is None:
                    raise BookNotFound(book_id)
                raise NoCopyAvailable(book_id)
            book = self.catalog.get_book(book_id, c)
            self._check(book)
            return book

    def release_copy(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Give one copy of ``book_id`` back; ``OverRelease`` if that would exceed the total."""
        with self.db.transaction(conn) as c:
            if not self._write(lambda: self.catalog.put_copy(book_id, c), book_id):
                book = self.catalog.get_book(book_id, c)
                if book is None:
                    raise BookNotFound(book_id)
                logger.error("Over-release on book %s: available=%s total=%s",
                             book_id, book.available_copies, book.total_copies)
                raise OverRelease(book_id, book.available_copies, book.total_copies)
            book = self.catalog.get_book(book_id, c)
            self._check(book)
            return book

    def adjust_total_copies(self, book_id: int, new_total: int,
                            conn: Optional[sqlite3.Connection] = None) -> Book:
        """Set the number of owned copies and recompute availability from the ledger."""
        if new_total < 0:
            raise ValidationError("Total copies cannot be negative.")
        with self.db.transaction(conn) as c:
            book = self.catalog.get_book(book_id, c)
            if book is None:
                raise BookNotFound(book_id)
            open_loans = self.ledger.count_open_loans(book_id, c)
            if new_total < open_loans:
                raise BelowOpenLoanCount(book_id, new_total, open_loans)
            available = new_total - open_loans
            # the version guard fails only if another writer slipped in despite the transaction
            if not self._write(lambda: self.catalog.set_copy_counts(book_id, book.version, new_total, available, c),
                               book_id):
                raise StoreUnavailable(f"Book {book_id} changed concurrently; retry the adjustment.")
            updated = self.catalog.get_book(book_id, c)
            self._check(updated)
            logger.info("Book %s total copies %s -> %s (available %s, open loans %s)",
                        book_id, book.total_copies, new_total, available, open_loans)
            return updated

    def audit(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> dict:
        """Recompute availability from the ledger and compare it with the stored counts."""
        with self.db.snapshot(conn) as c:
            book = self.catalog.get_book(book_id, c)
            if book is None:
                raise BookNotFound(book_id)
            open_loans = self.ledger.count_open_loans(book_id, c)
        expected = book.total_copies - open_loans
        report = {
            "book_id": book_id,
            "total_copies": book.total_copies,
            "available_copies": book.available_copies,
            "open_loans": open_loans,
            "expected_available": expected,
            "consistent": book.available_copies == expected,
        }
        if not report["consistent"]:
            logger.error("Availability mismatch on book %s: %s", book_id, report)
            raise InvariantViolation(
                f"Book {book_id} has {book.available_copies} available copies, ledger implies {expected}."
            )
        return report

    def _write(self, statement, book_id: int) -> bool:
        try:
            return statement()
        except sqlite3.IntegrityError as exc:
            logger.error("Copy count constraint rejected update on book %s: %s", book_id, exc)
            raise InvariantViolation(f"Copy counts of book {book_id} would become invalid: {exc}") from exc

    @staticmethod
    def _check(book: Optional[Book]) -> None:
        if book is None:
            return
        if not 0 <= book.available_copies <= book.total_copies:
            logger.error("Invariant breach on book %s: available=%s total=%s",
                         book.id, book.available_copies, book.total_copies)
            raise InvariantViolation(
                f"Book {book.id} has {book.available_copies} available of {book.total_copies} copies."
            )
