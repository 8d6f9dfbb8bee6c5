"""Loan lifecycle: issue, return and renew.

Every operation that touches both the ledger and copy availability runs in
one ``BEGIN IMMEDIATE`` transaction.  A failure after the copy has been
reserved (or released) rolls the whole transaction back, so the ledger and
``available_copies`` never drift apart.  Writes are never retried: a busy
database surfaces as ``StoreUnavailable`` straight away.

Loan states::

    Open --return_loan--> Returned (terminal)
    Open --renew_loan---> Open
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from library_api.availability import AvailabilityEngine
from library_api.database import Database
from library_api.exceptions import (
    AlreadyReturned,
    BookNotFound,
    ConsistencyError,
    InvalidDueDate,
    LoanNotFound,
    MemberHasOpenLoans,
    MemberInactive,
    MemberNotFound,
)
from library_api.fees import FeePolicy, PerDayFeePolicy
from library_api.models import Loan, Member, overdue_days, parse_datetime, utcnow
from library_api.stores import CatalogStore, LoanLedger, MembershipStore

logger = logging.getLogger(__name__)


class LendingService:

    def __init__(self, db: Database, catalog: CatalogStore, members: MembershipStore, ledger: LoanLedger,
                 engine: Optional[AvailabilityEngine] = None, fee_policy: Optional[FeePolicy] = None,
                 clock: Callable[[], datetime] = utcnow, default_loan_days: int = 14) -> None:
        self.db = db
        self.catalog = catalog
        self.members = members
        self.ledger = ledger
        self.engine = engine or AvailabilityEngine(db, catalog, ledger)
        self.fee_policy = fee_policy or PerDayFeePolicy()
        self.clock = clock
        self.default_loan_days = default_loan_days

    # ------------------------- Lifecycle ------------------------- #
    def issue_loan(self, book_id: int, member_id: int, due_date: Optional[datetime] = None) -> Loan:
        """Lend one copy of a book to an active member.

        ``due_date`` defaults to ``default_loan_days`` from now and must lie in
        the future, otherwise ``InvalidDueDate`` is raised before anything is
        touched.  Raises ``BookNotFound``, ``MemberNotFound``,
        ``MemberInactive`` or ``NoCopyAvailable`` with no state changed.
        """
        now = self.clock()
        due = parse_datetime(due_date) if due_date is not None else now + timedelta(days=self.default_loan_days)
        if due <= now:
            raise InvalidDueDate("Due date must be after the loan date.")

        with self.db.transaction() as conn:
            if self.catalog.get_book(book_id, conn) is None:
                raise BookNotFound(book_id)
            member = self.members.get_member(member_id, conn)
            if member is None:
                raise MemberNotFound(member_id)
            if not member.is_active:
                raise MemberInactive(member_id)

            self.engine.reserve_copy(book_id, conn)
            loan = self.ledger.save_loan(
                Loan(book_id=book_id, member_id=member_id, loan_date=now, due_date=due), conn
            )

        logger.info("Issued loan %s: book %s to member %s, due %s", loan.id, book_id, member_id,
                    loan.due_date.isoformat())
        return loan

    def return_loan(self, loan_id: int, return_date: Optional[datetime] = None) -> Loan:
        """Close an open loan, charge the late fee if any and release the copy.

        Raises ``LoanNotFound``, ``AlreadyReturned``, or ``InvalidDueDate``
        when ``return_date`` precedes the loan date.  ``OverRelease`` aborts
        the return and leaves the loan open.
        """
        returned_at = parse_datetime(return_date) if return_date is not None else self.clock()

        with self.db.transaction() as conn:
            loan = self.ledger.get_loan(loan_id, conn)
            if loan is None:
                raise LoanNotFound(loan_id)
            if loan.is_returned:
                raise AlreadyReturned(loan_id)
            if returned_at < loan.loan_date:
                raise InvalidDueDate("Return date cannot precede the loan date.")

            if returned_at > loan.due_date:
                loan.late_fee = self.fee_policy.compute_late_fee(overdue_days(loan.due_date, returned_at))
            loan.return_date = returned_at
            self.ledger.save_loan(loan, conn)
            try:
                self.engine.release_copy(loan.book_id, conn)
            except (ConsistencyError, BookNotFound):
                logger.error("Return of loan %s aborted: ledger and catalog disagree on book %s",
                             loan_id, loan.book_id)
                raise

        if loan.late_fee is not None:
            logger.info("Loan %s returned late with fee %s", loan_id, loan.late_fee)
        else:
            logger.info("Loan %s returned", loan_id)
        return loan

    def renew_loan(self, loan_id: int, new_due_date: datetime) -> Loan:
        """Push the due date of an open loan further out."""
        new_due = parse_datetime(new_due_date)
        with self.db.transaction() as conn:
            loan = self.ledger.get_loan(loan_id, conn)
            if loan is None:
                raise LoanNotFound(loan_id)
            if loan.is_returned:
                raise AlreadyReturned(loan_id)
            if new_due is None or new_due <= loan.due_date:
                raise InvalidDueDate("New due date must be later than the current due date.")
            loan.due_date = new_due
            self.ledger.save_loan(loan, conn)
        logger.info("Loan %s renewed until %s", loan_id, new_due.isoformat())
        return loan

    # ------------------------- Members ------------------------- #
    def deactivate_member(self, member_id: int, force: bool = False,
                          conn: Optional[sqlite3.Connection] = None) -> Member:
        """Deactivate a member; refused while loans are open unless ``force`` is set.

        Joins the caller's transaction when ``conn`` is given.
        """
        with self.db.transaction(conn) as c:
            member = self.members.get_member(member_id, c)
            if member is None:
                raise MemberNotFound(member_id)
            open_loans = self.ledger.count_open_loans_for_member(member_id, c)
            if open_loans and not force:
                raise MemberHasOpenLoans(member_id, open_loans)
            if open_loans:
                logger.warning("Member %s deactivated with %d open loan(s)", member_id, open_loans)
            member.is_active = False
            self.members.save_member(member, c)
        return member

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        loan = self.ledger.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def list_loans(self, *, member_id: Optional[int] = None, book_id: Optional[int] = None,
                   active: Optional[bool] = None, overdue: bool = False) -> List[Loan]:
        loans = self.ledger.list_loans(member_id=member_id, book_id=book_id, active=active)
        if overdue:
            now = self.clock()
            loans = [loan for loan in loans if loan.is_overdue(now)]
        return loans

    def overdue_loans(self) -> List[Loan]:
        return self.list_loans(active=True, overdue=True)

    def audit_book(self, book_id: int) -> dict:
        return self.engine.audit(book_id)

    def describe_loan(self, loan: Loan) -> dict:
        """Loan as a dict with the book title and member name resolved."""
        data = loan.to_dict(self.clock())
        book = self.catalog.get_book(loan.book_id)
        member = self.members.get_member(loan.member_id)
        data["book_title"] = book.title if book else ""
        data["member_name"] = member.full_name if member else ""
        return data
