import sqlite3
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from library_api.database import Database
from library_api.exceptions import (
    AlreadyReturned,
    BookNotFound,
    InvalidDueDate,
    LoanNotFound,
    MemberHasOpenLoans,
    MemberInactive,
    MemberNotFound,
    NoCopyAvailable,
    OverRelease,
    StoreUnavailable,
)
from library_api.models import Book, Member


def _available(services, book_id):
    return services.catalog.get_book(book_id).available_copies


def test_single_copy_scenario(services, book, member, clock):
    """Issue the only copy, fail a second issue, return late and get the copy back."""
    other = services.members.save_member(Member("Grace", "Hopper", "grace@example.com"))
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    assert _available(services, book.id) == 0
    assert loan.status == "OPEN"

    with pytest.raises(NoCopyAvailable):
        services.lending.issue_loan(book.id, other.id, clock.now + timedelta(days=7))
    assert services.ledger.count_open_loans(book.id) == 1

    clock.advance(days=10)
    returned = services.lending.return_loan(loan.id)
    assert returned.is_returned
    assert returned.late_fee == Decimal("1.50")
    assert _available(services, book.id) == 1


def test_issue_uses_default_loan_period(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id)
    assert loan.loan_date == clock.now
    assert loan.due_date == clock.now + timedelta(days=14)


def test_issue_rejects_due_date_not_in_future(services, book, member, clock):
    with pytest.raises(InvalidDueDate):
        services.lending.issue_loan(book.id, member.id, clock.now)
    assert _available(services, book.id) == 1


def test_issue_unknown_book_and_member(services, book, member, clock):
    due = clock.now + timedelta(days=3)
    with pytest.raises(BookNotFound):
        services.lending.issue_loan(999, member.id, due)
    with pytest.raises(MemberNotFound):
        services.lending.issue_loan(book.id, 999, due)
    assert _available(services, book.id) == 1
    assert services.ledger.list_loans() == []


def test_issue_to_inactive_member(services, book, member, clock):
    member.is_active = False
    services.members.save_member(member)
    with pytest.raises(MemberInactive):
        services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=3))
    assert _available(services, book.id) == 1


def test_return_on_time_has_no_fee(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    clock.advance(days=7)
    returned = services.lending.return_loan(loan.id)
    assert returned.late_fee is None
    assert services.lending.get_loan(loan.id).return_date == clock.now


def test_return_counts_started_days(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=1))
    returned = services.lending.return_loan(loan.id, clock.now + timedelta(days=1, hours=1))
    assert returned.late_fee == Decimal("0.50")


def test_return_twice_does_not_release_twice(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    services.lending.return_loan(loan.id)
    with pytest.raises(AlreadyReturned):
        services.lending.return_loan(loan.id)
    assert _available(services, book.id) == 1


def test_return_unknown_loan(services):
    with pytest.raises(LoanNotFound):
        services.lending.return_loan(404)


def test_return_before_loan_date(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    with pytest.raises(InvalidDueDate):
        services.lending.return_loan(loan.id, clock.now - timedelta(days=1))
    assert services.lending.get_loan(loan.id).is_returned is False


def test_renew_extends_due_date(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    renewed = services.lending.renew_loan(loan.id, clock.now + timedelta(days=21))
    assert renewed.due_date == clock.now + timedelta(days=21)
    assert services.lending.get_loan(loan.id).due_date == clock.now + timedelta(days=21)


def test_renew_must_move_due_date_forward(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    with pytest.raises(InvalidDueDate):
        services.lending.renew_loan(loan.id, loan.due_date - timedelta(days=1))
    with pytest.raises(InvalidDueDate):
        services.lending.renew_loan(loan.id, loan.due_date)
    assert services.lending.get_loan(loan.id).due_date == loan.due_date


def test_issue_then_return_restores_availability(services, author, member, clock):
    book = services.catalog.save_book(Book(isbn="9780134686097", title="Effective Java",
                                           author_id=author.id, total_copies=3))
    loans = [services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7)) for _ in range(2)]
    assert _available(services, book.id) == 1
    for loan in loans:
        services.lending.return_loan(loan.id)
    assert _available(services, book.id) == 3
    assert services.lending.audit_book(book.id)["open_loans"] == 0


def test_renew_returned_loan(services, book, member, clock):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    services.lending.return_loan(loan.id)
    with pytest.raises(AlreadyReturned):
        services.lending.renew_loan(loan.id, clock.now + timedelta(days=30))


def test_failed_ledger_write_rolls_back_reservation(services, book, member, clock, monkeypatch):
    def broken_save(loan, conn=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(services.ledger, "save_loan", broken_save)
    with pytest.raises(StoreUnavailable):
        services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    assert _available(services, book.id) == 1


def test_over_release_rolls_back_return(services, book, member, clock, db):
    loan = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    conn = sqlite3.connect(db.db_file)
    conn.execute("UPDATE books SET available_copies = total_copies WHERE id = ?", (book.id,))
    conn.commit()
    conn.close()

    with pytest.raises(OverRelease):
        services.lending.return_loan(loan.id)
    assert services.lending.get_loan(loan.id).is_returned is False


def test_concurrent_issue_of_last_copy(services, book, clock):
    members = [
        services.members.save_member(Member("Reader", str(i), f"reader{i}@example.com")) for i in range(2)
    ]
    barrier = threading.Barrier(2)
    outcomes = []

    def borrow(member_id):
        barrier.wait()
        try:
            services.lending.issue_loan(book.id, member_id, clock.now + timedelta(days=7))
            outcomes.append("ok")
        except NoCopyAvailable:
            outcomes.append("none")

    threads = [threading.Thread(target=borrow, args=(m.id,)) for m in members]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["none", "ok"]
    assert _available(services, book.id) == 0
    assert services.ledger.count_open_loans(book.id) == 1


def test_locked_database_surfaces_store_unavailable(services, book, member, clock, db):
    impatient = Database(db.db_file, timeout=0.1)
    services.lending.db = impatient
    blocker = db.connect()
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(StoreUnavailable):
            services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()
    assert _available(services, book.id) == 1


def test_read_with_retry_logs_and_retries(db, caplog):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise StoreUnavailable("Database unavailable: database is locked")
        return "row"

    with caplog.at_level("WARNING", logger="library_api.database"):
        assert db.read_with_retry(flaky) == "row"
    assert len(calls) == 2
    assert "retrying" in caplog.text


def test_read_with_retry_gives_up(db):
    def always_locked():
        raise StoreUnavailable("locked")

    with pytest.raises(StoreUnavailable):
        db.read_with_retry(always_locked)


def test_deactivate_member_with_open_loans(services, book, member, clock, caplog):
    services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=7))
    with pytest.raises(MemberHasOpenLoans):
        services.lending.deactivate_member(member.id)
    assert services.members.get_member(member.id).is_active

    with caplog.at_level("WARNING", logger="library_api.lending"):
        services.lending.deactivate_member(member.id, force=True)
    assert services.members.get_member(member.id).is_active is False
    assert "open loan" in caplog.text


def test_overdue_listing_and_description(services, book, member, clock, author):
    second = services.catalog.save_book(Book(isbn="9780134686097", title="Effective Java",
                                             author_id=author.id, total_copies=2))
    late = services.lending.issue_loan(book.id, member.id, clock.now + timedelta(days=2))
    services.lending.issue_loan(second.id, member.id, clock.now + timedelta(days=30))
    clock.advance(days=5)

    overdue = services.lending.overdue_loans()
    assert [loan.id for loan in overdue] == [late.id]

    view = services.lending.describe_loan(overdue[0])
    assert view["book_title"] == "The Dispossessed"
    assert view["member_name"] == "Ada Lovelace"
    assert view["is_overdue"] is True
    assert view["days_overdue"] == 3

    assert len(services.lending.list_loans(member_id=member.id, active=True)) == 2
    assert services.lending.list_loans(book_id=second.id, overdue=True) == []
