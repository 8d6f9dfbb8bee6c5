"""SQLite-backed stores for the catalog, members, the loan ledger and users.

Each store receives the ``Database`` it works on.  Every method takes an
optional ``conn``: when given, the call joins the caller's transaction
(this is how the lending service makes several store calls atomic); when
omitted, the store opens its own connection.  Single-row reads made
outside a transaction are retried through ``Database.read_with_retry``.
"""

from __future__ import annotations

import sqlite3
from typing import List, Optional

from library_api.database import Database
from library_api.exceptions import DuplicateError, ReferencedError, ValidationError
from library_api.models import Author, Book, Loan, Member, User, format_datetime, utcnow

_BOOK_COLUMNS = """
    id, isbn, title, description, published_date, author_id,
    total_copies, available_copies, version, created_at, updated_at
"""


class CatalogStore:
    """Books and authors."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------- Books ------------------------- #
    def get_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        if conn is None:
            return self.db.read_with_retry(self._get_book, book_id)
        return self._get_book(book_id, conn)

    def _get_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.reading(conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None

    def get_book_by_isbn(self, isbn: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with self.db.reading(conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE isbn = ?", (isbn,)).fetchone()
            return Book.from_dict(dict(row)) if row else None

    def list_books(self, *, author_id: Optional[int] = None, available_only: bool = False,
                   conn: Optional[sqlite3.Connection] = None) -> List[Book]:
        query = f"SELECT {_BOOK_COLUMNS} FROM books"
        clauses = []
        params: list = []
        if author_id is not None:
            clauses.append("author_id = ?")
            params.append(author_id)
        if available_only:
            clauses.append("available_copies > 0")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY title"
        with self.db.reading(conn) as c:
            return [Book.from_dict(dict(row)) for row in c.execute(query, params).fetchall()]

    def save_book(self, book: Book, conn: Optional[sqlite3.Connection] = None) -> Book:
        """Insert a new book or update the catalog fields of an existing one.

        Copy counts are written only on insert; afterwards they change through
        the copy-count primitives below.
        """
        now = utcnow()
        with self.db.transaction(conn) as c:
            try:
                if book.id is None:
                    cursor = c.execute(
                        "INSERT INTO books (isbn, title, description, published_date, author_id,"
                        " total_copies, available_copies, version, created_at)"
                        " VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)",
                        (book.isbn, book.title, book.description, format_datetime(book.published_date),
                         book.author_id, book.total_copies, book.available_copies, format_datetime(now)),
                    )
                    book.id = cursor.lastrowid
                    book.created_at = now
                else:
                    c.execute(
                        "UPDATE books SET isbn = ?, title = ?, description = ?, published_date = ?,"
                        " author_id = ?, updated_at = ? WHERE id = ?",
                        (book.isbn, book.title, book.description, format_datetime(book.published_date),
                         book.author_id, format_datetime(now), book.id),
                    )
                    book.updated_at = now
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise DuplicateError(f"Book with ISBN {book.isbn} already exists.") from e
                raise ValidationError(f"Invalid book record: {e}") from e
        return book

    def delete_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self.db.transaction(conn) as c:
            loans = c.execute("SELECT COUNT(*) FROM loans WHERE book_id = ?", (book_id,)).fetchone()[0]
            if loans:
                raise ReferencedError(f"Book {book_id} has {loans} loan(s) in the ledger and cannot be deleted.")
            cursor = c.execute("DELETE FROM books WHERE id = ?", (book_id,))
            return cursor.rowcount > 0

    # Copy-count primitives, called only by AvailabilityEngine
    def take_copy(self, book_id: int, conn: sqlite3.Connection) -> bool:
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies - 1, version = version + 1,"
            " updated_at = ? WHERE id = ? AND available_copies > 0",
            (format_datetime(utcnow()), book_id),
        )
        return cursor.rowcount == 1

    def put_copy(self, book_id: int, conn: sqlite3.Connection) -> bool:
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies + 1, version = version + 1,"
            " updated_at = ? WHERE id = ? AND available_copies < total_copies",
            (format_datetime(utcnow()), book_id),
        )
        return cursor.rowcount == 1

    def set_copy_counts(self, book_id: int, expected_version: int, total: int, available: int,
                        conn: sqlite3.Connection) -> bool:
        cursor = conn.execute(
            "UPDATE books SET total_copies = ?, available_copies = ?, version = version + 1,"
            " updated_at = ? WHERE id = ? AND version = ?",
            (total, available, format_datetime(utcnow()), book_id, expected_version),
        )
        return cursor.rowcount == 1

    # ------------------------- Authors ------------------------- #
    def get_author(self, author_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Author]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM authors WHERE id = ?", (author_id,)).fetchone()
            return Author.from_dict(dict(row)) if row else None

    def exists_author(self, author_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self.db.reading(conn) as c:
            return c.execute("SELECT 1 FROM authors WHERE id = ?", (author_id,)).fetchone() is not None

    def list_authors(self, conn: Optional[sqlite3.Connection] = None) -> List[Author]:
        with self.db.reading(conn) as c:
            rows = c.execute("SELECT * FROM authors ORDER BY last_name, first_name").fetchall()
            return [Author.from_dict(dict(row)) for row in rows]

    def count_books_by_author(self, author_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.reading(conn) as c:
            return c.execute("SELECT COUNT(*) FROM books WHERE author_id = ?", (author_id,)).fetchone()[0]

    def save_author(self, author: Author, conn: Optional[sqlite3.Connection] = None) -> Author:
        with self.db.transaction(conn) as c:
            if author.id is None:
                now = utcnow()
                cursor = c.execute(
                    "INSERT INTO authors (first_name, last_name, biography, date_of_birth, nationality, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (author.first_name, author.last_name, author.biography,
                     format_datetime(author.date_of_birth), author.nationality, format_datetime(now)),
                )
                author.id = cursor.lastrowid
                author.created_at = now
            else:
                c.execute(
                    "UPDATE authors SET first_name = ?, last_name = ?, biography = ?, date_of_birth = ?,"
                    " nationality = ? WHERE id = ?",
                    (author.first_name, author.last_name, author.biography,
                     format_datetime(author.date_of_birth), author.nationality, author.id),
                )
        return author

    def delete_author(self, author_id: int, conn: Optional[sqlite3.Connection] = None) -> bool:
        with self.db.transaction(conn) as c:
            books = c.execute("SELECT COUNT(*) FROM books WHERE author_id = ?", (author_id,)).fetchone()[0]
            if books:
                raise ReferencedError(f"Author {author_id} is referenced by {books} book(s).")
            cursor = c.execute("DELETE FROM authors WHERE id = ?", (author_id,))
            return cursor.rowcount > 0


class MembershipStore:
    """Library members."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_member(self, member_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Member]:
        if conn is None:
            return self.db.read_with_retry(self._get_member, member_id)
        return self._get_member(member_id, conn)

    def _get_member(self, member_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Member]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
            return Member.from_dict(dict(row)) if row else None

    def get_member_by_email(self, email: str, conn: Optional[sqlite3.Connection] = None) -> Optional[Member]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM members WHERE lower(email) = lower(?)", (email,)).fetchone()
            return Member.from_dict(dict(row)) if row else None

    def list_members(self, *, active_only: bool = False,
                     conn: Optional[sqlite3.Connection] = None) -> List[Member]:
        query = "SELECT * FROM members"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY last_name, first_name"
        with self.db.reading(conn) as c:
            return [Member.from_dict(dict(row)) for row in c.execute(query).fetchall()]

    def save_member(self, member: Member, conn: Optional[sqlite3.Connection] = None) -> Member:
        """Insert or update a member; new members get a generated membership number."""
        with self.db.transaction(conn) as c:
            try:
                if member.id is None:
                    now = utcnow()
                    cursor = c.execute(
                        "INSERT INTO members (first_name, last_name, email, phone_number,"
                        " membership_date, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (member.first_name, member.last_name, member.email, member.phone_number,
                         format_datetime(member.membership_date or now), int(member.is_active),
                         format_datetime(now)),
                    )
                    member.id = cursor.lastrowid
                    member.membership_number = member.membership_number or f"MEM-{member.id:06d}"
                    member.membership_date = member.membership_date or now
                    member.created_at = now
                    c.execute("UPDATE members SET membership_number = ? WHERE id = ?",
                              (member.membership_number, member.id))
                else:
                    c.execute(
                        "UPDATE members SET first_name = ?, last_name = ?, email = ?, phone_number = ?,"
                        " is_active = ? WHERE id = ?",
                        (member.first_name, member.last_name, member.email, member.phone_number,
                         int(member.is_active), member.id),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateError(f"Member with email {member.email} already exists.") from e
        return member


class LoanLedger:
    """Append-mostly record of loans; rows are updated on return/renew and never deleted."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_loan(self, loan_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Loan]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
            return Loan.from_dict(dict(row)) if row else None

    def save_loan(self, loan: Loan, conn: Optional[sqlite3.Connection] = None) -> Loan:
        late_fee = str(loan.late_fee) if loan.late_fee is not None else None
        with self.db.transaction(conn) as c:
            if loan.id is None:
                cursor = c.execute(
                    "INSERT INTO loans (book_id, member_id, loan_date, due_date, return_date, late_fee)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (loan.book_id, loan.member_id, format_datetime(loan.loan_date),
                     format_datetime(loan.due_date), format_datetime(loan.return_date), late_fee),
                )
                loan.id = cursor.lastrowid
            else:
                c.execute(
                    "UPDATE loans SET due_date = ?, return_date = ?, late_fee = ? WHERE id = ?",
                    (format_datetime(loan.due_date), format_datetime(loan.return_date), late_fee, loan.id),
                )
        return loan

    def count_open_loans(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.reading(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM loans WHERE book_id = ? AND return_date IS NULL", (book_id,)
            ).fetchone()[0]

    def list_open_loans(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        with self.db.reading(conn) as c:
            rows = c.execute(
                "SELECT * FROM loans WHERE book_id = ? AND return_date IS NULL ORDER BY id", (book_id,)
            ).fetchall()
            return [Loan.from_dict(dict(row)) for row in rows]

    def count_open_loans_for_member(self, member_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self.db.reading(conn) as c:
            return c.execute(
                "SELECT COUNT(*) FROM loans WHERE member_id = ? AND return_date IS NULL", (member_id,)
            ).fetchone()[0]

    def list_loans(self, *, member_id: Optional[int] = None, book_id: Optional[int] = None,
                   active: Optional[bool] = None, conn: Optional[sqlite3.Connection] = None) -> List[Loan]:
        query = "SELECT * FROM loans"
        clauses = []
        params: list = []
        if member_id is not None:
            clauses.append("member_id = ?")
            params.append(member_id)
        if book_id is not None:
            clauses.append("book_id = ?")
            params.append(book_id)
        if active is True:
            clauses.append("return_date IS NULL")
        elif active is False:
            clauses.append("return_date IS NOT NULL")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY loan_date DESC, id DESC"
        with self.db.reading(conn) as c:
            return [Loan.from_dict(dict(row)) for row in c.execute(query, params).fetchall()]


class UserStore:
    """API accounts used by the auth endpoints."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_by_email(self, email: str, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM users WHERE lower(email) = lower(?)", (email,)).fetchone()
            return User.from_dict(dict(row)) if row else None

    def get_user(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with self.db.reading(conn) as c:
            row = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.from_dict(dict(row)) if row else None

    def save_user(self, user: User, conn: Optional[sqlite3.Connection] = None) -> User:
        with self.db.transaction(conn) as c:
            try:
                if user.id is None:
                    now = utcnow()
                    cursor = c.execute(
                        "INSERT INTO users (first_name, last_name, email, password_hash, is_active,"
                        " created_at, last_login_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (user.first_name, user.last_name, user.email, user.password_hash,
                         int(user.is_active), format_datetime(now), format_datetime(user.last_login_at)),
                    )
                    user.id = cursor.lastrowid
                    user.created_at = now
                else:
                    c.execute(
                        "UPDATE users SET first_name = ?, last_name = ?, email = ?, password_hash = ?,"
                        " is_active = ?, last_login_at = ? WHERE id = ?",
                        (user.first_name, user.last_name, user.email, user.password_hash,
                         int(user.is_active), format_datetime(user.last_login_at), user.id),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateError(f"User with email {user.email} already exists.") from e
        return user
