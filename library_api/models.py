from __future__ import annotations

import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Accept a datetime, a date or an ISO string from SQLite; always return aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def overdue_days(due_date: datetime, at: datetime) -> int:
    """Number of started days between ``due_date`` and ``at``; 0 when not late."""
    seconds = (at - due_date).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


class Author:
    """An author referenced by one or more books."""

    def __init__(self, first_name: str, last_name: str, biography: str = "",
                 date_of_birth: Optional[datetime] = None, nationality: str = "",
                 id: Optional[int] = None, created_at: Optional[datetime] = None) -> None:
        self.id = id
        self.first_name = first_name.strip()
        self.last_name = last_name.strip()
        self.biography = biography or ""
        self.date_of_birth = parse_datetime(date_of_birth)
        self.nationality = nationality or ""
        self.created_at = parse_datetime(created_at)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return self.full_name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "biography": self.biography,
            "date_of_birth": format_datetime(self.date_of_birth),
            "nationality": self.nationality,
            "created_at": format_datetime(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Author":
        return Author(
            id=data.get("id"),
            first_name=data["first_name"],
            last_name=data["last_name"],
            biography=data.get("biography") or "",
            date_of_birth=data.get("date_of_birth"),
            nationality=data.get("nationality") or "",
            created_at=data.get("created_at"),
        )


class Book:
    """A catalog title and its copy counts.

    ``available_copies`` is owned by the availability engine; everything else
    is plain catalog data.
    """

    def __init__(self, isbn: str, title: str, author_id: int, total_copies: int = 0,
                 available_copies: Optional[int] = None, description: str = "",
                 published_date: Optional[datetime] = None, id: Optional[int] = None,
                 version: int = 0, created_at: Optional[datetime] = None,
                 updated_at: Optional[datetime] = None) -> None:
        self.id = id
        self.isbn = isbn.strip()
        self.title = title.strip()
        self.description = description or ""
        self.published_date = parse_datetime(published_date)
        self.author_id = author_id
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.version = version
        self.created_at = parse_datetime(created_at)
        self.updated_at = parse_datetime(updated_at)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "description": self.description,
            "published_date": format_datetime(self.published_date),
            "author_id": self.author_id,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            isbn=data["isbn"],
            title=data["title"],
            description=data.get("description") or "",
            published_date=data.get("published_date"),
            author_id=data["author_id"],
            total_copies=int(data.get("total_copies", 0)),
            available_copies=data.get("available_copies"),
            version=int(data.get("version") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class Member:
    """A library member who can borrow books while active."""

    def __init__(self, first_name: str, last_name: str, email: str, phone_number: str = "",
                 membership_number: Optional[str] = None, is_active: bool = True,
                 membership_date: Optional[datetime] = None, id: Optional[int] = None,
                 created_at: Optional[datetime] = None) -> None:
        self.id = id
        self.first_name = first_name.strip()
        self.last_name = last_name.strip()
        self.email = email.strip()
        self.phone_number = phone_number or ""
        self.membership_number = membership_number
        self.is_active = bool(is_active)
        self.membership_date = parse_datetime(membership_date)
        self.created_at = parse_datetime(created_at)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "email": self.email,
            "phone_number": self.phone_number,
            "membership_number": self.membership_number,
            "membership_date": format_datetime(self.membership_date),
            "is_active": self.is_active,
            "created_at": format_datetime(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            id=data.get("id"),
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            phone_number=data.get("phone_number") or "",
            membership_number=data.get("membership_number"),
            is_active=bool(data.get("is_active", True)),
            membership_date=data.get("membership_date"),
            created_at=data.get("created_at"),
        )


class Loan:
    """One borrowing transaction in the ledger.

    A loan is open while ``return_date`` is None.  Once returned it never
    changes again.
    """

    def __init__(self, book_id: int, member_id: int, loan_date: datetime, due_date: datetime,
                 return_date: Optional[datetime] = None, late_fee: Optional[Decimal] = None,
                 id: Optional[int] = None) -> None:
        self.id = id
        self.book_id = book_id
        self.member_id = member_id
        self.loan_date = parse_datetime(loan_date)
        self.due_date = parse_datetime(due_date)
        self.return_date = parse_datetime(return_date)
        self.late_fee = Decimal(str(late_fee)) if late_fee is not None else None

    @property
    def is_returned(self) -> bool:
        return self.return_date is not None

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.is_returned:
            return False
        return (now or utcnow()) > self.due_date

    def days_overdue(self, now: Optional[datetime] = None) -> int:
        if not self.is_overdue(now):
            return 0
        return overdue_days(self.due_date, now or utcnow())

    @property
    def status(self) -> str:
        return "RETURNED" if self.is_returned else "OPEN"

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "member_id": self.member_id,
            "loan_date": format_datetime(self.loan_date),
            "due_date": format_datetime(self.due_date),
            "return_date": format_datetime(self.return_date),
            "is_returned": self.is_returned,
            "is_overdue": self.is_overdue(now),
            "days_overdue": self.days_overdue(now),
            "late_fee": str(self.late_fee) if self.late_fee is not None else None,
            "status": self.status,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        return Loan(
            id=data.get("id"),
            book_id=data["book_id"],
            member_id=data["member_id"],
            loan_date=data["loan_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            late_fee=data.get("late_fee"),
        )


class User:
    """An API account able to obtain bearer tokens."""

    def __init__(self, first_name: str, last_name: str, email: str, password_hash: str,
                 is_active: bool = True, id: Optional[int] = None,
                 created_at: Optional[datetime] = None,
                 last_login_at: Optional[datetime] = None) -> None:
        self.id = id
        self.first_name = first_name.strip()
        self.last_name = last_name.strip()
        self.email = email.strip()
        self.password_hash = password_hash
        self.is_active = bool(is_active)
        self.created_at = parse_datetime(created_at)
        self.last_login_at = parse_datetime(last_login_at)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            password_hash=data["password_hash"],
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
            last_login_at=data.get("last_login_at"),
        )
