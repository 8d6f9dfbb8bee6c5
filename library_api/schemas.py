"""Request and response models for the HTTP API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


# --- Auth ---
class RegisterModel(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)


class LoginModel(BaseModel):
    email: str
    password: str


class AuthResponseModel(BaseModel):
    token: str
    token_type: str = "bearer"
    email: str
    full_name: str
    expires_at: datetime


# --- Authors ---
class AuthorModel(BaseModel):
    id: int
    first_name: str
    last_name: str
    full_name: str
    biography: str = ""
    date_of_birth: Optional[datetime] = None
    nationality: str = ""
    book_count: int = 0


class AuthorCreateModel(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    biography: str = Field("", max_length=2000)
    date_of_birth: Optional[datetime] = None
    nationality: str = Field("", max_length=100)


class AuthorUpdateModel(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    biography: Optional[str] = Field(None, max_length=2000)
    date_of_birth: Optional[datetime] = None
    nationality: Optional[str] = Field(None, max_length=100)


# --- Books ---
class BookModel(BaseModel):
    id: int
    isbn: str
    title: str
    description: str = ""
    published_date: Optional[datetime] = None
    author_id: int
    author_name: str = ""
    total_copies: int
    available_copies: int


class BookCreateModel(BaseModel):
    isbn: str = Field(..., min_length=10, max_length=17)
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=1000)
    published_date: Optional[datetime] = None
    total_copies: int = Field(..., ge=0)
    author_id: int


class BookUpdateModel(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    published_date: Optional[datetime] = None
    total_copies: Optional[int] = Field(None, ge=0)


class AuditModel(BaseModel):
    book_id: int
    total_copies: int
    available_copies: int
    open_loans: int
    expected_available: int
    consistent: bool


# --- Members ---
class MemberModel(BaseModel):
    id: int
    first_name: str
    last_name: str
    full_name: str
    email: str
    phone_number: str = ""
    membership_number: Optional[str] = None
    membership_date: Optional[datetime] = None
    is_active: bool
    active_loans_count: int = 0


class MemberCreateModel(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone_number: str = Field(..., min_length=6, max_length=20)


class MemberUpdateModel(BaseModel):
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(None, min_length=6, max_length=20)
    is_active: Optional[bool] = None


# --- Loans ---
class LoanModel(BaseModel):
    id: int
    book_id: int
    book_title: str = ""
    member_id: int
    member_name: str = ""
    loan_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    is_returned: bool
    is_overdue: bool
    days_overdue: int
    late_fee: Optional[str] = None
    status: str


class LoanCreateModel(BaseModel):
    book_id: int
    member_id: int
    due_date: Optional[datetime] = None


class LoanReturnModel(BaseModel):
    return_date: Optional[datetime] = None


class LoanRenewModel(BaseModel):
    due_date: datetime


class HealthModel(BaseModel):
    status: str
    app: str
    version: str
    database: str
    books: Optional[int] = None
    open_loans: Optional[int] = None


class ErrorModel(BaseModel):
    detail: str
    code: str
