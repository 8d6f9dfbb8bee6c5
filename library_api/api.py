"""HTTP API for the library: auth, catalog, members and loans.

Run with ``uvicorn library_api.api:create_app --factory`` or ``library-api serve``.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from library_api.config import Settings, settings as default_settings
from library_api.exceptions import (
    AuthenticationError,
    AuthorNotFound,
    BookNotFound,
    LibraryError,
    MemberNotFound,
    NotFoundError,
    ValidationError,
)
from library_api.models import Author, Book, Member, User
from library_api.schemas import (
    AuditModel,
    AuthorCreateModel,
    AuthorModel,
    AuthorUpdateModel,
    AuthResponseModel,
    BookCreateModel,
    BookModel,
    BookUpdateModel,
    ErrorModel,
    HealthModel,
    LoanCreateModel,
    LoanModel,
    LoanRenewModel,
    LoanReturnModel,
    LoginModel,
    MemberCreateModel,
    MemberModel,
    MemberUpdateModel,
    RegisterModel,
)
from library_api.services import LibraryServices, build_services
from library_api.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/api")


# --- Dependencies ---
def get_services(request: Request) -> LibraryServices:
    return request.app.state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: LibraryServices = Depends(get_services),
) -> User:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Authentication required")
    user = services.auth.get_user_by_token(credentials.credentials)
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    return user


# --- View helpers ---
def _book_view(services: LibraryServices, book: Book) -> dict:
    data = book.to_dict()
    author = services.catalog.get_author(book.author_id)
    data["author_name"] = author.full_name if author else ""
    return data


def _author_view(services: LibraryServices, author: Author) -> dict:
    data = author.to_dict()
    data["book_count"] = services.catalog.count_books_by_author(author.id)
    return data


def _member_view(services: LibraryServices, member: Member) -> dict:
    data = member.to_dict()
    data["active_loans_count"] = services.ledger.count_open_loans_for_member(member.id)
    return data


def _require_book(services: LibraryServices, book_id: int) -> Book:
    book = services.catalog.get_book(book_id)
    if book is None:
        raise BookNotFound(book_id)
    return book


def _require_names(*names: Optional[str]) -> None:
    for name in names:
        if name is not None and not TextValidator.validate_name(name):
            raise ValidationError(f"Invalid name: {name!r}.")


# --- Auth ---
@router.post("/auth/register", response_model=AuthResponseModel, status_code=201)
def register(payload: RegisterModel, services: LibraryServices = Depends(get_services)):
    _require_names(payload.first_name, payload.last_name)
    result = services.auth.register(payload.first_name, payload.last_name, payload.email, payload.password)
    return result.to_dict()


@router.post("/auth/login", response_model=AuthResponseModel)
def login(payload: LoginModel, services: LibraryServices = Depends(get_services)):
    return services.auth.login(payload.email, payload.password).to_dict()


# --- Books ---
@router.get("/books", response_model=List[BookModel])
def list_books(services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    return [_book_view(services, b) for b in services.catalog.list_books()]


@router.get("/books/available", response_model=List[BookModel])
def list_available_books(services: LibraryServices = Depends(get_services),
                         _: User = Depends(get_current_user)):
    return [_book_view(services, b) for b in services.catalog.list_books(available_only=True)]


@router.get("/books/isbn/{isbn}", response_model=BookModel)
def get_book_by_isbn(isbn: str, services: LibraryServices = Depends(get_services),
                     _: User = Depends(get_current_user)):
    book = services.catalog.get_book_by_isbn(ISBNValidator.normalize_isbn(isbn))
    if book is None:
        raise NotFoundError(f"Book with ISBN {isbn} not found.")
    return _book_view(services, book)


@router.get("/books/author/{author_id}", response_model=List[BookModel])
def list_books_by_author(author_id: int, services: LibraryServices = Depends(get_services),
                         _: User = Depends(get_current_user)):
    return [_book_view(services, b) for b in services.catalog.list_books(author_id=author_id)]


@router.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: int, services: LibraryServices = Depends(get_services),
             _: User = Depends(get_current_user)):
    return _book_view(services, _require_book(services, book_id))


@router.get("/books/{book_id}/audit", response_model=AuditModel)
def audit_book(book_id: int, services: LibraryServices = Depends(get_services),
               _: User = Depends(get_current_user)):
    return services.lending.audit_book(book_id)


@router.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, services: LibraryServices = Depends(get_services),
                _: User = Depends(get_current_user)):
    isbn = ISBNValidator.normalize_isbn(payload.isbn)
    if not ISBNValidator.is_valid_isbn(isbn):
        raise ValidationError("Invalid ISBN format.")
    if not services.catalog.exists_author(payload.author_id):
        raise ValidationError(f"Author with ID {payload.author_id} not found.")
    book = services.catalog.save_book(Book(
        isbn=isbn,
        title=payload.title,
        description=payload.description,
        published_date=payload.published_date,
        author_id=payload.author_id,
        total_copies=payload.total_copies,
    ))
    return _book_view(services, book)


@router.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: int, payload: BookUpdateModel, services: LibraryServices = Depends(get_services),
                _: User = Depends(get_current_user)):
    with services.db.transaction() as conn:
        book = services.catalog.get_book(book_id, conn)
        if book is None:
            raise BookNotFound(book_id)
        if payload.title is not None:
            book.title = payload.title.strip()
        if payload.description is not None:
            book.description = payload.description
        if payload.published_date is not None:
            book.published_date = payload.published_date
        services.catalog.save_book(book, conn)
        if payload.total_copies is not None and payload.total_copies != book.total_copies:
            services.availability.adjust_total_copies(book_id, payload.total_copies, conn)
    return _book_view(services, _require_book(services, book_id))


@router.delete("/books/{book_id}", status_code=204)
def delete_book(book_id: int, services: LibraryServices = Depends(get_services),
                _: User = Depends(get_current_user)):
    if not services.catalog.delete_book(book_id):
        raise BookNotFound(book_id)
    return Response(status_code=204)


# --- Authors ---
@router.get("/authors", response_model=List[AuthorModel])
def list_authors(services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    return [_author_view(services, a) for a in services.catalog.list_authors()]


@router.get("/authors/{author_id}", response_model=AuthorModel)
def get_author(author_id: int, services: LibraryServices = Depends(get_services),
               _: User = Depends(get_current_user)):
    author = services.catalog.get_author(author_id)
    if author is None:
        raise AuthorNotFound(author_id)
    return _author_view(services, author)


@router.post("/authors", response_model=AuthorModel, status_code=201)
def create_author(payload: AuthorCreateModel, services: LibraryServices = Depends(get_services),
                  _: User = Depends(get_current_user)):
    _require_names(payload.first_name, payload.last_name)
    author = services.catalog.save_author(Author(**payload.model_dump()))
    return _author_view(services, author)


@router.put("/authors/{author_id}", response_model=AuthorModel)
def update_author(author_id: int, payload: AuthorUpdateModel, services: LibraryServices = Depends(get_services),
                  _: User = Depends(get_current_user)):
    _require_names(payload.first_name, payload.last_name)
    author = services.catalog.get_author(author_id)
    if author is None:
        raise AuthorNotFound(author_id)
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(author, field, value.strip() if field in ("first_name", "last_name") else value)
    services.catalog.save_author(author)
    return _author_view(services, services.catalog.get_author(author_id))


@router.delete("/authors/{author_id}", status_code=204)
def delete_author(author_id: int, services: LibraryServices = Depends(get_services),
                  _: User = Depends(get_current_user)):
    if not services.catalog.delete_author(author_id):
        raise AuthorNotFound(author_id)
    return Response(status_code=204)


# --- Members ---
@router.get("/members", response_model=List[MemberModel])
def list_members(active: bool = Query(False, description="Only active members"),
                 services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    return [_member_view(services, m) for m in services.members.list_members(active_only=active)]


@router.get("/members/{member_id}", response_model=MemberModel)
def get_member(member_id: int, services: LibraryServices = Depends(get_services),
               _: User = Depends(get_current_user)):
    member = services.members.get_member(member_id)
    if member is None:
        raise MemberNotFound(member_id)
    return _member_view(services, member)


@router.post("/members", response_model=MemberModel, status_code=201)
def create_member(payload: MemberCreateModel, services: LibraryServices = Depends(get_services),
                  _: User = Depends(get_current_user)):
    _require_names(payload.first_name, payload.last_name)
    if not TextValidator.validate_phone(payload.phone_number):
        raise ValidationError("Invalid phone number.")
    member = services.members.save_member(Member(**payload.model_dump()))
    return _member_view(services, member)


@router.put("/members/{member_id}", response_model=MemberModel)
def update_member(member_id: int, payload: MemberUpdateModel,
                  force: bool = Query(False, description="Deactivate even with open loans"),
                  services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    if payload.phone_number is not None and not TextValidator.validate_phone(payload.phone_number):
        raise ValidationError("Invalid phone number.")
    with services.db.transaction() as conn:
        member = services.members.get_member(member_id, conn)
        if member is None:
            raise MemberNotFound(member_id)
        if payload.is_active is False:
            member = services.lending.deactivate_member(member_id, force=force, conn=conn)
        elif payload.is_active is True:
            member.is_active = True
        if payload.email is not None:
            member.email = payload.email.strip()
        if payload.phone_number is not None:
            member.phone_number = payload.phone_number.strip()
        services.members.save_member(member, conn)
    return _member_view(services, member)


# --- Loans ---
@router.get("/loans", response_model=List[LoanModel])
def list_loans(member_id: Optional[int] = None, book_id: Optional[int] = None,
               active: Optional[bool] = None, overdue: bool = False,
               services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    loans = services.lending.list_loans(member_id=member_id, book_id=book_id, active=active, overdue=overdue)
    return [services.lending.describe_loan(loan) for loan in loans]


@router.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: int, services: LibraryServices = Depends(get_services),
             _: User = Depends(get_current_user)):
    return services.lending.describe_loan(services.lending.get_loan(loan_id))


@router.post("/loans", response_model=LoanModel, status_code=201)
def issue_loan(payload: LoanCreateModel, services: LibraryServices = Depends(get_services),
               _: User = Depends(get_current_user)):
    loan = services.lending.issue_loan(payload.book_id, payload.member_id, payload.due_date)
    return services.lending.describe_loan(loan)


@router.post("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: int, payload: Optional[LoanReturnModel] = None,
                services: LibraryServices = Depends(get_services), _: User = Depends(get_current_user)):
    return_date = payload.return_date if payload else None
    loan = services.lending.return_loan(loan_id, return_date)
    return services.lending.describe_loan(loan)


@router.post("/loans/{loan_id}/renew", response_model=LoanModel)
def renew_loan(loan_id: int, payload: LoanRenewModel, services: LibraryServices = Depends(get_services),
               _: User = Depends(get_current_user)):
    loan = services.lending.renew_loan(loan_id, payload.due_date)
    return services.lending.describe_loan(loan)


# --- App factory ---
def create_app(app_settings: Optional[Settings] = None, services: Optional[LibraryServices] = None) -> FastAPI:
    app_settings = app_settings or default_settings
    logging.basicConfig(level=getattr(logging, app_settings.log_level.upper(), logging.INFO))

    app = FastAPI(title=app_settings.app_name, version=app_settings.app_version, debug=app_settings.debug)
    app.state.services = services or build_services(app_settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in app_settings.cors_origins.split(",")],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LibraryError)
    async def library_error_handler(request: Request, exc: LibraryError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        body = ErrorModel(detail=exc.message, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=headers)

    @app.get("/health", response_model=HealthModel)
    def health(request: Request):
        """Lightweight health check for container probes."""
        svc: LibraryServices = request.app.state.services
        response = {"status": "ok", "app": app_settings.app_name, "version": app_settings.app_version,
                    "database": "connected"}
        try:
            with svc.db.reading() as conn:
                response["books"] = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
                response["open_loans"] = conn.execute(
                    "SELECT COUNT(*) FROM loans WHERE return_date IS NULL").fetchone()[0]
        except LibraryError as e:
            response["status"] = "degraded"
            response["database"] = f"error: {e.message}"
        return response

    app.include_router(router)
    return app
