import logging
import os
import subprocess
import sys
from dataclasses import replace
from datetime import datetime
from typing import Optional

import typer

from library_api.config import settings
from library_api.exceptions import LibraryError
from library_api.models import Member
from library_api.services import LibraryServices, build_services
from library_api.ui_helpers import print_audit, print_books, print_loans, print_members, set_output_mode

APP_NAME = "Library CLI"

_DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


class ServicesManager:
    """Builds LibraryServices once per database file."""

    _instance: Optional[LibraryServices] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> LibraryServices:
        db_file = os.environ.get("LIBRARY_DB_FILE") or settings.database_file
        if cls._instance is None or cls._db_file_snapshot != db_file:
            cls._instance = build_services(replace(settings, database_file=db_file))
            cls._db_file_snapshot = db_file
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None


def _fail(exc: LibraryError) -> None:
    print(f"Error: {exc.message}")
    raise typer.Exit(code=1)


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file"),
):
    """Global options (output mode, database file)."""
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    if output:
        set_output_mode(output)
    if db:
        os.environ["LIBRARY_DB_FILE"] = db


@app.command("init-db")
def cli_init_db():
    """Create the database tables."""
    services = ServicesManager.get_instance()
    print(f"Database ready at {services.db.db_file}")


@app.command("seed")
def cli_seed():
    """Load the demo authors and books into an empty catalog."""
    inserted = ServicesManager.get_instance().db.seed()
    if inserted:
        print(f"Seeded {inserted} books.")
    else:
        print("Catalog already has books; nothing seeded.")


@app.command("books")
def cli_books(available: bool = typer.Option(False, "--available", help="Only books with free copies")):
    """List the catalog."""
    print_books(ServicesManager.get_instance().catalog.list_books(available_only=available))


@app.command("members")
def cli_members():
    """List members."""
    print_members(ServicesManager.get_instance().members.list_members())


@app.command("add-member")
def cli_add_member(first_name: str, last_name: str, email: str,
                   phone: str = typer.Option("", "--phone", help="Phone number")):
    """Register a new member."""
    try:
        member = ServicesManager.get_instance().members.save_member(
            Member(first_name=first_name, last_name=last_name, email=email, phone_number=phone)
        )
    except LibraryError as e:
        _fail(e)
    print(f"Added member {member.id}: {member.full_name} ({member.membership_number})")


@app.command("issue")
def cli_issue(book_id: int, member_id: int,
              due: Optional[datetime] = typer.Option(None, "--due", formats=_DATE_FORMATS,
                                                     help="Due date (default: loan period from settings)")):
    """Lend a book to a member."""
    services = ServicesManager.get_instance()
    try:
        loan = services.lending.issue_loan(book_id, member_id, due)
    except LibraryError as e:
        _fail(e)
    print(f"Issued loan {loan.id}, due {loan.due_date.date().isoformat()}")


@app.command("return")
def cli_return(loan_id: int,
               on: Optional[datetime] = typer.Option(None, "--on", formats=_DATE_FORMATS,
                                                     help="Return date (default: now)")):
    """Return a loaned book."""
    services = ServicesManager.get_instance()
    try:
        loan = services.lending.return_loan(loan_id, on)
    except LibraryError as e:
        _fail(e)
    if loan.late_fee is not None:
        print(f"Loan {loan.id} returned late, fee {loan.late_fee}")
    else:
        print(f"Loan {loan.id} returned")


@app.command("renew")
def cli_renew(loan_id: int, due: datetime = typer.Argument(..., formats=_DATE_FORMATS)):
    """Extend the due date of an open loan."""
    services = ServicesManager.get_instance()
    try:
        loan = services.lending.renew_loan(loan_id, due)
    except LibraryError as e:
        _fail(e)
    print(f"Loan {loan.id} renewed until {loan.due_date.date().isoformat()}")


@app.command("loans")
def cli_loans(member_id: Optional[int] = typer.Option(None, "--member"),
              active: bool = typer.Option(False, "--active", help="Only open loans")):
    """List loans."""
    lending = ServicesManager.get_instance().lending
    loans = lending.list_loans(member_id=member_id, active=True if active else None)
    print_loans([lending.describe_loan(loan) for loan in loans])


@app.command("overdue")
def cli_overdue():
    """List open loans past their due date."""
    lending = ServicesManager.get_instance().lending
    print_loans([lending.describe_loan(loan) for loan in lending.overdue_loans()])


@app.command("audit")
def cli_audit(book_id: int):
    """Check a book's available copies against the open loans in the ledger."""
    try:
        report = ServicesManager.get_instance().lending.audit_book(book_id)
    except LibraryError as e:
        _fail(e)
    print_audit(report)


@app.command("serve")
def cli_serve(host: str = typer.Option(settings.api_host, "--host"),
              port: int = typer.Option(settings.api_port, "--port")):
    """Start the HTTP API with uvicorn."""
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_api.api:create_app",
        "--factory",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    app()
