import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'id. title (ISBN) available/total' lines, or 'No books in library.'
    - json: array of id, isbn, title, available_copies, total_copies
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        payload = [
            {"id": b.id, "isbn": b.isbn, "title": b.title,
             "available_copies": b.available_copies, "total_copies": b.total_copies}
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(str(b.id), b.isbn, b.title, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}. {b.title} ({b.isbn}) {b.available_copies}/{b.total_copies} available")


def print_members(members: List[Any]) -> None:
    mode = get_output_mode()

    if not members:
        print("No members.")
        return

    if mode == "json":
        print(json.dumps([m.to_dict() for m in members], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Members", header_style="bold cyan")
        table.add_column("ID", style="magenta")
        table.add_column("Number")
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Active")
        for m in members:
            table.add_row(str(m.id), m.membership_number or "", m.full_name, m.email, "yes" if m.is_active else "no")
        _console.print(table)
    else:
        for m in members:
            status = "active" if m.is_active else "inactive"
            print(f"{m.id}. {m.full_name} <{m.email}> {m.membership_number} ({status})")


def print_loans(loans: List[Dict[str, Any]]) -> None:
    """Print loan views (dicts from LendingService.describe_loan)."""
    mode = get_output_mode()

    if not loans:
        print("No loans.")
        return

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Loans", header_style="bold cyan")
        table.add_column("ID", style="magenta")
        table.add_column("Book")
        table.add_column("Member")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Late fee", justify="right")
        for loan in loans:
            status = loan["status"]
            if loan["is_overdue"]:
                status = f"[red]OVERDUE ({loan['days_overdue']}d)[/]"
            table.add_row(str(loan["id"]), loan["book_title"], loan["member_name"], loan["due_date"][:10],
                          status, loan["late_fee"] or "")
        _console.print(table)
    else:
        for loan in loans:
            line = f"Loan {loan['id']}: {loan['book_title']} -> {loan['member_name']} due {loan['due_date'][:10]}"
            if loan["is_overdue"]:
                line += f" OVERDUE {loan['days_overdue']} day(s)"
            if loan["late_fee"] is not None:
                line += f" late fee {loan['late_fee']}"
            print(line)


def print_audit(report: Dict[str, Any]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(report, ensure_ascii=False))
    elif mode == "rich":
        content = (
            f"[bold]Total copies:[/] {report['total_copies']}\n"
            f"[bold]Available:[/] {report['available_copies']}\n"
            f"[bold]Open loans:[/] {report['open_loans']}"
        )
        _console.print(Panel.fit(content, title=f"Audit book {report['book_id']}", border_style="green"))
    else:
        print(f"Book {report['book_id']}: {report['available_copies']}/{report['total_copies']} available, "
              f"{report['open_loans']} open loan(s) - consistent")
