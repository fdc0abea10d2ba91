import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .models import Book, BorrowingView

# Environment variable that selects the CLI output mode.
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBRARY_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Book]) -> None:
    """Print books in the current output mode.
    - plain: one 'id. Title by Author [available/total]' line per book
    - json: array of objects
    - rich: table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        payload = [
            {
                "id": b.id,
                "title": b.title,
                "author": b.author,
                "isbn": b.isbn,
                "status": b.status.value,
                "copies": {"total": b.total_copies, "available": b.available_copies},
            }
            for b in books
        ]
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Copies", justify="right")
        table.add_column("Status")
        for b in books:
            style = "green" if b.available_copies > 0 else "red"
            table.add_row(
                str(b.id), b.title, b.author,
                f"{b.available_copies}/{b.total_copies}",
                f"[{style}]{b.status.value}[/]",
            )
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}. {b.title} by {b.author} [{b.available_copies}/{b.total_copies}]")


def print_overdue(views: List[BorrowingView]) -> None:
    mode = get_output_mode()

    if not views:
        print("No overdue borrowings.")
        return

    rows = [
        {
            "borrowing_id": v.borrowing.id,
            "book": v.book.title if v.book else f"#{v.borrowing.book_id}",
            "user": v.user.email if v.user else f"#{v.borrowing.user_id}",
            "due_date": v.borrowing.due_date.strftime("%Y-%m-%d"),
        }
        for v in views
    ]
    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Overdue Borrowings", show_lines=True, header_style="bold red")
        for column in ("Borrowing", "Book", "User", "Due"):
            table.add_column(column)
        for row in rows:
            table.add_row(str(row["borrowing_id"]), row["book"], row["user"], row["due_date"])
        _console.print(table)
    else:
        for row in rows:
            print(f"{row['borrowing_id']}. {row['book']} - {row['user']} (due {row['due_date']})")


def print_stats(stats: Dict[str, Any]) -> None:
    """Print library statistics; plain mode prints one 'Label: value' line each."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_titles": "Total Titles",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "registered_users": "Registered Users",
        "active_borrowings": "Active Borrowings",
        "overdue_borrowings": "Overdue Borrowings",
        "pending_reservations": "Pending Reservations",
        "outstanding_fines": "Outstanding Fines",
    }
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")


def print_message(message: str, data: Any = None) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({"message": message, **(data or {})}, ensure_ascii=False))
    elif mode == "rich":
        _console.print(f"[green]{message}[/]")
    else:
        print(message)


def print_error(message: str) -> None:
    if get_output_mode() == "json":
        print(json.dumps({"error": message}, ensure_ascii=False))
    elif get_output_mode() == "rich":
        _console.print(f"[bold red]Error:[/] {message}")
    else:
        print(f"Error: {message}")
