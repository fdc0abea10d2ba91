"""Operator command line for the library backend (``library-admin``)."""

import subprocess
import sys
from typing import Optional

import typer

from .config import configure_logging, settings
from .context import LibraryContext
from .errors import LibraryError
from .models import Role
from .store import BOOK_SORT_FIELDS, BORROWING_SORT_FIELDS, build_list_query
from .ui_helpers import print_books, print_error, print_message, print_overdue, print_stats, set_output_mode


app = typer.Typer(help="Library backend administration")


def open_context() -> LibraryContext:
    """Open a context on the configured database file."""
    return LibraryContext(settings).open()


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    configure_logging(settings)
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist yet."""
    ctx = open_context()
    ctx.close()
    print_message(f"Database initialized at {settings.database_file}")


@app.command("create-user")
def cli_create_user(
    name: str,
    email: str,
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, confirmation_prompt=True),
    role: Role = typer.Option(Role.STUDENT, "--role", "-r", help="student | faculty | librarian | admin"),
    student_id: Optional[str] = typer.Option(None, "--student-id"),
    department: Optional[str] = typer.Option(None, "--department"),
):
    """Create an account with any role (used to bootstrap staff)."""
    ctx = open_context()
    try:
        user = ctx.accounts.create_user(
            {
                "name": name,
                "email": email,
                "password": password,
                "role": role,
                "student_id": student_id,
                "department": department,
            }
        )
    except LibraryError as e:
        print_error(e.message)
        raise typer.Exit(code=1)
    finally:
        ctx.close()
    print_message(
        f"Created user {user.id}: {user.email} ({user.role.value})",
        {"id": user.id, "email": user.email, "role": user.role.value},
    )


@app.command("books")
def cli_books(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Match title, author or description"),
    sort_by: Optional[str] = typer.Option(None, "--sort-by", help="field:asc|desc, e.g. title:asc"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List books in the catalog."""
    ctx = open_context()
    try:
        query = build_list_query(
            sort_by=sort_by,
            sort_fields=BOOK_SORT_FIELDS,
            limit=limit,
            search=search,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
        books = ctx.catalog.list_books(query)
    except LibraryError as e:
        print_error(e.message)
        raise typer.Exit(code=1)
    finally:
        ctx.close()
    print_books(books)


@app.command("overdue")
def cli_overdue(limit: int = typer.Option(100, "--limit", "-n")):
    """Show active borrowings past their due date."""
    ctx = open_context()
    try:
        query = build_list_query(
            sort_fields=BORROWING_SORT_FIELDS,
            limit=limit,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
        views = ctx.borrowings.list_overdue(query)
    finally:
        ctx.close()
    print_overdue(views)


@app.command("expire-reservations")
def cli_expire_reservations():
    """Mark pending reservations past their expiry date as expired."""
    ctx = open_context()
    try:
        count = ctx.reservations.expire_stale()
    finally:
        ctx.close()
    print_message(f"Expired {count} reservation(s).", {"expired": count})


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    ctx = open_context()
    try:
        stats = ctx.catalog.statistics()
    finally:
        ctx.close()
    print_stats(stats)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_backend.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args)
    except FileNotFoundError:
        print_error("`uvicorn` could not be started. Make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
