import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from library_backend import cli
from library_backend.context import LibraryContext
from library_backend.models import Role
from library_backend.ui_helpers import OUTPUT_MODE_ENV

pytestmark = pytest.mark.cli

runner = CliRunner()


def _last_json(output):
    return json.loads(output.strip().splitlines()[-1])


@pytest.fixture(autouse=True)
def cli_settings(settings, clock, mailer, monkeypatch):
    # Point the CLI at the per-test database and clock, and start every test in plain mode
    monkeypatch.setattr(cli, "settings", settings)
    monkeypatch.setattr(cli, "open_context", lambda: LibraryContext(settings, clock=clock, mailer=mailer).open())
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)
    return settings


def test_init_db(cli_settings):
    result = runner.invoke(cli.app, ["init-db"])
    assert result.exit_code == 0
    assert f"Database initialized at {cli_settings.database_file}" in result.stdout


def test_books_empty():
    result = runner.invoke(cli.app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_books_plain_and_json(ctx, make_book):
    make_book(title="Dune", author="Frank Herbert", copies=2)
    make_book(title="Emma", author="Jane Austen")

    plain = runner.invoke(cli.app, ["books", "--search", "dune"])
    assert plain.exit_code == 0
    assert "Dune by Frank Herbert [2/2]" in plain.stdout
    assert "Emma" not in plain.stdout

    as_json = runner.invoke(cli.app, ["--output", "json", "books", "--sort-by", "title:desc"])
    assert as_json.exit_code == 0
    assert [b["title"] for b in _last_json(as_json.stdout)] == ["Emma", "Dune"]


def test_books_bad_sort():
    result = runner.invoke(cli.app, ["books", "--sort-by", "nope"])
    assert result.exit_code == 1
    assert "Invalid sortBy" in result.stdout


def test_create_user(ctx):
    result = runner.invoke(
        cli.app,
        ["create-user", "Ada Admin", "ada@example.com", "--password", "secret123", "--role", "admin"],
    )
    assert result.exit_code == 0
    assert "Created user" in result.stdout
    with ctx.db.session() as conn:
        user = ctx.store.get_user_by_email(conn, "ada@example.com")
    assert user.role is Role.ADMIN


def test_create_user_duplicate_email(ctx, make_user):
    make_user(email="taken@example.com")
    result = runner.invoke(cli.app, ["create-user", "Someone", "taken@example.com", "--password", "secret123"])
    assert result.exit_code == 1
    assert "Error: Email is already registered" in result.stdout


def test_overdue_report(ctx, clock, make_user, make_book):
    user = make_user()
    ctx.borrowings.borrow(user, make_book(title="Late Book").id)

    assert "No overdue borrowings." in runner.invoke(cli.app, ["overdue"]).stdout

    clock.advance(days=15)
    result = runner.invoke(cli.app, ["overdue"])
    assert result.exit_code == 0
    assert "Late Book" in result.stdout
    assert user.email in result.stdout


def test_expire_reservations(ctx, clock, make_user, make_book):
    ctx.reservations.reserve(make_user(), make_book().id)
    clock.advance(days=8)
    result = runner.invoke(cli.app, ["--output", "json", "expire-reservations"])
    assert result.exit_code == 0
    assert _last_json(result.stdout)["expired"] == 1


def test_stats(ctx, make_user, make_book):
    ctx.borrowings.borrow(make_user(), make_book(copies=3).id)
    result = runner.invoke(cli.app, ["stats"])
    assert result.exit_code == 0
    assert "Total Copies: 3" in result.stdout
    assert "Available Copies: 2" in result.stdout
    assert "Active Borrowings: 1" in result.stdout


@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(cli.app, ["serve", "--port", "8123"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args
    assert "library_backend.api:app" in args
    assert "8123" in args
