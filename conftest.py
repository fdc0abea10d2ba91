from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
from fastapi.testclient import TestClient

from library_backend.api import create_app
from library_backend.config import Settings
from library_backend.context import LibraryContext
from library_backend.errors import EmailDeliveryError
from library_backend.models import Role

PASSWORD = "secret123"
START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when a test tells it to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingMailer:
    """Collects outgoing emails instead of talking to an SMTP server."""

    def __init__(self) -> None:
        self.sent = []
        self.failing = set()

    def _record(self, kind, user, **extra):
        if kind in self.failing:
            raise EmailDeliveryError(f"Could not send email to {user.email}")
        self.sent.append({"kind": kind, "to": user.email, **extra})
        return True

    def send_welcome(self, user):
        return self._record("welcome", user)

    def send_password_reset(self, user, token):
        return self._record("password_reset", user, token=token)

    def send_reservation_ready(self, user, book, reservation):
        return self._record("reservation_ready", user, book_id=book.id, reservation_id=reservation.id)

    def of_kind(self, kind):
        return [m for m in self.sent if m["kind"] == kind]


@pytest.fixture
def settings(tmp_path, request):
    # Unique database file per test; cheap password hashing keeps the suite fast
    return Settings(
        database_file=str(tmp_path / f"test_{request.node.name}.db"),
        password_hash_iterations=1000,
        enable_email_notifications=False,
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def ctx(settings, clock, mailer):
    context = LibraryContext(settings, clock=clock, mailer=mailer).open()
    yield context
    context.close()


@pytest.fixture
def make_user(ctx):
    numbers = count(1)

    def _make_user(role=Role.STUDENT, name="Test User", email=None, fines=0.0):
        n = next(numbers)
        user = ctx.accounts.create_user(
            {
                "name": f"{name} {n}",
                "email": email or f"user{n}@example.com",
                "password": PASSWORD,
                "role": role,
            }
        )
        if fines:
            with ctx.db.transaction() as conn:
                ctx.store.adjust_user_fines(conn, user.id, fines, ctx.clock())
            user = ctx.accounts.get_user(user.id)
        return user

    return _make_user


@pytest.fixture
def make_book(ctx):
    def _make_book(title="Test Book", author="Test Author", copies=1, **extra):
        data = {"title": title, "author": author, "total_copies": copies}
        data.update(extra)
        return ctx.catalog.add_book(data)

    return _make_book


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers(ctx):
    def _auth_headers(user):
        _, token = ctx.accounts.login(user.email, PASSWORD)
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
