from datetime import datetime, timedelta

import pytest

from conftest import PASSWORD
from library_backend.models import Role

pytestmark = pytest.mark.api

ISBN = "9780199535675"


@pytest.fixture
def librarian(make_user, auth_headers):
    return auth_headers(make_user(role=Role.LIBRARIAN))


@pytest.fixture
def student(make_user):
    return make_user()


def _parse(value):
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] is True
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_create_book_as_librarian(client, librarian):
    payload = {"title": "Ulysses", "author": "James Joyce", "isbn": ISBN, "category": "Fiction", "copies": {"total": 3}}
    response = client.post("/books", headers=librarian, json=payload)

    assert response.status_code == 201
    body = response.json()
    assert body["isbn"] == ISBN
    assert body["copies"] == {"total": 3, "available": 3}
    assert body["status"] == "Available"
    assert "createdAt" in body


def test_create_book_requires_staff(client, student, auth_headers):
    payload = {"title": "Ulysses", "author": "James Joyce"}
    assert client.post("/books", json=payload).status_code == 401
    response = client.post("/books", headers=auth_headers(student), json=payload)
    assert response.status_code == 403
    assert response.json() == {"error": "Access denied. Insufficient privileges."}


def test_create_book_rejects_bad_isbn_and_duplicates(client, librarian):
    bad = client.post("/books", headers=librarian, json={"title": "T", "author": "A", "isbn": "9780321765723"})
    assert bad.status_code == 400
    assert bad.json() == {"error": "Invalid ISBN format."}

    payload = {"title": "T", "author": "A", "isbn": ISBN}
    assert client.post("/books", headers=librarian, json=payload).status_code == 201
    duplicate = client.post("/books", headers=librarian, json=payload)
    assert duplicate.status_code == 400
    assert "already exists" in duplicate.json()["error"]


def test_create_book_rejects_inconsistent_copies(client, librarian):
    payload = {"title": "T", "author": "A", "copies": {"total": 1, "available": 2}}
    assert client.post("/books", headers=librarian, json=payload).status_code == 400


def test_list_books_filters_and_search(client, make_book):
    make_book(title="Dune", author="Frank Herbert", category="Fiction")
    make_book(title="Cosmos", author="Carl Sagan", category="Science")
    make_book(title="Out", author="Nobody", copies=0)

    titles = [b["title"] for b in client.get("/books", params={"sortBy": "title:asc"}).json()]
    assert titles == ["Cosmos", "Dune", "Out"]

    science = client.get("/books", params={"category": "Science"}).json()
    assert [b["title"] for b in science] == ["Cosmos"]

    found = client.get("/books", params={"search": "herbert"}).json()
    assert [b["title"] for b in found] == ["Dune"]

    unavailable = client.get("/books", params={"status": "Not Available"}).json()
    assert [b["title"] for b in unavailable] == ["Out"]

    paged = client.get("/books", params={"sortBy": "title:desc", "limit": 1, "skip": 1}).json()
    assert [b["title"] for b in paged] == ["Dune"]


def test_list_books_invalid_sort(client):
    response = client.get("/books", params={"sortBy": "password:asc"})
    assert response.status_code == 400
    assert "sortBy" in response.json()["error"]


def test_get_missing_book_is_empty_404(client):
    response = client.get("/books/9999")
    assert response.status_code == 404
    assert response.content == b""


def test_update_and_delete_book(client, librarian, make_book):
    book = make_book(title="Old Title")

    updated = client.patch(f"/books/{book.id}", headers=librarian, json={"title": "New Title", "pages": 320})
    assert updated.status_code == 200
    assert updated.json()["title"] == "New Title"
    assert updated.json()["pages"] == 320

    rejected = client.patch(f"/books/{book.id}", headers=librarian, json={"copies": {"total": 9}})
    assert rejected.status_code == 400
    assert rejected.json() == {"error": "Invalid updates!"}

    deleted = client.delete(f"/books/{book.id}", headers=librarian)
    assert deleted.status_code == 200
    assert deleted.json()["title"] == "New Title"
    assert client.get(f"/books/{book.id}").status_code == 404


def test_delete_book_with_active_borrowing_refused(client, ctx, librarian, student, make_book):
    book = make_book()
    ctx.borrowings.borrow(student, book.id)
    response = client.delete(f"/books/{book.id}", headers=librarian)
    assert response.status_code == 400
    assert client.get(f"/books/{book.id}").status_code == 200


def test_inventory_endpoint(client, librarian, make_book):
    book = make_book(copies=2)
    response = client.patch(f"/books/{book.id}/inventory", headers=librarian, json={"total": 4})
    assert response.json()["copies"] == {"total": 4, "available": 4}

    negative = client.patch(f"/books/{book.id}/inventory", headers=librarian, json={"total": -1})
    assert negative.status_code == 400


def test_borrowing_lifecycle_over_http(client, clock, student, make_user, auth_headers, make_book):
    staff = make_user(role=Role.LIBRARIAN)
    headers = auth_headers(student)
    book = make_book(copies=1)

    created = client.post("/borrowings", headers=headers, json={"bookId": book.id})
    assert created.status_code == 201
    borrowing = created.json()
    assert borrowing["status"] == "active"
    assert borrowing["book"]["copies"]["available"] == 0
    assert borrowing["isOverdue"] is False
    assert _parse(borrowing["dueDate"]) == clock.now + timedelta(days=14)

    mine = client.get("/borrowings/me", headers=headers).json()
    assert [b["id"] for b in mine] == [borrowing["id"]]

    renewed = client.patch(f"/borrowings/{borrowing['id']}/renew", headers=headers)
    assert renewed.json()["renewals"] == 1

    clock.advance(days=24)
    # Sessions last a week, so log in again after the jump
    headers, librarian = auth_headers(student), auth_headers(staff)
    overdue = client.get("/borrowings/overdue", headers=librarian).json()
    assert [b["id"] for b in overdue] == [borrowing["id"]]
    assert overdue[0]["user"]["email"] == student.email

    returned = client.patch(f"/borrowings/{borrowing['id']}/return", headers=headers)
    assert returned.status_code == 200
    assert returned.json()["fine"] == {"amount": 3.0, "paid": False, "paidDate": None}

    profile = client.get("/users/me", headers=headers).json()
    assert profile["fines"] == 3.0

    blocked = client.post("/borrowings", headers=headers, json={"bookId": book.id})
    assert blocked.status_code == 400
    assert blocked.json() == {"error": "Cannot borrow books. Please pay your outstanding fines."}

    assert client.patch(f"/borrowings/{borrowing['id']}/pay-fine", headers=headers).status_code == 403
    paid = client.patch(f"/borrowings/{borrowing['id']}/pay-fine", headers=librarian)
    assert paid.json()["fine"]["paid"] is True
    again = client.patch(f"/borrowings/{borrowing['id']}/pay-fine", headers=librarian)
    assert again.json() == {"error": "No unpaid fines for this borrowing"}


def test_borrow_unavailable_book_over_http(client, make_user, auth_headers, make_book):
    book = make_book(copies=0)
    response = client.post("/borrowings", headers=auth_headers(make_user()), json={"bookId": book.id})
    assert response.status_code == 400
    assert response.json() == {"error": "Book is not available for borrowing"}


def test_staff_borrowing_listing_and_status(client, ctx, librarian, make_user, make_book):
    first = ctx.borrowings.borrow(make_user(), make_book(title="A").id)
    ctx.borrowings.borrow(make_user(), make_book(title="B").id)

    listing = client.get("/borrowings", headers=librarian, params={"sortBy": "borrowDate:desc", "limit": 1})
    assert len(listing.json()) == 1

    damaged = client.patch(
        f"/borrowings/{first.borrowing.id}/status",
        headers=librarian,
        json={"status": "damaged", "notes": "Water damage"},
    )
    assert damaged.json()["status"] == "damaged"
    assert client.get("/borrowings", headers=librarian, params={"status": "damaged"}).json()[0]["notes"] == "Water damage"


def test_borrowing_detail_visibility(client, ctx, make_user, auth_headers, make_book):
    owner = make_user()
    view = ctx.borrowings.borrow(owner, make_book().id)

    assert client.get(f"/borrowings/{view.borrowing.id}", headers=auth_headers(owner)).status_code == 200
    assert client.get(f"/borrowings/{view.borrowing.id}", headers=auth_headers(make_user())).status_code == 404


def test_reservation_flow_over_http(client, clock, librarian, student, auth_headers, make_book):
    headers = auth_headers(student)
    book = make_book()

    created = client.post("/reservations", headers=headers, json={"bookId": book.id})
    assert created.status_code == 201
    reservation = created.json()
    assert reservation["status"] == "pending"
    assert reservation["isExpired"] is False

    duplicate = client.post("/reservations", headers=headers, json={"bookId": book.id})
    assert duplicate.json() == {"error": "You already have a pending reservation for this book"}

    cancelled = client.patch(f"/reservations/{reservation['id']}/cancel", headers=headers)
    assert cancelled.json()["status"] == "cancelled"

    again = client.post("/reservations", headers=headers, json={"bookId": book.id}).json()
    fulfilled = client.patch(f"/reservations/{again['id']}/fulfill", headers=librarian)
    assert fulfilled.json()["status"] == "fulfilled"
    refused = client.patch(f"/reservations/{again['id']}/fulfill", headers=librarian)
    assert refused.json() == {"error": "Reservation is already fulfilled"}

    statuses = [r["status"] for r in client.get("/reservations/me", headers=headers).json()]
    assert statuses == ["fulfilled", "cancelled"]


def test_reservation_sweep_and_staff_update(client, ctx, clock, librarian, make_user, make_book):
    view = ctx.reservations.reserve(make_user(), make_book().id)
    extended = client.patch(
        f"/reservations/{view.reservation.id}",
        headers=librarian,
        json={"expiryDate": (clock.now + timedelta(days=1)).isoformat(), "notificationSent": True},
    )
    assert extended.json()["notificationSent"] is True

    clock.advance(days=2)
    assert client.post("/reservations/expire", headers=librarian).json() == {"expired": 1}
    listing = client.get("/reservations", headers=librarian, params={"status": "expired"}).json()
    assert [r["id"] for r in listing] == [view.reservation.id]

    bad = client.patch(f"/reservations/{view.reservation.id}", headers=librarian, json={"bookId": 3})
    assert bad.json() == {"error": "Invalid updates!"}


@pytest.mark.parametrize("payload", [{"status": None}, {"notificationSent": None}])
def test_reservation_update_with_null_is_rejected(client, ctx, librarian, make_user, make_book, payload):
    view = ctx.reservations.reserve(make_user(), make_book().id)
    response = client.patch(f"/reservations/{view.reservation.id}", headers=librarian, json=payload)
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid updates!"}


def test_register_login_and_profile(client, mailer):
    registered = client.post(
        "/users",
        json={"name": "Grace Hopper", "email": "grace@example.com", "password": PASSWORD, "studentId": "S-1"},
    )
    assert registered.status_code == 201
    body = registered.json()
    assert body["user"]["studentId"] == "S-1"
    assert "passwordHash" not in body["user"]
    assert mailer.of_kind("welcome")

    login = client.post("/users/login", json={"email": "grace@example.com", "password": PASSWORD})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    patched = client.patch("/users/me", headers=headers, json={"address": {"zipCode": "10001", "city": "New York"}})
    assert patched.json()["address"] == {"zipCode": "10001", "city": "New York"}

    invalid = client.patch("/users/me", headers=headers, json={"fines": 0})
    assert invalid.status_code == 400
    assert invalid.json() == {"error": "Invalid updates!"}

    assert client.post("/users/logout", headers=headers).status_code == 200
    assert client.get("/users/me", headers=headers).status_code == 401


def test_login_failure(client, make_user):
    user = make_user()
    response = client.post("/users/login", json={"email": user.email, "password": "nope"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unable to login"}


def test_register_rejects_admin_role(client):
    response = client.post("/users", json={"name": "Eve", "email": "eve@example.com", "password": PASSWORD, "role": "admin"})
    assert response.status_code == 400


def test_fines_summary_and_payment(client, ctx, clock, make_user, auth_headers, make_book):
    user = make_user()
    view = ctx.borrowings.borrow(user, make_book(title="Late Book").id)
    clock.advance(days=18)
    ctx.borrowings.return_book(view.borrowing.id, user)
    headers = auth_headers(user)

    summary = client.get("/users/me/fines", headers=headers).json()
    assert summary["totalFines"] == 4.0
    assert summary["unpaid"][0]["book"]["title"] == "Late Book"

    invalid = client.post("/users/pay-fines", headers=headers, json={"amount": "lots"})
    assert invalid.json() == {"error": "Valid amount required"}
    too_much = client.post("/users/pay-fines", headers=headers, json={"amount": 10})
    assert too_much.json() == {"error": "Amount exceeds outstanding fines"}

    paid = client.post("/users/pay-fines", headers=headers, json={"amount": 4})
    assert paid.json() == {"paid": 4.0, "remainingFines": 0.0, "message": "Payment of $4.00 processed successfully"}


def test_password_reset_over_http(client, mailer, make_user):
    user = make_user()
    assert client.post("/users/password-reset", json={"email": "ghost@example.com"}).status_code == 404

    sent = client.post("/users/password-reset", json={"email": user.email})
    assert sent.json() == {"message": "Reset email sent successfully"}
    token = mailer.of_kind("password_reset")[0]["token"]

    confirmed = client.post("/users/password-reset/confirm", json={"token": token, "password": "fresh-pass"})
    assert confirmed.status_code == 200
    assert client.post("/users/login", json={"email": user.email, "password": "fresh-pass"}).status_code == 200

    mailer.failing.add("password_reset")
    failed = client.post("/users/password-reset", json={"email": user.email})
    assert failed.status_code == 500
    assert failed.json() == {"error": "Could not send reset email"}


def test_admin_user_management(client, librarian, make_user):
    user = make_user()
    make_user(role=Role.FACULTY)

    faculty = client.get("/users", headers=librarian, params={"role": "faculty"}).json()
    assert [u["role"] for u in faculty] == ["faculty"]

    updated = client.patch(f"/users/{user.id}", headers=librarian, json={"isActive": False, "department": "Physics"})
    assert updated.json()["isActive"] is False
    assert updated.json()["department"] == "Physics"

    inactive = client.get("/users", headers=librarian, params={"isActive": "false"}).json()
    assert [u["id"] for u in inactive] == [user.id]

    assert client.patch(f"/users/{user.id}", headers=librarian, json={"fines": 0}).status_code == 400
    assert client.get("/users/4242", headers=librarian).status_code == 404


def test_stats(client, ctx, librarian, make_user, make_book):
    ctx.borrowings.borrow(make_user(), make_book(copies=2).id)
    stats = client.get("/stats", headers=librarian).json()
    assert stats["totalCopies"] == 2
    assert stats["availableCopies"] == 1
    assert stats["activeBorrowings"] == 1
