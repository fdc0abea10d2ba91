"""Domain records for books, patrons, borrowings and reservations.

The dataclasses mirror the rows stored by ``store.EntityStore``. Enumerated
fields use ``str`` enums so they round-trip through SQLite and JSON as their
plain values.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Category(str, Enum):
    FICTION = "Fiction"
    NON_FICTION = "Non-Fiction"
    SCIENCE = "Science"
    TECHNOLOGY = "Technology"
    HISTORY = "History"
    ART = "Art"
    LITERATURE = "Literature"
    REFERENCE = "Reference"
    OTHER = "Other"


class BookStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"
    NOT_AVAILABLE = "Not Available"
    RESERVED = "Reserved"


class Role(str, Enum):
    STUDENT = "student"
    FACULTY = "faculty"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANKS[self]

    @property
    def is_elevated(self) -> bool:
        return self in (Role.LIBRARIAN, Role.ADMIN)


_ROLE_RANKS = {Role.STUDENT: 0, Role.FACULTY: 0, Role.LIBRARIAN: 1, Role.ADMIN: 2}

# Roles a patron may pick for themselves at registration.
SELF_SERVICE_ROLES = frozenset({Role.STUDENT, Role.FACULTY})


class BorrowingStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    LOST = "lost"
    DAMAGED = "damaged"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# ------------------------- Time helpers ------------------------- #
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


# ------------------------- Records ------------------------- #
@dataclass
class Book:
    id: int
    title: str
    author: str
    category: Category = Category.OTHER
    isbn: Optional[str] = None
    description: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[date] = None
    pages: Optional[int] = None
    total_copies: int = 1
    available_copies: int = 1
    status: BookStatus = BookStatus.AVAILABLE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        published = row["published_date"]
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            category=Category(row["category"]),
            isbn=row["isbn"],
            description=row["description"],
            publisher=row["publisher"],
            published_date=date.fromisoformat(published) if published else None,
            pages=row["pages"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            status=BookStatus(row["status"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class User:
    """A registered patron or staff member.

    ``password_hash`` is an opaque credential and is never exposed by the API
    schemas.
    """

    id: int
    name: str
    email: str
    password_hash: str
    role: Role = Role.STUDENT
    fines: float = 0.0
    is_active: bool = True
    student_id: Optional[str] = None
    department: Optional[str] = None
    contact_number: Optional[str] = None
    address: Dict[str, Any] = field(default_factory=dict)
    date_joined: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @staticmethod
    def from_row(row: sqlite3.Row) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row["role"]),
            fines=float(row["fines"]),
            is_active=bool(row["is_active"]),
            student_id=row["student_id"],
            department=row["department"],
            contact_number=row["contact_number"],
            address=json.loads(row["address"]) if row["address"] else {},
            date_joined=from_iso(row["date_joined"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Borrowing:
    id: int
    user_id: int
    book_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: BorrowingStatus = BorrowingStatus.ACTIVE
    renewals: int = 0
    fine_amount: float = 0.0
    fine_paid: bool = False
    fine_paid_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        """True while the loan is still out and its due date has passed."""
        return self.status is BorrowingStatus.ACTIVE and now > self.due_date

    @property
    def has_outstanding_fine(self) -> bool:
        return self.fine_amount > 0 and not self.fine_paid

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Borrowing":
        return Borrowing(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrow_date=from_iso(row["borrow_date"]),
            due_date=from_iso(row["due_date"]),
            return_date=from_iso(row["return_date"]),
            status=BorrowingStatus(row["status"]),
            renewals=row["renewals"],
            fine_amount=float(row["fine_amount"]),
            fine_paid=bool(row["fine_paid"]),
            fine_paid_date=from_iso(row["fine_paid_date"]),
            notes=row["notes"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


@dataclass
class Reservation:
    id: int
    user_id: int
    book_id: int
    reservation_date: datetime
    expiry_date: datetime
    status: ReservationStatus = ReservationStatus.PENDING
    notification_sent: bool = False
    fulfillment_date: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expiry_date

    @property
    def is_pending(self) -> bool:
        return self.status is ReservationStatus.PENDING

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Reservation":
        return Reservation(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            reservation_date=from_iso(row["reservation_date"]),
            expiry_date=from_iso(row["expiry_date"]),
            status=ReservationStatus(row["status"]),
            notification_sent=bool(row["notification_sent"]),
            fulfillment_date=from_iso(row["fulfillment_date"]),
            notes=row["notes"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )


# ------------------------- Composed views ------------------------- #
@dataclass
class BorrowingView:
    """A borrowing joined with its book (and borrower, on staff listings)."""

    borrowing: Borrowing
    book: Optional[Book] = None
    user: Optional[User] = None
    overdue: bool = False


@dataclass
class ReservationView:
    reservation: Reservation
    book: Optional[Book] = None
    user: Optional[User] = None
    expired: bool = False
