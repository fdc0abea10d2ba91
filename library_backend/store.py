"""Entity store: row-level reads and writes for every record type.

All methods take an open connection so callers decide the transaction
boundary. Column names used in generated SQL always come from the whitelists
below, never from request data.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .errors import DuplicateEntity, ValidationError
from .models import (
    Book,
    Borrowing,
    BorrowingStatus,
    Reservation,
    ReservationStatus,
    User,
    to_iso,
)

T = TypeVar("T")

BOOK_COLUMNS = (
    "title", "author", "isbn", "category", "description", "publisher", "published_date",
    "pages", "total_copies", "available_copies", "status",
)
USER_COLUMNS = (
    "name", "email", "password_hash", "role", "student_id", "department", "contact_number",
    "address", "fines", "is_active", "date_joined",
)
BORROWING_COLUMNS = (
    "user_id", "book_id", "borrow_date", "due_date", "return_date", "status", "renewals",
    "fine_amount", "fine_paid", "fine_paid_date", "notes",
)
RESERVATION_COLUMNS = (
    "user_id", "book_id", "reservation_date", "expiry_date", "status", "notification_sent",
    "fulfillment_date", "notes",
)

# Public sort keys (as used in ``sortBy=field:dir``) mapped to columns.
BOOK_SORT_FIELDS = {
    "title": "title", "author": "author", "category": "category", "status": "status",
    "publishedDate": "published_date", "createdAt": "created_at", "available": "available_copies",
}
USER_SORT_FIELDS = {
    "name": "name", "email": "email", "role": "role", "fines": "fines",
    "dateJoined": "date_joined", "createdAt": "created_at",
}
BORROWING_SORT_FIELDS = {
    "borrowDate": "borrow_date", "dueDate": "due_date", "returnDate": "return_date",
    "status": "status", "createdAt": "created_at",
}
RESERVATION_SORT_FIELDS = {
    "reservationDate": "reservation_date", "expiryDate": "expiry_date",
    "status": "status", "createdAt": "created_at",
}


@dataclass
class ListQuery:
    """Filters, ordering and pagination for a list endpoint."""

    filters: Dict[str, Any] = field(default_factory=dict)
    order_by: Optional[Tuple[str, bool]] = None  # (column, descending)
    limit: int = 10
    skip: int = 0
    search: Optional[str] = None


def parse_sort_by(sort_by: Optional[str], allowed: Dict[str, str]) -> Optional[Tuple[str, bool]]:
    """Turn ``field:asc|desc`` into ``(column, descending)``."""
    if not sort_by:
        return None
    name, _, direction = sort_by.partition(":")
    direction = direction or "asc"
    if name not in allowed or direction not in ("asc", "desc"):
        raise ValidationError(f"Invalid sortBy. Allowed fields: {', '.join(sorted(allowed))}")
    return allowed[name], direction == "desc"


def build_list_query(
    *,
    filters: Optional[Dict[str, Any]] = None,
    sort_by: Optional[str] = None,
    sort_fields: Dict[str, str],
    limit: Optional[int] = None,
    skip: Optional[int] = None,
    search: Optional[str] = None,
    default_page_size: int = 10,
    max_page_size: int = 100,
) -> ListQuery:
    page_size = limit if limit and limit > 0 else default_page_size
    return ListQuery(
        filters={k: v for k, v in (filters or {}).items() if v is not None},
        order_by=parse_sort_by(sort_by, sort_fields),
        limit=min(page_size, max_page_size),
        skip=max(skip or 0, 0),
        search=search.strip() if search and search.strip() else None,
    )


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return json.dumps(value)
    return value


class EntityStore:
    """Stateless data access over a caller-supplied connection."""

    # ------------------------- Generic helpers ------------------------- #
    @staticmethod
    def _insert(conn: sqlite3.Connection, table: str, allowed: Sequence[str], values: Dict[str, Any], now: datetime) -> int:
        unknown = set(values) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")
        columns = list(values) + ["created_at", "updated_at"]
        params = [_to_db(v) for v in values.values()] + [to_iso(now), to_iso(now)]
        placeholders = ", ".join("?" for _ in columns)
        cursor = conn.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})", params
        )
        return cursor.lastrowid

    @staticmethod
    def _update(conn: sqlite3.Connection, table: str, allowed: Sequence[str], row_id: int, values: Dict[str, Any], now: datetime) -> bool:
        unknown = set(values) - set(allowed)
        if unknown:
            raise ValueError(f"Unknown columns for {table}: {sorted(unknown)}")
        if not values:
            return True
        set_clause = ", ".join(f"{column} = ?" for column in values)
        params = [_to_db(v) for v in values.values()] + [to_iso(now), row_id]
        cursor = conn.execute(f"UPDATE {table} SET {set_clause}, updated_at = ? WHERE id = ?", params)
        return cursor.rowcount > 0

    @staticmethod
    def _get(conn: sqlite3.Connection, table: str, row_id: int, factory: Callable[[sqlite3.Row], T]) -> Optional[T]:
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        return factory(row) if row else None

    @staticmethod
    def _get_many(conn: sqlite3.Connection, table: str, ids: Iterable[int], factory: Callable[[sqlite3.Row], T]) -> Dict[int, T]:
        unique = sorted(set(ids))
        if not unique:
            return {}
        placeholders = ", ".join("?" for _ in unique)
        rows = conn.execute(f"SELECT * FROM {table} WHERE id IN ({placeholders})", unique).fetchall()
        return {row["id"]: factory(row) for row in rows}

    @staticmethod
    def _select(
        conn: sqlite3.Connection,
        table: str,
        query: ListQuery,
        factory: Callable[[sqlite3.Row], T],
        *,
        default_order: str = "id ASC",
        search_columns: Sequence[str] = (),
        extra_where: Sequence[Tuple[str, Any]] = (),
    ) -> List[T]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in query.filters.items():
            clauses.append(f"{column} = ?")
            params.append(_to_db(value))
        for clause, value in extra_where:
            clauses.append(clause)
            params.append(_to_db(value))
        if query.search and search_columns:
            clauses.append("(" + " OR ".join(f"{c} LIKE ?" for c in search_columns) + ")")
            params.extend([f"%{query.search}%"] * len(search_columns))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        if query.order_by:
            column, descending = query.order_by
            order = f"{column} {'DESC' if descending else 'ASC'}, id ASC"
        else:
            order = default_order
        sql = f"SELECT * FROM {table}{where} ORDER BY {order} LIMIT ? OFFSET ?"
        rows = conn.execute(sql, params + [query.limit, query.skip]).fetchall()
        return [factory(row) for row in rows]

    # ------------------------- Books ------------------------- #
    def insert_book(self, conn: sqlite3.Connection, values: Dict[str, Any], now: datetime) -> int:
        try:
            return self._insert(conn, "books", BOOK_COLUMNS, values, now)
        except sqlite3.IntegrityError as e:
            if "isbn" in str(e):
                raise DuplicateEntity(f"Book with ISBN {values.get('isbn')} already exists.") from e
            raise ValidationError(f"Invalid book data: {e}") from e

    def get_book(self, conn: sqlite3.Connection, book_id: int) -> Optional[Book]:
        return self._get(conn, "books", book_id, Book.from_row)

    def get_books(self, conn: sqlite3.Connection, book_ids: Iterable[int]) -> Dict[int, Book]:
        return self._get_many(conn, "books", book_ids, Book.from_row)

    def update_book(self, conn: sqlite3.Connection, book_id: int, values: Dict[str, Any], now: datetime) -> bool:
        try:
            return self._update(conn, "books", BOOK_COLUMNS, book_id, values, now)
        except sqlite3.IntegrityError as e:
            if "isbn" in str(e):
                raise DuplicateEntity(f"Book with ISBN {values.get('isbn')} already exists.") from e
            raise ValidationError(f"Invalid book data: {e}") from e

    def delete_book(self, conn: sqlite3.Connection, book_id: int) -> bool:
        return conn.execute("DELETE FROM books WHERE id = ?", (book_id,)).rowcount > 0

    def list_books(self, conn: sqlite3.Connection, query: ListQuery) -> List[Book]:
        return self._select(
            conn, "books", query, Book.from_row,
            search_columns=("title", "author", "description"),
        )

    # ------------------------- Users ------------------------- #
    def insert_user(self, conn: sqlite3.Connection, values: Dict[str, Any], now: datetime) -> int:
        try:
            return self._insert(conn, "users", USER_COLUMNS, values, now)
        except sqlite3.IntegrityError as e:
            raise DuplicateEntity("Email is already registered") from e

    def get_user(self, conn: sqlite3.Connection, user_id: int) -> Optional[User]:
        return self._get(conn, "users", user_id, User.from_row)

    def get_users(self, conn: sqlite3.Connection, user_ids: Iterable[int]) -> Dict[int, User]:
        return self._get_many(conn, "users", user_ids, User.from_row)

    def get_user_by_email(self, conn: sqlite3.Connection, email: str) -> Optional[User]:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return User.from_row(row) if row else None

    def update_user(self, conn: sqlite3.Connection, user_id: int, values: Dict[str, Any], now: datetime) -> bool:
        try:
            return self._update(conn, "users", USER_COLUMNS, user_id, values, now)
        except sqlite3.IntegrityError as e:
            raise DuplicateEntity("Email is already registered") from e

    def adjust_user_fines(self, conn: sqlite3.Connection, user_id: int, delta: float, now: datetime) -> float:
        """Add ``delta`` to the user's balance, never going below zero."""
        conn.execute(
            "UPDATE users SET fines = ROUND(MAX(fines + ?, 0), 2), updated_at = ? WHERE id = ?",
            (delta, to_iso(now), user_id),
        )
        row = conn.execute("SELECT fines FROM users WHERE id = ?", (user_id,)).fetchone()
        return float(row["fines"]) if row else 0.0

    def list_users(self, conn: sqlite3.Connection, query: ListQuery) -> List[User]:
        return self._select(conn, "users", query, User.from_row)

    # ------------------------- Tokens ------------------------- #
    def insert_token(self, conn: sqlite3.Connection, token_hash: str, user_id: int, kind: str, now: datetime, expires_at: datetime) -> None:
        conn.execute(
            "INSERT INTO auth_tokens (token_hash, user_id, kind, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
            (token_hash, user_id, kind, to_iso(now), to_iso(expires_at)),
        )

    def get_token(self, conn: sqlite3.Connection, token_hash: str, kind: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM auth_tokens WHERE token_hash = ? AND kind = ?", (token_hash, kind)
        ).fetchone()

    def delete_token(self, conn: sqlite3.Connection, token_hash: str) -> bool:
        return conn.execute("DELETE FROM auth_tokens WHERE token_hash = ?", (token_hash,)).rowcount > 0

    def delete_expired_tokens(self, conn: sqlite3.Connection, now: datetime) -> int:
        return conn.execute("DELETE FROM auth_tokens WHERE expires_at <= ?", (to_iso(now),)).rowcount

    def delete_user_tokens(self, conn: sqlite3.Connection, user_id: int, kind: Optional[str] = None) -> int:
        if kind is None:
            cursor = conn.execute("DELETE FROM auth_tokens WHERE user_id = ?", (user_id,))
        else:
            cursor = conn.execute("DELETE FROM auth_tokens WHERE user_id = ? AND kind = ?", (user_id, kind))
        return cursor.rowcount

    # ------------------------- Borrowings ------------------------- #
    def insert_borrowing(self, conn: sqlite3.Connection, values: Dict[str, Any], now: datetime) -> int:
        try:
            return self._insert(conn, "borrowings", BORROWING_COLUMNS, values, now)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Invalid borrowing data: {e}") from e

    def get_borrowing(self, conn: sqlite3.Connection, borrowing_id: int) -> Optional[Borrowing]:
        return self._get(conn, "borrowings", borrowing_id, Borrowing.from_row)

    def update_borrowing(self, conn: sqlite3.Connection, borrowing_id: int, values: Dict[str, Any], now: datetime) -> bool:
        return self._update(conn, "borrowings", BORROWING_COLUMNS, borrowing_id, values, now)

    def find_active_borrowing(self, conn: sqlite3.Connection, user_id: int, book_id: int) -> Optional[Borrowing]:
        row = conn.execute(
            "SELECT * FROM borrowings WHERE user_id = ? AND book_id = ? AND status = ?",
            (user_id, book_id, BorrowingStatus.ACTIVE.value),
        ).fetchone()
        return Borrowing.from_row(row) if row else None

    def count_active_borrowings_for_book(self, conn: sqlite3.Connection, book_id: int) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS n FROM borrowings WHERE book_id = ? AND status = ?",
            (book_id, BorrowingStatus.ACTIVE.value),
        ).fetchone()
        return row["n"]

    def list_borrowings(self, conn: sqlite3.Connection, query: ListQuery, *, default_order: str = "id ASC") -> List[Borrowing]:
        return self._select(conn, "borrowings", query, Borrowing.from_row, default_order=default_order)

    def list_overdue_borrowings(self, conn: sqlite3.Connection, query: ListQuery, now: datetime) -> List[Borrowing]:
        return self._select(
            conn, "borrowings", query, Borrowing.from_row,
            default_order="due_date ASC",
            extra_where=(("status = ?", BorrowingStatus.ACTIVE), ("due_date < ?", now)),
        )

    def list_unpaid_fines(self, conn: sqlite3.Connection, user_id: int) -> List[Borrowing]:
        rows = conn.execute(
            "SELECT * FROM borrowings WHERE user_id = ? AND fine_amount > 0 AND fine_paid = 0 ORDER BY return_date ASC",
            (user_id,),
        ).fetchall()
        return [Borrowing.from_row(row) for row in rows]

    # ------------------------- Reservations ------------------------- #
    def insert_reservation(self, conn: sqlite3.Connection, values: Dict[str, Any], now: datetime) -> int:
        try:
            return self._insert(conn, "reservations", RESERVATION_COLUMNS, values, now)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Invalid reservation data: {e}") from e

    def get_reservation(self, conn: sqlite3.Connection, reservation_id: int) -> Optional[Reservation]:
        return self._get(conn, "reservations", reservation_id, Reservation.from_row)

    def update_reservation(self, conn: sqlite3.Connection, reservation_id: int, values: Dict[str, Any], now: datetime) -> bool:
        return self._update(conn, "reservations", RESERVATION_COLUMNS, reservation_id, values, now)

    def find_pending_reservation(self, conn: sqlite3.Connection, user_id: int, book_id: int) -> Optional[Reservation]:
        row = conn.execute(
            "SELECT * FROM reservations WHERE user_id = ? AND book_id = ? AND status = ?",
            (user_id, book_id, ReservationStatus.PENDING.value),
        ).fetchone()
        return Reservation.from_row(row) if row else None

    def list_pending_reservations_for_book(self, conn: sqlite3.Connection, book_id: int) -> List[Reservation]:
        rows = conn.execute(
            "SELECT * FROM reservations WHERE book_id = ? AND status = ? ORDER BY reservation_date ASC, id ASC",
            (book_id, ReservationStatus.PENDING.value),
        ).fetchall()
        return [Reservation.from_row(row) for row in rows]

    def list_reservations(self, conn: sqlite3.Connection, query: ListQuery, *, default_order: str = "id ASC") -> List[Reservation]:
        return self._select(conn, "reservations", query, Reservation.from_row, default_order=default_order)

    def expire_pending_reservations(self, conn: sqlite3.Connection, now: datetime) -> int:
        cursor = conn.execute(
            "UPDATE reservations SET status = ?, updated_at = ? WHERE status = ? AND expiry_date < ?",
            (ReservationStatus.EXPIRED.value, to_iso(now), ReservationStatus.PENDING.value, to_iso(now)),
        )
        return cursor.rowcount

    # ------------------------- Reporting ------------------------- #
    def statistics(self, conn: sqlite3.Connection, now: datetime) -> Dict[str, Any]:
        books = conn.execute(
            "SELECT COUNT(*) AS titles, COALESCE(SUM(total_copies), 0) AS total, "
            "COALESCE(SUM(available_copies), 0) AS available FROM books"
        ).fetchone()
        users = conn.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(fines), 0) AS fines FROM users"
        ).fetchone()
        active = conn.execute(
            "SELECT COUNT(*) AS n FROM borrowings WHERE status = ?", (BorrowingStatus.ACTIVE.value,)
        ).fetchone()
        overdue = conn.execute(
            "SELECT COUNT(*) AS n FROM borrowings WHERE status = ? AND due_date < ?",
            (BorrowingStatus.ACTIVE.value, to_iso(now)),
        ).fetchone()
        pending = conn.execute(
            "SELECT COUNT(*) AS n FROM reservations WHERE status = ?", (ReservationStatus.PENDING.value,)
        ).fetchone()
        return {
            "total_titles": books["titles"],
            "total_copies": books["total"],
            "available_copies": books["available"],
            "registered_users": users["n"],
            "active_borrowings": active["n"],
            "overdue_borrowings": overdue["n"],
            "pending_reservations": pending["n"],
            "outstanding_fines": round(float(users["fines"]), 2),
        }
