"""Inventory ledger: copy counters and the status derived from them."""

import logging
import sqlite3
from typing import Callable

from .errors import BookUnavailable, NotFound, ValidationError
from .models import Book, BookStatus, to_iso
from .store import EntityStore

logger = logging.getLogger(__name__)

# Status is computed in SQL from the new availability so the counter and the
# status column are always written by the same statement.
_STATUS_SQL = (
    "CASE WHEN {available} > 0 THEN '" + BookStatus.AVAILABLE.value + "' "
    "ELSE '" + BookStatus.NOT_AVAILABLE.value + "' END"
)


def derive_status(available_copies: int) -> BookStatus:
    return BookStatus.AVAILABLE if available_copies > 0 else BookStatus.NOT_AVAILABLE


class InventoryLedger:
    def __init__(self, store: EntityStore, clock: Callable) -> None:
        self.store = store
        self.clock = clock

    def adjust_availability(self, conn: sqlite3.Connection, book_id: int, delta: int, strict: bool = False) -> Book:
        """Apply ``delta`` to the available copies of a book.

        The result is clamped to ``[0, total_copies]``. With ``strict=True`` a
        change that would take availability below zero is refused with
        ``BookUnavailable`` instead; the check and the write are a single
        conditional UPDATE, so two borrowers can never take the same copy.
        """
        new_available = "MAX(0, MIN(total_copies, available_copies + ?))"
        sql = (
            f"UPDATE books SET available_copies = {new_available}, "
            f"status = {_STATUS_SQL.format(available=new_available)}, updated_at = ? "
            "WHERE id = ?"
        )
        params = [delta, delta, to_iso(self.clock()), book_id]
        if strict:
            sql += " AND available_copies + ? >= 0"
            params.append(delta)
        cursor = conn.execute(sql, params)
        if cursor.rowcount == 0:
            if self.store.get_book(conn, book_id) is None:
                raise NotFound("Book not found")
            raise BookUnavailable()
        book = self.store.get_book(conn, book_id)
        logger.debug(f"Book {book_id} availability {delta:+d} -> {book.available_copies}/{book.total_copies}")
        return book

    def set_total_copies(self, conn: sqlite3.Connection, book_id: int, new_total: int) -> Book:
        """Change the owned copy count, shifting availability by the same amount."""
        if new_total is None or new_total < 0:
            raise ValidationError("Total copies cannot be negative")
        book = self.store.get_book(conn, book_id)
        if book is None:
            raise NotFound("Book not found")
        available = max(0, min(new_total, book.available_copies + new_total - book.total_copies))
        self.store.update_book(
            conn,
            book_id,
            {"total_copies": new_total, "available_copies": available, "status": derive_status(available)},
            self.clock(),
        )
        logger.info(f"Book {book_id} copies set to {new_total} ({available} available)")
        return self.store.get_book(conn, book_id)
