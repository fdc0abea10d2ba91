"""Borrowing lifecycle.

A borrowing is ``active`` from checkout until it is returned or staff mark the
copy lost or damaged. Each command below runs in one transaction together
with its inventory and fine side effects.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from .config import Settings
from .database import Database
from .errors import (
    BookUnavailable,
    DuplicateBorrowing,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    RenewalLimitExceeded,
    ValidationError,
)
from .fines import FineLedger, calculate_fine
from .inventory import InventoryLedger
from .models import Borrowing, BorrowingStatus, BorrowingView, User, as_utc
from .reservations import ReservationService
from .store import EntityStore, ListQuery

logger = logging.getLogger(__name__)

# Statuses staff may set on an active borrowing besides returning it.
TERMINAL_STAFF_STATUSES = (BorrowingStatus.LOST, BorrowingStatus.DAMAGED)


class BorrowingService:
    def __init__(
        self,
        db: Database,
        store: EntityStore,
        inventory: InventoryLedger,
        fines: FineLedger,
        reservations: ReservationService,
        config: Settings,
        clock: Callable,
    ) -> None:
        self.db = db
        self.store = store
        self.inventory = inventory
        self.fines = fines
        self.reservations = reservations
        self.config = config
        self.clock = clock

    # ------------------------- Commands ------------------------- #
    def borrow(
        self,
        user: User,
        book_id: int,
        due_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> BorrowingView:
        now = self.clock()
        if due_date is not None:
            due_date = as_utc(due_date)
            if due_date <= now:
                raise ValidationError("Due date must be in the future")

        with self.db.transaction() as conn:
            current = self.store.get_user(conn, user.id) or user
            self.fines.ensure_eligible(current, action="borrow")
            book = self.store.get_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found")
            if book.available_copies <= 0:
                raise BookUnavailable()
            if self.store.find_active_borrowing(conn, user.id, book_id) is not None:
                raise DuplicateBorrowing()

            borrowing_id = self.store.insert_borrowing(
                conn,
                {
                    "user_id": user.id,
                    "book_id": book_id,
                    "borrow_date": now,
                    "due_date": due_date or now + timedelta(days=self.config.loan_period_days),
                    "status": BorrowingStatus.ACTIVE,
                    "renewals": 0,
                    "fine_amount": 0.0,
                    "fine_paid": False,
                    "notes": notes,
                },
                now,
            )
            self.inventory.adjust_availability(conn, book_id, -1, strict=True)
            self.reservations.fulfill_for_borrower(conn, user.id, book_id, now)
            view = self._view(conn, borrowing_id)
        logger.info(f"User {user.id} borrowed book {book_id} (borrowing {borrowing_id})")
        return view

    def renew(self, borrowing_id: int, user: User) -> BorrowingView:
        now = self.clock()
        with self.db.transaction() as conn:
            borrowing = self.store.get_borrowing(conn, borrowing_id)
            if borrowing is None or borrowing.user_id != user.id or borrowing.status is not BorrowingStatus.ACTIVE:
                raise NotFound("Borrowing record not found or cannot be renewed")
            if borrowing.renewals >= self.config.max_renewals:
                raise RenewalLimitExceeded()
            self.store.update_borrowing(
                conn,
                borrowing_id,
                {
                    "due_date": borrowing.due_date + timedelta(days=self.config.renewal_period_days),
                    "renewals": borrowing.renewals + 1,
                },
                now,
            )
            view = self._view(conn, borrowing_id)
        logger.info(f"Borrowing {borrowing_id} renewed ({view.borrowing.renewals}/{self.config.max_renewals})")
        return view

    def return_book(self, borrowing_id: int, actor: User) -> BorrowingView:
        now = self.clock()
        with self.db.transaction() as conn:
            borrowing = self.store.get_borrowing(conn, borrowing_id)
            if borrowing is None or borrowing.status is not BorrowingStatus.ACTIVE:
                raise NotFound("Borrowing record not found or book already returned")
            if borrowing.user_id != actor.id and not actor.role.is_elevated:
                raise Forbidden("Not authorized to return this book")

            self.store.update_borrowing(
                conn, borrowing_id, {"return_date": now, "status": BorrowingStatus.RETURNED}, now
            )
            fine = calculate_fine(borrowing.due_date, now, self.config.fine_rate_per_day)
            if fine > 0:
                self.fines.charge(conn, borrowing, fine, now)
            self.inventory.adjust_availability(conn, borrowing.book_id, +1)
            view = self._view(conn, borrowing_id)
        logger.info(f"Borrowing {borrowing_id} returned by user {actor.id} (fine {fine:.2f})")

        self.reservations.notify_next_in_queue(borrowing.book_id)
        return view

    def pay_fine(self, borrowing_id: int) -> BorrowingView:
        now = self.clock()
        with self.db.transaction() as conn:
            borrowing = self.store.get_borrowing(conn, borrowing_id)
            if borrowing is None:
                raise NotFound("Borrowing record not found")
            self.fines.settle(conn, borrowing, now)
            view = self._view(conn, borrowing_id, include_user=True)
        return view

    def set_status(self, borrowing_id: int, status: BorrowingStatus, notes: Optional[str] = None) -> BorrowingView:
        """Mark an active borrowing lost or damaged. Inventory is left as is."""
        status = BorrowingStatus(status)
        if status not in TERMINAL_STAFF_STATUSES:
            raise ValidationError("Status must be one of: lost, damaged")
        now = self.clock()
        with self.db.transaction() as conn:
            borrowing = self.store.get_borrowing(conn, borrowing_id)
            if borrowing is None:
                raise NotFound("Borrowing record not found")
            if borrowing.status is not BorrowingStatus.ACTIVE:
                raise InvalidStateTransition(f"Borrowing is already {borrowing.status.value}")
            values = {"status": status}
            if notes is not None:
                values["notes"] = notes
            self.store.update_borrowing(conn, borrowing_id, values, now)
            view = self._view(conn, borrowing_id, include_user=True)
        logger.info(f"Borrowing {borrowing_id} marked {status.value}")
        return view

    # ------------------------- Queries ------------------------- #
    def get(self, borrowing_id: int, viewer: User) -> BorrowingView:
        with self.db.session() as conn:
            borrowing = self.store.get_borrowing(conn, borrowing_id)
            if borrowing is None or (borrowing.user_id != viewer.id and not viewer.role.is_elevated):
                raise NotFound("Borrowing record not found")
            return self._compose(conn, [borrowing], include_user=viewer.role.is_elevated)[0]

    def list_for_user(self, user_id: int, status: Optional[BorrowingStatus] = None) -> List[BorrowingView]:
        query = ListQuery(filters={"user_id": user_id}, limit=-1)
        if status is not None:
            query.filters["status"] = status
        with self.db.session() as conn:
            borrowings = self.store.list_borrowings(conn, query, default_order="borrow_date DESC, id DESC")
            return self._compose(conn, borrowings)

    def list_all(self, query: ListQuery) -> List[BorrowingView]:
        with self.db.session() as conn:
            borrowings = self.store.list_borrowings(conn, query)
            return self._compose(conn, borrowings, include_user=True)

    def list_overdue(self, query: ListQuery) -> List[BorrowingView]:
        with self.db.session() as conn:
            borrowings = self.store.list_overdue_borrowings(conn, query, self.clock())
            return self._compose(conn, borrowings, include_user=True)

    # ------------------------- Helpers ------------------------- #
    def _view(self, conn: sqlite3.Connection, borrowing_id: int, include_user: bool = False) -> BorrowingView:
        borrowing = self.store.get_borrowing(conn, borrowing_id)
        return self._compose(conn, [borrowing], include_user=include_user)[0]

    def _compose(
        self, conn: sqlite3.Connection, borrowings: Iterable[Borrowing], include_user: bool = False
    ) -> List[BorrowingView]:
        borrowings = list(borrowings)
        books = self.store.get_books(conn, [b.book_id for b in borrowings])
        users = self.store.get_users(conn, [b.user_id for b in borrowings]) if include_user else {}
        now = self.clock()
        return [
            BorrowingView(
                borrowing=b,
                book=books.get(b.book_id),
                user=users.get(b.user_id),
                overdue=b.is_overdue(now),
            )
            for b in borrowings
        ]
