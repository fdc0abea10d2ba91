"""Fine ledger.

``users.fines`` is the balance that gates borrowing and reserving. Every
change to it that belongs to a borrowing is written in the same transaction
as that borrowing's fine record.
"""

import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict

from .database import Database
from .errors import AmountExceedsBalance, IneligibleBorrower, InvalidAmount, NoOutstandingFine, NotFound
from .models import Borrowing, User
from .store import EntityStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def calculate_fine(due_date: datetime, returned_at: datetime, rate_per_day: float) -> float:
    """Whole days late, rounded up, times the daily rate. Zero when not late."""
    if returned_at <= due_date:
        return 0.0
    days_late = math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)
    return round(days_late * rate_per_day, 2)


class FineLedger:
    def __init__(self, db: Database, store: EntityStore, clock: Callable) -> None:
        self.db = db
        self.store = store
        self.clock = clock

    @staticmethod
    def ensure_eligible(user: User, action: str = "borrow") -> None:
        if user.fines > 0:
            raise IneligibleBorrower(f"Cannot {action} books. Please pay your outstanding fines.")

    def charge(self, conn: sqlite3.Connection, borrowing: Borrowing, amount: float, now: datetime) -> float:
        """Add a late fine to the borrowing and the borrower's balance."""
        total = round(borrowing.fine_amount + amount, 2)
        self.store.update_borrowing(conn, borrowing.id, {"fine_amount": total, "fine_paid": False}, now)
        balance = self.store.adjust_user_fines(conn, borrowing.user_id, amount, now)
        logger.info(f"Fine of {amount:.2f} charged on borrowing {borrowing.id}; user {borrowing.user_id} owes {balance:.2f}")
        return total

    def settle(self, conn: sqlite3.Connection, borrowing: Borrowing, now: datetime) -> float:
        """Mark the borrowing's fine paid and take it off the borrower's balance."""
        if not borrowing.has_outstanding_fine:
            raise NoOutstandingFine()
        self.store.update_borrowing(conn, borrowing.id, {"fine_paid": True, "fine_paid_date": now}, now)
        balance = self.store.adjust_user_fines(conn, borrowing.user_id, -borrowing.fine_amount, now)
        logger.info(f"Fine of {borrowing.fine_amount:.2f} paid on borrowing {borrowing.id}; user {borrowing.user_id} owes {balance:.2f}")
        return balance

    def pay_balance(self, user_id: int, amount: Any) -> Dict[str, Any]:
        """Pay an arbitrary amount off the user's balance."""
        if isinstance(amount, bool):
            raise InvalidAmount()
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            raise InvalidAmount() from None
        if not math.isfinite(amount):
            raise InvalidAmount()
        amount = round(amount, 2)
        if amount <= 0:
            raise InvalidAmount()
        with self.db.transaction() as conn:
            user = self.store.get_user(conn, user_id)
            if user is None:
                raise NotFound("User not found")
            if amount > user.fines:
                raise AmountExceedsBalance()
            remaining = self.store.adjust_user_fines(conn, user_id, -amount, self.clock())
        logger.info(f"User {user_id} paid {amount:.2f}; remaining {remaining:.2f}")
        return {
            "paid": amount,
            "remaining_fines": remaining,
            "message": f"Payment of ${amount:.2f} processed successfully",
        }

    def summary(self, user_id: int) -> Dict[str, Any]:
        with self.db.session() as conn:
            user = self.store.get_user(conn, user_id)
            if user is None:
                raise NotFound("User not found")
            unpaid = self.store.list_unpaid_fines(conn, user_id)
            books = self.store.get_books(conn, [b.book_id for b in unpaid])
        return {
            "total_fines": user.fines,
            "unpaid": [(borrowing, books.get(borrowing.book_id)) for borrowing in unpaid],
        }
