"""Reservation lifecycle: reserve, cancel, fulfil, expire and notify.

A reservation is ``pending`` until it is fulfilled, cancelled or expired.
Expiry is evaluated when a reservation is read or acted on; ``expire_stale``
is the explicit sweep an operator can run, nothing schedules it.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import Settings
from .database import Database
from .errors import (
    DuplicateReservation,
    EmailDeliveryError,
    InvalidStateTransition,
    NotFound,
    ValidationError,
)
from .fines import FineLedger
from .models import Reservation, ReservationStatus, ReservationView, User, as_utc
from .store import ListQuery, EntityStore

logger = logging.getLogger(__name__)

RESERVATION_UPDATE_FIELDS = ("status", "expiry_date", "notification_sent")


class ReservationService:
    def __init__(
        self,
        db: Database,
        store: EntityStore,
        fines: FineLedger,
        mailer: Any,
        config: Settings,
        clock: Callable,
    ) -> None:
        self.db = db
        self.store = store
        self.fines = fines
        self.mailer = mailer
        self.config = config
        self.clock = clock

    # ------------------------- Predicates ------------------------- #
    def is_expired(self, reservation: Reservation) -> bool:
        return reservation.is_expired(self.clock())

    # ------------------------- Commands ------------------------- #
    def reserve(
        self,
        user: User,
        book_id: int,
        expiry_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> ReservationView:
        now = self.clock()
        if expiry_date is not None:
            expiry_date = as_utc(expiry_date)
            if expiry_date <= now:
                raise ValidationError("Expiry date must be in the future")
        with self.db.transaction() as conn:
            current = self.store.get_user(conn, user.id) or user
            self.fines.ensure_eligible(current, action="reserve")
            book = self.store.get_book(conn, book_id)
            if book is None:
                raise NotFound("Book not found")

            existing = self.store.find_pending_reservation(conn, user.id, book_id)
            if existing is not None:
                if not existing.is_expired(now):
                    raise DuplicateReservation()
                self.store.update_reservation(conn, existing.id, {"status": ReservationStatus.EXPIRED}, now)
                logger.info(f"Reservation {existing.id} expired before a new one was placed")

            reservation_id = self.store.insert_reservation(
                conn,
                {
                    "user_id": user.id,
                    "book_id": book_id,
                    "reservation_date": now,
                    "expiry_date": expiry_date or now + timedelta(days=self.config.reservation_period_days),
                    "status": ReservationStatus.PENDING,
                    "notification_sent": False,
                    "notes": notes,
                },
                now,
            )
            view = self._view(conn, reservation_id)
        logger.info(f"User {user.id} reserved book {book_id} (reservation {reservation_id})")
        return view

    def cancel(self, reservation_id: int, user: User) -> ReservationView:
        now = self.clock()
        with self.db.transaction() as conn:
            reservation = self.store.get_reservation(conn, reservation_id)
            if reservation is None or reservation.user_id != user.id or not reservation.is_pending:
                raise NotFound("Reservation not found or cannot be cancelled")
            self.store.update_reservation(conn, reservation_id, {"status": ReservationStatus.CANCELLED}, now)
            view = self._view(conn, reservation_id)
        logger.info(f"Reservation {reservation_id} cancelled by user {user.id}")
        return view

    def fulfill(self, reservation_id: int) -> ReservationView:
        now = self.clock()
        expired = False
        with self.db.transaction() as conn:
            reservation = self.store.get_reservation(conn, reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found")
            if not reservation.is_pending:
                raise InvalidStateTransition(f"Reservation is already {reservation.status.value}")
            if reservation.is_expired(now):
                # Commit the expiry, then refuse the fulfilment.
                self.store.update_reservation(conn, reservation_id, {"status": ReservationStatus.EXPIRED}, now)
                expired = True
            else:
                self.store.update_reservation(
                    conn,
                    reservation_id,
                    {"status": ReservationStatus.FULFILLED, "fulfillment_date": now},
                    now,
                )
                view = self._view(conn, reservation_id, include_user=True)
        if expired:
            logger.info(f"Reservation {reservation_id} expired; fulfilment refused")
            raise InvalidStateTransition("Reservation is already expired")
        logger.info(f"Reservation {reservation_id} fulfilled")
        return view

    def fulfill_for_borrower(self, conn: sqlite3.Connection, user_id: int, book_id: int, now: datetime) -> Optional[int]:
        """Close the borrower's own pending reservation when they take the book out."""
        reservation = self.store.find_pending_reservation(conn, user_id, book_id)
        if reservation is None:
            return None
        if reservation.is_expired(now):
            self.store.update_reservation(conn, reservation.id, {"status": ReservationStatus.EXPIRED}, now)
            return None
        self.store.update_reservation(
            conn,
            reservation.id,
            {"status": ReservationStatus.FULFILLED, "fulfillment_date": now},
            now,
        )
        logger.info(f"Reservation {reservation.id} fulfilled by borrowing book {book_id}")
        return reservation.id

    def expire_stale(self) -> int:
        with self.db.transaction() as conn:
            count = self.store.expire_pending_reservations(conn, self.clock())
        logger.info(f"Expired {count} stale reservation(s)")
        return count

    def update(self, reservation_id: int, changes: Dict[str, Any]) -> ReservationView:
        """Staff edit of status, expiry date or the notification flag."""
        unknown = set(changes) - set(RESERVATION_UPDATE_FIELDS)
        if unknown:
            raise ValidationError("Invalid updates!")
        if any(changes.get(key, False) is None for key in ("status", "notification_sent")):
            raise ValidationError("Invalid updates!")
        now = self.clock()
        values = dict(changes)
        expired = False
        with self.db.transaction() as conn:
            reservation = self.store.get_reservation(conn, reservation_id)
            if reservation is None:
                raise NotFound("Reservation not found")
            if "status" in values:
                try:
                    status = ReservationStatus(values["status"])
                except ValueError:
                    raise ValidationError("Invalid updates!") from None
                if status is not reservation.status:
                    if not reservation.is_pending:
                        raise InvalidStateTransition(f"Reservation is already {reservation.status.value}")
                    if status is ReservationStatus.FULFILLED:
                        expired = reservation.is_expired(now)
                        values["fulfillment_date"] = now
                values["status"] = status
            if values.get("expiry_date") is not None:
                values["expiry_date"] = as_utc(values["expiry_date"])
            elif "expiry_date" in values:
                raise ValidationError("Expiry date is required")
            if expired:
                # Commit the expiry, then refuse the fulfilment.
                self.store.update_reservation(conn, reservation_id, {"status": ReservationStatus.EXPIRED}, now)
            else:
                self.store.update_reservation(conn, reservation_id, values, now)
                view = self._view(conn, reservation_id, include_user=True)
        if expired:
            logger.info(f"Reservation {reservation_id} expired; fulfilment refused")
            raise InvalidStateTransition("Reservation is already expired")
        logger.info(f"Reservation {reservation_id} updated: {sorted(changes)}")
        return view

    def notify_next_in_queue(self, book_id: int) -> Optional[int]:
        """Email the earliest waiting patron that a copy of the book is free.

        Returns the id of the reservation that was notified, if any. Email
        problems are logged and never propagated.
        """
        now = self.clock()
        with self.db.session() as conn:
            book = self.store.get_book(conn, book_id)
            if book is None or book.available_copies <= 0:
                return None
            candidate = next(
                (
                    r for r in self.store.list_pending_reservations_for_book(conn, book_id)
                    if not r.notification_sent and not r.is_expired(now)
                ),
                None,
            )
            if candidate is None:
                return None
            user = self.store.get_user(conn, candidate.user_id)
        if user is None:
            logger.warning(f"Reservation {candidate.id} belongs to a missing user; not notified")
            return None

        try:
            delivered = self.mailer.send_reservation_ready(user, book, candidate)
        except EmailDeliveryError as e:
            logger.error(f"Reservation {candidate.id} notification failed: {e}")
            return None
        if not delivered:
            return None

        with self.db.transaction() as conn:
            self.store.update_reservation(conn, candidate.id, {"notification_sent": True}, self.clock())
        logger.info(f"Notified user {user.id} that book {book_id} is ready (reservation {candidate.id})")
        return candidate.id

    # ------------------------- Queries ------------------------- #
    def get(self, reservation_id: int, viewer: User) -> ReservationView:
        with self.db.session() as conn:
            reservation = self.store.get_reservation(conn, reservation_id)
            if reservation is None or (reservation.user_id != viewer.id and not viewer.role.is_elevated):
                raise NotFound("Reservation not found")
            return self._compose(conn, [reservation], include_user=viewer.role.is_elevated)[0]

    def list_for_user(self, user_id: int, status: Optional[ReservationStatus] = None) -> List[ReservationView]:
        query = ListQuery(filters={"user_id": user_id}, limit=-1)
        if status is not None:
            query.filters["status"] = status
        with self.db.session() as conn:
            reservations = self.store.list_reservations(conn, query, default_order="reservation_date DESC, id DESC")
            return self._compose(conn, reservations)

    def list_all(self, query: ListQuery) -> List[ReservationView]:
        with self.db.session() as conn:
            reservations = self.store.list_reservations(conn, query)
            return self._compose(conn, reservations, include_user=True)

    # ------------------------- Helpers ------------------------- #
    def _view(self, conn: sqlite3.Connection, reservation_id: int, include_user: bool = False) -> ReservationView:
        reservation = self.store.get_reservation(conn, reservation_id)
        return self._compose(conn, [reservation], include_user=include_user)[0]

    def _compose(
        self, conn: sqlite3.Connection, reservations: Iterable[Reservation], include_user: bool = False
    ) -> List[ReservationView]:
        reservations = list(reservations)
        books = self.store.get_books(conn, [r.book_id for r in reservations])
        users = self.store.get_users(conn, [r.user_id for r in reservations]) if include_user else {}
        now = self.clock()
        return [
            ReservationView(
                reservation=r,
                book=books.get(r.book_id),
                user=users.get(r.user_id),
                expired=r.is_expired(now),
            )
            for r in reservations
        ]
