"""Request and response models for the HTTP API.

JSON uses camelCase keys; the models use snake_case attributes and accept
either form on input. Request bodies reject unknown keys.
"""

from datetime import date, datetime
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import (
    Book,
    BookStatus,
    BorrowingStatus,
    BorrowingView,
    Category,
    ReservationStatus,
    ReservationView,
    Role,
    User,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RequestModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


# ------------------------- Shared ------------------------- #
class Address(RequestModel):
    street: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None


class MessageOut(CamelModel):
    message: str


# ------------------------- Books ------------------------- #
class Copies(CamelModel):
    total: int
    available: int


class CopiesIn(RequestModel):
    total: int = 1
    available: int | None = None


class BookOut(CamelModel):
    id: int
    title: str
    author: str
    category: Category
    isbn: str | None = None
    description: str | None = None
    publisher: str | None = None
    published_date: date | None = None
    pages: int | None = None
    copies: Copies
    status: BookStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_book(cls, book: Book) -> "BookOut":
        return cls(
            id=book.id,
            title=book.title,
            author=book.author,
            category=book.category,
            isbn=book.isbn,
            description=book.description,
            publisher=book.publisher,
            published_date=book.published_date,
            pages=book.pages,
            copies=Copies(total=book.total_copies, available=book.available_copies),
            status=book.status,
            created_at=book.created_at,
            updated_at=book.updated_at,
        )


class BookCreate(RequestModel):
    title: str
    author: str
    isbn: str | None = None
    category: Category | None = None
    description: str | None = None
    publisher: str | None = None
    published_date: date | None = None
    pages: int | None = None
    copies: CopiesIn | None = None


class BookUpdate(RequestModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    category: Category | None = None
    description: str | None = None
    publisher: str | None = None
    published_date: date | None = None
    pages: int | None = None


class InventoryUpdate(RequestModel):
    total: int


class StatsOut(CamelModel):
    total_titles: int
    total_copies: int
    available_copies: int
    registered_users: int
    active_borrowings: int
    overdue_borrowings: int
    pending_reservations: int
    outstanding_fines: float


# ------------------------- Users ------------------------- #
class UserOut(CamelModel):
    id: int
    name: str
    email: str
    role: Role
    fines: float
    is_active: bool
    student_id: str | None = None
    department: str | None = None
    contact_number: str | None = None
    address: Dict[str, Any] = Field(default_factory=dict)
    date_joined: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            fines=user.fines,
            is_active=user.is_active,
            student_id=user.student_id,
            department=user.department,
            contact_number=user.contact_number,
            address={to_camel(k): v for k, v in user.address.items()},
            date_joined=user.date_joined,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthOut(CamelModel):
    user: UserOut
    token: str


class UserCreate(RequestModel):
    name: str
    email: str
    password: str
    role: Role | None = None
    student_id: str | None = None
    department: str | None = None
    contact_number: str | None = None
    address: Address | None = None


class LoginRequest(RequestModel):
    email: str
    password: str


class ProfileUpdate(RequestModel):
    name: str | None = None
    email: str | None = None
    password: str | None = None
    department: str | None = None
    contact_number: str | None = None
    address: Address | None = None


class AdminUserUpdate(ProfileUpdate):
    role: Role | None = None
    student_id: str | None = None
    is_active: bool | None = None


class PasswordResetRequest(RequestModel):
    email: str


class PasswordResetConfirm(RequestModel):
    token: str
    password: str


class PayFinesRequest(RequestModel):
    # Validated by the fine ledger so every bad amount gets the same error.
    amount: Any = None


class PaymentOut(CamelModel):
    paid: float
    remaining_fines: float
    message: str


# ------------------------- Borrowings ------------------------- #
class FineOut(CamelModel):
    amount: float
    paid: bool
    paid_date: datetime | None = None


class BorrowingOut(CamelModel):
    id: int
    user_id: int
    book_id: int
    book: BookOut | None = None
    user: UserOut | None = None
    borrow_date: datetime
    due_date: datetime
    return_date: datetime | None = None
    status: BorrowingStatus
    renewals: int
    fine: FineOut
    notes: str | None = None
    is_overdue: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_view(cls, view: BorrowingView) -> "BorrowingOut":
        b = view.borrowing
        return cls(
            id=b.id,
            user_id=b.user_id,
            book_id=b.book_id,
            book=BookOut.from_book(view.book) if view.book else None,
            user=UserOut.from_user(view.user) if view.user else None,
            borrow_date=b.borrow_date,
            due_date=b.due_date,
            return_date=b.return_date,
            status=b.status,
            renewals=b.renewals,
            fine=FineOut(amount=b.fine_amount, paid=b.fine_paid, paid_date=b.fine_paid_date),
            notes=b.notes,
            is_overdue=view.overdue,
            created_at=b.created_at,
            updated_at=b.updated_at,
        )


class BorrowCreate(RequestModel):
    book_id: int
    due_date: datetime | None = None
    notes: str | None = None


class BorrowStatusUpdate(RequestModel):
    status: BorrowingStatus
    notes: str | None = None


class UnpaidFineOut(CamelModel):
    borrowing_id: int
    book: BookOut | None = None
    amount: float
    due_date: datetime
    return_date: datetime | None = None


class FineSummaryOut(CamelModel):
    total_fines: float
    unpaid: List[UnpaidFineOut]


# ------------------------- Reservations ------------------------- #
class ReservationOut(CamelModel):
    id: int
    user_id: int
    book_id: int
    book: BookOut | None = None
    user: UserOut | None = None
    reservation_date: datetime
    expiry_date: datetime
    status: ReservationStatus
    notification_sent: bool
    fulfillment_date: datetime | None = None
    notes: str | None = None
    is_expired: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_view(cls, view: ReservationView) -> "ReservationOut":
        r = view.reservation
        return cls(
            id=r.id,
            user_id=r.user_id,
            book_id=r.book_id,
            book=BookOut.from_book(view.book) if view.book else None,
            user=UserOut.from_user(view.user) if view.user else None,
            reservation_date=r.reservation_date,
            expiry_date=r.expiry_date,
            status=r.status,
            notification_sent=r.notification_sent,
            fulfillment_date=r.fulfillment_date,
            notes=r.notes,
            is_expired=view.expired,
            created_at=r.created_at,
            updated_at=r.updated_at,
        )


class ReservationCreate(RequestModel):
    book_id: int
    expiry_date: datetime | None = None
    notes: str | None = None


class ReservationUpdate(RequestModel):
    status: ReservationStatus | None = None
    expiry_date: datetime | None = None
    notification_sent: bool | None = None


class ExpireOut(CamelModel):
    expired: int
