import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import configure_logging, settings
from .context import LibraryContext
from .errors import Forbidden, LibraryError, NotFound
from .models import BookStatus, BorrowingStatus, Category, ReservationStatus, Role, User
from .schemas import (
    AdminUserUpdate,
    AuthOut,
    BookCreate,
    BookOut,
    BookUpdate,
    BorrowCreate,
    BorrowingOut,
    BorrowStatusUpdate,
    ExpireOut,
    FineSummaryOut,
    InventoryUpdate,
    LoginRequest,
    MessageOut,
    PasswordResetConfirm,
    PasswordResetRequest,
    PayFinesRequest,
    PaymentOut,
    ProfileUpdate,
    ReservationCreate,
    ReservationOut,
    ReservationUpdate,
    StatsOut,
    UnpaidFineOut,
    UserCreate,
    UserOut,
)
from .store import (
    BOOK_SORT_FIELDS,
    BORROWING_SORT_FIELDS,
    RESERVATION_SORT_FIELDS,
    USER_SORT_FIELDS,
    ListQuery,
    build_list_query,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


# --- Dependencies ---
def get_context(request: Request) -> LibraryContext:
    return request.app.state.context


def get_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Optional[str]:
    return credentials.credentials if credentials else None


def get_current_user(
    ctx: LibraryContext = Depends(get_context),
    token: Optional[str] = Depends(get_token),
) -> User:
    """Resolve the bearer token to an active user or answer 401."""
    return ctx.identity.authenticate(token)


def require_staff(
    ctx: LibraryContext = Depends(get_context),
    user: User = Depends(get_current_user),
) -> User:
    if not ctx.identity.authorize(user, Role.LIBRARIAN):
        raise Forbidden()
    return user


def _list_query(ctx: LibraryContext, sort_fields, *, filters=None, sort_by=None, limit=None, skip=None, search=None) -> ListQuery:
    return build_list_query(
        filters=filters,
        sort_by=sort_by,
        sort_fields=sort_fields,
        limit=limit,
        skip=skip,
        search=search,
        default_page_size=ctx.config.default_page_size,
        max_page_size=ctx.config.max_page_size,
    )


# --- Error rendering ---
async def library_error_handler(request: Request, exc: LibraryError):
    if isinstance(exc, NotFound):
        return Response(status_code=404)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(e.get("type") == "extra_forbidden" for e in errors):
        message = "Invalid updates!"
    elif errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(context: Optional[LibraryContext] = None) -> FastAPI:
    """Build the API around ``context``; without one the app opens its own from ``settings``."""
    owns_context = context is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_context:
            configure_logging(settings)
            app.state.context = LibraryContext(settings).open()
        try:
            yield
        finally:
            if owns_context:
                app.state.context.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    if context is not None:
        app.state.context = context

    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        return response

    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # --- Health ---
    @app.get("/health")
    def health(ctx: LibraryContext = Depends(get_context)):
        """Lightweight health endpoint that also pings the database."""
        try:
            with ctx.db.session() as conn:
                conn.execute("SELECT 1")
            database_ok = True
        except Exception as e:
            logger.warning(f"Health check database ping failed: {e}")
            database_ok = False
        return {"status": "ok" if database_ok else "degraded", "database": database_ok, "version": ctx.config.app_version}

    # --- Books ---
    @app.get("/books", response_model=List[BookOut])
    def list_books(
        category: Optional[Category] = None,
        status: Optional[BookStatus] = None,
        search: Optional[str] = None,
        sort_by: Optional[str] = Query(default=None, alias="sortBy"),
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        ctx: LibraryContext = Depends(get_context),
    ):
        query = _list_query(
            ctx, BOOK_SORT_FIELDS,
            filters={"category": category, "status": status},
            sort_by=sort_by, limit=limit, skip=skip, search=search,
        )
        return [BookOut.from_book(book) for book in ctx.catalog.list_books(query)]

    @app.get("/books/{book_id}", response_model=BookOut)
    def get_book(book_id: int, ctx: LibraryContext = Depends(get_context)):
        return BookOut.from_book(ctx.catalog.get_book(book_id))

    @app.post("/books", response_model=BookOut, status_code=201)
    def create_book(payload: BookCreate, ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        data = payload.model_dump(exclude={"copies"}, exclude_unset=True)
        if payload.copies is not None:
            data["total_copies"] = payload.copies.total
            data["available_copies"] = payload.copies.available
        return BookOut.from_book(ctx.catalog.add_book(data))

    @app.patch("/books/{book_id}", response_model=BookOut)
    def update_book(
        book_id: int,
        payload: BookUpdate,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        return BookOut.from_book(ctx.catalog.update_book(book_id, payload.model_dump(exclude_unset=True)))

    @app.delete("/books/{book_id}", response_model=BookOut)
    def delete_book(book_id: int, ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return BookOut.from_book(ctx.catalog.delete_book(book_id))

    @app.patch("/books/{book_id}/inventory", response_model=BookOut)
    def update_inventory(
        book_id: int,
        payload: InventoryUpdate,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        return BookOut.from_book(ctx.catalog.update_inventory(book_id, payload.total))

    @app.get("/stats", response_model=StatsOut)
    def stats(ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return StatsOut(**ctx.catalog.statistics())

    # --- Borrowings ---
    @app.post("/borrowings", response_model=BorrowingOut, status_code=201)
    def borrow_book(payload: BorrowCreate, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        view = ctx.borrowings.borrow(user, payload.book_id, due_date=payload.due_date, notes=payload.notes)
        return BorrowingOut.from_view(view)

    @app.get("/borrowings", response_model=List[BorrowingOut])
    def list_borrowings(
        status: Optional[BorrowingStatus] = None,
        sort_by: Optional[str] = Query(default=None, alias="sortBy"),
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        query = _list_query(ctx, BORROWING_SORT_FIELDS, filters={"status": status}, sort_by=sort_by, limit=limit, skip=skip)
        return [BorrowingOut.from_view(v) for v in ctx.borrowings.list_all(query)]

    @app.get("/borrowings/me", response_model=List[BorrowingOut])
    def my_borrowings(
        status: Optional[BorrowingStatus] = None,
        ctx: LibraryContext = Depends(get_context),
        user: User = Depends(get_current_user),
    ):
        return [BorrowingOut.from_view(v) for v in ctx.borrowings.list_for_user(user.id, status)]

    @app.get("/borrowings/overdue", response_model=List[BorrowingOut])
    def overdue_borrowings(
        sort_by: Optional[str] = Query(default=None, alias="sortBy"),
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        query = _list_query(ctx, BORROWING_SORT_FIELDS, sort_by=sort_by, limit=limit, skip=skip)
        return [BorrowingOut.from_view(v) for v in ctx.borrowings.list_overdue(query)]

    @app.get("/borrowings/{borrowing_id}", response_model=BorrowingOut)
    def get_borrowing(borrowing_id: int, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return BorrowingOut.from_view(ctx.borrowings.get(borrowing_id, user))

    @app.patch("/borrowings/{borrowing_id}/return", response_model=BorrowingOut)
    def return_book(borrowing_id: int, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return BorrowingOut.from_view(ctx.borrowings.return_book(borrowing_id, user))

    @app.patch("/borrowings/{borrowing_id}/renew", response_model=BorrowingOut)
    def renew_borrowing(borrowing_id: int, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return BorrowingOut.from_view(ctx.borrowings.renew(borrowing_id, user))

    @app.patch("/borrowings/{borrowing_id}/pay-fine", response_model=BorrowingOut)
    def pay_borrowing_fine(borrowing_id: int, ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return BorrowingOut.from_view(ctx.borrowings.pay_fine(borrowing_id))

    @app.patch("/borrowings/{borrowing_id}/status", response_model=BorrowingOut)
    def set_borrowing_status(
        borrowing_id: int,
        payload: BorrowStatusUpdate,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        return BorrowingOut.from_view(ctx.borrowings.set_status(borrowing_id, payload.status, payload.notes))

    # --- Reservations ---
    @app.post("/reservations", response_model=ReservationOut, status_code=201)
    def create_reservation(
        payload: ReservationCreate,
        ctx: LibraryContext = Depends(get_context),
        user: User = Depends(get_current_user),
    ):
        view = ctx.reservations.reserve(user, payload.book_id, expiry_date=payload.expiry_date, notes=payload.notes)
        return ReservationOut.from_view(view)

    @app.get("/reservations", response_model=List[ReservationOut])
    def list_reservations(
        status: Optional[ReservationStatus] = None,
        sort_by: Optional[str] = Query(default=None, alias="sortBy"),
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        query = _list_query(ctx, RESERVATION_SORT_FIELDS, filters={"status": status}, sort_by=sort_by, limit=limit, skip=skip)
        return [ReservationOut.from_view(v) for v in ctx.reservations.list_all(query)]

    @app.get("/reservations/me", response_model=List[ReservationOut])
    def my_reservations(
        status: Optional[ReservationStatus] = None,
        ctx: LibraryContext = Depends(get_context),
        user: User = Depends(get_current_user),
    ):
        return [ReservationOut.from_view(v) for v in ctx.reservations.list_for_user(user.id, status)]

    @app.post("/reservations/expire", response_model=ExpireOut)
    def expire_reservations(ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return ExpireOut(expired=ctx.reservations.expire_stale())

    @app.get("/reservations/{reservation_id}", response_model=ReservationOut)
    def get_reservation(reservation_id: int, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return ReservationOut.from_view(ctx.reservations.get(reservation_id, user))

    @app.patch("/reservations/{reservation_id}", response_model=ReservationOut)
    def update_reservation(
        reservation_id: int,
        payload: ReservationUpdate,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        return ReservationOut.from_view(ctx.reservations.update(reservation_id, payload.model_dump(exclude_unset=True)))

    @app.patch("/reservations/{reservation_id}/cancel", response_model=ReservationOut)
    def cancel_reservation(reservation_id: int, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return ReservationOut.from_view(ctx.reservations.cancel(reservation_id, user))

    @app.patch("/reservations/{reservation_id}/fulfill", response_model=ReservationOut)
    def fulfill_reservation(reservation_id: int, ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return ReservationOut.from_view(ctx.reservations.fulfill(reservation_id))

    # --- Users ---
    @app.post("/users", response_model=AuthOut, status_code=201)
    def register(payload: UserCreate, ctx: LibraryContext = Depends(get_context)):
        user, token = ctx.accounts.register(payload.model_dump(exclude_unset=True))
        return AuthOut(user=UserOut.from_user(user), token=token)

    @app.get("/users", response_model=List[UserOut])
    def list_users(
        role: Optional[Role] = None,
        is_active: Optional[bool] = Query(default=None, alias="isActive"),
        sort_by: Optional[str] = Query(default=None, alias="sortBy"),
        limit: Optional[int] = None,
        skip: Optional[int] = None,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        query = _list_query(
            ctx, USER_SORT_FIELDS,
            filters={"role": role, "is_active": is_active},
            sort_by=sort_by, limit=limit, skip=skip,
        )
        return [UserOut.from_user(u) for u in ctx.accounts.list_users(query)]

    @app.post("/users/login", response_model=AuthOut)
    def login(payload: LoginRequest, ctx: LibraryContext = Depends(get_context)):
        user, token = ctx.accounts.login(payload.email, payload.password)
        return AuthOut(user=UserOut.from_user(user), token=token)

    @app.post("/users/logout", response_model=MessageOut)
    def logout(
        ctx: LibraryContext = Depends(get_context),
        user: User = Depends(get_current_user),
        token: Optional[str] = Depends(get_token),
    ):
        ctx.accounts.logout(token)
        return MessageOut(message="Logged out successfully")

    @app.post("/users/logoutAll", response_model=MessageOut)
    def logout_all(ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        ctx.accounts.logout_all(user)
        return MessageOut(message="Logged out from all devices")

    @app.get("/users/me", response_model=UserOut)
    def read_profile(user: User = Depends(get_current_user)):
        return UserOut.from_user(user)

    @app.patch("/users/me", response_model=UserOut)
    def update_profile(payload: ProfileUpdate, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return UserOut.from_user(ctx.accounts.update_profile(user, payload.model_dump(exclude_unset=True)))

    @app.get("/users/me/fines", response_model=FineSummaryOut)
    def my_fines(ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        summary = ctx.fines.summary(user.id)
        unpaid = [
            UnpaidFineOut(
                borrowing_id=borrowing.id,
                book=BookOut.from_book(book) if book else None,
                amount=borrowing.fine_amount,
                due_date=borrowing.due_date,
                return_date=borrowing.return_date,
            )
            for borrowing, book in summary["unpaid"]
        ]
        return FineSummaryOut(total_fines=summary["total_fines"], unpaid=unpaid)

    @app.post("/users/pay-fines", response_model=PaymentOut)
    def pay_fines(payload: PayFinesRequest, ctx: LibraryContext = Depends(get_context), user: User = Depends(get_current_user)):
        return PaymentOut(**ctx.fines.pay_balance(user.id, payload.amount))

    @app.post("/users/password-reset", response_model=MessageOut)
    def request_password_reset(payload: PasswordResetRequest, ctx: LibraryContext = Depends(get_context)):
        ctx.accounts.request_password_reset(payload.email)
        return MessageOut(message="Reset email sent successfully")

    @app.post("/users/password-reset/confirm", response_model=MessageOut)
    def confirm_password_reset(payload: PasswordResetConfirm, ctx: LibraryContext = Depends(get_context)):
        ctx.accounts.reset_password(payload.token, payload.password)
        return MessageOut(message="Password has been reset")

    @app.get("/users/{user_id}", response_model=UserOut)
    def get_user(user_id: int, ctx: LibraryContext = Depends(get_context), staff: User = Depends(require_staff)):
        return UserOut.from_user(ctx.accounts.get_user(user_id))

    @app.patch("/users/{user_id}", response_model=UserOut)
    def admin_update_user(
        user_id: int,
        payload: AdminUserUpdate,
        ctx: LibraryContext = Depends(get_context),
        staff: User = Depends(require_staff),
    ):
        return UserOut.from_user(ctx.accounts.admin_update(user_id, payload.model_dump(exclude_unset=True)))

    return app


app = create_app()
