import pytest

from library_backend.errors import BookUnavailable, NotFound, ValidationError
from library_backend.inventory import derive_status
from library_backend.models import BookStatus


def test_derive_status():
    assert derive_status(3) is BookStatus.AVAILABLE
    assert derive_status(0) is BookStatus.NOT_AVAILABLE


def test_new_book_defaults_to_one_available_copy(make_book):
    book = make_book(copies=None)
    assert book.total_copies == 1
    assert book.available_copies == 1
    assert book.status is BookStatus.AVAILABLE


def test_book_with_no_copies_is_not_available(make_book):
    book = make_book(copies=0)
    assert book.available_copies == 0
    assert book.status is BookStatus.NOT_AVAILABLE


def test_adjust_availability_clamps_to_total(ctx, make_book):
    book = make_book(copies=2)
    with ctx.db.transaction() as conn:
        updated = ctx.inventory.adjust_availability(conn, book.id, +1)
    assert updated.available_copies == 2


def test_adjust_availability_clamps_to_zero(ctx, make_book):
    book = make_book(copies=1)
    with ctx.db.transaction() as conn:
        updated = ctx.inventory.adjust_availability(conn, book.id, -3)
    assert updated.available_copies == 0
    assert updated.status is BookStatus.NOT_AVAILABLE


def test_strict_adjustment_refuses_to_go_negative(ctx, make_book):
    book = make_book(copies=0)
    with pytest.raises(BookUnavailable):
        with ctx.db.transaction() as conn:
            ctx.inventory.adjust_availability(conn, book.id, -1, strict=True)
    assert ctx.catalog.get_book(book.id).available_copies == 0


def test_adjust_availability_unknown_book(ctx):
    with pytest.raises(NotFound):
        with ctx.db.transaction() as conn:
            ctx.inventory.adjust_availability(conn, 999, -1, strict=True)


def test_set_total_copies_shifts_availability(ctx, make_book, make_user):
    book = make_book(copies=3)
    for _ in range(2):
        ctx.borrowings.borrow(make_user(), book.id)

    grown = ctx.catalog.update_inventory(book.id, 5)
    assert (grown.total_copies, grown.available_copies) == (5, 3)

    shrunk = ctx.catalog.update_inventory(book.id, 1)
    assert (shrunk.total_copies, shrunk.available_copies) == (1, 0)
    assert shrunk.status is BookStatus.NOT_AVAILABLE


def test_set_total_copies_rejects_negative(ctx, make_book):
    book = make_book(copies=2)
    with pytest.raises(ValidationError):
        ctx.catalog.update_inventory(book.id, -1)
    assert ctx.catalog.get_book(book.id).total_copies == 2


def test_available_never_exceeds_total(ctx, make_book, make_user):
    book = make_book(copies=2)
    user = make_user()
    view = ctx.borrowings.borrow(user, book.id)
    ctx.catalog.update_inventory(book.id, 1)
    ctx.borrowings.return_book(view.borrowing.id, user)

    book = ctx.catalog.get_book(book.id)
    assert 0 <= book.available_copies <= book.total_copies
    assert book.available_copies == 1
