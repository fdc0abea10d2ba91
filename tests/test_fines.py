from datetime import datetime, timedelta, timezone

import pytest

from library_backend.errors import AmountExceedsBalance, IneligibleBorrower, InvalidAmount
from library_backend.fines import FineLedger, calculate_fine

DUE = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "returned, expected",
    [
        (DUE - timedelta(days=1), 0),
        (DUE, 0),
        (DUE + timedelta(minutes=1), 1),
        (DUE + timedelta(days=1), 1),
        (DUE + timedelta(days=6), 6),
        (DUE + timedelta(days=6, hours=1), 7),
    ],
)
def test_calculate_fine(returned, expected):
    assert calculate_fine(DUE, returned, 1.0) == expected


def test_calculate_fine_uses_rate():
    assert calculate_fine(DUE, DUE + timedelta(days=3), 0.25) == 0.75


def test_ensure_eligible(make_user):
    FineLedger.ensure_eligible(make_user())
    with pytest.raises(IneligibleBorrower, match="Cannot reserve books"):
        FineLedger.ensure_eligible(make_user(fines=0.5), action="reserve")


@pytest.mark.parametrize("amount", [0, 0.001, -5, "abc", None, float("inf"), float("nan"), True])
def test_pay_balance_rejects_invalid_amounts(ctx, make_user, amount):
    user = make_user(fines=5)
    with pytest.raises(InvalidAmount, match="Valid amount required"):
        ctx.fines.pay_balance(user.id, amount)
    assert ctx.accounts.get_user(user.id).fines == 5


def test_pay_balance_more_than_owed(ctx, make_user):
    user = make_user(fines=3)
    with pytest.raises(AmountExceedsBalance):
        ctx.fines.pay_balance(user.id, 3.01)


def test_partial_payment(ctx, make_user):
    user = make_user(fines=6)

    receipt = ctx.fines.pay_balance(user.id, 2.5)

    assert receipt["paid"] == 2.5
    assert receipt["remaining_fines"] == 3.5
    assert receipt["message"] == "Payment of $2.50 processed successfully"
    assert ctx.accounts.get_user(user.id).fines == 3.5


def test_payment_accepts_numeric_strings(ctx, make_user):
    user = make_user(fines=4)
    assert ctx.fines.pay_balance(user.id, "4")["remaining_fines"] == 0


def test_summary_lists_unpaid_fines(ctx, clock, make_user, make_book):
    user = make_user()
    late = ctx.borrowings.borrow(user, make_book(title="Late").id)
    on_time = ctx.borrowings.borrow(user, make_book(title="On time").id)
    clock.advance(days=10)
    ctx.borrowings.return_book(on_time.borrowing.id, user)
    clock.advance(days=6)
    ctx.borrowings.return_book(late.borrowing.id, user)

    summary = ctx.fines.summary(user.id)

    assert summary["total_fines"] == 2
    assert [(b.id, book.title) for b, book in summary["unpaid"]] == [(late.borrowing.id, "Late")]
