from datetime import datetime, timezone

import pytest

from library_api.errors import ValidationError
from library_api.models import TransactionStatus, TransactionType
from library_api.services.analytics import month_window


def _pay_fines(services, user_id):
    # member pays the outstanding total, then the admin settles both sides
    fines = services.payments.get_history(user_id=user_id, type="FINE").items
    payment = services.payments.create_payment(user_id, sum(f.amount for f in fines), TransactionType.FINE_PAYMENT)
    services.payments.update_status(payment.id, TransactionStatus.COMPLETED)
    for fine in fines:
        services.payments.update_status(fine.id, TransactionStatus.COMPLETED)


def test_month_window_is_half_open():
    start, end = month_window(2026, 12)
    assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
    assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)


def test_monthly_report(services, member, admin, book, clock):
    services.borrowing.borrow_book(member.id, book.id)
    clock.advance(days=20)
    services.borrowing.return_book(member.id, book.id)

    report = services.analytics.monthly_report(2026, 3)
    assert report == {
        "month": "March",
        "year": 2026,
        "total_borrows": 1,
        "total_returns": 1,
        "total_fines_collected": 0,
        "overdue_books_count": 1,
        "new_members_count": 2,
    }

    _pay_fines(services, member.id)
    assert services.analytics.monthly_report(2026, 3)["total_fines_collected"] == 6.0

    april = services.analytics.monthly_report(2026, 4)
    assert (april["total_borrows"], april["total_returns"], april["new_members_count"]) == (0, 0, 0)


@pytest.mark.parametrize("year, month", [(2026, 0), (2026, 13), (1999, 5), (2101, 1)])
def test_monthly_report_rejects_bad_period(services, year, month):
    with pytest.raises(ValidationError):
        services.analytics.monthly_report(year, month)


def test_most_borrowed_books(services, make_member, make_book):
    popular, quiet, unread = make_book(copies=2), make_book(), make_book()
    first, second = make_member(), make_member()
    services.borrowing.borrow_book(first.id, popular.id)
    services.borrowing.borrow_book(second.id, popular.id)
    services.borrowing.borrow_book(first.id, quiet.id)
    services.borrowing.return_book(first.id, quiet.id)

    ranking = services.analytics.most_borrowed_books()
    assert [b["id"] for b in ranking] == [popular.id, quiet.id, unread.id]
    assert ranking[0]["total_borrows"] == 2
    assert ranking[0]["currently_borrowed"] == 2
    assert ranking[0]["available_copies"] == 0
    assert ranking[1]["currently_borrowed"] == 0

    services.books.delete_book(unread.id)
    assert len(services.analytics.most_borrowed_books(limit=5)) == 2


def test_user_activity_stats(services, make_member, admin, make_book):
    reader, idle, gone = make_member(), make_member(), make_member()
    services.users.set_active(idle.id, False)
    services.users.delete_user(gone.id)
    for book in (make_book(), make_book()):
        services.borrowing.borrow_book(reader.id, book.id)

    stats = services.analytics.user_activity_stats()
    assert stats["active_users"] == 2
    assert stats["inactive_users"] == 1
    assert stats["top_borrowers"][0] == {
        "user": {
            "id": reader.id,
            "email": reader.email,
            "first_name": "Ada",
            "last_name": "Lovelace",
        },
        "borrow_count": 2,
    }
    # members who never borrowed still rank, ties by email
    assert [(row["user"]["email"], row["borrow_count"]) for row in stats["top_borrowers"][1:]] == [
        ("admin@example.com", 0),
        (idle.email, 0),
    ]


def test_revenue_without_fines(services):
    assert services.analytics.revenue_stats() == {
        "total_revenue": 0.0,
        "pending_fines": 0.0,
        "fines_by_month": [],
        "collection_rate": 0.0,
    }


def test_revenue_stats(services, make_member, make_book, clock):
    payer, debtor = make_member(), make_member()
    first, second = make_book(), make_book()
    services.borrowing.borrow_book(payer.id, first.id)
    services.borrowing.borrow_book(debtor.id, second.id)
    clock.advance(days=20)
    services.borrowing.return_book(payer.id, first.id)
    _pay_fines(services, payer.id)
    clock.advance(days=2)
    services.borrowing.return_book(debtor.id, second.id)

    revenue = services.analytics.revenue_stats()
    assert revenue["total_revenue"] == 6.0
    assert revenue["pending_fines"] == 8.0
    assert revenue["fines_by_month"] == [{"month": "March", "year": 2026, "amount": 6.0}]
    assert revenue["collection_rate"] == round(6 / 14 * 100, 2)

    later = services.analytics.revenue_stats(start_date=datetime(2026, 4, 1, tzinfo=timezone.utc))
    assert later["total_revenue"] == 0.0
    assert later["pending_fines"] == 8.0

    with pytest.raises(ValidationError):
        services.analytics.revenue_stats(
            start_date=datetime(2026, 5, 1, tzinfo=timezone.utc),
            end_date=datetime(2026, 4, 1, tzinfo=timezone.utc),
        )


def test_completed_fine_payment_counts_as_revenue(services, member):
    payment = services.payments.create_payment(member.id, 5.0, TransactionType.FINE_PAYMENT)
    assert services.analytics.revenue_stats()["total_revenue"] == 0.0

    services.payments.update_status(payment.id, TransactionStatus.COMPLETED)
    revenue = services.analytics.revenue_stats()
    assert revenue["total_revenue"] == services.payments.get_stats()["total_collected"] == 5.0
    assert revenue["fines_by_month"] == [{"month": "March", "year": 2026, "amount": 5.0}]
    assert revenue["collection_rate"] == 100.0
    assert services.analytics.monthly_report(2026, 3)["total_fines_collected"] == 5.0

    deposit = services.payments.create_payment(member.id, 20.0, TransactionType.DEPOSIT)
    services.payments.update_status(deposit.id, TransactionStatus.COMPLETED)
    failed = services.payments.create_payment(member.id, 3.0, TransactionType.FINE_PAYMENT)
    services.payments.update_status(failed.id, TransactionStatus.FAILED)
    assert services.analytics.revenue_stats()["total_revenue"] == 5.0
