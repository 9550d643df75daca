"""Read-only reports over loans, users and fines."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ValidationError
from ..models import TransactionStatus, TransactionType, to_timestamp
from .base import Service

logger = logging.getLogger(__name__)


def month_window(year: int, month: int) -> Tuple[datetime, datetime]:
    """Half-open UTC window [first day of month, first day of next month)."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


class AnalyticsService(Service):

    def most_borrowed_books(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        _, limit, _ = self.paginate(1, limit)
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT b.id, b.title, b.isbn, b.available_copies,
                       COUNT(r.id) AS total_borrows,
                       COALESCE(SUM(CASE WHEN r.id IS NOT NULL AND r.return_date IS NULL
                                         THEN 1 ELSE 0 END), 0) AS currently_borrowed
                FROM books b
                LEFT JOIN borrow_records r ON r.book_id = b.id
                WHERE b.deleted_at IS NULL
                GROUP BY b.id
                ORDER BY total_borrows DESC, b.title COLLATE NOCASE
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "isbn": row["isbn"],
                "total_borrows": row["total_borrows"],
                "currently_borrowed": row["currently_borrowed"],
                "available_copies": row["available_copies"],
            }
            for row in rows
        ]

    def monthly_report(self, year: int, month: int) -> Dict[str, Any]:
        if not 2000 <= year <= 2100 or not 1 <= month <= 12:
            raise ValidationError(
                "Invalid report period",
                [{"field": "year/month", "message": "year must be 2000-2100 and month 1-12"}],
            )
        start, end = month_window(year, month)
        window = (to_timestamp(start), to_timestamp(end))

        with self.db.connection() as conn:
            total_borrows = conn.execute(
                "SELECT COUNT(*) FROM borrow_records WHERE borrow_date >= ? AND borrow_date < ?", window
            ).fetchone()[0]
            returns = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN return_date > due_date THEN 1 ELSE 0 END), 0) AS overdue
                FROM borrow_records WHERE return_date >= ? AND return_date < ?
                """,
                window,
            ).fetchone()
            fines_collected = conn.execute(
                """
                SELECT COALESCE(SUM(amount), 0) FROM transactions
                WHERE type = ? AND status = ? AND created_at >= ? AND created_at < ?
                """,
                (TransactionType.FINE_PAYMENT.value, TransactionStatus.COMPLETED.value, *window),
            ).fetchone()[0]
            new_members = conn.execute(
                "SELECT COUNT(*) FROM users WHERE deleted_at IS NULL AND created_at >= ? AND created_at < ?",
                window,
            ).fetchone()[0]

        logger.debug("Monthly report %d-%02d: %d borrows", year, month, total_borrows)
        return {
            "month": calendar.month_name[month],
            "year": year,
            "total_borrows": total_borrows,
            "total_returns": returns["total"],
            "total_fines_collected": round(fines_collected, 2),
            "overdue_books_count": returns["overdue"],
            "new_members_count": new_members,
        }

    def user_activity_stats(self, limit: Optional[int] = None) -> Dict[str, Any]:
        _, limit, _ = self.paginate(1, limit)
        with self.db.connection() as conn:
            counts = conn.execute(
                """
                SELECT COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0) AS active,
                       COALESCE(SUM(CASE WHEN is_active = 0 THEN 1 ELSE 0 END), 0) AS inactive
                FROM users WHERE deleted_at IS NULL
                """
            ).fetchone()
            rows = conn.execute(
                """
                SELECT u.id, u.email, u.first_name, u.last_name, COUNT(r.id) AS borrow_count
                FROM users u
                LEFT JOIN borrow_records r ON r.user_id = u.id
                WHERE u.deleted_at IS NULL
                GROUP BY u.id
                ORDER BY borrow_count DESC, u.email
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return {
            "active_users": counts["active"],
            "inactive_users": counts["inactive"],
            "top_borrowers": [
                {
                    "user": {
                        "id": row["id"],
                        "email": row["email"],
                        "first_name": row["first_name"],
                        "last_name": row["last_name"],
                    },
                    "borrow_count": row["borrow_count"],
                }
                for row in rows
            ],
        }

    def revenue_stats(
        self, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Collected versus outstanding fines, optionally within [start_date, end_date].

        Completed FINE_PAYMENT transactions count as revenue; fines still
        PENDING count as outstanding.
        """
        if start_date and end_date and to_timestamp(start_date) > to_timestamp(end_date):
            raise ValidationError("start_date must not be after end_date")

        clauses = ["type = ?", "status = ?"]
        period: List[Any] = []
        if start_date is not None:
            clauses.append("created_at >= ?")
            period.append(to_timestamp(start_date))
        if end_date is not None:
            clauses.append("created_at <= ?")
            period.append(to_timestamp(end_date))
        where = " WHERE " + " AND ".join(clauses)
        paid = [TransactionType.FINE_PAYMENT.value, TransactionStatus.COMPLETED.value, *period]
        owed = [TransactionType.FINE.value, TransactionStatus.PENDING.value, *period]

        with self.db.connection() as conn:
            collected = conn.execute(f"SELECT COALESCE(SUM(amount), 0) FROM transactions {where}", paid).fetchone()[0]
            pending = conn.execute(f"SELECT COALESCE(SUM(amount), 0) FROM transactions {where}", owed).fetchone()[0]
            monthly = conn.execute(
                f"""
                SELECT substr(created_at, 1, 7) AS period, SUM(amount) AS amount
                FROM transactions {where}
                GROUP BY period ORDER BY period
                """,
                paid,
            ).fetchall()

        collected = round(collected, 2)
        pending = round(pending, 2)
        outstanding = collected + pending
        fines_by_month = []
        for row in monthly:
            year, month = (int(part) for part in row["period"].split("-"))
            fines_by_month.append({
                "month": calendar.month_name[month],
                "year": year,
                "amount": round(row["amount"], 2),
            })
        return {
            "total_revenue": collected,
            "pending_fines": pending,
            "fines_by_month": fines_by_month,
            "collection_rate": round(collected / outstanding * 100, 2) if outstanding > 0 else 0.0,
        }
