from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..errors import NotFoundError, ValidationError
from ..models import Transaction, TransactionStatus, TransactionType, new_id, to_timestamp
from .base import Page, Service

logger = logging.getLogger(__name__)

_TRANSACTION_SELECT = """
    SELECT t.*, u.email AS user_email, u.first_name AS user_first_name, u.last_name AS user_last_name
    FROM transactions t
    JOIN users u ON u.id = t.user_id
"""

PAYMENT_TYPES = (TransactionType.FINE_PAYMENT, TransactionType.DEPOSIT)
FINAL_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


class PaymentService(Service):
    """Fine payments, deposits and the status lifecycle of every transaction."""

    def create_payment(
        self, user_id: str, amount: float, type: Union[TransactionType, str]
    ) -> Transaction:
        try:
            payment_type = TransactionType(type)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment type: {type}") from exc
        if payment_type not in PAYMENT_TYPES:
            raise ValidationError("Payment type must be FINE_PAYMENT or DEPOSIT")
        if amount <= 0:
            raise ValidationError("Amount must be positive", [{"field": "amount", "message": "Must be greater than 0"}])

        payment_id = new_id()
        stamp = to_timestamp(self.now())
        with self.db.transaction() as conn:
            user = conn.execute(
                "SELECT 1 FROM users WHERE id = ? AND deleted_at IS NULL", (user_id,)
            ).fetchone()
            if user is None:
                raise NotFoundError("User not found")
            conn.execute(
                """
                INSERT INTO transactions (id, user_id, amount, type, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (payment_id, user_id, round(amount, 2), payment_type.value,
                 TransactionStatus.PENDING.value, stamp, stamp),
            )
        logger.info("Created %s payment %s for user %s", payment_type.value, payment_id, user_id)
        return self.get_payment(payment_id)

    def update_status(self, payment_id: str, status: Union[TransactionStatus, str]) -> Transaction:
        """Settle a pending transaction as COMPLETED or FAILED."""
        try:
            new_status = TransactionStatus(status)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment status: {status}") from exc
        if new_status not in FINAL_STATUSES:
            raise ValidationError("Status must be COMPLETED or FAILED")

        with self.db.transaction() as conn:
            row = conn.execute("SELECT status FROM transactions WHERE id = ?", (payment_id,)).fetchone()
            if row is None:
                raise NotFoundError("Payment not found")
            if row["status"] != TransactionStatus.PENDING.value:
                raise ValidationError(f"Only pending payments can change status (current: {row['status']})")
            conn.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE id = ?",
                (new_status.value, to_timestamp(self.now()), payment_id),
            )
        logger.info("Payment %s marked %s", payment_id, new_status.value)
        return self.get_payment(payment_id)

    def get_payment(self, payment_id: str) -> Transaction:
        with self.db.connection() as conn:
            row = conn.execute(_TRANSACTION_SELECT + " WHERE t.id = ?", (payment_id,)).fetchone()
        if row is None:
            raise NotFoundError("Payment not found")
        return Transaction.from_row(row)

    def get_invoice(self, payment_id: str) -> Transaction:
        return self.get_payment(payment_id)

    def get_history(
        self,
        user_id: Optional[str] = None,
        type: Optional[Union[TransactionType, str]] = None,
        status: Optional[Union[TransactionStatus, str]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[Transaction]:
        page, limit, offset = self.paginate(page, limit)
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("t.user_id = ?")
            params.append(user_id)
        if type is not None:
            clauses.append("t.type = ?")
            params.append(TransactionType(type).value)
        if status is not None:
            clauses.append("t.status = ?")
            params.append(TransactionStatus(status).value)
        if start_date is not None:
            clauses.append("t.created_at >= ?")
            params.append(to_timestamp(start_date))
        if end_date is not None:
            clauses.append("t.created_at <= ?")
            params.append(to_timestamp(end_date))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM transactions t" + where, params).fetchone()[0]
            rows = conn.execute(
                _TRANSACTION_SELECT + where + " ORDER BY t.created_at DESC, t.id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return Page(items=[Transaction.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def get_stats(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        where, params = "", []
        if user_id:
            where = " WHERE user_id = ?"
            params.append(user_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n, COALESCE(SUM(amount), 0) AS amount FROM transactions"
                + where + " GROUP BY status",
                params,
            ).fetchall()
        by_status = {row["status"]: row for row in rows}

        def _amount(status: TransactionStatus) -> float:
            row = by_status.get(status.value)
            return round(row["amount"], 2) if row else 0.0

        def _count(status: TransactionStatus) -> int:
            row = by_status.get(status.value)
            return row["n"] if row else 0

        return {
            "total_collected": _amount(TransactionStatus.COMPLETED),
            "pending_amount": _amount(TransactionStatus.PENDING),
            "failed_payments": _count(TransactionStatus.FAILED),
            "successful_payments": _count(TransactionStatus.COMPLETED),
        }
