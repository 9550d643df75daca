"""Borrowing engine: loans, returns, fines and borrowing history."""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional, Union

from ..errors import (
    AccountDisabledError,
    AlreadyBorrowedError,
    BorrowLimitExceededError,
    LibraryError,
    NoCopiesAvailableError,
    NotFoundError,
    ValidationError,
    VerificationRequiredError,
)
from ..models import (
    BorrowRecord,
    BorrowStatus,
    FineCalculation,
    TransactionStatus,
    TransactionType,
    new_id,
    to_timestamp,
)
from .base import Page, Service

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

_RECORD_SELECT = """
    SELECT r.id, r.user_id, r.book_id, r.borrow_date, r.due_date, r.return_date,
           b.title AS book_title, b.isbn AS book_isbn
    FROM borrow_records r
    JOIN books b ON b.id = r.book_id
"""


def calculate_fine(due_date: datetime, return_date: datetime, fine_per_day: float) -> FineCalculation:
    """Fine for returning on ``return_date`` a loan due on ``due_date``.

    Any started day past the due date counts as a full overdue day. There is
    no upper bound on the amount.
    """
    if return_date <= due_date:
        return FineCalculation(amount=0.0, days_overdue=0, due_date=due_date, return_date=return_date)

    days_overdue = math.ceil((return_date - due_date).total_seconds() / SECONDS_PER_DAY)
    amount = round(days_overdue * fine_per_day, 2)
    return FineCalculation(amount=amount, days_overdue=days_overdue, due_date=due_date, return_date=return_date)


class BorrowService(Service):
    """Lends and takes back books while keeping availability counts exact."""

    # ------------------------- Borrow ------------------------- #
    def borrow_book(self, user_id: str, book_id: str) -> BorrowRecord:
        """Lend one copy of ``book_id`` to ``user_id``.

        Eligibility checks and both writes share one transaction, so the new
        record and the decremented copy count are committed together or not
        at all.
        """
        borrow_date = self.now()
        due_date = borrow_date + timedelta(days=self.settings.borrow_duration_days)
        try:
            with self.db.transaction() as conn:
                self._check_user_can_borrow(conn, user_id)
                book = self._get_borrowable_book(conn, book_id)
                record = BorrowRecord(
                    id=new_id(),
                    user_id=user_id,
                    book_id=book_id,
                    borrow_date=borrow_date,
                    due_date=due_date,
                    book_title=book["title"],
                    book_isbn=book["isbn"],
                    is_overdue=False,
                )
                self._insert_record(conn, record)
                self._take_copy(conn, book_id, borrow_date)
        except LibraryError as exc:
            logger.warning("Borrow rejected (user=%s, book=%s): %s", user_id, book_id, exc.message)
            raise

        logger.info("User %s borrowed book %s, due %s", user_id, book_id, due_date.date().isoformat())
        return record

    def _check_user_can_borrow(self, conn: sqlite3.Connection, user_id: str) -> None:
        user = conn.execute(
            "SELECT id, is_active, is_verified FROM users WHERE id = ? AND deleted_at IS NULL",
            (user_id,),
        ).fetchone()
        if user is None:
            raise NotFoundError("User not found")
        if not user["is_verified"]:
            raise VerificationRequiredError("Email verification required before borrowing books")
        if not user["is_active"]:
            raise AccountDisabledError("User account is disabled")

        active = conn.execute(
            "SELECT COUNT(*) FROM borrow_records WHERE user_id = ? AND return_date IS NULL",
            (user_id,),
        ).fetchone()[0]
        limit = self.settings.borrow_limit
        if active >= limit:
            raise BorrowLimitExceededError(f"Cannot borrow more than {limit} books at a time")

    def _get_borrowable_book(self, conn: sqlite3.Connection, book_id: str) -> sqlite3.Row:
        book = conn.execute(
            "SELECT id, title, isbn, available_copies FROM books WHERE id = ? AND deleted_at IS NULL",
            (book_id,),
        ).fetchone()
        if book is None:
            raise NotFoundError("Book not found")
        if book["available_copies"] <= 0:
            raise NoCopiesAvailableError("No copies available for borrowing")
        return book

    def _insert_record(self, conn: sqlite3.Connection, record: BorrowRecord) -> None:
        duplicate = conn.execute(
            "SELECT 1 FROM borrow_records WHERE user_id = ? AND book_id = ? AND return_date IS NULL",
            (record.user_id, record.book_id),
        ).fetchone()
        if duplicate:
            raise AlreadyBorrowedError("You already have an active loan for this book")
        try:
            conn.execute(
                """
                INSERT INTO borrow_records (id, user_id, book_id, borrow_date, due_date, return_date, created_at)
                VALUES (?, ?, ?, ?, ?, NULL, ?)
                """,
                (
                    record.id,
                    record.user_id,
                    record.book_id,
                    to_timestamp(record.borrow_date),
                    to_timestamp(record.due_date),
                    to_timestamp(record.borrow_date),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise AlreadyBorrowedError("You already have an active loan for this book") from exc

    def _take_copy(self, conn: sqlite3.Connection, book_id: str, when: datetime) -> None:
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies - 1, updated_at = ?
            WHERE id = ? AND available_copies > 0
            """,
            (to_timestamp(when), book_id),
        )
        if cursor.rowcount != 1:
            raise NoCopiesAvailableError("No copies available for borrowing")

    # ------------------------- Return ------------------------- #
    def return_book(self, user_id: str, book_id: str) -> BorrowRecord:
        """Close the user's active loan of ``book_id`` and charge any fine.

        Closing the record, restocking the copy and recording the fine are a
        single transaction.
        """
        return_date = self.now()
        with self.db.transaction() as conn:
            row = conn.execute(
                _RECORD_SELECT + " WHERE r.user_id = ? AND r.book_id = ? AND r.return_date IS NULL",
                (user_id, book_id),
            ).fetchone()
            if row is None:
                logger.warning("Return rejected (user=%s, book=%s): no active loan", user_id, book_id)
                raise NotFoundError("No active borrow record found for this book")

            record = BorrowRecord.from_row(row)
            fine = calculate_fine(record.due_date, return_date, self.settings.fine_per_day)

            self._mark_returned(conn, record.id, return_date)
            self._restock(conn, book_id, return_date)
            if fine.amount > 0:
                self._record_fine(conn, user_id, fine.amount, return_date)

        record.return_date = return_date
        record.fine = fine.amount
        record.days_overdue = fine.days_overdue
        record.is_overdue = fine.amount > 0
        logger.info("User %s returned book %s (days overdue: %d)", user_id, book_id, fine.days_overdue)
        if fine.amount > 0:
            logger.info("Fine of %.2f recorded for user %s", fine.amount, user_id)
        return record

    def _mark_returned(self, conn: sqlite3.Connection, record_id: str, when: datetime) -> None:
        conn.execute(
            "UPDATE borrow_records SET return_date = ? WHERE id = ? AND return_date IS NULL",
            (to_timestamp(when), record_id),
        )

    def _restock(self, conn: sqlite3.Connection, book_id: str, when: datetime) -> None:
        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies + 1, updated_at = ?
            WHERE id = ? AND available_copies < total_copies
            """,
            (to_timestamp(when), book_id),
        )
        if cursor.rowcount != 1:
            logger.warning("Book %s already has all copies on the shelf; count left unchanged", book_id)

    def _record_fine(self, conn: sqlite3.Connection, user_id: str, amount: float, when: datetime) -> None:
        stamp = to_timestamp(when)
        conn.execute(
            """
            INSERT INTO transactions (id, user_id, amount, type, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (new_id(), user_id, amount, TransactionType.FINE.value, TransactionStatus.PENDING.value, stamp, stamp),
        )

    # ------------------------- History ------------------------- #
    def get_history(
        self,
        user_id: Optional[str] = None,
        status: Optional[Union[BorrowStatus, str]] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[BorrowRecord]:
        """Borrowing records, newest first, optionally filtered by user and status."""
        page, limit, offset = self.paginate(page, limit)
        now = self.now()

        clauses: List[str] = []
        params: list = []
        if user_id:
            clauses.append("r.user_id = ?")
            params.append(user_id)
        if status is not None:
            try:
                status = BorrowStatus(status)
            except ValueError as exc:
                raise ValidationError(f"Unknown borrow status: {status}") from exc
            if status == BorrowStatus.ACTIVE:
                clauses.append("r.return_date IS NULL")
            elif status == BorrowStatus.RETURNED:
                clauses.append("r.return_date IS NOT NULL")
            else:
                clauses.append("r.return_date IS NULL AND r.due_date < ?")
                params.append(to_timestamp(now))
        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""

        with self.db.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM borrow_records r" + where, params).fetchone()[0]
            rows = conn.execute(
                _RECORD_SELECT + where + " ORDER BY r.borrow_date DESC, r.id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()

        records = [self._annotate(BorrowRecord.from_row(row), now) for row in rows]
        return Page(items=records, total=total, page=page, limit=limit)

    def list_overdue(self, limit: Optional[int] = None) -> List[BorrowRecord]:
        limit = limit or self.settings.max_page_size
        return self.get_history(status=BorrowStatus.OVERDUE, limit=limit).items

    def _annotate(self, record: BorrowRecord, now: datetime) -> BorrowRecord:
        if record.return_date is None:
            record.is_overdue = record.due_date < now
        else:
            fine = calculate_fine(record.due_date, record.return_date, self.settings.fine_per_day)
            record.is_overdue = False
            record.fine = fine.amount
            record.days_overdue = fine.days_overdue
        return record
