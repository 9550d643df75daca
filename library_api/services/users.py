from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Union

from ..errors import DuplicateError, NotFoundError, ValidationError
from ..models import Role, TransactionStatus, User, new_id, to_timestamp
from .base import Page, Service

logger = logging.getLogger(__name__)

_USER_SELECT = """
    SELECT u.*,
           (SELECT COUNT(*) FROM borrow_records r
             WHERE r.user_id = u.id AND r.return_date IS NULL) AS borrowed_books_count,
           (SELECT COALESCE(SUM(t.amount), 0) FROM transactions t
             WHERE t.user_id = u.id AND t.status = 'PENDING') AS total_fines
    FROM users u
"""


class UserService(Service):
    """Member and administrator accounts."""

    def get_user(self, user_id: str) -> User:
        with self.db.connection() as conn:
            row = conn.execute(_USER_SELECT + " WHERE u.id = ? AND u.deleted_at IS NULL", (user_id,)).fetchone()
        if row is None:
            raise NotFoundError("User not found")
        return User.from_row(row)

    def find_by_email(self, email: str) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute(
                _USER_SELECT + " WHERE u.email = ? AND u.deleted_at IS NULL",
                (email.strip().lower(),),
            ).fetchone()
        return User.from_row(row) if row else None

    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        role: Role = Role.MEMBER,
        is_verified: bool = False,
    ) -> User:
        email = email.strip().lower()
        stamp = to_timestamp(self.now())
        user_id = new_id()
        try:
            with self.db.transaction() as conn:
                existing = conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone()
                if existing:
                    raise DuplicateError("User already exists")
                conn.execute(
                    """
                    INSERT INTO users (id, email, password, first_name, last_name, role,
                                       is_active, is_verified, deleted_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 1, ?, NULL, ?, ?)
                    """,
                    (user_id, email, password_hash, first_name.strip(), last_name.strip(),
                     role.value, int(is_verified), stamp, stamp),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateError("User already exists") from exc
        logger.info("Created %s account %s", role.value, user_id)
        return self.get_user(user_id)

    def list_users(
        self,
        search: Optional[str] = None,
        role: Optional[Union[Role, str]] = None,
        is_active: Optional[bool] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Page[User]:
        page, limit, offset = self.paginate(page, limit)
        clauses: List[str] = ["u.deleted_at IS NULL"]
        params: List[Any] = []
        if search:
            like = f"%{search.strip()}%"
            clauses.append("(u.email LIKE ? OR u.first_name LIKE ? OR u.last_name LIKE ?)")
            params.extend([like, like, like])
        if role is not None:
            clauses.append("u.role = ?")
            params.append(Role(role).value)
        if is_active is not None:
            clauses.append("u.is_active = ?")
            params.append(int(is_active))
        where = " WHERE " + " AND ".join(clauses)

        with self.db.connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM users u" + where, params).fetchone()[0]
            rows = conn.execute(
                _USER_SELECT + where + " ORDER BY u.created_at DESC, u.id LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return Page(items=[User.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def update_user(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_verified: Optional[bool] = None,
    ) -> User:
        """Update profile fields and flags. Fields left as ``None`` are kept."""
        changes: Dict[str, Any] = {}
        if first_name is not None:
            changes["first_name"] = first_name.strip()
        if last_name is not None:
            changes["last_name"] = last_name.strip()
        if is_active is not None:
            changes["is_active"] = int(is_active)
        if is_verified is not None:
            changes["is_verified"] = int(is_verified)
        if not changes:
            raise ValidationError("Nothing to update")

        changes["updated_at"] = to_timestamp(self.now())
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE users SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                [*changes.values(), user_id],
            )
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        logger.info("Updated user %s (%s)", user_id, ", ".join(sorted(changes)))
        return self.get_user(user_id)

    def set_active(self, user_id: str, is_active: bool) -> User:
        return self.update_user(user_id, is_active=is_active)

    def verify_user(self, user_id: str) -> User:
        return self.update_user(user_id, is_verified=True)

    def delete_user(self, user_id: str) -> None:
        """Soft delete: the account disappears from every default query."""
        stamp = to_timestamp(self.now())
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (stamp, stamp, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        logger.info("Soft-deleted user %s", user_id)

    def borrowing_stats(self, user_id: str) -> Dict[str, Any]:
        self.get_user(user_id)
        now = to_timestamp(self.now())
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS currently_borrowed,
                       COALESCE(SUM(CASE WHEN due_date < ? THEN 1 ELSE 0 END), 0) AS overdue_books_count
                FROM borrow_records
                WHERE user_id = ? AND return_date IS NULL
                """,
                (now, user_id),
            ).fetchone()
            pending = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM transactions WHERE user_id = ? AND status = ?",
                (user_id, TransactionStatus.PENDING.value),
            ).fetchone()[0]
        return {
            "currently_borrowed": row["currently_borrowed"],
            "overdue_books_count": row["overdue_books_count"],
            "total_fines_pending": round(pending, 2),
        }
