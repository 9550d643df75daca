from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Role(str, Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class TransactionType(str, Enum):
    FINE = "FINE"
    FINE_PAYMENT = "FINE_PAYMENT"
    DEPOSIT = "DEPOSIT"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class BorrowStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


# ------------------------- Helpers ------------------------- #
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime for storage.

    Always UTC with microseconds so that stored values sort chronologically
    as plain text.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _column(row: sqlite3.Row, name: str, default: Any = None) -> Any:
    return row[name] if name in row.keys() else default


# ------------------------- Entities ------------------------- #
@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role
    is_active: bool
    is_verified: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    password_hash: Optional[str] = field(default=None, repr=False)
    # Aggregates filled in by list/detail queries
    borrowed_books_count: int = 0
    total_fines: float = 0.0

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @staticmethod
    def from_row(row: sqlite3.Row) -> "User":
        return User(
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=Role(row["role"]),
            is_active=bool(row["is_active"]),
            is_verified=bool(row["is_verified"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
            password_hash=_column(row, "password"),
            borrowed_books_count=_column(row, "borrowed_books_count", 0) or 0,
            total_fines=round(_column(row, "total_fines", 0.0) or 0.0, 2),
        )

    def to_dict(self) -> Dict[str, Any]:
        # The password hash never leaves the service layer
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role.value,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "borrowed_books_count": self.borrowed_books_count,
            "total_fines": self.total_fines,
        }


@dataclass
class Author:
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    book_count: int = 0

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Author":
        return Author(
            id=row["id"],
            name=row["name"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            book_count=_column(row, "book_count", 0) or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "book_count": self.book_count,
        }


@dataclass
class Category(Author):
    """Categories share the author shape: a name plus a book count."""

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Category":
        return Category(
            id=row["id"],
            name=row["name"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            book_count=_column(row, "book_count", 0) or 0,
        )


@dataclass
class Book:
    id: str
    isbn: str
    title: str
    total_copies: int
    available_copies: int
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    authors: List[Dict[str, str]] = field(default_factory=list)
    categories: List[Dict[str, str]] = field(default_factory=list)

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=row["id"],
            isbn=row["isbn"],
            title=row["title"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "authors": list(self.authors),
            "categories": list(self.categories),
        }


@dataclass(frozen=True)
class FineCalculation:
    amount: float
    days_overdue: int
    due_date: datetime
    return_date: datetime


@dataclass
class BorrowRecord:
    id: str
    user_id: str
    book_id: str
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    book_title: Optional[str] = None
    book_isbn: Optional[str] = None
    is_overdue: bool = False
    fine: Optional[float] = None
    days_overdue: Optional[int] = None

    @staticmethod
    def from_row(row: sqlite3.Row) -> "BorrowRecord":
        return BorrowRecord(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrow_date=parse_timestamp(row["borrow_date"]),
            due_date=parse_timestamp(row["due_date"]),
            return_date=parse_timestamp(row["return_date"]),
            book_title=_column(row, "book_title"),
            book_isbn=_column(row, "book_isbn"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": self.borrow_date,
            "due_date": self.due_date,
            "return_date": self.return_date,
            "book": {"title": self.book_title, "isbn": self.book_isbn},
            "is_overdue": self.is_overdue,
        }
        if self.fine is not None:
            data["fine"] = self.fine
            data["days_overdue"] = self.days_overdue
        return data


@dataclass
class Transaction:
    id: str
    user_id: str
    amount: float
    type: TransactionType
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime
    user: Optional[Dict[str, str]] = None

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Transaction":
        user = None
        if _column(row, "user_email") is not None:
            user = {
                "email": row["user_email"],
                "first_name": row["user_first_name"],
                "last_name": row["user_last_name"],
            }
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            amount=row["amount"],
            type=TransactionType(row["type"]),
            status=TransactionStatus(row["status"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            user=user,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "amount": self.amount,
            "type": self.type.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.user is not None:
            data["user"] = dict(self.user)
        return data
