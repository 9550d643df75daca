"""Request bodies accepted by the HTTP API."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import TransactionStatus, TransactionType
from .utils.validators import ISBNValidator, TextValidator


def _check_email(value: str) -> str:
    if not TextValidator.validate_email(value):
        raise ValueError("Invalid email address")
    return TextValidator.normalize_email(value)


def _check_name(value: str) -> str:
    value = TextValidator.sanitize_text(value)
    if not TextValidator.validate_name(value):
        raise ValueError("Must be at least 2 characters and contain letters")
    return value


# --- Auth ---
class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=6, max_length=128)
    first_name: str
    last_name: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _check_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _names(cls, value: str) -> str:
        return _check_name(value)


class RegisterAdminRequest(RegisterRequest):
    registration_code: str = Field(min_length=1)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _check_email(value)


# --- Users ---
class UserUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: Optional[bool] = None
    is_verified: Optional[bool] = None

    @field_validator("first_name", "last_name")
    @classmethod
    def _names(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_name(value)


class ToggleStatusRequest(BaseModel):
    is_active: bool


# --- Catalog ---
class BookCreate(BaseModel):
    isbn: str
    title: str = Field(min_length=1, max_length=500)
    total_copies: int = Field(ge=1)
    author_ids: List[str] = Field(min_length=1)
    category_ids: List[str] = Field(min_length=1)

    @field_validator("isbn")
    @classmethod
    def _isbn(cls, value: str) -> str:
        if not ISBNValidator.is_valid_isbn(value):
            raise ValueError("Invalid ISBN format")
        return ISBNValidator.normalize_isbn(value)


class BookUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    total_copies: Optional[int] = Field(default=None, ge=1)
    author_ids: Optional[List[str]] = Field(default=None, min_length=1)
    category_ids: Optional[List[str]] = Field(default=None, min_length=1)


class NameRequest(BaseModel):
    """Body for creating or renaming an author or a category."""

    name: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        return _check_name(value)


# --- Borrowing ---
class BorrowRequest(BaseModel):
    book_id: str = Field(min_length=1)


# --- Payments ---
class PaymentCreate(BaseModel):
    amount: float = Field(gt=0)
    type: TransactionType

    @field_validator("type")
    @classmethod
    def _payment_type(cls, value: TransactionType) -> TransactionType:
        if value not in (TransactionType.FINE_PAYMENT, TransactionType.DEPOSIT):
            raise ValueError("Payment type must be FINE_PAYMENT or DEPOSIT")
        return value


class PaymentStatusUpdate(BaseModel):
    status: TransactionStatus

    @field_validator("status")
    @classmethod
    def _final_status(cls, value: TransactionStatus) -> TransactionStatus:
        if value == TransactionStatus.PENDING:
            raise ValueError("Status must be COMPLETED or FAILED")
        return value
