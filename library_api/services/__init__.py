"""Service layer of the library.

- users: member and administrator accounts
- auth: registration, login, bearer tokens
- catalog: books, authors, categories
- borrowing: loans, returns, fines
- payments: fine payments and deposits
- analytics: reports for administrators
"""

from typing import Optional

from ..config import Settings
from ..database import Database
from ..security import PasswordHasher, TokenManager
from .analytics import AnalyticsService
from .auth import AuthService
from .base import Clock, Page, Service
from .borrowing import BorrowService, calculate_fine
from .catalog import AuthorService, BookService, CategoryService
from .payments import PaymentService
from .users import UserService


class LibraryServices:
    """Every service wired to one database, one settings object and one clock."""

    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.settings = settings
        self.db = Database(settings.database_file, timeout=settings.database_timeout)
        self.db.initialize()

        self.hasher = PasswordHasher(settings.bcrypt_rounds)
        self.tokens = TokenManager(settings)

        self.users = UserService(self.db, settings, clock)
        self.auth = AuthService(self.users, self.hasher, self.tokens)
        self.books = BookService(self.db, settings, clock)
        self.authors = AuthorService(self.db, settings, clock)
        self.categories = CategoryService(self.db, settings, clock)
        self.borrowing = BorrowService(self.db, settings, clock)
        self.payments = PaymentService(self.db, settings, clock)
        self.analytics = AnalyticsService(self.db, settings, clock)


__all__ = [
    "AnalyticsService",
    "AuthService",
    "AuthorService",
    "BookService",
    "BorrowService",
    "CategoryService",
    "Clock",
    "LibraryServices",
    "Page",
    "PaymentService",
    "Service",
    "UserService",
    "calculate_fine",
]
