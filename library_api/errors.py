"""Exceptions raised by the library services.

Every error carries the HTTP status it maps to; the API layer is the only
place that turns them into responses.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LibraryError(Exception):
    """Base class for expected, client-facing failures."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(LibraryError):
    status_code = 404


class DuplicateError(LibraryError):
    pass


class VerificationRequiredError(LibraryError):
    pass


class AccountDisabledError(LibraryError):
    pass


class BorrowLimitExceededError(LibraryError):
    pass


class NoCopiesAvailableError(LibraryError):
    pass


class AlreadyBorrowedError(LibraryError):
    pass


class AuthenticationError(LibraryError):
    status_code = 401


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class PermissionDeniedError(LibraryError):
    status_code = 403
