from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from ..errors import (
    AccountDisabledError,
    AuthenticationError,
    InvalidCredentialsError,
    NotFoundError,
    PermissionDeniedError,
)
from ..models import Role, User
from ..security import PasswordHasher, TokenManager
from .base import Service
from .users import UserService

logger = logging.getLogger(__name__)


class AuthService(Service):
    """Registration, login and bearer-token authentication."""

    def __init__(self, users: UserService, hasher: PasswordHasher, tokens: TokenManager) -> None:
        super().__init__(users.db, users.settings, users.clock)
        self.users = users
        self.hasher = hasher
        self.tokens = tokens

    def register(self, email: str, password: str, first_name: str, last_name: str) -> Dict[str, Any]:
        """Self-registration of a member account."""
        user = self.users.create_user(
            email=email,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=Role.MEMBER,
            is_verified=not self.settings.require_email_verification,
        )
        return self._auth_response(user)

    def register_admin(
        self, email: str, password: str, first_name: str, last_name: str, registration_code: str
    ) -> Dict[str, Any]:
        """Privileged registration, gated by the configured registration code."""
        expected = self.settings.admin_registration_code
        if not expected or not hmac.compare_digest(registration_code.encode(), expected.encode()):
            logger.warning("Rejected admin registration for %s: bad registration code", email)
            raise PermissionDeniedError("Invalid registration code")
        user = self.create_admin(email, password, first_name, last_name)
        return self._auth_response(user)

    def create_admin(self, email: str, password: str, first_name: str, last_name: str) -> User:
        return self.users.create_user(
            email=email,
            password_hash=self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=Role.ADMIN,
            is_verified=True,
        )

    def login(self, email: str, password: str) -> Dict[str, Any]:
        user = self.users.find_by_email(email)
        if user is None:
            raise InvalidCredentialsError()
        if not user.is_active:
            raise AccountDisabledError("User account is disabled")
        if not self.hasher.verify(password, user.password_hash):
            raise InvalidCredentialsError()
        logger.info("User %s logged in", user.id)
        return self._auth_response(user)

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a bearer token to an active, non-deleted user."""
        if not token:
            raise AuthenticationError("Unauthorized")
        payload = self.tokens.decode_access_token(token)
        try:
            user = self.users.get_user(payload.user_id)
        except NotFoundError as exc:
            raise AuthenticationError("User not found or inactive") from exc
        if not user.is_active:
            raise AuthenticationError("User not found or inactive")
        return user

    def _auth_response(self, user: User) -> Dict[str, Any]:
        return {"token": self.tokens.create_access_token(user), "user": user.to_dict()}
