"""Password hashing and access tokens."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from .config import Settings
from .errors import AuthenticationError
from .models import Role, User, utcnow


@dataclass(frozen=True)
class TokenPayload:
    user_id: str
    email: str
    role: Role


class PasswordHasher:
    def __init__(self, rounds: int = 12) -> None:
        self._context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        return self._context.hash(password)

    def verify(self, password: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        return self._context.verify(password, hashed)


class TokenManager:
    """Issues and verifies signed bearer tokens carrying {user_id, email, role}."""

    def __init__(self, settings: Settings) -> None:
        self.secret_key = settings.jwt_secret_key
        self.algorithm = settings.jwt_algorithm
        self.expiration = timedelta(minutes=settings.jwt_expiration_minutes)

    def create_access_token(self, user: User, now: Optional[datetime] = None) -> str:
        issued_at = now or utcnow()
        claims = {
            "sub": user.id,
            "email": user.email,
            "role": user.role.value,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.expiration).timestamp()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def decode_access_token(self, token: str) -> TokenPayload:
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise AuthenticationError("Token has expired") from exc
        except JWTError as exc:
            raise AuthenticationError("Invalid token") from exc

        user_id = claims.get("sub")
        role = claims.get("role")
        if not user_id or role not in (Role.MEMBER.value, Role.ADMIN.value):
            raise AuthenticationError("Invalid token")
        return TokenPayload(user_id=user_id, email=claims.get("email", ""), role=Role(role))
