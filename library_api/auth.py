"""Registration, login and bearer-token handling.

Passwords are hashed with passlib; tokens are HS256 JWTs signed with
python-jose and carry ``sub`` (the user id), ``email``, ``name``, ``jti``,
``iss``, ``aud`` and ``exp``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from library_api.config import Settings
from library_api.exceptions import AuthenticationError, DuplicateError
from library_api.models import User, utcnow
from library_api.stores import UserStore

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class AuthResult:
    def __init__(self, token: str, user: User, expires_at: datetime) -> None:
        self.token = token
        self.user = user
        self.expires_at = expires_at

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "token_type": "bearer",
            "email": self.user.email,
            "full_name": self.user.full_name,
            "expires_at": self.expires_at.isoformat(),
        }


class AuthService:

    def __init__(self, users: UserStore, settings: Settings) -> None:
        self.users = users
        self.settings = settings

    def user_exists(self, email: str) -> bool:
        return self.users.get_by_email(email) is not None

    def register(self, first_name: str, last_name: str, email: str, password: str) -> AuthResult:
        """Create an account and return a token for it; ``DuplicateError`` if the email is taken."""
        if self.user_exists(email):
            raise DuplicateError("User with this email already exists")
        user = self.users.save_user(User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            password_hash=hash_password(password),
        ))
        logger.info("Registered user %s", user.id)
        return self._issue_token(user)

    def login(self, email: str, password: str) -> AuthResult:
        user = self.users.get_by_email(email)
        if user is None or not user.is_active or not verify_password(password, user.password_hash):
            raise AuthenticationError("Invalid email or password")
        user.last_login_at = utcnow()
        self.users.save_user(user)
        return self._issue_token(user)

    def create_access_token(self, user: User) -> tuple[str, datetime]:
        expires_at = utcnow() + timedelta(minutes=self.settings.jwt_expiration_minutes)
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "name": user.full_name,
            "jti": str(uuid.uuid4()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)
        return token, expires_at

    def get_user_by_token(self, token: str) -> Optional[User]:
        """Decode a bearer token and load its active user, or None when anything is off."""
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                audience=self.settings.jwt_audience,
                issuer=self.settings.jwt_issuer,
            )
            user_id = int(payload["sub"])
        except (JWTError, KeyError, ValueError):
            return None
        user = self.users.get_user(user_id)
        if user is None or not user.is_active:
            return None
        return user

    def _issue_token(self, user: User) -> AuthResult:
        token, expires_at = self.create_access_token(user)
        return AuthResult(token=token, user=user, expires_at=expires_at)
