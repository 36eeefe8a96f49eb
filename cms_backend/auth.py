"""
Passwordless session handling.

Sessions are HS256 JWTs carried either as a bearer token or in the ``session``
cookie. Every token has a ``jti`` so logout can revoke it before it expires.
The Google OAuth code exchange is stubbed: a deterministic identity is derived
from the authorization code.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from cms_backend.clock import Clock, SystemClock
from cms_backend.config import Settings
from cms_backend.db import DbClient, User, UserRole
from cms_backend.errors import AuthError

logger = logging.getLogger(__name__)

SESSION_COOKIE = "session"


@dataclass(frozen=True)
class Claims:
    sub: str
    exp: int
    jti: str
    iat: int


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: User
    expires_at: int

    def as_dict(self) -> dict:
        return {
            "token": self.token,
            "user": self.user.as_dict(),
            "expires_at": self.expires_at,
        }


class AuthService:
    def __init__(self, db: DbClient, settings: Settings, clock: Optional[Clock] = None):
        self.db = db
        self.settings = settings
        self.clock = clock or SystemClock()

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(days=self.settings.session_days)

    def create_jwt_token(self, user_id: str) -> str:
        now = self.clock.now()
        claims = {
            "sub": user_id,
            "exp": int((now + self.session_ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
        }
        return jwt.encode(
            claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm
        )

    def verify_jwt_token(self, token: str) -> Claims:
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"verify_exp": False},
            )
            claims = Claims(
                sub=payload["sub"],
                exp=int(payload["exp"]),
                jti=payload["jti"],
                iat=int(payload["iat"]),
            )
        except (JWTError, KeyError, TypeError, ValueError):
            raise AuthError("Invalid token") from None

        # Expiry is checked against the injected clock, not the wall clock.
        if claims.exp <= int(self.clock.now().timestamp()):
            raise AuthError("Token has expired")
        if self.db.is_revoked(claims.jti):
            raise AuthError("Token has been revoked")
        return claims

    def revoke_token(self, token: str) -> None:
        claims = self.verify_jwt_token(token)
        self.db.add_revocation(
            claims.jti,
            claims.sub,
            datetime.fromtimestamp(claims.exp, tz=timezone.utc),
        )

    def verify_session_token(self, token: str) -> User:
        claims = self.verify_jwt_token(token)
        user = self.db.get_user(claims.sub)
        if not user:
            raise AuthError("User not found")
        if user.get_role() is None:
            raise AuthError("Invalid user role")
        return user

    def user_has_role(self, user_id: str, required_role: UserRole) -> bool:
        user = self.db.get_user(user_id)
        if not user:
            return False
        return user.get_role() == required_role

    def parse_user_role(self, role: str) -> UserRole:
        parsed = UserRole.parse(role)
        if parsed is None:
            raise AuthError(f"Invalid user role: {role}")
        return parsed

    def create_cookie_string(self, token: str) -> str:
        max_age = int(self.session_ttl.total_seconds())
        if self.settings.is_development:
            return f"{SESSION_COOKIE}={token}; Path=/; HttpOnly; SameSite=Lax; Max-Age={max_age}"
        return (
            f"{SESSION_COOKIE}={token}; Domain={self.settings.cookie_domain}; Path=/; "
            f"Secure; HttpOnly; SameSite=None; Max-Age={max_age}"
        )

    def create_logout_cookie_string(self) -> str:
        if self.settings.is_development:
            return f"{SESSION_COOKIE}=; Path=/; HttpOnly; SameSite=Lax; Max-Age=0"
        return (
            f"{SESSION_COOKIE}=; Domain={self.settings.cookie_domain}; Path=/; "
            "Secure; HttpOnly; SameSite=None; Max-Age=0"
        )

    def logout(self, token: Optional[str]) -> str:
        """Revoke ``token`` if it is still valid and return the clearing cookie."""
        if token:
            try:
                self.revoke_token(token)
            except AuthError as exc:
                logger.info("Logout with unusable token: %s", exc)
        return self.create_logout_cookie_string()

    def login(self, email: str) -> LoginResult:
        logger.info("Passwordless login attempt for email: %s", email)
        if not email.strip():
            raise AuthError("Email is required")
        raise AuthError(
            "Password-based login is deprecated. Please use Google OAuth for authentication."
        )

    def google_oauth_login(
        self, code: str, state: Optional[str] = None
    ) -> tuple[LoginResult, str]:
        """
        Sign a user in from a Google authorization code.

        The code is not exchanged with Google; the identity is derived from it.
        Users are matched by Google id, then by email (linking the Google id),
        and otherwise created as students.
        """
        if not code:
            raise AuthError("Authorization code is required")
        if state is not None:
            if not state:
                raise AuthError("Invalid state parameter")
            logger.info("OAuth state parameter received: %s", state)

        prefix = code[:8]
        logger.info("Processing Google OAuth login with code: %s", prefix)
        google_id = f"google_user_{prefix}"
        email = self.settings.oauth_stub_email

        user = self.db.get_user_by_google_id(google_id)
        if user is None:
            user = self.db.get_user_by_email(email)
            if user is not None:
                self.db.link_google_id(user.id, google_id)
                user.google_id = google_id
            else:
                user = self.db.create_user(
                    email,
                    UserRole.STUDENT,
                    google_id=google_id,
                    full_name="Test User",
                )

        token = self.create_jwt_token(user.id)
        expires_at = int((self.clock.now() + self.session_ttl).timestamp())
        result = LoginResult(token=token, user=user, expires_at=expires_at)
        return result, self.create_cookie_string(token)
