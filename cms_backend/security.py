"""
Request authentication dependencies.

A session token is accepted from the ``Authorization: Bearer`` header or, for
browser clients, from the ``session`` cookie.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cms_backend.auth import SESSION_COOKIE, AuthService
from cms_backend.db import User, UserRole
from cms_backend.dependencies import get_auth_service
from cms_backend.errors import AuthError, PermissionDeniedError

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer(auto_error=False)


def extract_token(
    request: Request, credentials: Optional[HTTPAuthorizationCredentials]
) -> Optional[str]:
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(SESSION_COOKIE) or None


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    token = extract_token(request, credentials)
    if not token:
        logger.warning("Missing session token on %s", request.url.path)
        raise AuthError("No authentication token provided")
    try:
        return auth.verify_session_token(token)
    except AuthError as exc:
        logger.warning("Rejected session token on %s: %s", request.url.path, exc)
        raise


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.get_role() != UserRole.ADMIN:
        raise PermissionDeniedError("Admin access required")
    return user
