#!/usr/bin/env python3
"""
Sentinel Dispatch - Optional Operator Authentication

Identifies the operator behind alert and drone actions so audit events
carry a name. Disabled by default - enable with AUTH_ENABLED=true and
JWT_ACCESS_SECRET in .env.

Tokens are issued by the operator console's login service; this module
only verifies them:
- HS256 JWT from the "access_token" cookie or an "Authorization: Bearer" header
- operator name taken from the "sub" claim (falling back to "uid")
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from settings import Settings

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
COOKIE_NAME = "access_token"
ANONYMOUS = "anonymous"


def is_auth_enabled(settings: Settings) -> bool:
    """Check if authentication is enabled and properly configured."""
    if not settings.auth_enabled:
        return False
    if not settings.jwt_secret:
        logger.warning("AUTH_ENABLED=true but JWT_ACCESS_SECRET not set - auth disabled")
        return False
    return True


def verify_token(token: str, secret: str) -> Optional[str]:
    """Verify a JWT token and return the operator name if valid."""
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.debug(f"JWT verification failed: {e}")
        return None
    operator = payload.get("sub") or payload.get("uid")
    return str(operator) if operator else None


def _token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def require_operator(request: Request) -> str:
    """
    Dependency for operator actions.
    Returns the operator name, or "anonymous" when auth is disabled.
    """
    settings: Settings = request.app.state.settings
    if not is_auth_enabled(settings):
        return ANONYMOUS

    token = _token_from_request(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    operator = verify_token(token, settings.jwt_secret)
    if not operator:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return operator
