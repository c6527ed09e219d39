"""Admin bearer-token verification.

Admin tokens are issued elsewhere (the studio's login service).  Here they are
only verified, in-process, against the shared HS256 secret.  A static token
may also be configured for scripts and local development.
"""

from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import Request
from jose import JWTError, jwt

from studiolink.config import AdminConfig

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
AUTH_COOKIE_NAME = "authToken"
_ADMIN_ROLES = frozenset({"admin", "owner"})


def extract_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header or the auth cookie."""
    header = request.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    cookie = request.cookies.get(AUTH_COOKIE_NAME)
    if cookie and cookie.strip():
        return cookie.strip()
    return None


class AdminTokenVerifier:
    """Callable ``is_admin(request) -> bool`` backed by JWT verification."""

    def __init__(self, config: AdminConfig) -> None:
        self._jwt_secret = config.jwt_secret
        self._static_token = config.static_token
        if not self._jwt_secret and not self._static_token:
            logger.warning(
                "No admin credentials configured; admin endpoints will reject all calls"
            )

    def verify(self, token: str) -> dict[str, Any] | None:
        """Return the token's claims if it grants admin access, else ``None``."""
        if self._static_token and hmac.compare_digest(token, self._static_token):
            return {"sub": "static-admin", "role": "admin"}
        if not self._jwt_secret:
            return None
        try:
            payload = jwt.decode(token, self._jwt_secret, algorithms=[JWT_ALGORITHM])
        except JWTError as exc:
            logger.info("Rejected admin token: %s", type(exc).__name__)
            return None
        if payload.get("type") == "admin" or payload.get("role") in _ADMIN_ROLES:
            return payload
        logger.info("Rejected admin token: missing admin role")
        return None

    async def __call__(self, request: Request) -> bool:
        token = extract_token(request)
        if token is None:
            return False
        return self.verify(token) is not None
