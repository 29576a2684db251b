"""Bearer/cookie token verification for gateway callers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import jwt

from .errors import Unauthenticated

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "accessToken"


@dataclass(frozen=True)
class CallerClaim:
    caller_id: str
    role: str | None = None
    email: str | None = None


def extract_token(authorization: str | None, cookies: Mapping[str, str] | None = None) -> str | None:
    if authorization:
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    if cookies:
        cookie_token = cookies.get(ACCESS_TOKEN_COOKIE)
        if cookie_token:
            return cookie_token
    return None


class TokenVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("token secret must be configured")
        self._secret = secret
        self._algorithm = algorithm

    def decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("Token has expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.info(f"token rejected error={exc.__class__.__name__}")
            raise Unauthenticated("Invalid token") from exc

    def verify(self, token: str | None) -> CallerClaim:
        if not token:
            raise Unauthenticated("Authentication required")
        payload = self.decode(token)
        caller_id = payload.get("sub") or payload.get("userId")
        if not isinstance(caller_id, str) or not caller_id:
            raise Unauthenticated("Invalid token: missing user ID")
        role = payload.get("role")
        email = payload.get("email")
        return CallerClaim(
            caller_id=caller_id,
            role=role if isinstance(role, str) else None,
            email=email if isinstance(email, str) else None,
        )

