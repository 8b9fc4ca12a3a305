"""JWT utilities for authentication."""

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from src.config.settings import settings


def _encode(data: dict[str, Any], token_type: str, issued_at: datetime, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    # jti keeps tokens minted within the same second distinct
    to_encode.update(
        {
            "exp": issued_at + expires_delta,
            "iat": issued_at,
            "jti": uuid4().hex,
            "type": token_type,
        }
    )
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(data: dict[str, Any], issued_at: datetime, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    Args:
        data: Payload data to encode in the token
        issued_at: Issue time, taken from the injected clock
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token string

    """
    return _encode(
        data,
        "access",
        issued_at,
        expires_delta or timedelta(hours=settings.access_token_expire_hours),
    )


def create_refresh_token(data: dict[str, Any], issued_at: datetime, expires_delta: timedelta | None = None) -> str:
    """Create a JWT refresh token (longer expiration)."""
    return _encode(
        data,
        "refresh",
        issued_at,
        expires_delta or timedelta(days=settings.refresh_token_expire_days),
    )


def decode_token(token: str, now: datetime) -> dict[str, Any]:
    """Decode and verify a JWT token.

    The signature and required claims are checked by PyJWT; expiry is checked
    against ``now`` so the injected clock, not the wall clock, decides whether
    a token is still valid.

    Args:
        token: JWT token string
        now: Current time from the injected clock

    Returns:
        Decoded token payload

    Raises:
        InvalidTokenError: If token is invalid or expired

    """
    payload = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "iat", "sub", "type"], "verify_exp": False, "verify_iat": False},
    )
    if not isinstance(payload["exp"], int | float) or payload["exp"] <= now.timestamp():
        raise ExpiredSignatureError("Signature has expired")
    return payload


def verify_token_type(payload: dict[str, Any], expected_type: str) -> bool:
    """Verify the token type matches expected.

    Args:
        payload: Decoded token payload
        expected_type: Expected token type ('access' or 'refresh')

    Returns:
        True if type matches, False otherwise

    """
    return payload.get("type") == expected_type


__all__ = ["InvalidTokenError", "create_access_token", "create_refresh_token", "decode_token", "verify_token_type"]
