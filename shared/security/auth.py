"""
Token verification for realtime connections.

Tokens are issued by the REST API at login; the gateway only verifies them.
Access tokens are HS256 JWTs whose "sub" claim is the user id.
"""

from __future__ import annotations

from typing import Any

import jwt

from shared.config.settings import settings
from shared.config.logging import get_logger

logger = get_logger(__name__)

# Claims every access token must carry
REQUIRED_CLAIMS = ("sub", "exp")


class TokenError(Exception):
    """Raised when a token is missing, malformed, expired or of the wrong type."""


def verify_jwt(
    token: str,
    *,
    secret: str | None = None,
    issuer: str | None = None,
    audience: str | None = None,
) -> dict[str, Any]:
    """
    Verify and decode a JWT access token.

    Args:
        token: The JWT token string.
        secret: Signing secret (defaults to settings.jwt_secret).
        issuer: Expected issuer (defaults to settings.jwt_issuer).
        audience: Expected audience (defaults to settings.jwt_audience).

    Returns:
        Decoded token claims.

    Raises:
        TokenError: If token is invalid, expired, or not an access token.
    """
    if not token:
        raise TokenError("Token is required")

    try:
        payload = jwt.decode(
            token,
            secret or settings.jwt_secret,
            algorithms=["HS256"],
            audience=audience or settings.jwt_audience,
            issuer=issuer or settings.jwt_issuer,
            options={"require": list(REQUIRED_CLAIMS)},
        )
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        logger.debug("JWT validation failed", error=str(e))
        raise TokenError("Invalid token") from e

    if payload.get("type", "access") != "access":
        raise TokenError("Refresh tokens cannot open realtime connections")

    return payload


def user_id_from_claims(claims: dict[str, Any]) -> str:
    """
    Extract the user id from verified claims.

    Raises:
        TokenError: If the subject claim is empty.
    """
    user_id = str(claims.get("sub") or "").strip()
    if not user_id:
        raise TokenError("Token has no subject")
    return user_id
