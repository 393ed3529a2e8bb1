"""
JWT session authentication

Sessions are short-lived HS256 JWTs signed with JWT_SECRET. The token
identifies the user only; the firm (tenant) is always looked up server-side
from the membership table, never taken from the token or the request body.
"""

import os
import logging
from typing import Optional
from datetime import datetime, timezone, timedelta

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
BEARER_PREFIX = "bearer "


def _get_jwt_secret() -> str:
    val = os.getenv("JWT_SECRET", "")
    if not val:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate a random secret string and set it in .env or as an environment variable."
        )
    return val


def _get_jwt_expiry_hours() -> int:
    return int(os.getenv("JWT_EXPIRY_HOURS", "12"))


def create_session_jwt(user_id: str, email: str = "", expiry_hours: Optional[int] = None) -> str:
    """
    Create a session JWT for a user.

    Args:
        user_id: The internal user UUID
        email: User's email, informational only
        expiry_hours: Lifetime; defaults to JWT_EXPIRY_HOURS (12)
    """
    now = datetime.now(timezone.utc)
    hours = expiry_hours if expiry_hours is not None else _get_jwt_expiry_hours()
    payload = {
        "sub": str(user_id),
        "email": email,
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_session_jwt(token: str) -> Optional[dict]:
    """
    Verify a session JWT.

    Returns:
        Dict with user_id and email if valid; None if invalid/expired
    """
    try:
        payload = jwt.decode(
            token,
            _get_jwt_secret(),
            algorithms=[JWT_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
        return {
            "user_id": payload["sub"],
            "email": payload.get("email", ""),
        }
    except jwt.ExpiredSignatureError:
        logger.debug("JWT expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"JWT invalid: {e}")
        return None


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token part of an 'Authorization: Bearer <token>' header, or None."""
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None
