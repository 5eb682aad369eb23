#!/usr/bin/env python3
"""
Authentication Module

Every account, connection and trading endpoint acts on behalf of exactly one
platform user. That user id comes from two trusted sources only:

1. X-API-Key proves the caller is our frontend service
2. a signed HS256 JWT in Authorization carries the user id in its 'sub' claim

User ids supplied in paths or bodies are never used for identity, so one user
can neither read nor disconnect another user's accounts.
"""

import logging
from typing import List, Optional

import jwt
from decouple import Csv, config
from fastapi import Depends, Header, HTTPException

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ["HS256"]
JWT_AUDIENCE = config("AUTH_JWT_AUDIENCE", default="authenticated")


def _unauthorized(reason: str) -> HTTPException:
    logger.warning(f"Authentication failed - {reason}")
    return HTTPException(status_code=401, detail=f"Authentication required - {reason}")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    # Bare tokens are accepted as well
    return authorization.strip() or None


def decode_user_id(token: str) -> Optional[str]:
    """
    Verify a user JWT and return its subject.

    Args:
        token: Encoded JWT without the Bearer prefix

    Returns:
        The user id, or None when the token is invalid, expired or has no subject
    """
    secret = config("SUPABASE_JWT_SECRET", default=None)
    if not secret:
        logger.error("SUPABASE_JWT_SECRET not configured")
        return None

    try:
        payload = jwt.decode(token, secret, algorithms=JWT_ALGORITHMS, audience=JWT_AUDIENCE)
    except jwt.ExpiredSignatureError:
        logger.warning("Token has expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("Token valid but missing 'sub' (user ID)")
        return None
    return str(user_id)


def admin_user_ids() -> List[str]:
    return config("ADMIN_USER_IDS", default="", cast=Csv())


def get_authenticated_user_id(
    api_key: Optional[str] = Header(None, alias="X-API-Key"),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> str:
    """
    FastAPI dependency resolving the calling user.

    Raises:
        HTTPException: 401 when the API key or the user token is missing or invalid
    """
    if not api_key:
        raise _unauthorized("API key missing")

    expected_api_key = config("BACKEND_API_KEY", default=None)
    if not expected_api_key or api_key != expected_api_key:
        raise _unauthorized("invalid API key")

    token = _bearer_token(authorization)
    user_id = decode_user_id(token) if token else None
    if user_id is None:
        raise _unauthorized("valid JWT token required")
    return user_id


def require_admin(user_id: str = Depends(get_authenticated_user_id)) -> str:
    """Dependency for admin-only endpoints (user id listed in ADMIN_USER_IDS)."""
    if user_id not in admin_user_ids():
        logger.warning(f"Admin access denied for user {user_id}")
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user_id
