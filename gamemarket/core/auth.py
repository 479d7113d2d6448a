"""Bearer-token authentication for buyer and seller facing APIs."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from fastapi import Header
from jose import JWTError, jwt

from gamemarket.config import settings
from gamemarket.core.exceptions import UnauthorizedError


def create_user_token(user_id: str, email: str = "") -> str:
    """Create a JWT for end users (type=user)."""
    expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)
    payload = {
        "sub": user_id,
        "email": email,
        "type": "user",
        "jti": str(uuid.uuid4()),
        "exp": expire,
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a user JWT. Returns the payload."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthorizedError("Invalid or expired token") from exc
    if payload.get("type") != "user":
        raise UnauthorizedError("Not a user token")
    if not payload.get("sub"):
        raise UnauthorizedError("Token missing subject")
    return payload


def get_current_user_id(authorization: str | None = Header(default=None)) -> str:
    """Extract user_id from Authorization: Bearer <token>."""
    if not authorization:
        raise UnauthorizedError("Missing Authorization header")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthorizedError("Authorization header must be: Bearer <token>")
    return decode_token(parts[1])["sub"]
