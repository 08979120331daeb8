"""
Bearer token creation and verification.

Tokens are base64url-encoded JSON payloads signed with HMAC-SHA256
(see ``utils.signing``).  Secret key is loaded from ``config.jwt_secret``
(env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import time
from typing import Optional

from fastapi import HTTPException, status

from config.settings import config
from utils.signing import SignatureError, sign_payload, unsign_payload


def create_token(user_id: str, *, secret: Optional[str] = None, now: Optional[float] = None) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    issued = int(now if now is not None else time.time())
    payload = {"user_id": str(user_id), "exp": issued + config.jwt_expiry_seconds}
    return sign_payload(secret or config.jwt_secret, payload)


def verify_token(token: str, *, secret: Optional[str] = None, now: Optional[float] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        payload = unsign_payload(secret or config.jwt_secret, token)
        if payload.get("exp", 0) < (now if now is not None else time.time()):
            raise SignatureError("token expired")
        user_id = payload.get("user_id")
        if not user_id:
            raise SignatureError("missing user_id")
        return str(user_id)
    except SignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
