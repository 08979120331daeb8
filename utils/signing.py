"""
HMAC-SHA256 signed tokens: ``base64url(json payload) + "." + hex signature``.

Used for auth bearer tokens and OAuth CSRF state.  Expiry is the caller's
concern; this module only proves integrity.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from typing import Any, Dict


class SignatureError(ValueError):
    pass


def _sign(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def sign_payload(secret: str, payload: Dict[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=") + "." + _sign(secret, raw)


def unsign_payload(secret: str, token: str) -> Dict[str, Any]:
    """Return the payload dict, or raise ``SignatureError``."""
    parts = (token or "").split(".", 1)
    if len(parts) != 2:
        raise SignatureError("bad format")
    encoded, signature = parts
    try:
        raw = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))
    except (binascii.Error, ValueError):
        raise SignatureError("bad encoding") from None
    if not hmac.compare_digest(signature.encode("utf-8"), _sign(secret, raw).encode()):
        raise SignatureError("bad signature")
    try:
        payload = json.loads(raw)
    except ValueError:
        raise SignatureError("bad payload") from None
    if not isinstance(payload, dict):
        raise SignatureError("bad payload")
    return payload
