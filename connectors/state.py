"""
OAuth CSRF state tokens and the server-side PKCE verifier store.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from utils.errors import InvalidStateError
from utils.schemas import StatePayload
from utils.signing import SignatureError, sign_payload, unsign_payload


class StateSigner:
    """Signs and verifies ``StatePayload``.  TTL is checked by the caller."""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def sign(self, payload: StatePayload) -> str:
        return sign_payload(self._secret, payload.model_dump())

    def verify(self, token: str) -> StatePayload:
        try:
            return StatePayload(**unsign_payload(self._secret, token))
        except (SignatureError, PydanticValidationError, TypeError) as exc:
            raise InvalidStateError(f"Invalid OAuth state: {exc}") from None


# ── PKCE ────────────────────────────────────────────────────────────────


def new_code_verifier() -> str:
    """32 random bytes, base64url without padding (43 chars)."""
    return secrets.token_urlsafe(32)


def code_challenge_for(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


class PkceVerifierStore:
    """
    Single-use, TTL-bounded map of state nonce → code_verifier.

    Lives in process memory; a callback landing on another replica will not
    find its verifier and fails the token exchange.
    """

    def __init__(self, ttl_seconds: float = 900, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._monotonic = monotonic
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def put(self, nonce: str, verifier: str) -> None:
        with self._lock:
            self._purge()
            self._entries[nonce] = (verifier, self._monotonic() + self._ttl)

    def pop(self, nonce: str) -> Optional[str]:
        with self._lock:
            self._purge()
            entry = self._entries.pop(nonce, None)
            return entry[0] if entry else None

    def _purge(self) -> None:
        now = self._monotonic()
        for key in [k for k, (_, exp) in self._entries.items() if exp <= now]:
            del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            self._purge()
            return len(self._entries)
