"""
Signed bearer tokens identifying the calling user.

Tokens are URL-safe base64 JSON payloads signed with HMAC-SHA256 using
``config.jwt_secret`` (env var: ``JWT_SECRET``).  Issuing tokens belongs to
the identity service; this service only verifies them.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from config.settings import config


class InvalidToken(ValueError):
    pass


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(
    user_id: str,
    *,
    secret: Optional[str] = None,
    expires_in: Optional[int] = None,
) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret or config.jwt_secret)


def verify_token(token: str, *, secret: Optional[str] = None) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``InvalidToken`` on malformed, forged or expired tokens.
    """
    body, sep, sig = token.partition(".")
    if not sep:
        raise InvalidToken("bad format")
    try:
        raw = urlsafe_b64decode(body.encode())
    except (ValueError, TypeError) as exc:
        raise InvalidToken("bad encoding") from exc
    if not hmac.compare_digest(sig, _sign(raw, secret or config.jwt_secret)):
        raise InvalidToken("bad signature")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InvalidToken("bad payload") from exc
    if payload.get("exp", 0) < time.time():
        raise InvalidToken("token expired")
    user_id = payload.get("user_id")
    if not user_id:
        raise InvalidToken("missing user_id")
    return str(user_id)
