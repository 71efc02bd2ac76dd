from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import threading
import time
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 12

_LOCK = threading.Lock()
_REVOKED_TOKENS: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def _decode_token(token: str) -> dict[str, Any] | None:
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    return decoded if isinstance(decoded, dict) else None


def _prune_revoked_unlocked(now: float) -> None:
    for token, expires_at in list(_REVOKED_TOKENS.items()):
        if now >= expires_at:
            _REVOKED_TOKENS.pop(token, None)


def create_session(payload: dict[str, Any], ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + ttl_seconds
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    return f"{encoded}.{_b64encode(_sign(encoded))}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    decoded = _decode_token(token)
    if decoded is None:
        return None
    now = time.time()
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if now >= expires_at:
        return None
    with _LOCK:
        _prune_revoked_unlocked(now)
        if token in _REVOKED_TOKENS:
            return None
    return decoded


def remove_session(token: str | None) -> None:
    if not token:
        return
    decoded = _decode_token(token)
    if decoded is None:
        return
    now = time.time()
    try:
        expires_at = float(decoded.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        expires_at = now + SESSION_TTL_SECONDS
    if expires_at <= now:
        return
    with _LOCK:
        _prune_revoked_unlocked(now)
        _REVOKED_TOKENS[token] = expires_at
