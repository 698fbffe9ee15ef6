from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

import requests


log = logging.getLogger("sitelog.auth")

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}

MIN_PASSWORD_LENGTH = 6


class PermissionDenied(Exception):
    """Raised when the caller is not signed in or lacks the required role."""

    def __init__(self, code: str = "forbidden") -> None:
        super().__init__(code)
        self.code = code


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def _b64d(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def hash_password(password: str, *, iterations: int = 260_000) -> str:
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${_b64e(salt)}${_b64e(dk)}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iter_s, salt_s, hash_s = encoded.split("$", 3)
        if scheme != "pbkdf2_sha256":
            return False
        iterations = int(iter_s)
        salt = _b64d(salt_s)
        expected = _b64d(hash_s)
    except Exception:
        return False

    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def generate_temporary_password(length: int = 10) -> str:
    alphabet = string.ascii_letters + string.digits
    while True:
        candidate = "".join(secrets.choice(alphabet) for _ in range(length))
        if any(c.isdigit() for c in candidate) and any(c.isalpha() for c in candidate):
            return candidate


@dataclass(frozen=True)
class SessionInfo:
    token: str
    user_id: str
    issued_at: float
    expires_at: float


class SessionRegistry:
    """Explicit session tokens issued at login and presented on every call."""

    def __init__(self, ttl_seconds: int = 12 * 3600) -> None:
        self._ttl = max(60, int(ttl_seconds))
        self._sessions: dict[str, SessionInfo] = {}
        self._lock = threading.Lock()

    def issue(self, user_id: str) -> SessionInfo:
        now = time.time()
        info = SessionInfo(
            token=secrets.token_urlsafe(32),
            user_id=str(user_id),
            issued_at=now,
            expires_at=now + self._ttl,
        )
        with self._lock:
            self._purge(now)
            self._sessions[info.token] = info
        return info

    def resolve(self, token: str | None) -> Optional[SessionInfo]:
        if not token:
            return None
        now = time.time()
        with self._lock:
            info = self._sessions.get(str(token))
            if info is None:
                return None
            if info.expires_at <= now:
                self._sessions.pop(info.token, None)
                return None
            return info

    def revoke(self, token: str | None) -> bool:
        if not token:
            return False
        with self._lock:
            return self._sessions.pop(str(token), None) is not None

    def revoke_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [t for t, s in self._sessions.items() if s.user_id == str(user_id)]
            for t in doomed:
                self._sessions.pop(t, None)
            return len(doomed)

    def _purge(self, now: float) -> None:
        expired = [t for t, s in self._sessions.items() if s.expires_at <= now]
        for t in expired:
            self._sessions.pop(t, None)


def bearer_token(header_value: str | None) -> str:
    text = str(header_value or "").strip()
    if text.lower().startswith("bearer "):
        return text[7:].strip()
    return ""


def verify_google_id_token(id_token: str, *, client_id: str, timeout: float = 10.0) -> dict[str, Any] | None:
    """Validate a Google ID token with the tokeninfo endpoint.

    Returns the token claims, or None when the token is rejected.
    """
    if not id_token or not client_id:
        return None
    try:
        resp = requests.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token}, timeout=timeout)
    except requests.RequestException:
        log.exception("Failed to reach Google tokeninfo")
        return None
    if resp.status_code != 200:
        return None
    try:
        claims = resp.json()
    except ValueError:
        return None
    if not isinstance(claims, dict):
        return None
    if str(claims.get("aud") or "") != client_id:
        return None
    if str(claims.get("iss") or "") not in GOOGLE_ISSUERS:
        return None
    if str(claims.get("email_verified") or "").lower() != "true":
        return None
    try:
        if int(claims.get("exp") or 0) <= int(time.time()):
            return None
    except (TypeError, ValueError):
        return None
    return claims
