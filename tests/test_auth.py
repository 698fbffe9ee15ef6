from __future__ import annotations

import time
from types import SimpleNamespace

from sitelog import auth
from sitelog.auth import (
    SessionRegistry,
    bearer_token,
    generate_temporary_password,
    hash_password,
    verify_google_id_token,
    verify_password,
)


def test_password_hash_round_trip() -> None:
    encoded = hash_password("ChangeMe123!", iterations=1000)
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_password("ChangeMe123!", encoded) is True
    assert verify_password("changeme123!", encoded) is False
    assert verify_password("ChangeMe123!", "not-a-hash") is False


def test_temporary_password_mixes_letters_and_digits() -> None:
    for _ in range(20):
        pw = generate_temporary_password()
        assert len(pw) == 10
        assert any(c.isdigit() for c in pw)
        assert any(c.isalpha() for c in pw)


def test_session_registry_issue_resolve_revoke(monkeypatch) -> None:
    registry = SessionRegistry(ttl_seconds=120)
    first = registry.issue("u1")
    second = registry.issue("u1")
    other = registry.issue("u2")

    assert registry.resolve(first.token).user_id == "u1"
    assert registry.resolve("") is None
    assert registry.resolve("unknown") is None

    assert registry.revoke(first.token) is True
    assert registry.resolve(first.token) is None
    assert registry.revoke_user("u1") == 1
    assert registry.resolve(second.token) is None
    assert registry.resolve(other.token) is not None

    now = time.time()
    monkeypatch.setattr(auth, "time", SimpleNamespace(time=lambda: now + 121))
    assert registry.resolve(other.token) is None


def test_bearer_token() -> None:
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  xyz ") == "xyz"
    assert bearer_token("Basic abc") == ""
    assert bearer_token(None) == ""


class _FakeResponse:
    def __init__(self, status_code: int, payload) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


def test_verify_google_id_token(monkeypatch) -> None:
    claims = {
        "aud": "client-1",
        "iss": "https://accounts.google.com",
        "email": "admin@example.com",
        "email_verified": "true",
        "exp": str(int(time.time()) + 600),
    }
    monkeypatch.setattr(auth.requests, "get", lambda *a, **k: _FakeResponse(200, claims))
    assert verify_google_id_token("tok", client_id="client-1")["email"] == "admin@example.com"
    assert verify_google_id_token("tok", client_id="client-2") is None
    assert verify_google_id_token("", client_id="client-1") is None

    monkeypatch.setattr(auth.requests, "get", lambda *a, **k: _FakeResponse(200, {**claims, "email_verified": "false"}))
    assert verify_google_id_token("tok", client_id="client-1") is None

    monkeypatch.setattr(auth.requests, "get", lambda *a, **k: _FakeResponse(400, {}))
    assert verify_google_id_token("tok", client_id="client-1") is None
