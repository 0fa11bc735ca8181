"""Tests for auth.py -- pure helpers and the Session dependency.

Route handlers are exercised end to end in test_api.py.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from jose import jwt, JWTError, ExpiredSignatureError
from starlette.requests import Request

import auth
from auth import (
    LoginRateLimiter,
    Session,
    hash_password,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_token,
    JWT_SECRET,
    JWT_ALGORITHM,
)


def _request(headers: dict | None = None) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# ── Session ─────────────────────────────────────────────────────────

class TestSession:
    def test_from_user(self):
        s = Session.from_user({"id": "u1", "email": "a@b.c", "role": "admin", "full_name": None})
        assert s == Session(user_id="u1", email="a@b.c", role="admin")

    def test_role_defaults_to_user(self):
        assert Session.from_user({"id": "u1", "email": "a@b.c"}).role == "user"

    def test_is_immutable(self):
        s = Session(user_id="u1", email="a@b.c")
        with pytest.raises(AttributeError):
            s.user_id = "u2"


# ── LoginRateLimiter ────────────────────────────────────────────────

class TestLoginRateLimiter:
    def test_fresh_ip_allowed(self):
        assert LoginRateLimiter().retry_after("10.0.0.1") == 0

    def test_allows_up_to_max_failures(self):
        limiter = LoginRateLimiter(max_attempts=3)
        for _ in range(2):
            limiter.record_failure("10.0.0.2")
        assert limiter.retry_after("10.0.0.2") == 0

    def test_locks_out_after_max_failures(self):
        limiter = LoginRateLimiter(max_attempts=3, lockout_seconds=120)
        for _ in range(3):
            limiter.record_failure("10.0.0.3")
        assert limiter.retry_after("10.0.0.3") == 120

    def test_lockout_counts_down_then_expires(self):
        clock = _Clock()
        limiter = LoginRateLimiter(max_attempts=2, lockout_seconds=60, clock=clock)
        limiter.record_failure("10.0.0.4")
        limiter.record_failure("10.0.0.4")
        assert limiter.retry_after("10.0.0.4") == 60

        clock.now += 45
        assert limiter.retry_after("10.0.0.4") == 15
        clock.now += 16
        assert limiter.retry_after("10.0.0.4") == 0

    def test_failures_outside_window_are_forgotten(self):
        clock = _Clock()
        limiter = LoginRateLimiter(max_attempts=2, window_seconds=10, clock=clock)
        limiter.record_failure("10.0.0.5")
        clock.now += 11
        limiter.record_failure("10.0.0.5")
        assert limiter.retry_after("10.0.0.5") == 0

    def test_reset_clears_history(self):
        limiter = LoginRateLimiter(max_attempts=2)
        limiter.record_failure("10.0.0.6")
        limiter.reset("10.0.0.6")
        limiter.record_failure("10.0.0.6")
        assert limiter.retry_after("10.0.0.6") == 0

    def test_ips_are_independent(self):
        limiter = LoginRateLimiter(max_attempts=2)
        for _ in range(2):
            limiter.record_failure("10.0.0.8")
        assert limiter.retry_after("10.0.0.8") > 0
        assert limiter.retry_after("10.0.0.9") == 0

    def test_checks_do_not_accumulate_entries(self):
        limiter = LoginRateLimiter()
        for i in range(50):
            assert limiter.retry_after(f"10.1.0.{i}") == 0
        assert limiter._failures == {}

    def test_expired_failures_are_dropped(self):
        clock = _Clock()
        limiter = LoginRateLimiter(window_seconds=10, clock=clock)
        limiter.record_failure("10.0.0.10")
        clock.now += 11
        assert limiter.retry_after("10.0.0.10") == 0
        assert "10.0.0.10" not in limiter._failures


# ── Passwords ───────────────────────────────────────────────────────

class TestPasswords:
    def test_hash_is_bcrypt(self):
        assert hash_password("test1234").startswith("$2")

    def test_verify(self):
        h = hash_password("mysecret")
        assert verify_password("mysecret", h) is True
        assert verify_password("wrong", h) is False

    def test_salted(self):
        assert hash_password("same") != hash_password("same")


# ── Tokens ──────────────────────────────────────────────────────────

class TestTokens:
    def test_access_token_claims(self):
        claims = decode_token(create_access_token("user123", "admin"))
        assert claims["sub"] == "user123"
        assert claims["role"] == "admin"
        assert claims["type"] == "access"
        assert "exp" in claims

    def test_refresh_token_claims(self):
        claims = decode_token(create_refresh_token("user456"))
        assert claims["sub"] == "user456"
        assert claims["type"] == "refresh"

    def test_refresh_tokens_are_unique(self):
        assert hash_token(create_refresh_token("u1")) != hash_token(create_refresh_token("u1"))

    def test_expired_token(self):
        token = jwt.encode(
            {"sub": "u1", "type": "access", "exp": datetime.now(timezone.utc) - timedelta(hours=1)},
            JWT_SECRET, algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(ExpiredSignatureError):
            decode_token(token)

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "u1", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            "wrong-secret", algorithm=JWT_ALGORITHM,
        )
        with pytest.raises(JWTError):
            decode_token(token)

    def test_hash_token(self):
        assert len(hash_token("abc")) == 64
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") != hash_token("abd")

    @pytest.mark.asyncio
    async def test_issue_tokens_stores_refresh_hash(self, user):
        access, refresh = await auth.issue_tokens(user)
        assert decode_token(access)["sub"] == user["id"]
        stored = await auth.db.get_refresh_token(hash_token(refresh))
        assert stored["user_id"] == user["id"]


# ── get_session ─────────────────────────────────────────────────────

class TestGetSession:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "Basic abc", "Bearer "])
    async def test_missing_bearer(self, header):
        with pytest.raises(HTTPException) as exc:
            await auth.get_session(_request({"Authorization": header} if header else None))
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_garbage_token(self):
        with pytest.raises(HTTPException) as exc:
            await auth.get_session(_request({"Authorization": "Bearer not.a.jwt"}))
        assert exc.value.detail == "Invalid token"

    @pytest.mark.asyncio
    async def test_refresh_token_not_accepted(self, user):
        request = _request({"Authorization": f"Bearer {create_refresh_token(user['id'])}"})
        with pytest.raises(HTTPException) as exc:
            await auth.get_session(request)
        assert exc.value.detail == "Invalid token type"

    @pytest.mark.asyncio
    async def test_unknown_user(self, test_db):
        request = _request({"Authorization": f"Bearer {create_access_token('ghost', 'user')}"})
        with pytest.raises(HTTPException) as exc:
            await auth.get_session(request)
        assert exc.value.detail == "User not found"

    @pytest.mark.asyncio
    async def test_valid_token(self, user):
        request = _request({"Authorization": f"Bearer {create_access_token(user['id'], 'user')}"})
        assert await auth.get_session(request) == Session(user_id=user["id"], email="test@example.com")
