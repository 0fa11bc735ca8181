"""Authentication primitives for Prompt Studio.

- Access token: HS256 JWT, 24h, sent as `Authorization: Bearer ...`
- Refresh token: HS256 JWT, 7 days, HttpOnly cookie, stored hashed so it can be revoked
- Passwords: bcrypt

Every authenticated route depends on `get_session`, and the resulting
`Session` is handed explicitly to the run simulator and the analytics
aggregator. The HTTP handlers live in routers/auth.py.
"""

import hashlib
import logging
import math
import os
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import bcrypt
from fastapi import HTTPException, Request
from fastapi.responses import Response
from jose import jwt, JWTError, ExpiredSignatureError

import db

logger = logging.getLogger(__name__)

JWT_SECRET = os.environ.get("JWT_SECRET", "CHANGE-ME-IN-PRODUCTION-" + os.urandom(16).hex())
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(hours=24)
REFRESH_TOKEN_TTL = timedelta(days=7)
COOKIE_SECURE = os.environ.get("COOKIE_SECURE", "false").lower() in ("true", "1", "yes")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/auth"


@dataclass(frozen=True)
class Session:
    """The acting principal for one request."""
    user_id: str
    email: str
    role: str = "user"

    @classmethod
    def from_user(cls, user: dict) -> "Session":
        return cls(user_id=user["id"], email=user["email"], role=user.get("role", "user"))


class LoginRateLimiter:
    """Counts failed logins per client IP and locks the IP out past a threshold.

    Only failures are recorded; a successful login clears the IP's history.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: int = 300,
        lockout_seconds: int = 900,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window = window_seconds
        self.lockout = lockout_seconds
        self._clock = clock
        self._failures: dict[str, deque] = defaultdict(deque)
        self._locked_until: dict[str, float] = {}

    def retry_after(self, ip: str) -> int:
        """Seconds until `ip` may try again; 0 means go ahead."""
        now = self._clock()
        until = self._locked_until.get(ip)
        if until is not None:
            if until > now:
                return max(1, math.ceil(until - now))
            del self._locked_until[ip]

        failures = self._failures.get(ip)
        if failures is None:
            return 0
        while failures and failures[0] <= now - self.window:
            failures.popleft()
        if len(failures) >= self.max_attempts:
            del self._failures[ip]
            self._locked_until[ip] = now + self.lockout
            return self.lockout
        if not failures:
            del self._failures[ip]
        return 0

    def record_failure(self, ip: str) -> None:
        self._failures[ip].append(self._clock())

    def reset(self, ip: str) -> None:
        self._failures.pop(ip, None)
        self._locked_until.pop(ip, None)


login_limiter = LoginRateLimiter()


# --- Passwords ---

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode(), hashed.encode())


# --- Tokens ---

def _encode(claims: dict, ttl: timedelta) -> str:
    payload = {**claims, "exp": datetime.now(timezone.utc) + ttl}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_access_token(user_id: str, role: str) -> str:
    return _encode({"sub": user_id, "role": role, "type": "access"}, ACCESS_TOKEN_TTL)


def create_refresh_token(user_id: str) -> str:
    # jti keeps two tokens minted in the same second distinct
    return _encode({"sub": user_id, "type": "refresh", "jti": os.urandom(8).hex()}, REFRESH_TOKEN_TTL)


def hash_token(token: str) -> str:
    """SHA-256 hex digest; refresh tokens are stored only in this form."""
    return hashlib.sha256(token.encode()).hexdigest()


def decode_token(token: str) -> dict:
    """Verify signature and expiry. Raises JWTError (ExpiredSignatureError when expired)."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


async def issue_tokens(user: dict) -> tuple[str, str]:
    """Mint an access/refresh pair and remember the refresh token's hash."""
    access = create_access_token(user["id"], user["role"])
    refresh = create_refresh_token(user["id"])
    expires_at = (datetime.now(timezone.utc) + REFRESH_TOKEN_TTL).isoformat()
    await db.store_refresh_token(user["id"], hash_token(refresh), expires_at)
    return access, refresh


def set_refresh_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE,
        value=token,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="strict",
        max_age=int(REFRESH_TOKEN_TTL.total_seconds()),
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# --- FastAPI dependency ---

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail)


async def get_session(request: Request) -> Session:
    """Resolve the Bearer access token into a Session, or fail with 401."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme != "Bearer" or not token:
        raise _unauthorized("Not authenticated")

    try:
        claims = decode_token(token)
    except ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except JWTError:
        raise _unauthorized("Invalid token")

    if claims.get("type") != "access" or not claims.get("sub"):
        raise _unauthorized("Invalid token type")

    # The user row is re-read so deleted accounts lose access immediately
    user = await db.get_user_by_id(claims["sub"])
    if not user:
        raise _unauthorized("User not found")
    return Session.from_user(user)
