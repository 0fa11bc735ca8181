"""Auth routes: register, login, refresh, logout, me."""

import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Cookie, Depends, Request
from fastapi.responses import JSONResponse
from jose import JWTError

import auth
import db
from schemas import LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_view(user: dict) -> dict:
    return {"id": user["id"], "email": user["email"], "role": user["role"]}


def _token_response(user: dict, access: str, refresh: Optional[str] = None) -> JSONResponse:
    response = JSONResponse({"user": _user_view(user), "access_token": access})
    if refresh:
        auth.set_refresh_cookie(response, refresh)
    return response


async def _audit(request: Request, user_id: Optional[str], email: str, action: str, **detail):
    await db.log_audit(
        user_id=user_id,
        username=email,
        action=action,
        resource_type="user",
        detail=detail or None,
        ip_address=auth.client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
    )


@router.post("/register")
async def register(body: RegisterRequest, request: Request):
    """Create an account. The database trigger creates its profile row."""
    if await db.get_user_by_email(body.email):
        return JSONResponse({"error": "Email already registered"}, status_code=409)

    # First account becomes the admin
    try:
        user = await db.create_user(
            body.email, auth.hash_password(body.password), full_name=body.full_name, admin_if_first=True,
        )
    except aiosqlite.IntegrityError:
        return JSONResponse({"error": "Email already registered"}, status_code=409)
    logger.info("User registered: %s (role=%s)", body.email, user["role"], extra={"user_id": user["id"]})
    await _audit(request, user["id"], body.email, "user_register")

    access, refresh = await auth.issue_tokens(user)
    return _token_response(user, access, refresh)


@router.post("/login")
async def login(body: LoginRequest, request: Request):
    ip = auth.client_ip(request) or "unknown"
    retry_after = auth.login_limiter.retry_after(ip)
    if retry_after:
        logger.warning("Login rate limited: ip=%s retry_after=%ds", ip, retry_after, extra={"ip": ip})
        return JSONResponse(
            {"error": f"Too many login attempts. Try again in {retry_after} seconds."},
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )

    user = await db.get_user_by_email(body.email)
    if not user or not auth.verify_password(body.password, user["password_hash"]):
        auth.login_limiter.record_failure(ip)
        logger.warning("Login failed for email=%s", body.email, extra={"ip": ip})
        await _audit(request, user["id"] if user else None, body.email, "user_login_failed")
        return JSONResponse({"error": "Invalid email or password"}, status_code=401)

    auth.login_limiter.reset(ip)
    await _audit(request, user["id"], body.email, "user_login")
    access, refresh = await auth.issue_tokens(user)
    return _token_response(user, access, refresh)


@router.post("/refresh")
async def refresh(refresh_token: Optional[str] = Cookie(None)):
    """Trade the refresh cookie for a new access token."""
    if not refresh_token:
        return JSONResponse({"error": "No refresh token"}, status_code=401)
    try:
        claims = auth.decode_token(refresh_token)
    except JWTError:
        return JSONResponse({"error": "Invalid refresh token"}, status_code=401)
    if claims.get("type") != "refresh":
        return JSONResponse({"error": "Invalid token type"}, status_code=401)

    if not await db.get_refresh_token(auth.hash_token(refresh_token)):
        return JSONResponse({"error": "Refresh token revoked"}, status_code=401)
    user = await db.get_user_by_id(claims["sub"])
    if not user:
        return JSONResponse({"error": "User not found"}, status_code=401)

    return _token_response(user, auth.create_access_token(user["id"], user["role"]))


@router.post("/logout")
async def logout(request: Request, refresh_token: Optional[str] = Cookie(None)):
    """Revoke the refresh cookie, if any. Always succeeds."""
    user_id, email = None, "unknown"
    if refresh_token:
        try:
            user_id = auth.decode_token(refresh_token).get("sub")
        except JWTError:
            logger.debug("Undecodable refresh token on logout")
        await db.delete_refresh_token(auth.hash_token(refresh_token))
        user = await db.get_user_by_id(user_id) if user_id else None
        if user:
            email = user["email"]

    await _audit(request, user_id, email, "user_logout")
    response = JSONResponse({"status": "ok"})
    auth.clear_refresh_cookie(response)
    return response


@router.get("/me")
async def me(session: auth.Session = Depends(auth.get_session)):
    user = await db.get_user_by_id(session.user_id)
    return {"user": _user_view(user), "full_name": user.get("full_name")}
