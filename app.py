#!/usr/bin/env python3
"""Prompt Studio - prompt templates, simulated model runs, and run analytics.

Usage:
    python app.py                  # Start on port 8501
    python app.py --port 3333      # Custom port
"""

import argparse
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError
from starlette.middleware.base import BaseHTTPMiddleware

# .env must be loaded before modules that read env at import time
load_dotenv(Path(__file__).parent / ".env", override=True)

APP_VERSION = os.getenv("APP_VERSION", "dev")

import auth  # noqa: E402
import db  # noqa: E402
from providers import get_catalog, get_provider  # noqa: E402
from routers import all_routers  # noqa: E402


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

# Attributes passed via extra={...} that end up as top-level JSON keys
_LOG_EXTRA_FIELDS = (
    "request_id", "user_id", "method", "path", "status", "duration_ms",
    "provider", "model", "ip",
)


class _JSONFormatter(logging.Formatter):
    """One JSON object per line on stdout."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _LOG_EXTRA_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging() -> None:
    """Route all logging through a single JSON stdout handler at LOG_LEVEL (default warning)."""
    level = getattr(logging, os.environ.get("LOG_LEVEL", "warning").upper(), logging.WARNING)

    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    if level > logging.DEBUG:
        for name in ("httpcore", "httpx", "LiteLLM", "aiosqlite"):
            logging.getLogger(name).setLevel(logging.WARNING)


configure_logging()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance):
    """Create tables, prune stale rows, and validate the run configuration."""
    logger.info("Prompt Studio starting (version=%s)", APP_VERSION)
    await db.init_db()
    await db.cleanup_audit_log(retention_days=90)
    expired = await db.cleanup_expired_tokens()
    if expired:
        logger.info("Removed %d expired refresh token(s)", expired)

    # A bad RUN_PROVIDER or catalog file stops startup here
    provider = get_provider()
    catalog = get_catalog()
    logger.info(
        "Run provider %s with %d catalog model(s)", provider.name, len(catalog.list()),
        extra={"provider": provider.name},
    )
    yield
    logger.info("Prompt Studio shutting down")


app = FastAPI(title="Prompt Studio", version=APP_VERSION, lifespan=lifespan)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


def _token_subject(request: Request) -> str | None:
    """User id from the Bearer token, without touching the database."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme != "Bearer" or not token:
        return None
    try:
        return auth.decode_token(token).get("sub")
    except JWTError:
        return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per response, tagged with a request id echoed in X-Request-ID."""

    QUIET_PATHS = frozenset({"/healthz", "/favicon.ico"})

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.QUIET_PATHS:
            return await call_next(request)

        request_id = uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000)

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level, "%s %s -> %d (%dms)", request.method, request.url.path, status, duration_ms,
            extra={
                "request_id": request_id, "method": request.method, "path": request.url.path,
                "status": status, "duration_ms": duration_ms, "user_id": _token_subject(request),
            },
        )
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# Cross-origin access only when CORS_ORIGINS is set
_cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type"],
    )

for _router in all_routers:
    app.include_router(_router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": APP_VERSION}


if __name__ == "__main__":
    import uvicorn

    parser = argparse.ArgumentParser(description="Prompt Studio API server")
    parser.add_argument("--port", type=int, default=8501, help="Port (default: 8501)")
    parser.add_argument("--host", default="0.0.0.0", help="Host (default: 0.0.0.0)")
    args = parser.parse_args()

    if not os.environ.get("JWT_SECRET"):
        logger.warning("JWT_SECRET not set; issued tokens will not survive a restart")
    uvicorn.run(app, host=args.host, port=args.port, log_level=os.environ.get("LOG_LEVEL", "warning").lower())
