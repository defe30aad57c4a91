"""
api/main.py -- FastAPI application entry point for the QR login service.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from core.limiter

Lifespan handles startup (token store, identity authority client) and
shutdown (dispose engine, close HTTP session) symmetrically. Both objects are
process-wide: built once here and reused by every request through app.state.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.qr import router as qr_router
from core.config import get_settings
from core.errors import ConfigurationError, QRAuthError
from core.limiter import limiter
from core.models import QR_ROUTE_PREFIX
from identity.authority import IdentityAuthority
from qrauth.store import TokenStore

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_settings = get_settings()

logging.basicConfig(
    level=_settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("qrlogin.api")

# Redemption URLs carry the credential in the path. Access logs keep the
# first 8 characters, enough to correlate with issuer logs.
_TOKEN_PATH_RE = re.compile(rf"^({re.escape(QR_ROUTE_PREFIX)}/[^/]{{0,8}})[^/]*")


def redact_path(path: str) -> str:
    return _TOKEN_PATH_RE.sub(r"\1...", path)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.

    A missing authority configuration does not abort startup. app.state.authority
    stays None and every request that needs it fails fast with
    ConfigurationError (503), while /api/v1/health keeps answering.
    """
    logger.info("QR login API starting up")
    app.state.token_store = TokenStore(_settings.database_url)
    logger.info("Token store initialized")
    try:
        app.state.authority = IdentityAuthority.from_settings(_settings)
        logger.info("Identity authority client initialized (%s)", _settings.authority_url)
    except ConfigurationError as exc:
        app.state.authority = None
        logger.warning("Identity authority not configured -- issuance and redemption disabled: %s", exc)

    yield

    if app.state.authority is not None:
        app.state.authority.close()
    app.state.token_store.close()
    logger.info("QR login API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="QR Login API",
    description="Persistent QR codes that sign their owner in without a password.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the LAST registered middleware is the
# outermost at runtime. Register innermost first: SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time is captured around call_next so latency is logged
# on every response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        redact_path(request.url.path),
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(qr_router, prefix="/api/v1", tags=["QR Login"])
# The browser redirect route is mounted by asgi.py, not here.


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(QRAuthError)
async def qr_auth_error_handler(request: Request, exc: QRAuthError) -> JSONResponse:
    """Render a classified failure with its coarse public message.

    The exception's own message (internal detail) goes to the log only.
    Identity drift and configuration problems are operator issues and are
    logged at ERROR; the rest are client-side and logged at INFO.
    """
    if exc.status_code >= 500 or exc.code == "identity_not_found":
        logger.error("%s on %s: %s", exc.code, redact_path(request.url.path), exc)
    else:
        logger.info("%s on %s: %s", exc.code, redact_path(request.url.path), exc)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.public_message)).model_dump(
            exclude_none=True
        ),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    The submitted value ("input") is dropped from each error: a body may carry
    a credential, and nothing the client sent is echoed back.
    """
    errors = [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(errors),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route dependencies raise HTTPException with detail={"code", "message"}.
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, redact_path(request.url.path))
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- health checks from load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus the state of the database and authority client."""
    store: TokenStore | None = getattr(request.app.state, "token_store", None)
    database = "ok" if store is not None and store.ping() else "error"
    authority = "ok" if getattr(request.app.state, "authority", None) is not None else "unconfigured"
    return HealthResponse(
        version=__version__,
        components={"app": "ok", "database": database, "authority": authority},
    )
