"""
api/main.py -- FastAPI application entry point for the storefront auth service.

Run with:  uvicorn api.main:app --reload
           python main.py init-db   (seed catalog + roles without serving)

Middleware stack (outermost to innermost):
  1. log_requests          -- one access-log line per request, redirects included
  2. route_gate            -- route policy (auth.gate) before any handler
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the process-wide store, seeds the permission catalog and the
default roles, wires the auth services into app.state, and starts the purge
task. Shutdown mirrors it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.delivery import LoggingDelivery, TokenDelivery
from auth.dependencies import get_current_account
from auth.gate import evaluate, is_api_path, is_asset_path
from auth.models import Account
from auth.permissions import PermissionResolver, seed_defaults
from auth.sessions import SessionManager
from auth.store import AccountStore, get_store
from auth.tokens import SESSION_COOKIE_NAME, clear_session_cookie
from auth.verification import VerificationService
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("storefront.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, store: AccountStore, delivery: TokenDelivery | None = None) -> None:
    """Attach the store and every auth service built on it to app.state.

    Route handlers and dependencies only ever reach these through
    request.app.state, so tests can wire isolated stores the same way.
    """
    app.state.store = store
    app.state.sessions = SessionManager(store)
    app.state.resolver = PermissionResolver(store)
    app.state.verification = VerificationService(store)
    app.state.delivery = delivery or LoggingDelivery(reveal_secrets=_settings.debug)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired session records and verification tokens every 6 hours.

    Expired rows are already unusable; purging only keeps the tables small.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        store: AccountStore = app.state.store
        sessions = await run_in_threadpool(store.purge_expired_sessions)
        tokens = await run_in_threadpool(store.purge_expired_tokens)
        logger.info("Purged %d expired session(s) and %d expired token(s)", sessions, tokens)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, seed RBAC data, wire services; tear down on shutdown.

    get_store() is the init-once guard, so the engine and schema are created
    exactly once per process even if lifespan runs again (reload, tests).
    """
    logger.info("Storefront auth API starting up")
    store = get_store()
    seed_defaults(store, _settings.role_permissions_file or None)
    wire_services(app, store)
    if not store.has_accounts():
        logger.warning("No accounts exist yet -- create one with: python main.py create-account")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    store.close()
    logger.info("Storefront auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storefront Auth API",
    description="Sessions, route policy, role-based access control and credential recovery.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so the last one added is the
# outermost. @app.middleware("http") functions are registered the same way.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Route policy gate
#
# Runs before any handler. API and asset paths never touch the store; for
# every other path session presence is resolved through the SessionManager
# in the threadpool, since it is a blocking store lookup.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def route_gate(request: Request, call_next):
    path = request.url.path
    token = request.cookies.get(SESSION_COOKIE_NAME)
    has_session = False
    if token and not is_api_path(path) and not is_asset_path(path):
        sessions: SessionManager = request.app.state.sessions
        has_session = await run_in_threadpool(sessions.validate_session, token) is not None

    decision = evaluate(path, has_session)
    if decision.allowed:
        return await call_next(request)

    resp = RedirectResponse(decision.redirect_to, status_code=307)
    if token and not has_session:
        # Stale or revoked cookie: drop it so the browser stops sending it.
        clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(account: Account = Depends(get_current_account)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Storefront Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(account: Account = Depends(get_current_account)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Storefront Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After when a rate limit trips."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; that dict becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only; the client receives a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
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
# Defined here rather than in a router so it is reachable regardless of router
# registration. Not rate limited -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and backing-store reachability."""
    store: AccountStore = request.app.state.store
    try:
        await run_in_threadpool(store.ping)
        database = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
