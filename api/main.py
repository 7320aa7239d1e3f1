"""
api/main.py -- FastAPI application entry point for userpass.

Exposes the credential-authentication core over HTTP. The core itself
(auth/, core/) knows nothing about FastAPI; this module only wires it up.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. HTTPSRedirectMiddleware -- only when SSL_REQUIRED=true
  2. SlowAPIMiddleware       -- enforces per-route rate limits from api.limiter

Lifespan handles startup (policy, stores, hasher registry, authenticator,
token sweep task) and shutdown (cancel sweep, close authenticator, dispose
engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.authenticator import CredentialAuthenticator
from auth.hashers import PasswordVerifier, build_registry
from auth.store import AccountStore, LoginEventStore, TokenStore, create_store_engine
from core.config import get_policy

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("userpass.api")

# ---------------------------------------------------------------------------
# Background token sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Delete expired sign-up and reset tokens every interval_seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed pass is logged
    and the next one runs on schedule.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = app.state.tokens.delete_expired()
        except Exception:
            logger.exception("Token sweep failed")
            continue
        if removed:
            logger.info("Token sweep removed %d expired token(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Policy first -- everything else is configured from it. A malformed
         value raises ConfigurationError here and aborts startup.
      2. Registry second -- raises ConfigurationError if DEFAULT_HASHER is unknown.
      3. Stores and authenticator.
      4. Sweep task last -- references app.state.tokens.
    """
    policy = get_policy()
    registry = build_registry(policy)
    engine = create_store_engine(policy.database_url)
    app.state.policy = policy
    app.state.accounts = AccountStore(engine)
    app.state.tokens = TokenStore(engine)
    app.state.events = LoginEventStore(engine)
    app.state.registry = registry
    app.state.authenticator = CredentialAuthenticator(
        app.state.accounts, PasswordVerifier(registry), app.state.events, policy
    )
    logger.info("loaded identity provider: %s", app.state.authenticator.id)

    app.state.sweep_task = None
    if policy.enable_token_job:
        app.state.sweep_task = asyncio.create_task(_sweep_loop(app, policy.token_sweep_interval_seconds))
        logger.info("Token sweep scheduled every %ds", policy.token_sweep_interval_seconds)

    yield

    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
    app.state.authenticator.close()
    engine.dispose()
    logger.info("unloaded identity provider: %s", app.state.authenticator.id)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="userpass",
    description="Username/password authentication with sign-up and password-reset tokens.",
    version=__version__,
    lifespan=lifespan,
)

# add_middleware() wraps outermost-last: SlowAPI is registered first so the
# HTTPS redirect runs before any rate-limit accounting.
app.add_middleware(SlowAPIMiddleware)
if get_policy().ssl_required:
    app.add_middleware(HTTPSRedirectMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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


app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc))
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
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


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail))).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


@app.get("/api/v1/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version. Not rate limited."""
    return HealthResponse(version=__version__)
