"""
hdpay.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn hdpay.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from hdpay.api.deps import get_context  # noqa: E402
from hdpay.api.routes.admin import router as admin_router  # noqa: E402
from hdpay.api.routes.invoices import router as invoices_router  # noqa: E402
from hdpay.database.engine import init_db  # noqa: E402
from hdpay.exceptions import (  # noqa: E402
    AuthorizationError,
    ConcurrencyConflict,
    ConfigurationError,
    DecryptionError,
    DomainInvariantViolation,
    NotFoundError,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — create tables, close the HTTP client."""
    ctx = get_context()
    init_db(ctx.engine)
    logger.info("hdpay API started — engine ready (%s)", ctx.engine.url.database)
    yield
    ctx.close()
    logger.info("hdpay API shutting down")


app = FastAPI(
    title="hdpay API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Domain errors → HTTP
# ---------------------------------------------------------------------------
def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def _authorization_error(request: Request, exc: AuthorizationError):
    return _error(403, exc)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(DomainInvariantViolation)
async def _invariant(request: Request, exc: DomainInvariantViolation):
    return _error(409, exc)


@app.exception_handler(ConcurrencyConflict)
async def _conflict(request: Request, exc: ConcurrencyConflict):
    return _error(409, exc)


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError):
    # UnsupportedCurrency is a ValueError too
    return _error(400, exc)


@app.exception_handler(UpstreamUnavailable)
async def _upstream(request: Request, exc: UpstreamUnavailable):
    return _error(503, exc)


@app.exception_handler(ConfigurationError)
async def _misconfigured(request: Request, exc: ConfigurationError):
    logger.error("Configuration error: %s", exc)
    return _error(500, exc)


@app.exception_handler(DecryptionError)
async def _decryption(request: Request, exc: DecryptionError):
    logger.error("Wallet decryption failed: %s", exc)
    return _error(500, exc)


# Mount routers
app.include_router(invoices_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
