"""Bank Reconciliation Backend - FastAPI Application."""

import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from bankrec import __version__
from bankrec.config import settings
from bankrec.database import init_db
from bankrec.deps import DbSession
from bankrec.logger import configure_logging, get_logger, log_exception
from bankrec.routers import reconciliation
from bankrec.services.engine_config import load_reconciliation_config

configure_logging()
logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create missing tables and warm the engine config cache."""
    await init_db()
    config = load_reconciliation_config()
    logger.info(
        "Application started",
        version=__version__,
        environment=settings.environment,
        matched_threshold=config.matched_threshold,
        amount_tolerance=str(config.amount_tolerance),
    )
    yield
    logger.info("Application shutting down")


app = FastAPI(
    title="Bank Reconciliation API",
    description="Matches bank transactions to invoices, subscriptions, declarations and partners",
    version=__version__,
    lifespan=lifespan,
)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Give every request its own log context keyed by X-Request-ID.

    Routers add batch and line numbers to the same context, so one request's
    matching, save and cascade events can be grepped together.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        log_exception(logger, exc, "HTTP Request Failed", duration_ms=_elapsed_ms(started))
        raise

    level = "warning" if response.status_code >= 500 else "info"
    getattr(logger, level)("HTTP Request", status_code=response.status_code, duration_ms=_elapsed_ms(started))
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors become JSON 500s; details only leak in debug."""
    content: dict[str, Any] = {
        "detail": str(exc) if settings.debug else "An internal server error occurred. Please try again later.",
        "request_id": structlog.contextvars.get_contextvars().get("request_id"),
    }
    if settings.debug:
        content["trace"] = traceback.format_exc()
    return JSONResponse(status_code=500, content=content)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "PATCH"],
    allow_headers=["Content-Type", REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER],
)

app.include_router(reconciliation.router)


@app.get("/health")
async def health_check(db: DbSession) -> JSONResponse:
    """Liveness with a database round-trip; 503 when the database is unreachable."""
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except SQLAlchemyError as e:
        log_exception(logger, e, "Health check: database unreachable", include_traceback=False)
        database_ok = False

    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "healthy" if database_ok else "unhealthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": {"database": database_ok},
            "version": __version__,
        },
    )
