"""
main.py — formtrack FastAPI application entry point.

Start with: uvicorn formtrack.main:app --reload --port 8000
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.exceptions import HTTPException as StarletteHTTPException

from formtrack.config import settings
from formtrack.exceptions import FormtrackError, ValidationError

# ---------------------------------------------------------------------------
# Logging — configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan — startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      1. Run Alembic migrations (auto-applied — no manual step needed)
      2. Initialize Redis connection pool (geolocation cache; optional)
      3. Shared HTTP client for the geolocation upstream
    Shutdown:
      1. Close HTTP client and Redis pool
    """
    # --- 1. Database: run Alembic migrations ---
    package_dir = os.path.dirname(os.path.abspath(__file__))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=package_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    msg = result.stdout.strip() or "No pending migrations"
    logger.info("Alembic: %s", msg)

    # --- 2. Redis: geolocation cache — ingestion keeps working without it ---
    from formtrack.cache import create_redis_pool
    try:
        app.state.redis = await create_redis_pool()
    except (RedisError, OSError) as exc:
        logger.warning("Redis unavailable — geolocation cache disabled: %s", exc)
        app.state.redis = None

    # --- 3. Geolocation HTTP client — singleton for connection pool reuse ---
    app.state.http = httpx.AsyncClient(timeout=settings.geo_timeout_seconds)

    logger.info("formtrack v%s starting up", settings.app_version)
    yield

    # --- Shutdown ---
    await app.state.http.aclose()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")
    logger.info("formtrack shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="formtrack API",
    version=settings.app_version,
    description=(
        "Session behavioral-analytics pipeline for the invoice wizard: "
        "session/field-log/behavioral ingestion and cross-session aggregation."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# ---------------------------------------------------------------------------
# CORS middleware — restricted to frontend origins from settings
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope: {error: {code, message, details}}
# ---------------------------------------------------------------------------
def _envelope(exc: FormtrackError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {"code": exc.code, "message": exc.message, "details": exc.details}
        },
    )


# Framework-level HTTP errors this API can produce (unknown route, wrong verb).
_HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Every field violation of the body or query, reported together as one 400."""
    details = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body") or None,
            "issue": error["msg"],
        }
        for error in exc.errors()
    ]
    return _envelope(ValidationError("Request validation failed", details))


@app.exception_handler(FormtrackError)
async def formtrack_error_handler(request: Request, exc: FormtrackError) -> JSONResponse:
    return _envelope(exc)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    error = FormtrackError(str(exc.detail))
    error.code = _HTTP_ERROR_CODES.get(exc.status_code, f"HTTP_{exc.status_code}")
    error.status_code = exc.status_code
    return _envelope(error)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    500 INTERNAL_ERROR. The traceback is logged server-side; with DEBUG=true the
    exception type and message are echoed in details.
    """
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=True)
    if settings.debug:
        error = FormtrackError(
            "An unexpected error occurred (debug details included)",
            [{"issue": f"{type(exc).__name__}: {exc}"}],
        )
    else:
        error = FormtrackError("An unexpected error occurred")
    return _envelope(error)


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    """Returns service health status."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from formtrack.analytics.routes import router as analytics_router  # noqa: E402
from formtrack.ingestion.routes import router as ingestion_router  # noqa: E402

app.include_router(ingestion_router)
app.include_router(analytics_router)
