"""
Tradefin Invoice Financing API — application entry-point.

Initialises the FastAPI application, registers middleware, exception
handlers and routers, and runs the background maintenance loop that
resolves expired verifications, defaults overdue invoices and refreshes
the market snapshot.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.openapi.docs import get_redoc_html
from sqlalchemy import text

from tradefin.api.deps import get_coordinator, get_lifecycle
from tradefin.api.v1.api import api_router
from tradefin.core.config import settings
from tradefin.core.exceptions import (
    AppException,
    OracleUnavailableError,
    add_exception_handlers,
)
from tradefin.core.logging import setup_logging
from tradefin.core.resilience import ALL_BREAKERS
from tradefin.db.base import init_models
from tradefin.db.session import AsyncSessionLocal, engine
from tradefin.middleware import RequestIDMiddleware, RequestTimingMiddleware

setup_logging()
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


async def _maintenance_loop(interval: float) -> None:
    """
    Periodically resolve verifications whose watchdog was lost (restart)
    and default Funded invoices past maturity, then refresh the
    last-known-good market snapshot.
    """
    coordinator = get_coordinator()
    lifecycle = get_lifecycle()
    while True:
        await asyncio.sleep(interval)
        try:
            await coordinator.sweep_expired()
            await lifecycle.default_overdue()
        except (AppException, OSError) as exc:
            logger.warning("Maintenance pass failed: %s", exc)
        except Exception:
            logger.exception("Maintenance pass crashed")
        try:
            await coordinator.refresh_market_data()
        except OracleUnavailableError as exc:
            logger.warning("Market snapshot not refreshed: %s", exc.message)


# ────────────────────────────────────────────────────────────────────────────
# Application lifespan
# ────────────────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup:
      - Creates tables, retrying with exponential back-off; if the database
        stays unreachable the app starts degraded (``/health`` says so).
      - Primes the last-known-good market snapshot.
      - Starts the maintenance loop.

    Shutdown:
      - Stops the loop, cancels verification timers, closes the oracle and
        market HTTP clients, disposes the pool.
    """
    max_retries = 5
    retry_delay = 2  # seconds, doubles each attempt

    for attempt in range(1, max_retries + 1):
        try:
            logger.info("Connecting to database (attempt %d/%d)…", attempt, max_retries)
            await init_models(engine)
            logger.info("Database tables ready")
            break
        except Exception as exc:
            if attempt < max_retries:
                logger.warning(
                    "Database connection failed (attempt %d/%d): %s — retrying in %ds…",
                    attempt,
                    max_retries,
                    exc,
                    retry_delay,
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= 2
            else:
                logger.error(
                    "Could not connect to database after %d attempts; starting in "
                    "DEGRADED mode. Last error: %s",
                    max_retries,
                    exc,
                )

    coordinator = get_coordinator()
    try:
        await coordinator.refresh_market_data()
    except OracleUnavailableError as exc:
        logger.warning("No initial market snapshot: %s", exc.message)

    # Resolve anything that expired while the service was down.
    try:
        await coordinator.sweep_expired()
    except Exception:
        logger.exception("Startup verification sweep failed")

    maintenance = asyncio.create_task(_maintenance_loop(settings.SWEEP_INTERVAL_SECONDS))

    yield

    logger.info("Shutting down — stopping background work and disposing connection pool")
    maintenance.cancel()
    await asyncio.gather(maintenance, return_exceptions=True)
    await coordinator.shutdown()
    await engine.dispose()


# ────────────────────────────────────────────────────────────────────────────
# FastAPI application instance
# ────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
    description=(
        "Trade-invoice financing: submission, oracle-backed risk verification, "
        "pro-rata investor funding and settlement."
    ),
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    redoc_url=None,
    lifespan=lifespan,
)


@app.get("/redoc", include_in_schema=False)
async def custom_redoc_html():
    """Serve ReDoc from the unpkg CDN."""
    return get_redoc_html(
        openapi_url=app.openapi_url or f"{settings.API_V1_STR}/openapi.json",
        title=f"{settings.PROJECT_NAME} — ReDoc",
        redoc_js_url="https://unpkg.com/redoc@latest/bundles/redoc.standalone.js",
    )


# ── Middleware (last added = outermost) ──
app.add_middleware(GZipMiddleware, minimum_size=500)
app.add_middleware(RequestTimingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_exception_handlers(app)

app.include_router(api_router, prefix=settings.API_V1_STR)


# ── Health check ──


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Liveness / readiness probe.

    Runs ``SELECT 1`` against the database and reports every circuit
    breaker, the market snapshot cache and the number of pending
    verification timers.
    """
    db_healthy = True
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        db_healthy = False

    coordinator = get_coordinator()
    return {
        "status": "ok" if db_healthy else "degraded",
        "version": VERSION,
        "database": db_healthy,
        "circuit_breakers": {name: b.get_status() for name, b in ALL_BREAKERS.items()},
        "market_snapshot": coordinator.snapshots.get_stats(),
        "pending_verifications": coordinator.pending,
    }
