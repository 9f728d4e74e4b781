"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire API routers (attendance/bills/subscriptions/notifications) under /api
- Mount the notification WebSocket at /ws/notifications
- Register centralized exception handlers
- Provide middleware: request-id logging, in-memory rate limiting, CORS
- Add health / readiness endpoints
- Lifespan: create tables (dev), start the expiry sweeper, close live channels on shutdown
Notes:
- The rate limiter and the channel registry are process-local. Run a single
  worker, or put a shared limiter/broker in front when scaling out.
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import routes_attendance, routes_bills, routes_notifications, routes_subscriptions
from config.settings import settings
from core import db
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.rate_limiter import RateLimiterMiddleware
from core.response import error, ok
from services.channel_registry import ChannelRegistry
from workers.expiry_sweeper import ExpirySweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup:
    - Create DB tables (development convenience). In production use Alembic migrations instead.
    - Start the expiry sweeper when enabled.
    On shutdown:
    - Stop the sweeper and close every live WebSocket.
    """
    sweeper = None
    if db.engine is not None:
        try:
            await db.init_models()
        except Exception as e:
            # Do not crash the process for a missing DB during local dev; log for ops
            logger.warning("DB initialization failed on startup (ok for local dev): %s", e)
        if settings.EXPIRY_SWEEP_INTERVAL_SEC > 0:
            sweeper = ExpirySweeper(db.async_session_maker, app.state.channel_registry)
            sweeper.start()
    app.state.expiry_sweeper = sweeper
    try:
        yield
    finally:
        if sweeper is not None:
            await sweeper.stop()
        await app.state.channel_registry.close_all()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION, lifespan=lifespan)
    app.state.channel_registry = ChannelRegistry(push_timeout=settings.PUSH_TIMEOUT_SEC)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(routes_attendance.router, prefix="/api/attendance", tags=["attendance"])
    app.include_router(routes_bills.router, prefix="/api/bills", tags=["bills"])
    app.include_router(routes_subscriptions.router, prefix="/api/subscriptions", tags=["subscriptions"])
    app.include_router(routes_notifications.router, prefix="/api/notifications", tags=["notifications"])
    app.include_router(routes_notifications.ws_router)

    register_exception_handlers(app)

    # Adds X-Request-ID header and logs every request
    app.middleware("http")(request_logging_middleware)

    app.add_middleware(
        RateLimiterMiddleware,
        calls=settings.RATE_LIMIT_CALLS,
        per_seconds=settings.RATE_LIMIT_PERIOD,
    )

    @app.get("/health")
    async def health():
        """Simple health endpoint used by load balancers and orchestrators."""
        return ok({"status": "ok", "connections": await app.state.channel_registry.connection_count()})

    @app.get("/ready")
    async def ready():
        """Readiness: check DB connectivity if configured."""
        if db.engine is None:
            return ok({"ready": True, "database": "disabled"})
        try:
            async with db.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return ok({"ready": True, "database": "ok"})
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            return JSONResponse(status_code=503, content=error(code="db_unreachable", message="DB unavailable"))

    return app


app = create_app()

if __name__ == "__main__":
    # Run with: python main.py for local dev. For production use uvicorn/gunicorn.
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
