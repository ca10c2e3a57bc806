"""
FastAPI Webhook Server for the SIP platform
Payment and indexer webhooks, health check, and the background scheduler lifecycle
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, dispose_database, init_database, test_connection
from handlers.indexer_webhook import router as indexer_router
from handlers.payment_webhooks import router as payment_router
from jobs.scheduler import SIPScheduler, ServiceRegistry, build_services

logger = logging.getLogger(__name__)


def create_app(services: Optional[ServiceRegistry] = None, start_scheduler: bool = True) -> FastAPI:
    """
    Build the application.

    With no services supplied, startup initialises the database from
    DATABASE_URL and wires the production adapters.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = app.state.services is None
        if owns_database:
            session_factory = init_database()
            await create_tables()
            app.state.services = build_services(session_factory)

        scheduler = None
        if start_scheduler:
            scheduler = SIPScheduler(app.state.services)
            scheduler.start()
        app.state.started_at = time.time()
        logger.info(f"✅ Webhook server ready, integrations: {Config.optional_integrations()}")

        yield

        if scheduler is not None:
            scheduler.stop()
        if owns_database:
            await app.state.services.close()
            await dispose_database()
        logger.info("🔄 Webhook server shut down")

    app = FastAPI(
        title="Stride SIP Scheduler",
        description="Payment webhooks and recurring investment execution",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.started_at = None
    app.include_router(payment_router)
    app.include_router(indexer_router)

    @app.get("/health")
    async def health_check():
        """Liveness with a database check"""
        registry = app.state.services
        if registry is None:
            return JSONResponse(content={"status": "starting", "ready": False}, status_code=503)

        database_ok = await test_connection(registry.session_factory)
        uptime = time.time() - app.state.started_at if app.state.started_at else 0
        body = {
            "status": "healthy" if database_ok else "degraded",
            "ready": database_ok,
            "database": database_ok,
            "uptime_seconds": round(uptime, 2),
        }
        return JSONResponse(content=body, status_code=200 if database_ok else 503)

    return app
