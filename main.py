"""
Fitness Integrations Service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import get_services
from api.middleware import register_middleware
from config.settings import config
from connectors.routes import router as integrations_router
from core.auto_sync import AutoSyncScheduler

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()

    if config.auto_create_tables:
        from database.session import create_tables

        logger.info("Creating missing tables…")
        await create_tables()

    logger.info("Seeding integration feature flags…")
    await services.flags.ensure_defaults()

    scheduler = None
    if config.auto_sync_enabled:
        scheduler = AutoSyncScheduler(services.worker, config.auto_sync_interval_minutes)
        scheduler.start()

    logger.info(
        "Application ready. Providers: %s",
        ", ".join(c.provider_name for c in services.registry.all()),
    )
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Fitness Integrations Service",
        version="1.0.0",
        description="OAuth provider connections and workout sync.",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
