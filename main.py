"""
Storage Connector linking service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import Settings, config
from connectors.routes import router as connectors_router
from core.service_factory import LinkingServices, build_services
from database.session import create_tables

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = config,
    services: Optional[LinkingServices] = None,
) -> FastAPI:
    app = FastAPI(
        title="Storage Connector",
        version="1.0.0",
        description="Link cloud-storage providers and list their files in one place.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(connectors_router, prefix="/api/v1")

    if services is not None:
        app.state.services = services

    @app.on_event("startup")
    async def on_startup():
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        engine = app.state.services.engine
        if engine is not None:
            logger.info("Ensuring link tables exist…")
            await create_tables(engine)
        logger.info(
            "Application ready — providers: %s",
            ", ".join(p.value for p in app.state.services.providers.providers()),
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.services.close()

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
