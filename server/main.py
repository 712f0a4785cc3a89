"""
MODULE OVERVIEW:
The FastAPI application factory for the dev gateway.

WHAT IS HAPPENING HERE:
`create_app()` builds a fresh app around its own Settings and SessionRegistry (tests
create one per case). The `lifespan` context manager logs startup and, on shutdown,
reports how many sessions were still known.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from server.connection_manager import SessionRegistry
from server.routes import gateway
from shared.config import Settings, settings as default_settings


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or default_settings
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # STARTUP
        logger.info(
            f"Dev gateway starting up: v={settings.PROTOCOL_VERSION} "
            f"heartbeat_interval={settings.DEV_HEARTBEAT_INTERVAL_MS}ms "
            f"ack_drop_rate={settings.DEV_ACK_DROP_RATE} chaos_rate={settings.DEV_CHAOS_RATE}"
        )
        yield
        # SHUTDOWN
        logger.info(f"Dev gateway shutting down with {len(registry.sessions)} sessions.")

    app = FastAPI(
        title="Gateway Keeper dev gateway",
        description="A local gateway that speaks the HELLO/IDENTIFY/RESUME/heartbeat protocol",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.registry = registry

    app.include_router(gateway.router, tags=["Gateway"])

    @app.get("/healthz", tags=["Ops"])
    async def health_check():
        return {"status": "ok"}

    @app.get("/stats", tags=["Ops"])
    async def get_stats():
        return registry.get_stats()

    return app


app = create_app()
