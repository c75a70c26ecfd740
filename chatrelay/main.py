import asyncio
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.config import settings
from chatrelay.dependencies import Services, build_services
from chatrelay.logging_config import get_logger, setup_logging
from chatrelay.routers import admin, conversations, webhook

setup_logging(settings.log_level)

eviction_logger = get_logger("eviction_worker")


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_eviction_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("EVICTION_WORKER_ENABLED"), default=True)


async def _eviction_worker_loop(services: Services) -> None:
    interval_seconds = max(services.settings.eviction_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            evicted = await services.router.evict_idle(services.settings.connection_idle_seconds)
            if evicted:
                eviction_logger.info(
                    "Eviction worker closed idle connections",
                    extra={"context": {"evicted": evicted, "active": len(services.router.list_active())}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            eviction_logger.error(
                "Eviction worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title="ChatRelay API",
        description="Multi-tenant customer messaging backend",
        version="0.1.0",
    )
    app.state.services = services or build_services(settings)
    app.state.eviction_task = None

    cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
    if not cors_origins:
        cors_origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook.router)
    app.include_router(conversations.router)
    app.include_router(admin.router)

    @app.on_event("startup")
    async def start_eviction_worker() -> None:
        if not _is_eviction_worker_enabled():
            return
        task = app.state.eviction_task
        if task is None or task.done():
            app.state.eviction_task = asyncio.create_task(_eviction_worker_loop(app.state.services))
            eviction_logger.info("Eviction worker started")

    @app.on_event("shutdown")
    async def shutdown() -> None:
        task = app.state.eviction_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.eviction_task = None

        current: Services = app.state.services
        # Buffered fragments still get their reply before connections go away.
        await current.coalescer.drain()
        await current.router.close_all()

    @app.get("/health")
    async def health():
        current: Services = app.state.services
        return {
            "status": "ok",
            "tenants_configured": len(current.settings.tenants),
            "connections": len(current.router.list_active()),
            "pending_buffers": len(current.coalescer.pending_keys()),
        }

    return app


app = create_app()
