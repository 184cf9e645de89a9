"""Session Router – Gateway.

FastAPI entry point: lifespan wiring of Redis, persistence and the channel
supervisors, plus health, metrics and the channel control router.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from app.core.db import run_migrations
from app.core.instrumentation import router as metrics_router
from app.core.instrumentation import setup_logging
from app.gateway import dependencies
from app.gateway.dependencies import redis_bus
from app.gateway.routers.channels import router as channels_router
from config.settings import Settings, get_settings

logger = structlog.get_logger()

settings: Settings = get_settings()


def _enforce_startup_guards() -> None:
    if not settings.is_production:
        return
    if settings.auth_secret in {"", "change-me-long-random-secret", "changeme", "password123"}:
        raise RuntimeError("Refusing startup in production due to weak/default secrets.")


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[type-arg]
    """Application lifespan: restore sessions on startup, stop supervisors on shutdown."""
    setup_logging(settings.log_level)
    _enforce_startup_guards()
    run_migrations()
    os.makedirs(settings.media_dir, exist_ok=True)
    logger.info("router.gateway.startup", env=settings.environment)
    try:
        await redis_bus.connect()
    except Exception:
        logger.warning("router.gateway.redis_unavailable", msg="Starting without Redis")

    manager = dependencies.build_channel_manager()
    restored = await manager.restore_all_sessions()
    logger.info("router.gateway.sessions_restored", sessions=restored)

    yield
    await manager.shutdown()
    await redis_bus.disconnect()
    logger.info("router.gateway.shutdown")


app = FastAPI(
    title="Session Router",
    description="Multi-tenant WhatsApp ⇄ CRM session router",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(metrics_router)
app.include_router(channels_router)
app.mount("/media", StaticFiles(directory=settings.media_dir, check_dir=False), name="media")


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health endpoint – returns system status."""
    redis_ok = await redis_bus.health_check()
    return {
        "status": "ok" if redis_ok else "degraded",
        "service": "session-router",
        "redis": "connected" if redis_ok else "disconnected",
        "sessions": len(dependencies.registry),
        "connected": sum(1 for s in dependencies.registry.snapshots() if s.connected),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
