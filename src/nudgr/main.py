"""FastAPI application factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from nudgr.auth.router import router as auth_router
from nudgr.bets.router import router as bets_router
from nudgr.config import get_settings
from nudgr.database import close_db, get_session_factory, init_db
from nudgr.emotions.router import router as emotions_router
from nudgr.events.bus import bus
from nudgr.events.wiring import register_handlers
from nudgr.health.router import router as health_router
from nudgr.middleware import setup_middleware
from nudgr.nudges.router import router as nudges_router
from nudgr.redis_client import close_redis, init_redis
from nudgr.stream.registry import registry
from nudgr.stream.router import router as stream_router
from nudgr.tasks.router import router as tasks_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    unsubscribe = register_handlers(bus, get_session_factory(), registry)

    yield

    # Open streams notice the close on their next await and tear themselves down.
    registry.close_all("server_shutdown")
    for off in unsubscribe:
        off()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Nudgr API",
        description="Backend API for Nudgr, a gamified task manager with AI nudges and micro-bets",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(tasks_router)
    app.include_router(emotions_router)
    app.include_router(nudges_router)
    app.include_router(bets_router)
    app.include_router(stream_router)

    return app


app = create_app()
