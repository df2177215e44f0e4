"""
Kin Relay - Main Application Entry Point
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api import connections_router, webhooks_router
from app.config import Settings, get_settings
from app.context import AppContext, build_context
from app.logging_config import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the application context on startup, release it on shutdown"""
    settings: Settings = app.state.settings
    context: Optional[AppContext] = getattr(app.state, "context", None)
    owns_context = context is None
    if owns_context:
        configure_logging(settings.log_level, settings.log_json)
        logger.info(f"{settings.app_name} starting up ({settings.environment})...")
        context = build_context(settings)
        app.state.context = context

    await context.database.init()
    logger.info("Database initialized")
    await context.start()

    scheduler = None
    if owns_context:
        from app.scripts.scheduled_tasks import start_scheduler
        try:
            scheduler = start_scheduler(context)
        except Exception as e:
            logger.warning(f"Could not start scheduler: {e}")

    app.state.started_at = time.time()
    yield

    if scheduler is not None:
        from app.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler(scheduler)
    if owns_context:
        await context.stop()
    logger.info(f"{settings.app_name} shut down")


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """
    Build the FastAPI app.

    Pass ``context`` to run against prebuilt collaborators (tests); otherwise
    the context is built from settings during startup.
    """
    settings = settings or (context.settings if context else get_settings())

    app = FastAPI(
        title=settings.app_name,
        description="Telegram and WhatsApp relay with subscription and credit gating",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.started_at = time.time()
    if context is not None:
        app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Platform and billing webhooks live at the root (/webhooks/...)
    app.include_router(webhooks_router)
    app.include_router(connections_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health():
        ctx: Optional[AppContext] = getattr(app.state, "context", None)
        return {
            "status": "ok",
            "environment": settings.environment,
            "uptime_seconds": round(time.time() - app.state.started_at, 1),
            "collaborators": ctx.status() if ctx else {},
        }

    return app


app = create_app()
