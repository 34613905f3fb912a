from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tradersmind.config import Settings, get_settings
from tradersmind.routers import events, system
from tradersmind.services.artifact_registry import ArtifactRegistry
from tradersmind.services.chart_renderer import ChartRenderer
from tradersmind.services.day_cache import chart_cache, quote_cache
from tradersmind.services.discord_client import DiscordClient
from tradersmind.services.interactions import InteractionService
from tradersmind.services.maintenance import MaintenanceService
from tradersmind.services.market_data import QuoteService
from tradersmind.services.retention import RetentionService
from tradersmind.services.thread_directory import ThreadDirectory

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_services(app: FastAPI, settings: Settings, platform: DiscordClient) -> None:
    registry = ArtifactRegistry()
    quotes_cache = quote_cache()
    charts_cache = chart_cache()
    threads = ThreadDirectory(platform, archive_after_minutes=settings.thread_archive_minutes)
    quotes = QuoteService(settings, quotes_cache)
    charts = ChartRenderer(settings, charts_cache)

    app.state.settings = settings
    app.state.platform = platform
    app.state.registry = registry
    app.state.threads = threads
    app.state.retention = RetentionService(settings, platform, registry, [quotes_cache, charts_cache], threads)
    app.state.maintenance = MaintenanceService(settings, registry, [quotes_cache, charts_cache], threads)
    app.state.interactions = InteractionService(settings, platform, registry, threads, quotes, charts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    platform = DiscordClient(settings)
    build_services(app, settings, platform)

    retention: RetentionService = app.state.retention
    maintenance: MaintenanceService = app.state.maintenance
    if settings.cleanup_enabled:
        retention.start(settings.cleanup_interval_minutes)
    else:
        logger.warning("Retention cleanup disabled by CLEANUP_ENABLED")
    try:
        await maintenance.start()
    except Exception:
        logger.exception("Failed to start maintenance loop")

    try:
        yield
    finally:
        if retention.running:
            try:
                await retention.stop()
            except Exception:
                logger.exception("Failed to stop retention service")
        try:
            await maintenance.stop()
        except Exception:
            logger.exception("Failed to stop maintenance loop")
        app.state.threads.close()
        try:
            await platform.aclose()
        except Exception:
            logger.exception("Failed to close Discord client")


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.include_router(system.router)
app.include_router(events.router)


@app.get("/")
async def root():
    return {"app": settings.app_name, "status": "running"}
