# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Builds the process-wide collaborators once (settings, rate limiter,
metrics, session registry) and wires them into the FastAPI app. The
lifespan handler runs the idle-session sweep (which also lets the provider
release expired pooled connections) and closes queues and the
provider on shutdown.

Usage:
    uvicorn bulk_mail_queue.server:app --host 0.0.0.0 --port 8000

Environment variables:
    BMQ_CONFIG: Path to config.ini (default: config.ini)
    BMQ_LOG_LEVEL: Logging level (default: INFO)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import Settings, load_settings
from .delivery_queue import DeliveryQueueManager
from .errors import ProviderNotConfiguredError
from .logger import configure_logging, get_logger
from .prometheus import QueueMetrics
from .providers import clear_provider_cache, get_email_provider
from .rate_limit import RateLimiter
from .sessions import QueueRegistry

logger = get_logger("Server")


def build_app(settings: Settings) -> FastAPI:
    """Create the application and its long-lived collaborators."""
    limiter = RateLimiter(settings.rate_limit.window_seconds, settings.rate_limit.limits)
    metrics = QueueMetrics()

    def make_queue() -> DeliveryQueueManager:
        return DeliveryQueueManager(
            get_email_provider(settings),
            default_sender=settings.email.email_from,
            metrics=metrics,
            log_delivery_activity=settings.email.log_delivery_activity,
        )

    registry = QueueRegistry(make_queue, idle_seconds=settings.sessions.idle_seconds)

    async def release_provider_resources() -> None:
        try:
            provider = get_email_provider(settings)
        except ProviderNotConfiguredError:
            return
        await provider.cleanup()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Run the idle-session sweep while the app is serving."""
        stop = asyncio.Event()
        sweeper = asyncio.create_task(
            registry.sweep_forever(settings.sessions.sweep_interval_seconds, stop, release_provider_resources),
            name="session-sweep",
        )
        logger.info("Bulk mail queue started")
        try:
            yield
        finally:
            stop.set()
            await asyncio.gather(sweeper, return_exceptions=True)
            await registry.close()
            try:
                await get_email_provider(settings).close()
            except ProviderNotConfiguredError:
                pass
            clear_provider_cache()
            logger.info("Bulk mail queue stopped")

    return create_app(registry, limiter, settings=settings, metrics=metrics, lifespan=lifespan)


configure_logging()
app = build_app(load_settings())
