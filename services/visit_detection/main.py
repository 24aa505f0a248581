"""
Process wiring for the visit detection engine.

The ingestion service enters ``lifespan()`` once at startup and hands every
incoming ping to the yielded processor:

    async with lifespan() as engine:
        await engine.processor.process_ping(user_id, Coordinate(lat, lon), accuracy)

Redis and Sentry are optional: without them notifications are dropped and
errors are only logged. The database is required.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import asyncpg
import redis.asyncio as aioredis

from services.visit_detection.config import ServiceSettings, StaticSettingsProvider, settings
from services.visit_detection.locator import PostgisPlaceLocator
from services.visit_detection.notifier import RedisVisitNotifier
from services.visit_detection.processor import PingProcessor
from services.visit_detection.reporting import setup_sentry
from services.visit_detection.stores.postgres import PostgresVisitStorage

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    processor: PingProcessor
    storage: PostgresVisitStorage
    settings_provider: StaticSettingsProvider
    db: Any
    redis: Any


@asynccontextmanager
async def lifespan(service_settings: ServiceSettings | None = None) -> AsyncIterator[Engine]:
    """Startup/shutdown lifecycle."""
    cfg = service_settings or settings
    setup_sentry(cfg)

    # Redis for visit notifications
    redis_client = None
    if cfg.redis_url:
        try:
            redis_client = aioredis.from_url(
                cfg.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await redis_client.ping()
        except Exception:
            # Notifications degrade gracefully: visits are still recorded
            logger.warning("redis unavailable, visit notifications disabled", exc_info=True)
            if redis_client is not None:
                await redis_client.aclose()
            redis_client = None

    db_pool = await asyncpg.create_pool(
        cfg.database_url,
        min_size=cfg.database_pool_min_size,
        max_size=cfg.database_pool_max_size,
        command_timeout=cfg.database_command_timeout_s,
    )

    provider = StaticSettingsProvider(cfg.detection_settings())
    storage = PostgresVisitStorage(db_pool)
    processor = PingProcessor(
        storage=storage,
        locator=PostgisPlaceLocator(db_pool),
        settings_provider=provider,
        notifier=RedisVisitNotifier(redis_client),
    )
    logger.info("%s %s started (environment=%s)", cfg.app_name, cfg.app_version, cfg.environment)

    try:
        yield Engine(
            processor=processor,
            storage=storage,
            settings_provider=provider,
            db=db_pool,
            redis=redis_client,
        )
    finally:
        await db_pool.close()
        if redis_client:
            await redis_client.aclose()
