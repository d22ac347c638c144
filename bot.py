import asyncio
import logging
import ssl
from typing import Optional, Tuple

import certifi
import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from rankwarden.bot.client import RankWardenBot
from rankwarden.config.settings import Settings
from rankwarden.db.database import create_sqlalchemy_engine, init_redis
from rankwarden.exceptions import CatalogError
from rankwarden.ranks.catalog import get_catalog
from rankwarden.utils.constants import APP_VERSION, LOGGER_NAME
from rankwarden.utils.logger import setup_logging

logger = logging.getLogger(LOGGER_NAME)


async def initialize_services(settings: Settings) -> Tuple[AsyncEngine, redis.Redis]:
    """Open the database engine and the Redis pool, failing fast if either is unreachable"""
    engine = create_sqlalchemy_engine(settings.sqlalchemy_url, echo=settings.debug,
                                      pool_options=settings.pool_options)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection established")

        redis_pool = await init_redis(settings.redis_url)
        logger.info("Redis connection established")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        await engine.dispose()
        raise

    return engine, redis_pool


async def cleanup_services(bot: Optional[RankWardenBot] = None,
                           engine: Optional[AsyncEngine] = None,
                           redis_pool: Optional[redis.Redis] = None) -> None:
    try:
        if bot and not bot.is_closed():
            await bot.close()
        if engine:
            await engine.dispose()
        if redis_pool:
            await redis_pool.aclose()
        logger.info("All services cleaned up")
    except Exception as e:
        logger.error(f"Error during cleanup: {e}")


async def main() -> None:
    engine: Optional[AsyncEngine] = None
    redis_pool: Optional[redis.Redis] = None
    bot: Optional[RankWardenBot] = None

    try:
        settings = Settings()
    except Exception as e:
        logger.critical(f"Failed to load settings: {e}")
        raise

    setup_logging(settings.log_level, settings.json_logging, settings.log_dir)
    logger.info(f"Starting RankWarden v{APP_VERSION} ({settings.environment})")

    # A broken catalog is a configuration error; refuse to connect at all
    try:
        catalog = get_catalog(settings.rank_catalog_path)
    except CatalogError as e:
        logger.critical(f"Rank catalog is invalid: {e}")
        raise
    logger.info(f"Rank catalog v{catalog.version} loaded ({len(catalog.ranks)} ranks)")

    try:
        engine, redis_pool = await initialize_services(settings)

        bot = RankWardenBot(
            engine=engine,
            redis_pool=redis_pool,
            settings=settings,
            ssl_context=ssl.create_default_context(cafile=certifi.where()),
        )
        async with bot:
            await bot.start(settings.discord_token)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down")
    finally:
        await cleanup_services(bot, engine, redis_pool)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Bot shutdown initiated by user")
    finally:
        logger.info("Bot shutdown complete")
