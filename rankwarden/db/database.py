import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (AsyncEngine, AsyncSession,
                                    async_sessionmaker, create_async_engine)

from rankwarden.utils.constants import CACHE_SETTINGS, DB_SETTINGS, LOGGER_NAME
from .models import Base

logger = logging.getLogger(LOGGER_NAME)


def create_sqlalchemy_engine(database_url: str,
                             echo: Optional[bool] = None,
                             pool_options: Optional[Dict[str, int]] = None) -> AsyncEngine:
    """Create SQLAlchemy async engine

    ``pool_options`` overrides the pool sizing from DB_SETTINGS (keys
    pool_size, max_overflow, pool_timeout, pool_recycle).
    """
    echo = DB_SETTINGS['ECHO'] if echo is None else echo
    if database_url.startswith('sqlite'):
        # SQLite pools do not accept sizing arguments
        return create_async_engine(database_url, echo=echo)

    options = {
        'pool_size': DB_SETTINGS['POOL_SIZE'],
        'max_overflow': DB_SETTINGS['MAX_OVERFLOW'],
        'pool_timeout': DB_SETTINGS['POOL_TIMEOUT'],
        'pool_recycle': DB_SETTINGS['POOL_RECYCLE'],
    }
    options.update(pool_options or {})
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Sessions keep loaded values after commit so results can be read post-transaction"""
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_schema(engine: AsyncEngine) -> None:
    """Create the rank engine tables and indexes if they do not exist"""
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Rank engine schema initialized")
    except Exception as e:
        logger.error(f"Error initializing schema: {e}")
        raise


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker,
                        session: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
    """Join the caller's transaction, or run a new one that commits on exit"""
    if session is not None:
        yield session
        return

    async with session_factory() as new_session:
        async with new_session.begin():
            yield new_session


async def init_redis(redis_url: str) -> redis.Redis:
    """Initialize Redis connection with retry logic"""
    for attempt in range(CACHE_SETTINGS['REDIS_RETRY_COUNT']):
        try:
            redis_client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=CACHE_SETTINGS['REDIS_TIMEOUT'],
                socket_connect_timeout=CACHE_SETTINGS['REDIS_TIMEOUT'],
                retry_on_timeout=True,
                health_check_interval=30
            )

            await redis_client.ping()

            logger.info("Redis connection initialized successfully")
            return redis_client

        except redis.TimeoutError:
            logger.warning(f"Redis connection timeout (attempt {attempt + 1}/{CACHE_SETTINGS['REDIS_RETRY_COUNT']})")
            if attempt < CACHE_SETTINGS['REDIS_RETRY_COUNT'] - 1:
                await asyncio.sleep(CACHE_SETTINGS['REDIS_RETRY_DELAY'])
        except redis.ConnectionError as e:
            logger.error(f"Redis connection error (attempt {attempt + 1}): {e}")
            if attempt < CACHE_SETTINGS['REDIS_RETRY_COUNT'] - 1:
                await asyncio.sleep(CACHE_SETTINGS['REDIS_RETRY_DELAY'])
        except Exception as e:
            logger.error(f"Unexpected Redis error: {e}")
            raise

    raise ConnectionError("Failed to establish Redis connection after retries")
