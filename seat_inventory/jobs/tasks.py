import asyncio

from celery.utils.log import get_task_logger
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from seat_inventory.celery_app import celery_app
from seat_inventory.config import settings
from seat_inventory.redis_client import create_redis_client
from seat_inventory.services.auth import TokenVerifier
from seat_inventory.services.availability_cache import RedisCacheBackend
from seat_inventory.services.publisher import RedisPublisher
from seat_inventory.services.seat_map import build_seat_map_service

logger = get_task_logger(__name__)


async def _sweep() -> int:
    # each task run gets its own event loop, so connections must not outlive it
    engine = create_async_engine(str(settings.DATABASE_URL), poolclass=NullPool)
    redis = create_redis_client()
    try:
        session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        publisher = RedisPublisher(redis, TokenVerifier())
        service = build_seat_map_service(session_factory, RedisCacheBackend(redis), publisher)
        return await service.reap_expired()
    finally:
        await redis.aclose()
        await engine.dispose()


@celery_app.task(bind=True, autoretry_for=(SQLAlchemyError, RedisError), retry_backoff=True, retry_backoff_max=30, max_retries=2)
def reap_expired_seat_holds_task(self):
    """Release expired seat holds and notify subscribers (scheduled by celery beat)."""
    count = asyncio.run(_sweep())
    if count:
        logger.info("%d expired seat holds released; subscribers notified", count)
    return count
