from redis.asyncio import Redis

from seat_inventory.config import settings


def create_redis_client(url: str = None) -> Redis:
    """Build a redis.asyncio client; connections are opened lazily on first command."""
    return Redis.from_url(url or settings.REDIS_URL, decode_responses=True)
