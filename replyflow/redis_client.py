import redis.asyncio as redis_async

from replyflow.config import settings
from replyflow.logging_config import get_logger

logger = get_logger("redis")

_redis_client = None
_redis_url = None


def get_redis_client(redis_url: str | None = None, socket_timeout_seconds: float | None = None):
    """Return the process-wide client for the shared store, created lazily per URL."""
    global _redis_client, _redis_url

    redis_url = redis_url or settings.redis_url
    timeout = socket_timeout_seconds if socket_timeout_seconds is not None else settings.redis_socket_timeout_seconds

    if _redis_client is None or _redis_url != redis_url:
        _redis_url = redis_url
        _redis_client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=timeout,
            socket_timeout=timeout,
        )

    return _redis_client


def get_redis():
    """FastAPI dependency."""
    return get_redis_client()


async def close_redis() -> None:
    global _redis_client, _redis_url
    if _redis_client is None:
        return
    try:
        await _redis_client.aclose()
    except Exception as exc:
        logger.warning("Redis close failed", extra={"context": {"error": str(exc)}})
    _redis_client = None
    _redis_url = None


async def ping_redis(client) -> bool:
    try:
        return bool(await client.ping())
    except Exception as exc:
        logger.warning("Redis ping failed", extra={"context": {"error": str(exc)}})
        return False
