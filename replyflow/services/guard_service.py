"""Per-event idempotency and per-user rate limiting on top of the shared store.

Both checks fail open: if Redis is unreachable the event is processed, since
dropping a real customer message is worse than an occasional duplicate reply.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from replyflow.logging_config import get_logger

logger = get_logger("guard_service")


class IdempotencyResult(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


@dataclass
class RateLimitStatus:
    count: int
    limit: int
    window_seconds: int
    remaining: int
    limited: bool


def dedup_key(tenant_id: str, delivery_token: str) -> str:
    return f"dedup:{tenant_id}:{delivery_token}"


def rate_limit_key(tenant_id: str, user_id: str, window_seconds: int, now: float) -> str:
    window_index = int(now // window_seconds)
    return f"ratelimit:{tenant_id}:{user_id}:{window_index}"


async def check_idempotency(redis_client, tenant_id: str, delivery_token: str, ttl_seconds: int) -> IdempotencyResult:
    """Claim the delivery token. The first claimant within the TTL sees FRESH, everyone else DUPLICATE."""
    if not delivery_token:
        return IdempotencyResult.FRESH

    try:
        claimed = await redis_client.set(dedup_key(tenant_id, delivery_token), "1", ex=ttl_seconds, nx=True)
    except Exception as exc:
        logger.warning(
            "Idempotency check unavailable, processing event",
            extra={"context": {"tenant_id": tenant_id, "delivery_token": delivery_token, "error": str(exc)}},
        )
        return IdempotencyResult.FRESH

    return IdempotencyResult.FRESH if claimed else IdempotencyResult.DUPLICATE


async def _increment_window(redis_client, key: str, window_seconds: int) -> int:
    async with redis_client.pipeline(transaction=True) as pipe:
        pipe.incr(key)
        pipe.expire(key, window_seconds * 2)
        count, _ = await pipe.execute()
    return int(count)


async def is_rate_limited(
    redis_client,
    tenant_id: str,
    user_id: str,
    limit: int,
    window_seconds: int,
    now: Optional[float] = None,
) -> bool:
    """Fixed-window limiter: approximately `limit` events per user per window."""
    now = time.time() if now is None else now
    key = rate_limit_key(tenant_id, user_id, window_seconds, now)

    try:
        count = await _increment_window(redis_client, key, window_seconds)
    except Exception as exc:
        logger.warning(
            "Rate limiter unavailable, allowing event",
            extra={"context": {"tenant_id": tenant_id, "user_id": user_id, "error": str(exc)}},
        )
        return False

    if count > limit:
        logger.info(
            "Rate limit exceeded",
            extra={"context": {"tenant_id": tenant_id, "user_id": user_id, "count": count, "limit": limit}},
        )
        return True
    return False


async def get_rate_limit_status(
    redis_client,
    tenant_id: str,
    user_id: str,
    limit: int,
    window_seconds: int,
    now: Optional[float] = None,
) -> RateLimitStatus:
    now = time.time() if now is None else now
    raw = await redis_client.get(rate_limit_key(tenant_id, user_id, window_seconds, now))
    count = int(raw or 0)
    return RateLimitStatus(
        count=count,
        limit=limit,
        window_seconds=window_seconds,
        remaining=max(limit - count, 0),
        limited=count > limit,
    )
