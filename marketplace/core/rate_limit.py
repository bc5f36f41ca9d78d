"""
Per-user rate limiting - fixed window counters in Redis.

Key: ``rate_limit:<action>:<user_id>``. The first hit in a window sets the
TTL; every hit is an atomic INCR, so concurrent requests are counted exactly.
"""
import enum
from typing import Optional

from redis.exceptions import RedisError

from marketplace.core.config import settings
from marketplace.core.exceptions import RateLimited
from marketplace.core.logging import get_logger
from marketplace.core import redis_client

logger = get_logger(__name__)

_KEY_PREFIX = "rate_limit"


class RateLimitAction(str, enum.Enum):
    CHECKOUT = "checkout"
    QANZ_REDEEM = "qanz_redeem"
    ADMIN_ACTION = "admin_action"


def _limit_for(action: RateLimitAction) -> int:
    return {
        RateLimitAction.CHECKOUT: settings.RATE_LIMIT_CHECKOUT,
        RateLimitAction.QANZ_REDEEM: settings.RATE_LIMIT_QANZ_REDEEM,
        RateLimitAction.ADMIN_ACTION: settings.RATE_LIMIT_ADMIN_ACTION,
    }[action]


async def check_rate_limit(action: RateLimitAction, user_id: int) -> Optional[RateLimited]:
    """Count one hit; return a RateLimited error if the window is exhausted.

    Redis being down fails open: the action proceeds and a warning is logged.
    """
    if not settings.RATE_LIMIT_ENABLED:
        return None

    window = settings.RATE_LIMIT_WINDOW_SECONDS
    key = f"{_KEY_PREFIX}:{action.value}:{user_id}"
    try:
        redis = await redis_client.get_redis()
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, window)
    except (RedisError, OSError) as e:
        logger.warning(
            "Rate limiter unavailable - allowing request",
            extra_data={"action": action.value, "user_id": user_id, "error": str(e)},
        )
        return None

    if count > _limit_for(action):
        logger.warning(
            "Rate limit exceeded",
            extra_data={"action": action.value, "user_id": user_id, "count": count},
        )
        return RateLimited(action.value, window)
    return None
