"""
Change Notifications

Every committed write announces itself so caches and open screens can
refresh. Delivery is fire-and-forget: in-process subscribers first, then a
Redis pub/sub broadcast on ``marketplace_changes:<topic>``. A failing
subscriber or an unreachable Redis is logged and ignored; the business
action has already committed.
"""
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from marketplace.core import redis_client
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

CHANNEL_PREFIX = "marketplace_changes"

Subscriber = Callable[["ChangeEvent"], Awaitable[None]]


@dataclass
class ChangeEvent:
    topic: str
    entity_id: Any
    actor_id: Optional[int] = None
    data: dict[str, Any] = field(default_factory=dict)


class ChangeNotifier:
    """Fan-out of ChangeEvents"""

    def __init__(self, publish_to_redis: bool = True):
        self._subscribers: list[Subscriber] = []
        self.publish_to_redis = publish_to_redis

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def notify(
        self,
        topic: str,
        entity_id: Any,
        actor_id: Optional[int] = None,
        **data: Any,
    ) -> None:
        event = ChangeEvent(topic=topic, entity_id=entity_id, actor_id=actor_id, data=data)

        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.warning(
                    "Change subscriber failed",
                    extra_data={"topic": topic, "entity_id": entity_id, "error": str(e)},
                    exc_info=True,
                )

        if not self.publish_to_redis:
            return

        try:
            redis = await redis_client.get_redis()
            await redis.publish(
                f"{CHANNEL_PREFIX}:{topic}",
                json.dumps(asdict(event), ensure_ascii=False, default=str),
            )
        except (RedisError, OSError) as e:
            logger.warning(
                "Change notification not published",
                extra_data={"topic": topic, "entity_id": entity_id, "error": str(e)},
            )


change_notifier = ChangeNotifier()
