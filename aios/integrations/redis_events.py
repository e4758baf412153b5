# aios/integrations/redis_events.py
"""
Redis event forwarding

Publishes every EventBus payload as JSON on a Redis pub/sub channel so that
out-of-process consumers (SSE endpoints, dashboards, audit) can follow
executions without polling get_history.
"""

import json
import logging
from typing import Optional

import redis

from aios.events import WILDCARD, EventBus, EventPayload

logger = logging.getLogger("aios.integrations.redis_events")


class RedisEventPublisher:
    """Wildcard EventBus listener that forwards events to Redis"""

    def __init__(self, client: redis.Redis, channel: str = "aios:events"):
        self.client = client
        self.channel = channel
        self.published = 0
        self.failures = 0
        self._bus: Optional[EventBus] = None

    @classmethod
    def from_url(cls, url: str, channel: str = "aios:events") -> "RedisEventPublisher":
        return cls(redis.Redis.from_url(url, decode_responses=True), channel=channel)

    def attach(self, bus: EventBus) -> None:
        if self._bus is not None:
            return
        bus.on(WILDCARD, self.publish)
        self._bus = bus
        logger.info(f"Redis event forwarding enabled | channel={self.channel}")

    def detach(self) -> None:
        if self._bus is not None:
            self._bus.off(WILDCARD, self.publish)
            self._bus = None

    def publish(self, payload: EventPayload) -> None:
        try:
            self.client.publish(self.channel, json.dumps(payload.to_dict(), default=str))
            self.published += 1
        except redis.RedisError as e:
            # Forwarding is best-effort; the in-process history still has the event
            self.failures += 1
            logger.warning(f"Redis publish failed | event={payload.type.value} | error={e}")

    def close(self) -> None:
        self.detach()
        self.client.close()
