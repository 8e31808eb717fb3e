"""Build Events — observer notifications for live build views.

Events go to in-process subscribers and, when ``REDIS_URL`` is configured, are
published as JSON on ``<prefix>:repo:<repo_id>``. Delivery is best effort: a
failing subscriber or an unreachable Redis is logged and skipped.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import redis

from app.config import settings

logger = logging.getLogger(__name__)

WEBHOOK_RECEIVED = "webhook_received"
BUILD_QUEUED = "build_queued"
BUILD_STARTED = "build_started"
BUILD_LOG = "build_log"
BUILD_COMPLETED = "build_completed"
BUILD_FAILED = "build_failed"
BUILD_CANCELLED = "build_cancelled"

Subscriber = Callable[[dict[str, Any]], None]


class BuildEventBus:
    def __init__(self, redis_url: str | None = None, channel_prefix: str | None = None):
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._redis_url = redis_url
        self._channel_prefix = channel_prefix or settings.event_channel_prefix
        self._redis: redis.Redis | None = None

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def publish(
        self,
        event: str,
        *,
        repo_id: Any,
        build_id: str | None = None,
        deployment_id: Any = None,
        **data: Any,
    ) -> dict[str, Any]:
        message = {
            "event": event,
            "repo_id": str(repo_id),
            "build_id": build_id,
            "deployment_id": str(deployment_id) if deployment_id else None,
            "at": datetime.now(UTC).isoformat(),
            **data,
        }
        if event != BUILD_LOG:
            logger.info("event %s repo=%s build=%s", event, message["repo_id"], build_id)

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(message)
            except Exception:
                logger.warning("Build event subscriber failed for %s", event, exc_info=True)

        self._publish_redis(message)
        return message

    def _publish_redis(self, message: dict[str, Any]) -> None:
        client = self._redis_client()
        if client is None:
            return
        channel = f"{self._channel_prefix}:repo:{message['repo_id']}"
        try:
            client.publish(channel, json.dumps(message, default=str))
        except redis.RedisError:
            logger.debug("Redis publish to %s failed", channel, exc_info=True)
            self._redis = None

    def _redis_client(self) -> redis.Redis | None:
        if not self._redis_url:
            return None
        if self._redis is None:
            self._redis = redis.Redis.from_url(self._redis_url, socket_timeout=2)
        return self._redis


build_events = BuildEventBus(redis_url=settings.redis_url)
