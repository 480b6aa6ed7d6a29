import json
import logging
import time
from typing import Any, cast

import redis

from shared.utils import config

logger = logging.getLogger(__name__)


class QueueManager:
    """Redis list wrapper used for completion redelivery and the notification sink."""

    def __init__(self, redis_url: str | None = None) -> None:
        self.redis_url = redis_url or config.get("redis_url", "redis://localhost:6379/0")
        self.redis = redis.Redis.from_url(self.redis_url, decode_responses=True)  # type: ignore[misc]
        self._connection_checked = False
        logger.info(f"QueueManager initialized with Redis URL: {self.redis_url}")

    def _ensure_connection(self) -> None:
        """Lazy connection check with retry logic."""
        if self._connection_checked:
            return

        max_retries = 3
        retry_delay = 1.0

        for attempt in range(max_retries):
            try:
                self.redis.ping()
                self._connection_checked = True
                logger.info(f"Successfully connected to Redis at {self.redis_url}")
                return
            except redis.RedisError as e:
                if attempt == max_retries - 1:
                    logger.error(f"Failed to connect to Redis at {self.redis_url} after {max_retries} attempts: {e}")
                    raise ConnectionError(f"Redis connection failed: {e}") from e
                logger.warning(f"Redis connection attempt {attempt + 1} failed, retrying in {retry_delay}s: {e}")
                time.sleep(retry_delay)
                retry_delay *= 2

    def enqueue(self, key: str, value: str) -> None:
        try:
            self._ensure_connection()
            self.redis.rpush(key, value)
            logger.debug(f"Successfully enqueued item to queue '{key}'")
        except (redis.RedisError, ConnectionError) as e:
            logger.error(f"Failed to enqueue to queue '{key}': {e}")
            # Reset connection flag to force reconnection on next attempt
            self._connection_checked = False
            raise ConnectionError(f"Redis enqueue operation failed: {e}") from e

    def enqueue_json(self, key: str, payload: dict[str, Any]) -> None:
        self.enqueue(key, json.dumps(payload, default=str))

    def dequeue(self, key: str) -> str | None:
        try:
            result = self.redis.lpop(key)  # type: ignore[misc]
        except redis.RedisError as e:
            self._connection_checked = False
            raise ConnectionError(f"Redis dequeue operation failed: {e}") from e
        if result is None:
            return None
        if isinstance(result, bytes):
            return result.decode("utf-8")
        return str(result)  # type: ignore[misc]

    def dequeue_json(self, key: str) -> dict[str, Any] | None:
        raw = self.dequeue(key)
        if raw is None:
            return None
        return json.loads(raw)

    def get_length(self, key: str) -> int:
        result = self.redis.llen(key)
        return cast(int, result)
