"""Utility helpers for working with Redis connections."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

try:  # pragma: no cover - optional dependency guard
    import redis
except Exception:  # pragma: no cover - handled gracefully at runtime
    redis = None

from config.settings import settings

logger = logging.getLogger(__name__)

_REDIS_LOCK = threading.Lock()
_REDIS_CLIENT: Optional["redis.Redis"] = None


def get_redis_client() -> Optional["redis.Redis"]:
    """Return a cached Redis client, or ``None`` when Redis is not configured."""

    global _REDIS_CLIENT
    if redis is None:  # pragma: no cover - environment without redis installed
        return None

    with _REDIS_LOCK:
        if _REDIS_CLIENT is not None:
            return _REDIS_CLIENT

        url = getattr(settings, "redis_url", None)
        if not url:
            return None

        try:
            client = redis.from_url(url)
            client.ping()
        except Exception:  # pragma: no cover - connection issues
            logger.exception("Failed to initialise Redis client for url=%s", url)
            _REDIS_CLIENT = None
            return None

        _REDIS_CLIENT = client
        return _REDIS_CLIENT


def reset_redis_client() -> None:
    """Reset the cached Redis client (primarily for tests)."""

    global _REDIS_CLIENT
    with _REDIS_LOCK:
        _REDIS_CLIENT = None


class RedisSnapshotStore:
    """Stores one JSON document under a fixed key; losing it is non-fatal."""

    def __init__(self, client, key: str) -> None:
        self.client = client
        self.key = key

    def save(self, value: Any) -> bool:
        if self.client is None:
            return False
        try:
            self.client.set(self.key, json.dumps(value, default=str))
        except Exception:
            logger.exception("Failed to persist snapshot %s", self.key)
            return False
        return True

    def load(self) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = self.client.get(self.key)
        except Exception:
            logger.exception("Failed to load snapshot %s", self.key)
            return None
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode()
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable snapshot under %s", self.key)
            return None
