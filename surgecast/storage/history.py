"""Surge history keyed by (cell, weekday, hour) for the historical-surge feature."""

import logging
import threading
from typing import Protocol

import redis

from surgecast.common.config import CITY

logger = logging.getLogger(__name__)

HISTORY_TTL_SECONDS = 28 * 24 * 3600


class HistoryStore(Protocol):
    def record(self, cell_id: str, hour: int, weekday: int, multiplier: float) -> None: ...

    def average_multiplier(self, cell_id: str, hour: int, weekday: int) -> float | None: ...


class InMemoryHistoryStore:
    """Process-local history; used in tests and single-node deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, int, int], tuple[int, float]] = {}

    def record(self, cell_id: str, hour: int, weekday: int, multiplier: float) -> None:
        key = (cell_id, weekday, hour)
        with self._lock:
            count, total = self._buckets.get(key, (0, 0.0))
            self._buckets[key] = (count + 1, total + multiplier)

    def average_multiplier(self, cell_id: str, hour: int, weekday: int) -> float | None:
        with self._lock:
            count, total = self._buckets.get((cell_id, weekday, hour), (0, 0.0))
        return total / count if count else None


class RedisHistoryStore:
    """History buckets as Redis hashes with a rolling expiry."""

    def __init__(self, redis_client: redis.Redis, city: str = CITY, ttl_seconds: int = HISTORY_TTL_SECONDS):
        self.redis = redis_client
        self.city = city
        self.ttl_seconds = ttl_seconds

    def _key(self, cell_id: str, hour: int, weekday: int) -> str:
        return f"{self.city}:history:{cell_id}:{weekday}:{hour}"

    def record(self, cell_id: str, hour: int, weekday: int, multiplier: float) -> None:
        key = self._key(cell_id, hour, weekday)
        try:
            pipe = self.redis.pipeline()
            pipe.hincrby(key, "count", 1)
            pipe.hincrbyfloat(key, "multiplier_sum", multiplier)
            pipe.expire(key, self.ttl_seconds)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error recording history for {cell_id}: {e}")

    def average_multiplier(self, cell_id: str, hour: int, weekday: int) -> float | None:
        try:
            raw = self.redis.hgetall(self._key(cell_id, hour, weekday))
        except redis.RedisError as e:
            logger.error(f"Redis error reading history for {cell_id}: {e}")
            return None
        count = int(raw.get("count", 0))
        if count <= 0:
            return None
        return float(raw.get("multiplier_sum", 0.0)) / count
