"""
Price-lock persistence.

A batch is keyed by (cell, prediction). The batch marker moves from
"pending" to "complete"; a second create for a complete batch raises
AllocationConflict, while a create for a pending batch (a crash after some
locks were written) writes the missing locks and completes it.
"""

import logging
import threading
from datetime import datetime

import redis

from surgecast.common.config import CITY
from surgecast.common.errors import AllocationConflict
from surgecast.pricing.price_lock import PriceLock, PriceLockStatus

logger = logging.getLogger(__name__)

BATCH_PENDING = "pending"
BATCH_COMPLETE = "complete"

# Keep lock records around for a day past expiry for audit
RETENTION_SECONDS = 24 * 3600


class InMemoryPriceLockStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._locks: dict[str, PriceLock] = {}
        self._batches: dict[tuple[str, str], tuple[str, list[str]]] = {}
        self._by_cell: dict[str, list[str]] = {}

    def _write(self, lock: PriceLock):
        if lock.id not in self._locks:
            self._by_cell.setdefault(lock.cell_id, []).append(lock.id)
        self._locks[lock.id] = lock

    def create_batch(self, cell_id: str, prediction_id: str, locks: list[PriceLock]) -> list[PriceLock]:
        key = (cell_id, prediction_id)
        with self._lock:
            state, _ = self._batches.get(key, (None, []))
            if state == BATCH_COMPLETE:
                raise AllocationConflict(cell_id, prediction_id)
            for lock in locks:
                if lock.id not in self._locks:
                    self._write(lock)
            self._batches[key] = (BATCH_COMPLETE, [l.id for l in locks])
            return [self._locks[l.id] for l in locks]

    def batch(self, cell_id: str, prediction_id: str) -> list[PriceLock]:
        with self._lock:
            _, ids = self._batches.get((cell_id, prediction_id), (None, []))
            return [self._locks[i] for i in ids if i in self._locks]

    def get(self, lock_id: str) -> PriceLock | None:
        with self._lock:
            return self._locks.get(lock_id)

    def locks_for_cell(self, cell_id: str) -> list[PriceLock]:
        with self._lock:
            return [self._locks[i] for i in self._by_cell.get(cell_id, [])]

    def active_locks(self) -> list[PriceLock]:
        with self._lock:
            return [lock for lock in self._locks.values() if not lock.is_terminal]

    def compare_and_set(self, lock: PriceLock, expected: PriceLockStatus) -> bool:
        with self._lock:
            current = self._locks.get(lock.id)
            if current is None or current.status is not expected:
                return False
            self._locks[lock.id] = lock
            return True


def _encode(lock: PriceLock) -> dict:
    return {
        "id": lock.id,
        "cell_id": lock.cell_id,
        "prediction_id": lock.prediction_id,
        "rate": lock.rate,
        "status": lock.status.value,
        "created_at": lock.created_at.isoformat(),
        "expires_at": lock.expires_at.isoformat(),
        "user_id": lock.user_id or "",
    }


def _decode(raw: dict) -> PriceLock:
    return PriceLock(
        id=raw["id"],
        cell_id=raw["cell_id"],
        prediction_id=raw["prediction_id"],
        rate=float(raw["rate"]),
        status=PriceLockStatus(raw["status"]),
        created_at=datetime.fromisoformat(raw["created_at"]),
        expires_at=datetime.fromisoformat(raw["expires_at"]),
        user_id=raw.get("user_id") or None,
    )


class RedisPriceLockStore:
    """
    Locks as Redis hashes.

    Keys:
        {city}:price_lock:{id}                     hash per lock
        {city}:price_locks:cell:{cell}             set of lock ids
        {city}:price_locks:active                  set of non-terminal lock ids
        {city}:price_lock_batch:{cell}:{pred}      batch marker
        {city}:price_lock_batch_ids:{cell}:{pred}  list of lock ids in batch order
    Expects a client created with decode_responses=True.
    """

    def __init__(self, redis_client: redis.Redis, city: str = CITY):
        self.redis = redis_client
        self.city = city

    def _lock_key(self, lock_id: str) -> str:
        return f"{self.city}:price_lock:{lock_id}"

    def _cell_key(self, cell_id: str) -> str:
        return f"{self.city}:price_locks:cell:{cell_id}"

    def _active_key(self) -> str:
        return f"{self.city}:price_locks:active"

    def _batch_key(self, cell_id: str, prediction_id: str) -> str:
        return f"{self.city}:price_lock_batch:{cell_id}:{prediction_id}"

    def _batch_ids_key(self, cell_id: str, prediction_id: str) -> str:
        return f"{self.city}:price_lock_batch_ids:{cell_id}:{prediction_id}"

    def _ttl(self, locks: list[PriceLock]) -> int:
        if not locks:
            return RETENTION_SECONDS
        lifetime = (locks[0].expires_at - locks[0].created_at).total_seconds()
        return int(lifetime) + RETENTION_SECONDS

    def create_batch(self, cell_id: str, prediction_id: str, locks: list[PriceLock]) -> list[PriceLock]:
        batch_key = self._batch_key(cell_id, prediction_id)
        ids_key = self._batch_ids_key(cell_id, prediction_id)
        ttl = self._ttl(locks)

        if not self.redis.set(batch_key, BATCH_PENDING, nx=True, ex=ttl):
            if self.redis.get(batch_key) == BATCH_COMPLETE:
                raise AllocationConflict(cell_id, prediction_id)
            logger.warning(f"Completing interrupted price-lock batch {cell_id}/{prediction_id}")

        pipe = self.redis.pipeline()
        pipe.delete(ids_key)
        for lock in locks:
            key = self._lock_key(lock.id)
            # Never overwrite a lock that already moved on
            for name, value in _encode(lock).items():
                pipe.hsetnx(key, name, value)
            pipe.expire(key, ttl)
            pipe.sadd(self._cell_key(cell_id), lock.id)
            pipe.sadd(self._active_key(), lock.id)
            pipe.rpush(ids_key, lock.id)
        pipe.expire(ids_key, ttl)
        pipe.expire(self._cell_key(cell_id), ttl)
        pipe.set(batch_key, BATCH_COMPLETE, ex=ttl)
        pipe.execute()

        return self.batch(cell_id, prediction_id)

    def _load_many(self, ids) -> list[PriceLock]:
        if not ids:
            return []
        pipe = self.redis.pipeline()
        for lock_id in ids:
            pipe.hgetall(self._lock_key(lock_id))
        return [_decode(raw) for raw in pipe.execute() if raw]

    def batch(self, cell_id: str, prediction_id: str) -> list[PriceLock]:
        return self._load_many(self.redis.lrange(self._batch_ids_key(cell_id, prediction_id), 0, -1))

    def get(self, lock_id: str) -> PriceLock | None:
        raw = self.redis.hgetall(self._lock_key(lock_id))
        return _decode(raw) if raw else None

    def locks_for_cell(self, cell_id: str) -> list[PriceLock]:
        return self._load_many(sorted(self.redis.smembers(self._cell_key(cell_id))))

    def active_locks(self) -> list[PriceLock]:
        return self._load_many(sorted(self.redis.smembers(self._active_key())))

    def compare_and_set(self, lock: PriceLock, expected: PriceLockStatus) -> bool:
        key = self._lock_key(lock.id)
        with self.redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.hget(key, "status") != expected.value:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.hset(key, mapping={"status": lock.status.value, "user_id": lock.user_id or ""})
                if lock.is_terminal:
                    pipe.srem(self._active_key(), lock.id)
                pipe.execute()
                return True
            except redis.WatchError:
                return False
