"""
Confidence-scaled price-lock inventory.

When a prediction clears the gate, a batch of locks at the current base rate
is created for the cell. The batch size grows with confidence:

    alpha = clamp(0.1 + (c - 0.65) * 0.5, 0.1, 0.3)   demand buffer
    beta  = clamp(0.7 + (c - 0.65) * 0.5, 0.7, 0.9)   supply utilization cap
    Q     = floor(min(D * (1 + alpha), S * beta))

Lock ids are derived from (cell, prediction, index), so allocating the same
prediction twice, or retrying after a crash mid-batch, always lands on the
same batch.
"""

import enum
import math
import uuid
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from prometheus_client import Counter, Gauge

from surgecast.common.config import (
    BASE_LOCK_RATE,
    CITY,
    DEMAND_GROWTH_FACTOR,
    PRICE_LOCK_EXPIRY_MINUTES,
)
from surgecast.common.errors import AllocationConflict, LockTransitionError, ValidationError
from surgecast.common.time_utils import ensure_utc, utcnow
from surgecast.prediction.types import SurgePrediction

logger = logging.getLogger(__name__)

MIN_MULTIPLIER_FOR_LOCKS = 1.2
MIN_CONFIDENCE_FOR_LOCKS = 0.65

LOCK_ID_NAMESPACE = uuid.UUID("6f1c7d1e-3b8a-5f47-9a44-2d0c5e7b9a10")

LOCKS_CREATED = Counter(
    'surgecast_price_locks_created_total',
    'Price locks created',
    ['city']
)

LOCK_TRANSITIONS = Counter(
    'surgecast_price_lock_transitions_total',
    'Price lock state changes',
    ['city', 'status']
)

ALLOCATION_QUANTITY = Gauge(
    'surgecast_price_lock_last_allocation_quantity',
    'Size of the most recent price-lock batch',
    ['city']
)


class PriceLockStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    USED = "used"
    EXPIRED = "expired"


ALLOWED_TRANSITIONS = {
    PriceLockStatus.AVAILABLE: {PriceLockStatus.RESERVED, PriceLockStatus.EXPIRED},
    PriceLockStatus.RESERVED: {PriceLockStatus.USED, PriceLockStatus.EXPIRED},
    PriceLockStatus.USED: set(),
    PriceLockStatus.EXPIRED: set(),
}


@dataclass(frozen=True)
class PriceLock:
    id: str
    cell_id: str
    prediction_id: str
    rate: float
    status: PriceLockStatus
    created_at: datetime
    expires_at: datetime
    user_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def transition(self, status: PriceLockStatus, user_id: str | None = None) -> "PriceLock":
        """Return a copy in the new status; the state machine only moves forward."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise LockTransitionError(
                f"Price lock {self.id} cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, user_id=user_id if user_id is not None else self.user_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cellId": self.cell_id,
            "predictionId": self.prediction_id,
            "rate": self.rate,
            "status": self.status.value,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class Allocation:
    cell_id: str
    prediction_id: str
    alpha: float
    beta: float
    quantity: int
    locks: tuple[PriceLock, ...] = field(default_factory=tuple)
    created: bool = False


def compute_allocation(predicted_demand: float, available_supply: float, confidence: float) -> tuple[float, float, int]:
    """
    Batch size for a prediction.

    Args:
        predicted_demand: Expected demand D in the cell
        available_supply: Vehicles currently available S
        confidence: Prediction confidence c

    Returns:
        (alpha, beta, quantity)
    """
    alpha = min(0.3, max(0.1, 0.1 + (confidence - 0.65) * 0.5))
    beta = min(0.9, max(0.7, 0.7 + (confidence - 0.65) * 0.5))
    quantity = math.floor(min(predicted_demand * (1 + alpha), available_supply * beta))
    return alpha, beta, max(0, quantity)


def lock_id_for(cell_id: str, prediction_id: str, index: int) -> str:
    return str(uuid.uuid5(LOCK_ID_NAMESPACE, f"{cell_id}:{prediction_id}:{index}"))


def qualifies_for_locks(prediction: SurgePrediction) -> bool:
    return (
        prediction.multiplier > MIN_MULTIPLIER_FOR_LOCKS
        and prediction.confidence >= MIN_CONFIDENCE_FOR_LOCKS
    )


class PriceLockAllocator:
    """Creates, reserves, redeems and expires price locks through a store."""

    def __init__(
        self,
        store,
        base_rate: float = BASE_LOCK_RATE,
        expiry_minutes: float = PRICE_LOCK_EXPIRY_MINUTES,
        demand_growth_factor: float = DEMAND_GROWTH_FACTOR,
        city: str = CITY,
    ):
        self.store = store
        self.base_rate = base_rate
        self.expiry = timedelta(minutes=expiry_minutes)
        self.demand_growth_factor = demand_growth_factor
        self.city = city
        self._reserve_lock = threading.Lock()

    def allocate(
        self,
        prediction: SurgePrediction,
        current_demand: int,
        available_supply: int,
        now: datetime | None = None,
    ) -> Allocation:
        """
        Create the price-lock batch for a prediction, at most once.

        Returns:
            Allocation; created is False when the prediction did not qualify or
            the batch already existed
        """
        if not qualifies_for_locks(prediction):
            return Allocation(prediction.cell_id, prediction.id, 0.0, 0.0, 0)

        now = ensure_utc(now) if now else utcnow()
        predicted_demand = current_demand * self.demand_growth_factor
        alpha, beta, quantity = compute_allocation(predicted_demand, available_supply, prediction.confidence)

        locks = [
            PriceLock(
                id=lock_id_for(prediction.cell_id, prediction.id, i),
                cell_id=prediction.cell_id,
                prediction_id=prediction.id,
                rate=self.base_rate,
                status=PriceLockStatus.AVAILABLE,
                created_at=now,
                expires_at=now + self.expiry,
            )
            for i in range(quantity)
        ]

        try:
            stored = self.store.create_batch(prediction.cell_id, prediction.id, locks)
        except AllocationConflict:
            existing = self.store.batch(prediction.cell_id, prediction.id)
            logger.info(
                f"Price locks for {prediction.cell_id}/{prediction.id} already allocated "
                f"({len(existing)} locks)"
            )
            return Allocation(prediction.cell_id, prediction.id, alpha, beta, len(existing), tuple(existing), False)

        LOCKS_CREATED.labels(city=self.city).inc(len(stored))
        ALLOCATION_QUANTITY.labels(city=self.city).set(len(stored))
        logger.info(
            f"Allocated {len(stored)} price locks for {prediction.cell_id} "
            f"(alpha={alpha:.3f}, beta={beta:.3f}, D={predicted_demand:.1f}, S={available_supply})"
        )
        return Allocation(prediction.cell_id, prediction.id, alpha, beta, len(stored), tuple(stored), True)

    def _move(self, lock: PriceLock, status: PriceLockStatus, user_id: str | None = None) -> PriceLock | None:
        updated = lock.transition(status, user_id)
        if not self.store.compare_and_set(updated, expected=lock.status):
            return None
        LOCK_TRANSITIONS.labels(city=self.city, status=status.value).inc()
        return updated

    def reserve(self, cell_id: str, prediction_id: str, user_id: str, now: datetime | None = None) -> PriceLock | None:
        """
        Reserve one available lock of a prediction's batch for a user.

        A user holds at most one reserved lock per cell; asking again returns it.

        Returns:
            The reserved lock, or None when none is left
        """
        if not user_id:
            raise ValidationError("user_id is required to reserve a price lock")
        now = ensure_utc(now) if now else utcnow()

        with self._reserve_lock:
            for lock in self.store.locks_for_cell(cell_id):
                if (
                    lock.user_id == user_id
                    and lock.status is PriceLockStatus.RESERVED
                    and lock.expires_at > now
                ):
                    return lock

            for lock in self.store.batch(cell_id, prediction_id):
                if lock.status is not PriceLockStatus.AVAILABLE or lock.expires_at <= now:
                    continue
                reserved = self._move(lock, PriceLockStatus.RESERVED, user_id)
                if reserved:
                    return reserved
        return None

    def use(self, lock_id: str, user_id: str, now: datetime | None = None) -> PriceLock:
        """
        Redeem a reserved lock.

        Raises:
            ValidationError: unknown lock, or the lock belongs to another user
            LockTransitionError: the lock is not reserved, or it has lapsed
        """
        now = ensure_utc(now) if now else utcnow()
        lock = self.store.get(lock_id)
        if lock is None:
            raise ValidationError(f"Unknown price lock {lock_id}")
        if lock.user_id != user_id:
            raise ValidationError(f"Price lock {lock_id} is not reserved by {user_id}")
        if lock.expires_at <= now and not lock.is_terminal:
            self._move(lock, PriceLockStatus.EXPIRED)
            raise LockTransitionError(f"Price lock {lock_id} expired at {lock.expires_at.isoformat()}")

        used = self._move(lock, PriceLockStatus.USED)
        if used is None:
            raise LockTransitionError(f"Price lock {lock_id} changed state concurrently")
        return used

    def available_count(self, cell_id: str, now: datetime | None = None) -> int:
        now = ensure_utc(now) if now else utcnow()
        return sum(
            1 for lock in self.store.locks_for_cell(cell_id)
            if lock.status is PriceLockStatus.AVAILABLE and lock.expires_at > now
        )

    def expire_due(self, now: datetime | None = None) -> int:
        """Expire every non-terminal lock past its expiry; returns how many moved."""
        now = ensure_utc(now) if now else utcnow()
        expired = 0
        for lock in self.store.active_locks():
            if lock.expires_at <= now and self._move(lock, PriceLockStatus.EXPIRED):
                expired += 1
        if expired:
            logger.info(f"Expired {expired} price locks")
        return expired
