"""
Driver positioning guidance.

For every predicted cell a recommendation estimates what a driver could earn
by moving there:

    predicted demand  P = current demand * growth factor
    driver density    D = max(1, available supply)
    bonus             B = 0.5 if P/D > 2.0, 0.3 if > 1.5, 0.1 if > 1.0, else 0
    earnings          E = P * base rate / D * (1 + B)

Recommendations expire after GUIDANCE_EXPIRY_MINUTES. The advisor keeps the
latest one per cell so drivers can ask for the best spots around them.
"""

import uuid
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from prometheus_client import Counter

from surgecast.common.config import (
    BASE_LOCK_RATE,
    CITY,
    DEMAND_GROWTH_FACTOR,
    GUIDANCE_EXPIRY_MINUTES,
)
from surgecast.common.time_utils import ensure_utc, utcnow
from surgecast.geo.grid import GridIndex
from surgecast.geo.utils import haversine_km

logger = logging.getLogger(__name__)

BONUS_TIERS = ((2.0, 0.5), (1.5, 0.3), (1.0, 0.1))

RECOMMENDATIONS_ISSUED = Counter(
    'surgecast_driver_recommendations_total',
    'Driver positioning recommendations issued',
    ['city', 'incentive']
)


def bonus_for(demand_supply_ratio: float) -> float:
    for threshold, bonus in BONUS_TIERS:
        if demand_supply_ratio > threshold:
            return bonus
    return 0.0


@dataclass(frozen=True)
class DriverRecommendation:
    id: str
    cell_id: str
    latitude: float
    longitude: float
    earnings_potential: float
    demand_level: float
    supply_level: int
    incentive_multiplier: float
    timestamp: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(now) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cellId": self.cell_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "earningsPotential": round(self.earnings_potential, 4),
            "demandLevel": round(self.demand_level, 4),
            "supplyLevel": self.supply_level,
            "incentiveMultiplier": self.incentive_multiplier,
            "timestamp": self.timestamp.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
        }


class DriverGuidanceAdvisor:
    """
    Builds recommendations from cell demand and supply.

    Args:
        grid: Used to place a recommendation at its cell center
        publisher: Optional callable receiving every new recommendation
        base_rate: Rate applied to predicted demand
    """

    def __init__(
        self,
        grid: GridIndex,
        publisher=None,
        base_rate: float = BASE_LOCK_RATE,
        demand_growth_factor: float = DEMAND_GROWTH_FACTOR,
        expiry_minutes: float = GUIDANCE_EXPIRY_MINUTES,
        city: str = CITY,
    ):
        self.grid = grid
        self.publisher = publisher
        self.base_rate = base_rate
        self.demand_growth_factor = demand_growth_factor
        self.expiry = timedelta(minutes=expiry_minutes)
        self.city = city
        self._latest: dict[str, DriverRecommendation] = {}
        self._lock = threading.Lock()

    def recommend(
        self,
        cell_id: str,
        current_demand: int,
        available_supply: int,
        now: datetime | None = None,
    ) -> DriverRecommendation:
        now = ensure_utc(now) if now else utcnow()
        predicted_demand = max(0, current_demand) * self.demand_growth_factor
        density = max(1, available_supply)
        bonus = bonus_for(predicted_demand / density)
        lat, lng = self.grid.center_of(cell_id)

        recommendation = DriverRecommendation(
            id=str(uuid.uuid4()),
            cell_id=cell_id,
            latitude=lat,
            longitude=lng,
            earnings_potential=predicted_demand * self.base_rate / density * (1 + bonus),
            demand_level=predicted_demand,
            supply_level=density,
            incentive_multiplier=round(1 + bonus, 2),
            timestamp=now,
            expires_at=now + self.expiry,
        )
        with self._lock:
            self._latest[cell_id] = recommendation
        RECOMMENDATIONS_ISSUED.labels(city=self.city, incentive=f"{bonus:.1f}").inc()

        if self.publisher is not None:
            try:
                self.publisher(recommendation)
            except Exception as e:
                logger.error(f"Failed to publish driver recommendation for {cell_id}: {e}")
        return recommendation

    def latest(self, cell_id: str) -> DriverRecommendation | None:
        with self._lock:
            return self._latest.get(cell_id)

    def for_area(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        now: datetime | None = None,
        limit: int = 10,
    ) -> list[DriverRecommendation]:
        """Unexpired recommendations within radius_km, best earnings first."""
        now = ensure_utc(now) if now else utcnow()
        with self._lock:
            candidates = list(self._latest.values())
        nearby = [
            r for r in candidates
            if not r.is_expired(now) and haversine_km(lat, lng, r.latitude, r.longitude) <= radius_km
        ]
        nearby.sort(key=lambda r: r.earnings_potential, reverse=True)
        return nearby[:limit]

    def cleanup(self, now: datetime | None = None) -> int:
        now = ensure_utc(now) if now else utcnow()
        with self._lock:
            expired = [cell_id for cell_id, r in self._latest.items() if r.is_expired(now)]
            for cell_id in expired:
                del self._latest[cell_id]
        if expired:
            logger.info(f"Dropped {len(expired)} expired driver recommendations")
        return len(expired)
