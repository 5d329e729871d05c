import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from prometheus_client import Gauge

from surgecast.common.config import CITY, PREDICTION_INTERVAL_SECONDS
from surgecast.common.time_utils import ensure_utc, utcnow


class HealthStatus(str, enum.Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    STANDBY = "STANDBY"


HEALTH_STATE = Gauge(
    'surgecast_health_state',
    'Current health: 0 healthy, 1 warning, 2 standby',
    ['city']
)

_STATE_VALUE = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.STANDBY: 2}

# A cycle is overdue once this many intervals pass without one completing
OVERDUE_INTERVALS = 2


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    reasons: tuple[str, ...] = field(default_factory=tuple)
    checked_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "reasons": list(self.reasons),
            "checkedAt": self.checked_at.isoformat() if self.checked_at else None,
        }


class HealthMonitor:
    """
    HEALTHY: pipeline running, sources fresh, every predictor answered in the
    last round and the last cycle finished on time.
    WARNING: running, but any of those checks fails.
    STANDBY: pipeline not running.
    """

    def __init__(self, interval_seconds: float = PREDICTION_INTERVAL_SECONDS, city: str = CITY):
        self.deadline = timedelta(seconds=interval_seconds * OVERDUE_INTERVALS)
        self.city = city

    def evaluate(
        self,
        running: bool,
        started_at: datetime | None = None,
        last_cycle_at: datetime | None = None,
        stale_sources: list[str] | None = None,
        excluded_predictors: list[str] | None = None,
        now: datetime | None = None,
    ) -> HealthReport:
        now = ensure_utc(now) if now else utcnow()

        if not running:
            report = HealthReport(HealthStatus.STANDBY, ("pipeline stopped",), now)
            HEALTH_STATE.labels(city=self.city).set(_STATE_VALUE[report.status])
            return report

        reasons = []
        for source in stale_sources or []:
            reasons.append(f"source {source} stale")
        for predictor in excluded_predictors or []:
            reasons.append(f"predictor {predictor} excluded")

        reference = last_cycle_at or started_at
        if reference is not None and now - reference > self.deadline:
            reasons.append(f"prediction cycle overdue since {reference.isoformat()}")

        status = HealthStatus.WARNING if reasons else HealthStatus.HEALTHY
        HEALTH_STATE.labels(city=self.city).set(_STATE_VALUE[status])
        return HealthReport(status, tuple(reasons), now)
