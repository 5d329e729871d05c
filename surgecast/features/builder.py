"""
Snapshot + environment -> fixed-schema FeatureVector.

See surgecast.features.schema for the feature order and ranges.
"""

import math
import logging
from dataclasses import dataclass
from datetime import date, datetime
from zoneinfo import ZoneInfo

import numpy as np

from surgecast.aggregation.aggregator import CellSnapshot
from surgecast.common.config import CITY_TIMEZONE, EVENT_MAX_DISTANCE_M, HOLIDAYS
from surgecast.common.time_utils import ensure_utc, load_timezone
from surgecast.features.derive import clamp, derive_marketplace, normalize
from surgecast.features.environment import event_impact, event_proximity, weather_impact
from surgecast.features.schema import (
    CONGESTION_RANGE,
    DEFAULT_HISTORICAL_SURGE,
    DEMAND_RANGE,
    DEMAND_SUPPLY_RATIO_RANGE,
    FEATURE_INDEX,
    FEATURE_NAMES,
    FEATURE_SCHEMA,
    FEATURE_SCHEMA_VERSION,
    INCIDENT_RANGE,
    PRECIPITATION_RANGE_MM,
    SUPPLY_RANGE,
    TEMPERATURE_RANGE_C,
    WIND_SPEED_RANGE_KMH,
)
from surgecast.geo.grid import GridIndex
from surgecast.ingestion.events import VenueEvent
from surgecast.storage.history import HistoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureVector:
    cell_id: str
    timestamp: datetime
    values: tuple[float, ...]
    schema_version: int = FEATURE_SCHEMA_VERSION

    def __post_init__(self):
        if len(self.values) != len(FEATURE_NAMES):
            raise ValueError(
                f"Feature vector has {len(self.values)} values, schema v{self.schema_version} "
                f"expects {len(FEATURE_NAMES)}"
            )

    @property
    def names(self) -> tuple[str, ...]:
        return FEATURE_NAMES

    def get(self, name: str) -> float:
        return self.values[FEATURE_INDEX[name]]

    def as_dict(self) -> dict[str, float]:
        return dict(zip(FEATURE_NAMES, self.values))

    def as_array(self) -> np.ndarray:
        """Single-row 2D array, the shape scikit-learn style models expect."""
        return np.array([self.values], dtype=float)


def historical_surge_feature(average_multiplier: float | None) -> float:
    """Average past multiplier mapped onto [0, 1]; 0.33 when there is no history."""
    if average_multiplier is None:
        return DEFAULT_HISTORICAL_SURGE
    return clamp((average_multiplier - 1.0) / 2.0)


def local_time(ts: datetime, tz: ZoneInfo) -> datetime:
    return ensure_utc(ts).astimezone(tz)


class FeatureBuilder:
    """Builds the schema-v1 feature vector for one cell at one instant."""

    def __init__(
        self,
        grid: GridIndex,
        history: HistoryStore | None = None,
        holidays: frozenset[date] = HOLIDAYS,
        timezone: str = CITY_TIMEZONE,
        max_event_distance_m: float = EVENT_MAX_DISTANCE_M,
    ):
        self.grid = grid
        self.history = history
        self.holidays = holidays
        self.tz = load_timezone(timezone)
        self.max_event_distance_m = max_event_distance_m

    def _historical(self, cell_id: str, local: datetime) -> float:
        if self.history is None:
            return DEFAULT_HISTORICAL_SURGE
        return historical_surge_feature(
            self.history.average_multiplier(cell_id, local.hour, local.weekday())
        )

    def build(
        self,
        snapshot: CellSnapshot,
        now: datetime | None = None,
        nearby_events: list[VenueEvent] | None = None,
    ) -> FeatureVector:
        """
        Build the feature vector for a snapshot.

        Args:
            snapshot: Cell snapshot (its window_end is used when now is omitted)
            now: Evaluation instant
            nearby_events: Venue events around the cell; defaults to the events
                carried by the snapshot's own venue reading

        Returns:
            FeatureVector in schema order, every value inside its documented range
        """
        now = ensure_utc(now) if now else snapshot.window_end
        local = local_time(now, self.tz)
        center = self.grid.center_of(snapshot.cell_id)

        hour = local.hour + local.minute / 60.0
        weekday = local.weekday()
        hour_angle = 2 * math.pi * hour / 24
        dow_angle = 2 * math.pi * weekday / 7

        weather = snapshot.weather
        traffic = snapshot.traffic
        if nearby_events is None:
            nearby_events = list(snapshot.venue_events.events) if snapshot.venue_events else []

        marketplace = derive_marketplace(snapshot)

        features = {
            "hour_sin": math.sin(hour_angle),
            "hour_cos": math.cos(hour_angle),
            "dow_sin": math.sin(dow_angle),
            "dow_cos": math.cos(dow_angle),
            "is_weekend": 1.0 if weekday >= 5 else 0.0,
            "is_holiday": 1.0 if local.date() in self.holidays else 0.0,
            # Missing weather is neutral: comfortable temperature, nothing falling
            "temperature": normalize(weather.temperature_c if weather else 18.0, TEMPERATURE_RANGE_C),
            "precipitation": normalize(weather.precipitation_mm, PRECIPITATION_RANGE_MM) if weather else 0.0,
            "wind_speed": normalize(weather.wind_speed_kmh, WIND_SPEED_RANGE_KMH) if weather else 0.0,
            "weather_impact": weather_impact(weather),
            "traffic_congestion": normalize(traffic.congestion_level, CONGESTION_RANGE) if traffic else 0.0,
            "incident_count": normalize(traffic.incident_count, INCIDENT_RANGE) if traffic else 0.0,
            "road_closure": 1.0 if traffic and traffic.road_closure else 0.0,
            "event_proximity": event_proximity(center, nearby_events, now, self.max_event_distance_m),
            "event_impact": event_impact(nearby_events, now),
            "demand_count": normalize(marketplace["demand"], DEMAND_RANGE),
            "supply_count": normalize(marketplace["available_supply"], SUPPLY_RANGE),
            "demand_supply_ratio": normalize(marketplace["demand_supply_ratio"], DEMAND_SUPPLY_RATIO_RANGE),
            "historical_surge": self._historical(snapshot.cell_id, local),
            "demand_trend": marketplace["demand_trend"],
            "latitude": normalize(center[0], (-90.0, 90.0)),
            "longitude": normalize(center[1], (-180.0, 180.0)),
        }

        values = tuple(
            clamp(float(features[spec.name]), spec.low, spec.high) for spec in FEATURE_SCHEMA
        )
        return FeatureVector(cell_id=snapshot.cell_id, timestamp=now, values=values)
