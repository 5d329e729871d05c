"""
Feature schema shared by every predictor.

The order and length of FEATURE_NAMES is a contract: changing either requires
bumping FEATURE_SCHEMA_VERSION.
"""

from dataclasses import dataclass

FEATURE_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class FeatureSpec:
    name: str
    low: float = 0.0
    high: float = 1.0


FEATURE_SCHEMA = (
    FeatureSpec("hour_sin", -1.0, 1.0),
    FeatureSpec("hour_cos", -1.0, 1.0),
    FeatureSpec("dow_sin", -1.0, 1.0),
    FeatureSpec("dow_cos", -1.0, 1.0),
    FeatureSpec("is_weekend"),
    FeatureSpec("is_holiday"),
    FeatureSpec("temperature"),
    FeatureSpec("precipitation"),
    FeatureSpec("wind_speed"),
    FeatureSpec("weather_impact"),
    FeatureSpec("traffic_congestion"),
    FeatureSpec("incident_count"),
    FeatureSpec("road_closure"),
    FeatureSpec("event_proximity"),
    FeatureSpec("event_impact"),
    FeatureSpec("demand_count"),
    FeatureSpec("supply_count"),
    FeatureSpec("demand_supply_ratio"),
    FeatureSpec("historical_surge"),
    FeatureSpec("demand_trend"),
    FeatureSpec("latitude"),
    FeatureSpec("longitude"),
)

FEATURE_NAMES = tuple(spec.name for spec in FEATURE_SCHEMA)
FEATURE_INDEX = {name: i for i, name in enumerate(FEATURE_NAMES)}

# Raw input ranges; values outside clamp to the edge
TEMPERATURE_RANGE_C = (-20.0, 40.0)
PRECIPITATION_RANGE_MM = (0.0, 20.0)
WIND_SPEED_RANGE_KMH = (0.0, 80.0)
CONGESTION_RANGE = (0.0, 1.0)
INCIDENT_RANGE = (0.0, 10.0)
DEMAND_RANGE = (0.0, 100.0)
SUPPLY_RANGE = (0.0, 100.0)
DEMAND_SUPPLY_RATIO_RANGE = (0.0, 3.0)

DEFAULT_HISTORICAL_SURGE = 0.33
