from datetime import datetime, timedelta, timezone

import pytest

from surgecast.aggregation.aggregator import WindowedAggregator
from surgecast.features.builder import FeatureVector
from surgecast.features.schema import FEATURE_NAMES
from surgecast.geo.grid import GridIndex

# Wednesday 2025-06-11 18:30 UTC
NOW = datetime(2025, 6, 11, 18, 30, tzinfo=timezone.utc)

SOL = (40.4169, -3.7034)
ATOCHA = (40.4065, -3.6895)


def raw_event(kind: str, payload: dict, lat: float = SOL[0], lng: float = SOL[1], ts: datetime = NOW) -> dict:
    return {
        "sourceKind": kind,
        "cellHintLat": lat,
        "cellHintLon": lng,
        "timestamp": ts.isoformat(),
        "payload": payload,
    }


def demand(event_id: str, ts: datetime = NOW, lat: float = SOL[0], lng: float = SOL[1], status: str = "pending") -> dict:
    return raw_event("demand", {"id": event_id, "status": status}, lat, lng, ts)


def supply(event_id: str, ts: datetime = NOW, lat: float = SOL[0], lng: float = SOL[1], status: str = "available") -> dict:
    return raw_event("supply", {"id": event_id, "status": status}, lat, lng, ts)


def make_vector(cell_id: str = "", ts: datetime = NOW, **overrides) -> FeatureVector:
    values = {name: 0.0 for name in FEATURE_NAMES}
    values["hour_cos"] = 1.0
    values["dow_cos"] = 1.0
    values["historical_surge"] = 0.33
    values["demand_trend"] = 0.5
    values.update(overrides)
    return FeatureVector(cell_id=cell_id, timestamp=ts, values=tuple(values[n] for n in FEATURE_NAMES))


@pytest.fixture
def grid() -> GridIndex:
    return GridIndex(8)


@pytest.fixture
def sol_cell(grid) -> str:
    return grid.cell_of(*SOL)


@pytest.fixture
def aggregator() -> WindowedAggregator:
    return WindowedAggregator(ttl=timedelta(minutes=15), environment_ttl=timedelta(minutes=30), shards=8)
