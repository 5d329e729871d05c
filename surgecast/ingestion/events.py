"""
Normalized ingestion contract.

Every inbound message looks like::

    {
        "sourceKind": "demand" | "supply" | "weather" | "traffic" | "venue-event",
        "cellHintLat": float,
        "cellHintLon": float,
        "timestamp": ISO-8601 string or epoch seconds,
        "payload": {...},   # shape depends on sourceKind
    }

parse_event() validates a message and returns one typed variant. Nothing
reaches the aggregator without passing through it.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from surgecast.common.errors import ValidationError
from surgecast.common.time_utils import parse_timestamp
from surgecast.geo.grid import GridIndex
from surgecast.geo.utils import is_valid_coordinate


class SourceKind(str, Enum):
    DEMAND = "demand"
    SUPPLY = "supply"
    WEATHER = "weather"
    TRAFFIC = "traffic"
    VENUE_EVENT = "venue-event"


class DemandStatus(str, Enum):
    PENDING = "pending"
    MATCHED = "matched"
    CANCELLED = "cancelled"


class SupplyStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class VenueCategory(str, Enum):
    SPORTS = "sports"
    CONCERT = "concert"
    FESTIVAL = "festival"
    PARADE = "parade"
    CONFERENCE = "conference"
    OTHER = "other"


@dataclass(frozen=True)
class DemandEvent:
    id: str
    cell_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    status: DemandStatus = DemandStatus.PENDING
    kind = SourceKind.DEMAND


@dataclass(frozen=True)
class SupplyEvent:
    id: str
    cell_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    status: SupplyStatus = SupplyStatus.AVAILABLE
    kind = SourceKind.SUPPLY


@dataclass(frozen=True)
class WeatherReading:
    cell_id: str
    timestamp: datetime
    temperature_c: float
    precipitation_mm: float = 0.0
    wind_speed_kmh: float = 0.0
    condition: str = "clear"
    source = SourceKind.WEATHER


@dataclass(frozen=True)
class TrafficReading:
    cell_id: str
    timestamp: datetime
    congestion_level: float
    incident_count: int = 0
    road_closure: bool = False
    average_speed_kmh: float | None = None
    source = SourceKind.TRAFFIC


@dataclass(frozen=True)
class VenueEvent:
    id: str
    latitude: float
    longitude: float
    start_time: datetime
    end_time: datetime
    category: VenueCategory = VenueCategory.OTHER
    expected_attendance: int = 0
    title: str = ""


@dataclass(frozen=True)
class VenueEventsReading:
    cell_id: str
    timestamp: datetime
    events: tuple[VenueEvent, ...] = field(default_factory=tuple)
    source = SourceKind.VENUE_EVENT


ActivityEvent = Union[DemandEvent, SupplyEvent]
EnvironmentalReading = Union[WeatherReading, TrafficReading, VenueEventsReading]
NormalizedEvent = Union[DemandEvent, SupplyEvent, WeatherReading, TrafficReading, VenueEventsReading]


def _number(payload: dict, key: str, default=None, *, low=None, high=None) -> float:
    value = payload.get(key, default)
    if value is None:
        raise ValidationError(f"Missing field: {key}")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"Field {key} must be a finite number, got {value!r}")
    if (low is not None and value < low) or (high is not None and value > high):
        raise ValidationError(f"Field {key}={value} outside [{low}, {high}]")
    return float(value)


def _identifier(payload: dict, key: str = "id") -> str:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing or empty field: {key}")
    return value


def _enum(enum_cls, value, default):
    if value is None:
        return default
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown {enum_cls.__name__} value: {value!r}")


def _parse_venue_event(raw) -> VenueEvent:
    if not isinstance(raw, dict):
        raise ValidationError(f"Venue event must be an object, got {type(raw).__name__}")
    lat = raw.get("latitude")
    lng = raw.get("longitude")
    if not is_valid_coordinate(lat, lng):
        raise ValidationError(f"Invalid venue event coordinates: ({lat!r}, {lng!r})")
    start = parse_timestamp(raw.get("startTime"))
    end = parse_timestamp(raw.get("endTime"))
    if end < start:
        raise ValidationError(f"Venue event {raw.get('id')!r} ends before it starts")
    category = raw.get("category")
    try:
        category = VenueCategory(str(category).lower()) if category else VenueCategory.OTHER
    except ValueError:
        category = VenueCategory.OTHER
    return VenueEvent(
        id=_identifier(raw),
        latitude=float(lat),
        longitude=float(lng),
        start_time=start,
        end_time=end,
        category=category,
        expected_attendance=int(_number(raw, "expectedAttendance", 0, low=0)),
        title=str(raw.get("title", "")),
    )


def parse_event(message: dict, grid: GridIndex, resolution: int | None = None) -> NormalizedEvent:
    """
    Validate a normalized message and convert it to its typed variant.

    Args:
        message: Raw decoded message following the ingestion contract
        grid: Grid used to resolve the cell from the coordinate hint
        resolution: Grid resolution (defaults to the grid default)

    Returns:
        DemandEvent, SupplyEvent, WeatherReading, TrafficReading or VenueEventsReading

    Raises:
        ValidationError: if any field is missing, malformed or out of range
    """
    if not isinstance(message, dict):
        raise ValidationError(f"Event must be an object, got {type(message).__name__}")

    kind = message.get("sourceKind")
    try:
        kind = SourceKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown sourceKind: {kind!r}")

    lat = message.get("cellHintLat")
    lng = message.get("cellHintLon")
    if not is_valid_coordinate(lat, lng):
        raise ValidationError(f"Invalid coordinates: ({lat!r}, {lng!r})")
    lat, lng = float(lat), float(lng)

    ts = parse_timestamp(message.get("timestamp"))
    payload = message.get("payload") or {}
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")

    cell_id = grid.cell_of(lat, lng, resolution)

    if kind is SourceKind.DEMAND:
        return DemandEvent(
            id=_identifier(payload),
            cell_id=cell_id,
            latitude=lat,
            longitude=lng,
            timestamp=ts,
            status=_enum(DemandStatus, payload.get("status"), DemandStatus.PENDING),
        )

    if kind is SourceKind.SUPPLY:
        return SupplyEvent(
            id=_identifier(payload),
            cell_id=cell_id,
            latitude=lat,
            longitude=lng,
            timestamp=ts,
            status=_enum(SupplyStatus, payload.get("status"), SupplyStatus.AVAILABLE),
        )

    if kind is SourceKind.WEATHER:
        return WeatherReading(
            cell_id=cell_id,
            timestamp=ts,
            temperature_c=_number(payload, "temperature", low=-90, high=70),
            precipitation_mm=_number(payload, "precipitation", 0.0, low=0),
            wind_speed_kmh=_number(payload, "windSpeed", 0.0, low=0),
            condition=str(payload.get("condition", "clear")).lower(),
        )

    if kind is SourceKind.TRAFFIC:
        speed = payload.get("averageSpeed")
        return TrafficReading(
            cell_id=cell_id,
            timestamp=ts,
            congestion_level=_number(payload, "congestionLevel", low=0, high=1),
            incident_count=int(_number(payload, "incidentCount", 0, low=0)),
            road_closure=bool(payload.get("roadClosure", False)),
            average_speed_kmh=None if speed is None else _number(payload, "averageSpeed", low=0),
        )

    events = payload.get("events", [])
    if not isinstance(events, list):
        raise ValidationError("venue-event payload.events must be a list")
    return VenueEventsReading(
        cell_id=cell_id,
        timestamp=ts,
        events=tuple(_parse_venue_event(e) for e in events),
    )
