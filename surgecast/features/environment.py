from datetime import datetime, timedelta

from surgecast.common.config import EVENT_MAX_DISTANCE_M
from surgecast.features.derive import clamp, normalize
from surgecast.features.schema import PRECIPITATION_RANGE_MM, WIND_SPEED_RANGE_KMH
from surgecast.geo.utils import haversine_m
from surgecast.ingestion.events import VenueCategory, VenueEvent, WeatherReading

COMFORT_TEMPERATURE_C = 18.0
TEMPERATURE_EXTREMITY_SPAN_C = 25.0

CONDITION_SEVERITY = {
    "clear": 0.0,
    "clouds": 0.1,
    "cloudy": 0.1,
    "fog": 0.4,
    "drizzle": 0.4,
    "rain": 0.6,
    "snow": 0.9,
    "sleet": 0.9,
    "storm": 1.0,
    "thunderstorm": 1.0,
}

WEATHER_WEIGHTS = {
    "precipitation": 0.4,
    "wind": 0.2,
    "temperature": 0.15,
    "condition": 0.25,
}

VENUE_TYPE_WEIGHTS = {
    VenueCategory.SPORTS: 1.0,
    VenueCategory.CONCERT: 0.9,
    VenueCategory.FESTIVAL: 0.8,
    VenueCategory.PARADE: 0.7,
    VenueCategory.CONFERENCE: 0.5,
    VenueCategory.OTHER: 0.4,
}

ATTENDANCE_SATURATION = 50_000

# (hours until start, relevance), checked in order
UPCOMING_RELEVANCE = ((1.0, 0.8), (2.0, 0.6), (3.0, 0.4))
FAR_FUTURE_RELEVANCE = 0.2
# (hours since end, relevance), checked in order
ENDED_RELEVANCE = ((0.5, 0.9), (1.0, 0.7), (2.0, 0.4))
LONG_ENDED_RELEVANCE = 0.1

# Events below this relevance do not count for proximity
PROXIMITY_MIN_RELEVANCE = 0.4


def weather_impact(reading: WeatherReading | None) -> float:
    """
    Composite 0-1 weather severity.

    Monotone non-decreasing in precipitation, wind, distance from a comfortable
    temperature, and condition severity. No reading is neutral (0).
    """
    if reading is None:
        return 0.0
    precipitation = normalize(reading.precipitation_mm, PRECIPITATION_RANGE_MM)
    wind = normalize(reading.wind_speed_kmh, WIND_SPEED_RANGE_KMH)
    extremity = clamp(abs(reading.temperature_c - COMFORT_TEMPERATURE_C) / TEMPERATURE_EXTREMITY_SPAN_C)
    condition = CONDITION_SEVERITY.get(reading.condition, 0.2)

    score = (
        WEATHER_WEIGHTS["precipitation"] * precipitation
        + WEATHER_WEIGHTS["wind"] * wind
        + WEATHER_WEIGHTS["temperature"] * extremity
        + WEATHER_WEIGHTS["condition"] * condition
    )
    return clamp(score)


def time_relevance(event: VenueEvent, now: datetime) -> float:
    """
    Piecewise relevance of a venue event at time `now`.

    ongoing 1.0; upcoming within 1h/2h/3h 0.8/0.6/0.4, later 0.2;
    ended within 0.5h/1h/2h 0.9/0.7/0.4, earlier 0.1.
    """
    if event.start_time <= now <= event.end_time:
        return 1.0

    if now < event.start_time:
        hours = (event.start_time - now) / timedelta(hours=1)
        for limit, relevance in UPCOMING_RELEVANCE:
            if hours <= limit:
                return relevance
        return FAR_FUTURE_RELEVANCE

    hours = (now - event.end_time) / timedelta(hours=1)
    for limit, relevance in ENDED_RELEVANCE:
        if hours <= limit:
            return relevance
    return LONG_ENDED_RELEVANCE


def event_proximity(
    center: tuple[float, float],
    events: list[VenueEvent],
    now: datetime,
    max_distance_m: float = EVENT_MAX_DISTANCE_M,
) -> float:
    """1 when adjacent to a relevant event, decaying linearly to 0 at max_distance_m."""
    lat, lng = center
    best = 0.0
    for event in events:
        if time_relevance(event, now) < PROXIMITY_MIN_RELEVANCE:
            continue
        distance = haversine_m(lat, lng, event.latitude, event.longitude)
        best = max(best, clamp(1.0 - distance / max_distance_m))
    return best


def event_impact(events: list[VenueEvent], now: datetime) -> float:
    """Strongest single event: type weight x attendance factor x time relevance."""
    best = 0.0
    for event in events:
        weight = VENUE_TYPE_WEIGHTS.get(event.category, VENUE_TYPE_WEIGHTS[VenueCategory.OTHER])
        attendance = clamp(event.expected_attendance / ATTENDANCE_SATURATION)
        best = max(best, weight * attendance * time_relevance(event, now))
    return clamp(best)
