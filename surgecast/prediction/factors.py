"""Human-readable explanation of what drove a prediction."""

from datetime import datetime

from surgecast.features.builder import FeatureVector
from surgecast.features.schema import DEFAULT_HISTORICAL_SURGE
from surgecast.prediction.types import PredictionFactor

# (start hour inclusive, end hour exclusive, description)
TIME_OF_DAY_PERIODS = (
    (7, 10, "Morning rush hour"),
    (10, 12, "Mid-morning"),
    (12, 14, "Lunch time"),
    (14, 16, "Afternoon"),
    (16, 19, "Evening rush hour"),
    (19, 22, "Evening"),
)

BASE_DURATION_MINUTES = 15


def describe_time_of_day(hour: int) -> str:
    for start, end, description in TIME_OF_DAY_PERIODS:
        if start <= hour < end:
            return description
    return "Late night"


def _weather_description(impact: float) -> str:
    if impact > 0.7:
        return "Severe weather conditions"
    if impact > 0.4:
        return "Moderate weather affecting travel"
    return "Mild weather conditions"


def _traffic_description(congestion: float) -> str:
    if congestion > 0.7:
        return "Heavy traffic congestion"
    if congestion > 0.4:
        return "Moderate traffic congestion"
    return "Light traffic conditions"


def _ratio_description(ratio: float) -> str:
    if ratio > 0.7:
        return "Very high demand relative to supply"
    if ratio > 0.5:
        return "High demand relative to supply"
    return "Moderate demand relative to supply"


def derive_factors(vector: FeatureVector, local: datetime) -> list[PredictionFactor]:
    """
    Explain a prediction from its feature vector.

    Args:
        vector: The feature vector the prediction was made from
        local: Evaluation instant in city-local time

    Returns:
        Factors in a fixed order; time of day and day of week are always present
    """
    factors = [
        PredictionFactor("Time of Day", describe_time_of_day(local.hour), 0.4),
        PredictionFactor(
            "Day of Week",
            "Weekend traffic patterns" if local.weekday() >= 5 else "Weekday traffic patterns",
            0.2,
        ),
    ]

    weather = vector.get("weather_impact")
    if weather > 0.2:
        factors.append(PredictionFactor("Weather Conditions", _weather_description(weather), weather))

    congestion = vector.get("traffic_congestion")
    if congestion > 0.3:
        factors.append(PredictionFactor("Traffic Conditions", _traffic_description(congestion), congestion))

    events = vector.get("event_impact")
    if events > 0.2:
        factors.append(PredictionFactor("Nearby Events", "Events in the area affecting demand", events))

    ratio = vector.get("demand_supply_ratio")
    if ratio > 0.3:
        factors.append(PredictionFactor("Demand/Supply Ratio", _ratio_description(ratio), min(0.8, ratio)))

    historical = vector.get("historical_surge")
    if abs(historical - DEFAULT_HISTORICAL_SURGE) > 0.1:
        factors.append(PredictionFactor("Historical Patterns", "Based on historical surge patterns", 0.3))

    return factors


def predicted_duration_minutes(vector: FeatureVector) -> int:
    """Surges near big events last longer."""
    return round(BASE_DURATION_MINUTES * (1 + vector.get("event_impact")))
