"""
Scoring functions: FeatureVector -> score in [0, 1].

Consensus treats every predictor as an opaque, swappable function. The
heuristic predictors below stand in until trained models are configured;
JoblibPredictor serves a trained scikit-learn compatible model.
"""

import logging
from typing import Callable, Protocol

import joblib
import numpy as np

from surgecast.common.config import PREDICTOR_MODEL_PATH
from surgecast.features.builder import FeatureVector
from surgecast.features.derive import clamp

logger = logging.getLogger(__name__)

ROBUST_PREDICTOR = "robust_median"
SEQUENTIAL_PREDICTOR = "trend_aware"


class Predictor(Protocol):
    name: str

    def score(self, vector: FeatureVector) -> float: ...


class FunctionPredictor:
    """Wrap a plain function as a named predictor."""

    def __init__(self, name: str, fn: Callable[[FeatureVector], float]):
        self.name = name
        self._fn = fn

    def score(self, vector: FeatureVector) -> float:
        return self._fn(vector)


class SupplyDemandPredictor:
    """
    Marketplace-only score.

    Shortage of available supply against demand drives the score; thin
    demand is dampened so a couple of requests in an empty cell don't read
    as a surge.
    """

    name = "supply_demand"

    ALPHA = 0.8   # shortage weight
    BETA = 0.2    # trend weight
    LOW_VOLUME = 0.05   # normalized demand below which the score is halved

    def score(self, vector: FeatureVector) -> float:
        ratio = vector.get("demand_supply_ratio")
        trend = vector.get("demand_trend")
        demand = vector.get("demand_count")

        score = self.ALPHA * ratio
        if trend > 0.5:
            score += self.BETA * (trend - 0.5) * 2

        # Low confidence dampening
        if demand < self.LOW_VOLUME:
            score *= 0.5

        return clamp(score)


class ContextPredictor:
    """Environment-only score: weather, traffic and venue events."""

    name = "context"

    WEIGHTS = {
        "weather_impact": 0.3,
        "traffic_congestion": 0.2,
        "road_closure": 0.05,
        "event_impact": 0.3,
        "event_proximity": 0.15,
    }

    def score(self, vector: FeatureVector) -> float:
        return clamp(sum(w * vector.get(name) for name, w in self.WEIGHTS.items()))


class TrendAwarePredictor:
    """
    Sequential / time-aware score.

    Combines the marketplace shortage with the direction demand is moving,
    the usual surge level for this hour and weekday, and rush-hour shape.
    """

    name = SEQUENTIAL_PREDICTOR

    def score(self, vector: FeatureVector) -> float:
        ratio = vector.get("demand_supply_ratio")
        trend = vector.get("demand_trend")
        historical = vector.get("historical_surge")

        # Peaks around 08:00 and 18:00: hour angle cos(2*theta) shape
        hour_sin, hour_cos = vector.get("hour_sin"), vector.get("hour_cos")
        cos_double = hour_cos ** 2 - hour_sin ** 2
        sin_double = 2 * hour_sin * hour_cos
        rush = clamp(0.5 - 0.5 * (0.5 * cos_double + 0.866 * sin_double))

        momentum = ratio * (0.5 + trend)
        score = 0.5 * momentum + 0.3 * historical + 0.2 * rush * ratio
        if vector.get("is_holiday") or vector.get("is_weekend"):
            score *= 0.9
        return clamp(score)


class RobustMedianPredictor:
    """
    Outlier-resistant score: the median of independent signal groups.

    A single extreme signal (a storm reading, a burst of retried requests)
    moves the median at most one rank.
    """

    name = ROBUST_PREDICTOR

    def score(self, vector: FeatureVector) -> float:
        signals = [
            vector.get("demand_supply_ratio"),
            vector.get("historical_surge"),
            0.5 * vector.get("weather_impact") + 0.5 * vector.get("traffic_congestion"),
            vector.get("event_impact"),
            clamp((vector.get("demand_trend") - 0.5) * 2),
        ]
        return clamp(float(np.median(signals)))


class JoblibPredictor:
    """
    Trained model loaded with joblib.

    The model must accept a (1, n_features) array in schema order and return
    a score; outputs are clamped to [0, 1].
    """

    def __init__(self, model_path: str, name: str = "trained_model"):
        """Load pre-trained model from disk."""
        self.name = name
        self.model = joblib.load(model_path)

    def score(self, vector: FeatureVector) -> float:
        score = float(self.model.predict(vector.as_array())[0])
        return clamp(score)


def build_default_predictors(model_path: str | None = PREDICTOR_MODEL_PATH) -> list:
    """Heuristic predictors plus the trained model when one is available."""
    predictors = [
        SupplyDemandPredictor(),
        ContextPredictor(),
        TrendAwarePredictor(),
        RobustMedianPredictor(),
    ]
    if model_path:
        try:
            predictors.append(JoblibPredictor(model_path))
            logger.info(f"Loaded surge model from {model_path}")
        except FileNotFoundError:
            logger.warning(f"Surge model not found at {model_path}, using heuristic predictors only")
        except Exception as e:
            logger.error(f"Failed to load surge model: {e}")
    return predictors
