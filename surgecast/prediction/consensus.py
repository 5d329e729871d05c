"""
Reconcile several independent predictors into one surge decision.

Each round runs every registered predictor against the same feature vector,
drops the ones that fail, time out or return something outside [0, 1], and
picks a score according to how much the survivors disagree:

    volatility > 0.2        -> robust predictor
    0.1 < volatility <= 0.2 -> sequential predictor
    volatility <= 0.1       -> mean of survivors

Confidence falls as volatility rises.
"""

import math
import time
import uuid
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Executor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import numpy as np
from prometheus_client import Counter, Histogram

from surgecast.common.config import (
    CITY,
    CITY_TIMEZONE,
    PREDICTION_WORKERS,
    PREDICTOR_TIMEOUT_SECONDS,
)
from surgecast.common.errors import PredictorError
from surgecast.common.time_utils import load_timezone
from surgecast.features.builder import FeatureVector, local_time
from surgecast.features.derive import clamp
from surgecast.prediction.factors import derive_factors, predicted_duration_minutes
from surgecast.prediction.predictors import ROBUST_PREDICTOR, SEQUENTIAL_PREDICTOR, Predictor
from surgecast.prediction.types import (
    FALLBACK_CONFIDENCE,
    FALLBACK_MULTIPLIER,
    MAX_MULTIPLIER,
    MIN_MULTIPLIER,
    SurgePrediction,
)

logger = logging.getLogger(__name__)

HIGH_VOLATILITY = 0.2
MODERATE_VOLATILITY = 0.1
MIN_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95

PREDICTOR_FAILURES = Counter(
    'surgecast_predictor_failures_total',
    'Predictor results excluded from a consensus round',
    ['city', 'predictor', 'reason']
)

STRATEGY_SELECTED = Counter(
    'surgecast_consensus_strategy_total',
    'Consensus rounds by selected strategy',
    ['city', 'strategy']
)

CONSENSUS_DURATION = Histogram(
    'surgecast_consensus_duration_seconds',
    'Time to run all predictors for one cell',
    ['city'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5]
)


@dataclass(frozen=True)
class ConsensusResult:
    scores: dict[str, float]
    excluded: dict[str, str] = field(default_factory=dict)
    volatility: float = 0.0
    mean: float = 0.0
    selected_score: float = 0.0
    strategy: str = "fallback"

    @property
    def is_fallback(self) -> bool:
        return self.strategy == "fallback"


def confidence_for(volatility: float) -> float:
    return clamp(1.0 - 2.0 * volatility, MIN_CONFIDENCE, MAX_CONFIDENCE)


def multiplier_for(score: float) -> float:
    return round(clamp(1.0 + 2.0 * score, MIN_MULTIPLIER, MAX_MULTIPLIER), 2)


def _check_score(name: str, value) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError) as e:
        raise PredictorError(f"Predictor {name} returned non-numeric score {value!r}", predictor=name) from e
    if not math.isfinite(score):
        raise PredictorError(f"Predictor {name} returned non-finite score {score}", predictor=name)
    if not 0.0 <= score <= 1.0:
        raise PredictorError(f"Predictor {name} returned out-of-range score {score}", predictor=name)
    return score


class _Call:
    """One predictor invocation; the timeout runs from started_at, not from submission."""

    def __init__(self, name: str):
        self.name = name
        self.submitted_at = time.monotonic()
        self.started_at: float | None = None
        self.finished = False
        self.abandoned = False

    def deadline(self, timeout: float) -> float:
        return (self.started_at if self.started_at is not None else self.submitted_at) + timeout


class PredictionConsensus:
    """
    Runs the registered predictors and reconciles their scores.

    One instance is shared by every worker. The pool holds workers threads per
    predictor so concurrent cells never queue behind each other. A call that
    overruns its timeout is abandoned but keeps its thread; until it returns,
    later rounds skip that predictor instead of stacking more stuck threads.
    """

    def __init__(
        self,
        predictors: list[Predictor],
        robust_name: str = ROBUST_PREDICTOR,
        sequential_name: str = SEQUENTIAL_PREDICTOR,
        timeout: float = PREDICTOR_TIMEOUT_SECONDS,
        executor: Executor | None = None,
        workers: int = PREDICTION_WORKERS,
        timezone: str = CITY_TIMEZONE,
        city: str = CITY,
    ):
        names = [p.name for p in predictors]
        if len(set(names)) != len(names):
            raise ValueError(f"Predictor names must be unique: {names}")

        self.predictors = list(predictors)
        self.robust_name = robust_name
        self.sequential_name = sequential_name
        self.timeout = timeout
        self.tz = load_timezone(timezone)
        self.city = city
        self._stuck: dict[str, int] = {}
        self._stuck_lock = threading.Lock()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, workers) * max(1, len(self.predictors)),
            thread_name_prefix="predictor",
        )

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def stuck_predictors(self) -> list[str]:
        """Predictors with an abandoned call that has not returned yet."""
        with self._stuck_lock:
            return sorted(name for name, count in self._stuck.items() if count > 0)

    def _exclude(self, excluded: dict, name: str, reason: str, detail: str = ""):
        excluded[name] = reason
        PREDICTOR_FAILURES.labels(city=self.city, predictor=name, reason=reason).inc()
        logger.warning(f"Predictor {name} excluded ({reason}){': ' + detail if detail else ''}")

    def _invoke(self, predictor: Predictor, vector: FeatureVector, call: _Call):
        call.started_at = time.monotonic()
        try:
            return predictor.score(vector)
        finally:
            with self._stuck_lock:
                call.finished = True
                if call.abandoned:
                    self._stuck[call.name] -= 1
                    logger.info(f"Predictor {call.name} returned after being abandoned")

    def _abandon(self, call: _Call) -> bool:
        """Mark a running call as stuck. False if it finished in the meantime."""
        with self._stuck_lock:
            if call.finished:
                return False
            call.abandoned = True
            self._stuck[call.name] = self._stuck.get(call.name, 0) + 1
            return True

    def _run_all(self, vector: FeatureVector) -> tuple[dict[str, float], dict[str, str]]:
        scores: dict[str, float] = {}
        excluded: dict[str, str] = {}
        stuck = set(self.stuck_predictors())

        pending: dict = {}
        for predictor in self.predictors:
            if predictor.name in stuck:
                self._exclude(excluded, predictor.name, "timeout", "previous call still running")
                continue
            call = _Call(predictor.name)
            pending[self._executor.submit(self._invoke, predictor, vector, call)] = call

        while pending:
            now = time.monotonic()
            for future, call in list(pending.items()):
                if future.done():
                    continue
                if now < call.deadline(self.timeout):
                    continue
                if call.started_at is None:
                    if future.cancel():
                        del pending[future]
                        self._exclude(excluded, call.name, "timeout", f"not started after {self.timeout}s")
                    continue
                if self._abandon(call):
                    del pending[future]
                    self._exclude(excluded, call.name, "timeout", f"no result after {self.timeout}s")

            for future in [f for f in pending if f.done()]:
                name = pending.pop(future).name
                try:
                    scores[name] = _check_score(name, future.result())
                except PredictorError as e:
                    self._exclude(excluded, name, "invalid_output", str(e))
                except Exception as e:
                    self._exclude(excluded, name, "error", f"{type(e).__name__}: {e}")

            if pending:
                next_deadline = min(call.deadline(self.timeout) for call in pending.values())
                wait(pending, timeout=max(0.0, next_deadline - time.monotonic()), return_when=FIRST_COMPLETED)

        return scores, excluded

    def evaluate(self, vector: FeatureVector) -> ConsensusResult:
        """
        Score one feature vector with every predictor and pick a score.

        Returns:
            ConsensusResult; strategy is "fallback" when no predictor survived
        """
        start = time.perf_counter()
        scores, excluded = self._run_all(vector)
        CONSENSUS_DURATION.labels(city=self.city).observe(time.perf_counter() - start)

        if not scores:
            STRATEGY_SELECTED.labels(city=self.city, strategy="fallback").inc()
            return ConsensusResult(scores={}, excluded=excluded)

        values = np.array(list(scores.values()), dtype=float)
        mean = float(values.mean())
        volatility = float(values.std())

        if volatility > HIGH_VOLATILITY:
            if self.robust_name in scores:
                strategy, selected = "robust", scores[self.robust_name]
            else:
                strategy, selected = "robust", float(np.median(values))
        elif volatility > MODERATE_VOLATILITY:
            strategy = "sequential"
            selected = scores.get(self.sequential_name, mean)
        else:
            strategy, selected = "consensus", mean

        STRATEGY_SELECTED.labels(city=self.city, strategy=strategy).inc()
        return ConsensusResult(
            scores=scores,
            excluded=excluded,
            volatility=volatility,
            mean=mean,
            selected_score=selected,
            strategy=strategy,
        )

    def to_prediction(
        self,
        result: ConsensusResult,
        vector: FeatureVector,
        score_override: float | None = None,
    ) -> SurgePrediction:
        """
        Turn a consensus result into a SurgePrediction.

        Args:
            result: Output of evaluate()
            vector: The vector the result was computed from
            score_override: Replaces the selected score, e.g. after spatial smoothing
        """
        prediction_id = str(uuid.uuid4())

        if result.is_fallback:
            return SurgePrediction(
                id=prediction_id,
                cell_id=vector.cell_id,
                timestamp=vector.timestamp,
                multiplier=FALLBACK_MULTIPLIER,
                confidence=FALLBACK_CONFIDENCE,
                predicted_duration_minutes=0,
                factors=(),
                strategy="fallback",
            )

        score = result.selected_score if score_override is None else clamp(score_override)
        local = local_time(vector.timestamp, self.tz)
        return SurgePrediction(
            id=prediction_id,
            cell_id=vector.cell_id,
            timestamp=vector.timestamp,
            multiplier=multiplier_for(score),
            confidence=round(confidence_for(result.volatility), 4),
            predicted_duration_minutes=predicted_duration_minutes(vector),
            factors=tuple(derive_factors(vector, local)),
            strategy=result.strategy,
            volatility=result.volatility,
        )

    def predict(self, vector: FeatureVector) -> SurgePrediction:
        return self.to_prediction(self.evaluate(vector), vector)
