import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import joblib
import numpy as np
import pytest

from surgecast.prediction.consensus import PredictionConsensus, confidence_for, multiplier_for
from surgecast.prediction.factors import derive_factors, describe_time_of_day, predicted_duration_minutes
from surgecast.prediction.predictors import (
    ContextPredictor,
    FunctionPredictor,
    JoblibPredictor,
    RobustMedianPredictor,
    SupplyDemandPredictor,
    TrendAwarePredictor,
    build_default_predictors,
)

from tests.conftest import NOW, make_vector


class OvershootingModel:
    def predict(self, rows):
        return [1.7 for _ in rows]


def constant(name, value):
    return FunctionPredictor(name, lambda vector: value)


def failing(name):
    def fn(vector):
        raise RuntimeError("model crashed")
    return FunctionPredictor(name, fn)


@pytest.fixture
def consensus_for():
    created = []

    def factory(predictors, **kwargs):
        kwargs.setdefault("robust_name", "robust")
        kwargs.setdefault("sequential_name", "sequential")
        c = PredictionConsensus(predictors, **kwargs)
        created.append(c)
        return c

    yield factory
    for c in created:
        c.close()


class TestSelection:
    def test_high_volatility_selects_robust(self, consensus_for):
        consensus = consensus_for([
            constant("a", 0.40),
            constant("b", 0.42),
            constant("robust", 0.41),
            constant("d", 0.90),
        ])
        result = consensus.evaluate(make_vector())

        assert result.volatility > 0.2
        assert result.strategy == "robust"
        assert result.selected_score == 0.41

        prediction = consensus.to_prediction(result, make_vector())
        assert prediction.multiplier == 1.82
        assert prediction.confidence == pytest.approx(1 - 2 * result.volatility, abs=1e-4)

    def test_moderate_volatility_selects_sequential(self, consensus_for):
        consensus = consensus_for([
            constant("a", 0.20),
            constant("b", 0.45),
            constant("c", 0.50),
            constant("sequential", 0.55),
        ])
        result = consensus.evaluate(make_vector())

        assert 0.1 < result.volatility <= 0.2
        assert result.strategy == "sequential"
        assert consensus.to_prediction(result, make_vector()).multiplier == 2.1

    def test_low_volatility_uses_mean(self, consensus_for):
        consensus = consensus_for([constant("a", 0.48), constant("b", 0.50), constant("c", 0.52)])
        prediction = consensus.predict(make_vector())

        assert prediction.strategy == "consensus"
        assert prediction.multiplier == 2.0
        assert prediction.confidence == 0.95

    def test_missing_robust_falls_back_to_median(self, consensus_for):
        consensus = consensus_for([
            constant("a", 0.40),
            constant("b", 0.42),
            constant("c", 0.41),
            constant("d", 0.90),
        ])
        result = consensus.evaluate(make_vector())
        assert result.strategy == "robust"
        assert result.selected_score == pytest.approx(float(np.median([0.40, 0.42, 0.41, 0.90])))

    def test_missing_sequential_falls_back_to_mean(self, consensus_for):
        scores = [0.20, 0.45, 0.50, 0.55]
        consensus = consensus_for([constant(str(i), s) for i, s in enumerate(scores)])
        result = consensus.evaluate(make_vector())
        assert result.strategy == "sequential"
        assert result.selected_score == pytest.approx(np.mean(scores))


class TestExclusion:
    def test_failing_predictor_is_excluded(self, consensus_for):
        consensus = consensus_for([constant("a", 0.5), failing("broken")])
        result = consensus.evaluate(make_vector())
        assert result.scores == {"a": 0.5}
        assert result.excluded == {"broken": "error"}

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), -0.1, 1.5, "high"])
    def test_invalid_output_is_excluded(self, consensus_for, bad):
        consensus = consensus_for([constant("a", 0.5), constant("bad", bad)])
        result = consensus.evaluate(make_vector())
        assert "bad" not in result.scores
        assert result.excluded["bad"] == "invalid_output"

    def test_slow_predictor_times_out(self, consensus_for):
        def slow(vector):
            time.sleep(1.0)
            return 0.9

        consensus = consensus_for([constant("a", 0.3), FunctionPredictor("slow", slow)], timeout=0.1)
        result = consensus.evaluate(make_vector())
        assert result.scores == {"a": 0.3}
        assert result.excluded == {"slow": "timeout"}

    def test_all_failing_gives_fallback(self, consensus_for):
        consensus = consensus_for([failing("x"), constant("y", float("nan"))])
        prediction = consensus.predict(make_vector("cell"))

        assert prediction.strategy == "fallback"
        assert prediction.multiplier == 1.0
        assert prediction.confidence == 0.5
        assert prediction.factors == ()
        assert prediction.cell_id == "cell"

    def test_hung_predictor_is_not_resubmitted(self, consensus_for):
        release = threading.Event()
        calls = []

        def hang(vector):
            calls.append(vector.cell_id)
            release.wait(5)
            return 0.3

        consensus = consensus_for([constant("fast", 0.3), FunctionPredictor("hang", hang)], timeout=0.2)
        try:
            for _ in range(3):
                result = consensus.evaluate(make_vector())
                assert result.scores == {"fast": 0.3}
                assert result.excluded == {"hang": "timeout"}
            assert len(calls) == 1
            assert consensus.stuck_predictors() == ["hang"]
        finally:
            release.set()

        deadline = time.monotonic() + 2
        while consensus.stuck_predictors() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert consensus.evaluate(make_vector()).scores == {"fast": 0.3, "hang": 0.3}

    def test_concurrent_rounds_do_not_queue(self, consensus_for):
        def slow(vector):
            time.sleep(0.15)
            return 0.4

        consensus = consensus_for(
            [FunctionPredictor("a", slow), FunctionPredictor("b", slow)],
            timeout=0.5,
            workers=4,
        )
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: consensus.evaluate(make_vector()), range(4)))

        for result in results:
            assert result.scores == {"a": 0.4, "b": 0.4}
            assert result.excluded == {}

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValueError):
            PredictionConsensus([constant("a", 0.1), constant("a", 0.2)])


class TestBounds:
    @pytest.mark.parametrize("score, expected", [(0.0, 1.0), (0.1, 1.2), (0.5, 2.0), (1.0, 3.0), (2.0, 3.5)])
    def test_multiplier(self, score, expected):
        assert multiplier_for(score) == expected

    @pytest.mark.parametrize("volatility, expected", [(0.0, 0.95), (0.1, 0.8), (0.25, 0.5), (0.5, 0.5)])
    def test_confidence(self, volatility, expected):
        assert confidence_for(volatility) == pytest.approx(expected)

    def test_score_override_is_clamped(self, consensus_for):
        consensus = consensus_for([constant("a", 0.5)])
        result = consensus.evaluate(make_vector())
        assert consensus.to_prediction(result, make_vector(), score_override=0.25).multiplier == 1.5
        assert consensus.to_prediction(result, make_vector(), score_override=7.0).multiplier == 3.0

    def test_prediction_ids_are_unique(self, consensus_for):
        consensus = consensus_for([constant("a", 0.5)])
        assert consensus.predict(make_vector()).id != consensus.predict(make_vector()).id


class TestFactors:
    def test_always_time_and_day(self):
        factors = derive_factors(make_vector(), NOW)
        assert [f.name for f in factors] == ["Time of Day", "Day of Week"]
        assert factors[0].description == "Evening rush hour"
        assert factors[0].impact == 0.4
        assert factors[1].description == "Weekday traffic patterns"
        assert factors[1].impact == 0.2

    def test_conditional_factors(self):
        vector = make_vector(
            weather_impact=0.8,
            traffic_congestion=0.5,
            event_impact=0.3,
            demand_supply_ratio=0.9,
            historical_surge=0.6,
        )
        factors = {f.name: f for f in derive_factors(vector, NOW)}

        assert factors["Weather Conditions"].description == "Severe weather conditions"
        assert factors["Traffic Conditions"].description == "Moderate traffic congestion"
        assert factors["Nearby Events"].impact == 0.3
        assert factors["Demand/Supply Ratio"].impact == 0.8
        assert factors["Demand/Supply Ratio"].description == "Very high demand relative to supply"
        assert factors["Historical Patterns"].impact == 0.3

    def test_thresholds_are_exclusive(self):
        vector = make_vector(weather_impact=0.2, traffic_congestion=0.3, event_impact=0.2, demand_supply_ratio=0.3)
        assert len(derive_factors(vector, NOW)) == 2

    @pytest.mark.parametrize("hour, description", [
        (8, "Morning rush hour"),
        (11, "Mid-morning"),
        (13, "Lunch time"),
        (15, "Afternoon"),
        (17, "Evening rush hour"),
        (20, "Evening"),
        (2, "Late night"),
        (22, "Late night"),
    ])
    def test_time_of_day(self, hour, description):
        assert describe_time_of_day(hour) == description

    def test_duration_grows_with_events(self):
        assert predicted_duration_minutes(make_vector()) == 15
        assert predicted_duration_minutes(make_vector(event_impact=0.4)) == 21
        assert predicted_duration_minutes(make_vector(event_impact=1.0)) == 30


class TestBuiltinPredictors:
    @pytest.mark.parametrize("predictor", [
        SupplyDemandPredictor(),
        ContextPredictor(),
        TrendAwarePredictor(),
        RobustMedianPredictor(),
    ])
    def test_scores_in_unit_range(self, predictor):
        for vector in (
            make_vector(),
            make_vector(demand_supply_ratio=1.0, demand_trend=1.0, demand_count=1.0, weather_impact=1.0,
                        traffic_congestion=1.0, event_impact=1.0, event_proximity=1.0, historical_surge=1.0),
        ):
            score = predictor.score(vector)
            assert 0.0 <= score <= 1.0
            assert math.isfinite(score)

    def test_shortage_raises_supply_demand_score(self):
        predictor = SupplyDemandPredictor()
        calm = make_vector(demand_count=0.2, demand_supply_ratio=0.1)
        tight = make_vector(demand_count=0.2, demand_supply_ratio=0.9)
        assert predictor.score(tight) > predictor.score(calm)

    def test_robust_ignores_single_outlier(self):
        predictor = RobustMedianPredictor()
        storm = make_vector(weather_impact=1.0, traffic_congestion=1.0)
        assert predictor.score(storm) == predictor.score(make_vector())

    def test_joblib_predictor_clamps(self, tmp_path):
        path = tmp_path / "model.joblib"
        joblib.dump(OvershootingModel(), path)
        assert JoblibPredictor(str(path)).score(make_vector()) == 1.0

    def test_default_predictors_without_model(self, tmp_path):
        predictors = build_default_predictors(str(tmp_path / "missing.joblib"))
        assert [p.name for p in predictors] == ["supply_demand", "context", "trend_aware", "robust_median"]
