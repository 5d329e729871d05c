import pytest
from fastapi.testclient import TestClient

from surgecast.api.main import create_app
from surgecast.common.time_utils import utcnow
from surgecast.engine.pipeline import SurgePipeline
from surgecast.features.builder import FeatureBuilder
from surgecast.guidance.recommendations import DriverGuidanceAdvisor
from surgecast.prediction.consensus import PredictionConsensus
from surgecast.prediction.predictors import FunctionPredictor
from surgecast.pricing.price_lock import PriceLockAllocator
from surgecast.storage.price_locks import InMemoryPriceLockStore

from tests.conftest import SOL, demand, supply


@pytest.fixture
def pipeline(grid, aggregator):
    consensus = PredictionConsensus(
        [FunctionPredictor("a", lambda v: 0.5), FunctionPredictor("b", lambda v: 0.5)],
        robust_name="a",
        sequential_name="b",
    )
    p = SurgePipeline(
        grid,
        aggregator,
        FeatureBuilder(grid),
        consensus,
        allocator=PriceLockAllocator(InMemoryPriceLockStore()),
        interval_seconds=3600,
        cleanup_interval_seconds=3600,
        workers=2,
    )
    yield p
    if p.running:
        p.shutdown(grace_seconds=1)
    else:
        consensus.close()


@pytest.fixture
def client(pipeline):
    return TestClient(create_app(pipeline))


def seed(client, n_demand=20, n_available=10):
    now = utcnow()
    for i in range(n_demand):
        assert client.post("/v1/events", json=demand(f"r{i}", ts=now)).status_code == 202
    for i in range(n_available):
        assert client.post("/v1/events", json=supply(f"d{i}", ts=now)).status_code == 202


class TestHealth:
    def test_standby_before_start(self, client):
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "STANDBY"

    def test_healthy_when_running(self, client, pipeline):
        pipeline.start()
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "HEALTHY"


class TestEvents:
    def test_accepts_valid_event(self, client, sol_cell):
        resp = client.post("/v1/events", json=demand("r1", ts=utcnow()))
        assert resp.status_code == 202
        assert client.get("/v1/cells/active").json() == {"count": 1, "cells": [sol_cell]}

    def test_rejects_invalid_event(self, client):
        resp = client.post("/v1/events", json={"sourceKind": "demand", "payload": {}})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Event rejected"


class TestCells:
    def test_lookup(self, client, sol_cell):
        resp = client.get("/v1/cells/lookup", params={"lat": SOL[0], "lng": SOL[1]})
        assert resp.status_code == 200
        body = resp.json()
        assert body["cellId"] == sol_cell
        assert body["resolution"] == 8

    def test_lookup_invalid_coordinates(self, client):
        assert client.get("/v1/cells/lookup", params={"lat": 120, "lng": 0}).status_code == 400

    def test_snapshot(self, client, sol_cell):
        seed(client, n_demand=3, n_available=2)
        body = client.get(f"/v1/cells/{sol_cell}/snapshot").json()
        assert body["cellId"] == sol_cell
        assert body["demand"]["count"] == 3
        assert body["supply"]["available"] == 2
        assert body["weather"] is None

    def test_features(self, client, sol_cell):
        seed(client, n_demand=3, n_available=2)
        body = client.get(f"/v1/cells/{sol_cell}/features").json()
        assert len(body["features"]) == 22
        assert body["features"]["demand_count"] == pytest.approx(0.03)

    def test_invalid_cell_id(self, client):
        assert client.get("/v1/cells/not-a-cell/snapshot").status_code == 400
        assert client.get("/v1/predictions/not-a-cell/latest").status_code == 400


class TestPredictions:
    def test_no_prediction_yet(self, client, sol_cell):
        assert client.get(f"/v1/predictions/{sol_cell}/latest").status_code == 404

    def test_latest_prediction_and_locks(self, client, pipeline, sol_cell):
        seed(client)
        pipeline.run_cycle(utcnow())

        body = client.get(f"/v1/predictions/{sol_cell}/latest").json()
        assert body["cellId"] == sol_cell
        assert body["multiplier"] == 2.0
        assert body["confidence"] == 0.95
        assert {f["name"] for f in body["factors"]} >= {"Time of Day", "Day of Week"}

        locks = client.get(f"/v1/cells/{sol_cell}/price-locks").json()
        assert locks == {"cellId": sol_cell, "available": 8}


class TestGuidance:
    def test_disabled_without_advisor(self, client):
        assert client.get("/v1/guidance", params={"lat": SOL[0], "lng": SOL[1]}).status_code == 404

    def test_recommendations_near_position(self, client, pipeline, grid, sol_cell):
        pipeline.guidance = DriverGuidanceAdvisor(grid)
        seed(client)
        pipeline.run_cycle(utcnow())

        body = client.get("/v1/guidance", params={"lat": SOL[0], "lng": SOL[1], "radiusKm": 1.0}).json()
        assert body["count"] == 1
        assert body["recommendations"][0]["cellId"] == sol_cell
        assert body["recommendations"][0]["incentiveMultiplier"] == 1.5

    def test_invalid_radius(self, client, pipeline, grid):
        pipeline.guidance = DriverGuidanceAdvisor(grid)
        params = {"lat": SOL[0], "lng": SOL[1], "radiusKm": -1}
        assert client.get("/v1/guidance", params=params).status_code == 400
