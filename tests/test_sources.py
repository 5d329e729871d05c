import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests

from surgecast.common.errors import TransientSourceError
from surgecast.environment.sources import (
    EnvironmentalSource,
    EnvironmentPoller,
    HttpEnvironmentClient,
    http_source,
)
from surgecast.ingestion.events import SourceKind, TrafficReading, WeatherReading

from tests.conftest import ATOCHA, NOW

WEATHER_PAYLOAD = {"temperature": 12.0, "precipitation": 4.0, "windSpeed": 20.0, "condition": "Rain"}


class TestEnvironmentalSource:
    def test_poll_parses_reading_for_cell(self, grid, sol_cell):
        calls = []

        def fetch(lat, lng):
            calls.append((lat, lng))
            return WEATHER_PAYLOAD

        source = EnvironmentalSource(SourceKind.WEATHER, fetch)
        reading = source.poll(grid, sol_cell, NOW)

        assert isinstance(reading, WeatherReading)
        assert reading.cell_id == sol_cell
        assert reading.condition == "rain"
        assert reading.timestamp == NOW
        assert calls == [grid.center_of(sol_cell)]
        assert source.last_success == NOW
        assert not source.is_stale(NOW)

    def test_slow_fetch_times_out(self, grid, sol_cell):
        release = threading.Event()

        def fetch(lat, lng):
            release.wait(2.0)
            return WEATHER_PAYLOAD

        source = EnvironmentalSource(SourceKind.WEATHER, fetch, timeout=0.05)
        try:
            with pytest.raises(TransientSourceError):
                source.poll(grid, sol_cell, NOW)
        finally:
            release.set()
        assert source.is_stale(NOW)
        assert "timed out" in source.status(NOW)["lastError"]

    def test_invalid_payload_is_transient(self, grid, sol_cell):
        source = EnvironmentalSource(SourceKind.TRAFFIC, lambda lat, lng: {"congestionLevel": 7})
        with pytest.raises(TransientSourceError):
            source.poll(grid, sol_cell, NOW)
        assert source.is_stale(NOW)

    def test_fetch_exception_is_wrapped(self, grid, sol_cell):
        def fetch(lat, lng):
            raise KeyError("lat")

        source = EnvironmentalSource(SourceKind.WEATHER, fetch)
        with pytest.raises(TransientSourceError):
            source.poll(grid, sol_cell, NOW)

    def test_success_clears_error(self, grid, sol_cell):
        responses = iter([RuntimeError("down"), WEATHER_PAYLOAD])

        def fetch(lat, lng):
            value = next(responses)
            if isinstance(value, Exception):
                raise value
            return value

        source = EnvironmentalSource(SourceKind.WEATHER, fetch)
        with pytest.raises(TransientSourceError):
            source.poll(grid, sol_cell, NOW)
        source.poll(grid, sol_cell, NOW)
        assert source.last_error is None
        assert not source.is_stale(NOW)

    def test_stale_after_ttl(self, grid, sol_cell):
        source = EnvironmentalSource(SourceKind.WEATHER, lambda lat, lng: WEATHER_PAYLOAD, stale_after=timedelta(minutes=30))
        assert not source.is_stale(NOW)  # never polled
        source.poll(grid, sol_cell, NOW)
        assert not source.is_stale(NOW + timedelta(minutes=30))
        assert source.is_stale(NOW + timedelta(minutes=31))

    def test_failure_on_one_cell_keeps_source_stale(self, grid, sol_cell):
        atocha_cell = grid.cell_of(*ATOCHA)
        down = {sol_cell}

        def fetch(lat, lng):
            if grid.cell_of(lat, lng) in down:
                raise ConnectionError("refused")
            return WEATHER_PAYLOAD

        source = EnvironmentalSource(SourceKind.WEATHER, fetch)
        with pytest.raises(TransientSourceError):
            source.poll(grid, sol_cell, NOW)
        source.poll(grid, atocha_cell, NOW)

        assert source.is_stale(NOW)
        assert source.status(NOW)["failedCells"] == [sol_cell]

        down.clear()
        source.poll(grid, sol_cell, NOW)
        assert not source.is_stale(NOW)
        assert source.last_error is None

    def test_rejects_activity_kinds(self):
        with pytest.raises(ValueError):
            EnvironmentalSource(SourceKind.DEMAND, lambda lat, lng: {})


class TestPoller:
    def test_feeds_aggregator_and_counts_failures(self, grid, aggregator, sol_cell):
        def broken(lat, lng):
            raise ConnectionError("refused")

        poller = EnvironmentPoller(
            [
                EnvironmentalSource(SourceKind.WEATHER, lambda lat, lng: WEATHER_PAYLOAD),
                EnvironmentalSource(SourceKind.TRAFFIC, broken),
            ],
            aggregator,
            grid,
        )
        result = poller.poll_cells([sol_cell], NOW)

        assert result == {"ingested": 1, "failed": 1, "late": 0}
        snapshot = aggregator.snapshot(sol_cell, NOW)
        assert snapshot.weather.precipitation_mm == 4.0
        assert snapshot.traffic is None
        assert poller.stale_sources(NOW) == ["traffic"]

    def test_failed_poll_keeps_previous_reading(self, grid, aggregator, sol_cell):
        payloads = iter([{"congestionLevel": 0.8}, ConnectionError("refused")])

        def fetch(lat, lng):
            value = next(payloads)
            if isinstance(value, Exception):
                raise value
            return value

        poller = EnvironmentPoller([EnvironmentalSource(SourceKind.TRAFFIC, fetch)], aggregator, grid)
        poller.poll_cells([sol_cell], NOW)
        poller.poll_cells([sol_cell], NOW + timedelta(minutes=1))

        traffic = aggregator.snapshot(sol_cell, NOW + timedelta(minutes=1)).traffic
        assert isinstance(traffic, TrafficReading)
        assert traffic.congestion_level == 0.8

    def test_mixed_round_marks_source_stale(self, grid, aggregator, sol_cell):
        atocha_cell = grid.cell_of(*ATOCHA)

        def fetch(lat, lng):
            if grid.cell_of(lat, lng) == sol_cell:
                raise ConnectionError("refused")
            return WEATHER_PAYLOAD

        poller = EnvironmentPoller([EnvironmentalSource(SourceKind.WEATHER, fetch)], aggregator, grid)
        try:
            result = poller.poll_cells([sol_cell, atocha_cell], NOW)
            assert result == {"ingested": 1, "failed": 1, "late": 0}
            assert poller.stale_sources(NOW) == ["weather"]

            # the failing cell went inactive, so the source is healthy again
            poller.poll_cells([atocha_cell], NOW)
            assert poller.stale_sources(NOW) == []
        finally:
            poller.close()

    def test_poll_is_bounded_by_one_deadline(self, grid, aggregator, sol_cell):
        release = threading.Event()
        cells = [sol_cell, *grid.neighbors(sol_cell)]

        def hanging(lat, lng):
            release.wait(5)
            return {"congestionLevel": 0.5}

        sources = [
            EnvironmentalSource(kind, hanging, timeout=5)
            for kind in (SourceKind.WEATHER, SourceKind.TRAFFIC)
        ]
        poller = EnvironmentPoller(sources, aggregator, grid, workers=2, deadline=0.2)
        try:
            start = time.monotonic()
            result = poller.poll_cells(cells, NOW)
            elapsed = time.monotonic() - start
        finally:
            release.set()
            poller.close()

        assert elapsed < 1.0
        assert result["ingested"] == 0
        assert result["late"] + result["failed"] == 2 * len(cells)


class TestHttpClient:
    def response(self, body, status=200):
        resp = MagicMock()
        resp.json.return_value = body
        if status >= 400:
            resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Error")
        return resp

    def test_fetch(self):
        client = HttpEnvironmentClient("http://weather.local/")
        with patch.object(client._session, "get", return_value=self.response(WEATHER_PAYLOAD)) as get:
            assert client.fetch(SourceKind.WEATHER, 40.4, -3.7) == WEATHER_PAYLOAD
        get.assert_called_once_with(
            "http://weather.local/v1/weather", params={"lat": 40.4, "lon": -3.7}, timeout=client.timeout
        )

    @pytest.mark.parametrize("side_effect", [
        requests.exceptions.Timeout("slow"),
        requests.exceptions.ConnectionError("refused"),
    ])
    def test_network_errors_are_transient(self, side_effect):
        client = HttpEnvironmentClient("http://traffic.local")
        with patch.object(client._session, "get", side_effect=side_effect):
            with pytest.raises(TransientSourceError):
                client.fetch(SourceKind.TRAFFIC, 40.4, -3.7)

    def test_http_error_is_transient(self):
        client = HttpEnvironmentClient("http://traffic.local")
        with patch.object(client._session, "get", return_value=self.response({}, status=503)):
            with pytest.raises(TransientSourceError):
                client.fetch(SourceKind.TRAFFIC, 40.4, -3.7)

    def test_non_object_body_is_transient(self):
        client = HttpEnvironmentClient("http://events.local")
        with patch.object(client._session, "get", return_value=self.response([1, 2])):
            with pytest.raises(TransientSourceError):
                client.fetch(SourceKind.VENUE_EVENT, 40.4, -3.7)

    def test_http_source_binds_kind(self, grid, sol_cell):
        client = MagicMock()
        client.fetch.return_value = {"congestionLevel": 0.4}
        source = http_source(SourceKind.TRAFFIC, client)
        source.poll(grid, sol_cell, NOW)
        lat, lng = grid.center_of(sol_cell)
        client.fetch.assert_called_once_with(SourceKind.TRAFFIC, lat, lng)
