import threading
from datetime import timedelta

import pytest

from surgecast.common.errors import ValidationError
from surgecast.ingestion.events import SourceKind, parse_event

from tests.conftest import ATOCHA, NOW, demand, raw_event, supply


def ingest(aggregator, grid, message):
    return aggregator.ingest(parse_event(message, grid))


class TestIngest:
    def test_counts_distinct_ids(self, aggregator, grid, sol_cell):
        for i in range(5):
            ingest(aggregator, grid, demand(f"r{i}"))
        ingest(aggregator, grid, supply("d1"))
        ingest(aggregator, grid, supply("d2", status="busy"))

        snap = aggregator.snapshot(sol_cell, NOW)
        assert snap.demand_count == 5
        assert snap.supply_count == 2
        assert snap.available_supply == 1
        assert snap.supply_by_status == {"available": 1, "busy": 1}

    def test_reingest_same_id_is_idempotent(self, aggregator, grid, sol_cell):
        for _ in range(3):
            assert ingest(aggregator, grid, demand("r1"))
        assert aggregator.snapshot(sol_cell, NOW).demand_count == 1

    def test_status_update_replaces_record(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, supply("d1", ts=NOW - timedelta(minutes=1)))
        ingest(aggregator, grid, supply("d1", status="busy"))
        snap = aggregator.snapshot(sol_cell, NOW)
        assert snap.supply_count == 1
        assert snap.available_supply == 0

    def test_id_moving_cells_is_counted_once(self, aggregator, grid, sol_cell):
        atocha_cell = grid.cell_of(*ATOCHA)
        ingest(aggregator, grid, supply("d1", ts=NOW - timedelta(minutes=2)))
        ingest(aggregator, grid, supply("d1", lat=ATOCHA[0], lng=ATOCHA[1]))

        assert aggregator.snapshot(sol_cell, NOW).supply_count == 0
        assert aggregator.snapshot(atocha_cell, NOW).supply_count == 1

    def test_stale_update_is_ignored(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, supply("d1", status="busy"))
        assert not ingest(aggregator, grid, supply("d1", ts=NOW - timedelta(minutes=5)))
        assert aggregator.snapshot(sol_cell, NOW).available_supply == 0

    def test_rejects_environmental_reading(self, aggregator, grid):
        reading = parse_event(raw_event("traffic", {"congestionLevel": 0.5}), grid)
        with pytest.raises(ValidationError):
            aggregator.ingest(reading)


class TestWindow:
    def test_expired_event_excluded(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("old", ts=NOW - timedelta(minutes=16)))
        ingest(aggregator, grid, demand("new", ts=NOW - timedelta(minutes=1)))
        assert aggregator.snapshot(sol_cell, NOW).demand_count == 1

    def test_event_exactly_at_ttl_counts(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("edge", ts=NOW - timedelta(minutes=15)))
        assert aggregator.snapshot(sol_cell, NOW).demand_count == 1

    def test_demand_halves(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("a", ts=NOW - timedelta(minutes=12)))
        ingest(aggregator, grid, demand("b", ts=NOW - timedelta(minutes=3)))
        ingest(aggregator, grid, demand("c", ts=NOW - timedelta(minutes=1)))
        snap = aggregator.snapshot(sol_cell, NOW)
        assert snap.demand_previous_half == 1
        assert snap.demand_recent_half == 2

    def test_unknown_cell_is_empty(self, aggregator, sol_cell):
        snap = aggregator.snapshot(sol_cell, NOW)
        assert snap.is_empty
        assert snap.window_end == NOW
        assert snap.window_start == NOW - timedelta(minutes=15)


class TestEnvironmental:
    def test_newer_reading_supersedes(self, aggregator, grid, sol_cell):
        old = parse_event(raw_event("weather", {"temperature": 10}, ts=NOW - timedelta(minutes=5)), grid)
        new = parse_event(raw_event("weather", {"temperature": 20}), grid)
        assert aggregator.ingest_environmental(old)
        assert aggregator.ingest_environmental(new)
        assert not aggregator.ingest_environmental(old)
        assert aggregator.snapshot(sol_cell, NOW).weather.temperature_c == 20

    def test_sources_are_independent(self, aggregator, grid, sol_cell):
        aggregator.ingest_environmental(parse_event(raw_event("weather", {"temperature": 10}), grid))
        aggregator.ingest_environmental(parse_event(raw_event("traffic", {"congestionLevel": 0.7}), grid))
        snap = aggregator.snapshot(sol_cell, NOW)
        assert snap.weather is not None
        assert snap.traffic.congestion_level == 0.7
        assert snap.venue_events is None

    def test_reading_older_than_environment_ttl_is_absent(self, aggregator, grid, sol_cell):
        reading = parse_event(raw_event("weather", {"temperature": 10}, ts=NOW - timedelta(minutes=31)), grid)
        aggregator.ingest_environmental(reading)
        assert aggregator.snapshot(sol_cell, NOW).weather is None

    def test_rejects_activity_event(self, aggregator, grid):
        with pytest.raises(ValidationError):
            aggregator.ingest_environmental(parse_event(demand("r1"), grid))


class TestCleanup:
    def test_drops_expired_records_and_empty_cells(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("old", ts=NOW - timedelta(minutes=20)))
        ingest(aggregator, grid, supply("d1", ts=NOW - timedelta(minutes=20)))

        removed = aggregator.cleanup(NOW)

        assert removed == {"records": 2, "cells": 1}
        assert sol_cell not in aggregator.active_cell_ids()

    def test_keeps_cell_with_fresh_reading(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("old", ts=NOW - timedelta(minutes=20)))
        aggregator.ingest_environmental(parse_event(raw_event("traffic", {"congestionLevel": 0.2}), grid))

        removed = aggregator.cleanup(NOW)

        assert removed == {"records": 1, "cells": 0}
        assert aggregator.active_cell_ids() == {sol_cell}

    def test_expired_id_can_be_reingested(self, aggregator, grid, sol_cell):
        ingest(aggregator, grid, demand("r1", ts=NOW - timedelta(minutes=20)))
        aggregator.cleanup(NOW)
        ingest(aggregator, grid, demand("r1"))
        assert aggregator.snapshot(sol_cell, NOW).demand_count == 1


def test_concurrent_ingest_counts_every_id(aggregator, grid, sol_cell):
    events = [parse_event(demand(f"r{i}"), grid) for i in range(400)]

    def worker(chunk):
        for event in chunk:
            aggregator.ingest(event)
            # Replays from a retrying upstream
            aggregator.ingest(event)

    threads = [threading.Thread(target=worker, args=(events[i::4],)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert aggregator.snapshot(sol_cell, NOW).demand_count == 400


def test_snapshot_is_a_copy(aggregator, grid, sol_cell):
    ingest(aggregator, grid, demand("r1"))
    snap = aggregator.snapshot(sol_cell, NOW)
    ingest(aggregator, grid, demand("r2"))
    assert snap.demand_count == 1
    with pytest.raises(TypeError):
        snap.demand_by_status["pending"] = 99


def test_active_cells_include_environment_only(aggregator, grid, sol_cell):
    aggregator.ingest_environmental(parse_event(raw_event("venue-event", {"events": []}), grid))
    assert aggregator.active_cell_ids() == {sol_cell}
    assert aggregator.snapshot(sol_cell, NOW).venue_events.source is SourceKind.VENUE_EVENT
