"""
Sharded, TTL-based per-cell aggregation of demand, supply and environment.

Cell state is partitioned into shards by a stable hash of the cell id; each
shard has its own lock, so a busy cell only contends with the cells that share
its shard. Snapshots are built as copies under the shard lock and returned as
frozen objects: a prediction pass never holds a cell's write path open.
"""

import zlib
import logging
import threading
from collections import Counter as Tally
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Mapping

from prometheus_client import Counter, Gauge

from surgecast.common.config import (
    CITY,
    EVENT_TTL_MINUTES,
    ENVIRONMENT_TTL_MINUTES,
    AGGREGATOR_SHARDS,
)
from surgecast.common.errors import ValidationError
from surgecast.common.time_utils import ensure_utc, minutes, utcnow
from surgecast.ingestion.events import (
    ActivityEvent,
    DemandEvent,
    EnvironmentalReading,
    SourceKind,
    SupplyEvent,
    SupplyStatus,
    TrafficReading,
    VenueEventsReading,
    WeatherReading,
)

logger = logging.getLogger(__name__)

EVENTS_INGESTED = Counter(
    'surgecast_aggregator_events_ingested_total',
    'Demand/supply events accepted by the aggregator',
    ['city', 'kind', 'result']
)

READINGS_INGESTED = Counter(
    'surgecast_aggregator_readings_ingested_total',
    'Environmental readings accepted by the aggregator',
    ['city', 'source', 'result']
)

RECORDS_EXPIRED = Counter(
    'surgecast_aggregator_records_expired_total',
    'Demand/supply records dropped by cleanup',
    ['city']
)

ACTIVE_CELLS = Gauge(
    'surgecast_aggregator_active_cells',
    'Cells currently holding state',
    ['city']
)


@dataclass(frozen=True)
class CellSnapshot:
    """Point-in-time, immutable view of one cell."""
    cell_id: str
    window_start: datetime
    window_end: datetime
    demand_count: int = 0
    supply_count: int = 0
    available_supply: int = 0
    demand_by_status: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    supply_by_status: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    demand_previous_half: int = 0
    demand_recent_half: int = 0
    weather: WeatherReading | None = None
    traffic: TrafficReading | None = None
    venue_events: VenueEventsReading | None = None

    @property
    def is_empty(self) -> bool:
        return (
            self.demand_count == 0
            and self.supply_count == 0
            and self.weather is None
            and self.traffic is None
            and self.venue_events is None
        )


class _CellState:
    __slots__ = ("demand", "supply", "environment")

    def __init__(self):
        self.demand: dict[str, DemandEvent] = {}
        self.supply: dict[str, SupplyEvent] = {}
        self.environment: dict[SourceKind, EnvironmentalReading] = {}


class _Shard:
    __slots__ = ("lock", "cells")

    def __init__(self):
        self.lock = threading.Lock()
        self.cells: dict[str, _CellState] = {}


class _IdShard:
    __slots__ = ("lock", "locations")

    def __init__(self):
        self.lock = threading.Lock()
        # (kind, event id) -> cell id
        self.locations: dict[tuple[SourceKind, str], str] = {}


def _shard_index(key: str, count: int) -> int:
    return zlib.crc32(key.encode("utf-8")) % count


class WindowedAggregator:
    """
    Live per-cell state fed by a continuous event stream.

    Lock order is id-shard -> cell-shard; a cell-shard lock is never held
    while acquiring an id-shard lock.
    """

    def __init__(
        self,
        ttl: timedelta = minutes(EVENT_TTL_MINUTES),
        environment_ttl: timedelta = minutes(ENVIRONMENT_TTL_MINUTES),
        shards: int = AGGREGATOR_SHARDS,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.ttl = ttl
        self.environment_ttl = environment_ttl
        self._shards = [_Shard() for _ in range(shards)]
        self._id_shards = [_IdShard() for _ in range(shards)]

    def _shard(self, cell_id: str) -> _Shard:
        return self._shards[_shard_index(cell_id, len(self._shards))]

    def _id_shard(self, kind: SourceKind, event_id: str) -> _IdShard:
        return self._id_shards[_shard_index(f"{kind.value}:{event_id}", len(self._id_shards))]

    @staticmethod
    def _records(state: _CellState, kind: SourceKind) -> dict:
        return state.demand if kind is SourceKind.DEMAND else state.supply

    def ingest(self, event: ActivityEvent) -> bool:
        """
        Upsert a demand or supply event into its cell.

        Re-ingesting an id replaces the previous record (upstream retries never
        double count). If the id reappears in another cell the record moves.
        A record older than the stored one for the same id is ignored.

        Returns:
            True if the event was stored, False if it was stale
        """
        if not isinstance(event, (DemandEvent, SupplyEvent)):
            raise ValidationError(f"Cannot ingest {type(event).__name__} as activity event")

        kind = event.kind
        id_shard = self._id_shard(kind, event.id)
        with id_shard.lock:
            previous_cell = id_shard.locations.get((kind, event.id))

            if previous_cell is not None:
                shard = self._shard(previous_cell)
                with shard.lock:
                    state = shard.cells.get(previous_cell)
                    existing = self._records(state, kind).get(event.id) if state else None
                    if existing is not None and existing.timestamp > event.timestamp:
                        EVENTS_INGESTED.labels(city=CITY, kind=kind.value, result="stale").inc()
                        return False
                    if existing is not None and previous_cell != event.cell_id:
                        del self._records(state, kind)[event.id]

            shard = self._shard(event.cell_id)
            with shard.lock:
                state = shard.cells.get(event.cell_id)
                if state is None:
                    state = shard.cells[event.cell_id] = _CellState()
                self._records(state, kind)[event.id] = event

            id_shard.locations[(kind, event.id)] = event.cell_id

        result = "replaced" if previous_cell is not None else "new"
        EVENTS_INGESTED.labels(city=CITY, kind=kind.value, result=result).inc()
        return True

    def ingest_environmental(self, reading: EnvironmentalReading) -> bool:
        """Replace the latest reading of that source for the cell (never merge)."""
        if not isinstance(reading, (WeatherReading, TrafficReading, VenueEventsReading)):
            raise ValidationError(f"Cannot ingest {type(reading).__name__} as environmental reading")

        shard = self._shard(reading.cell_id)
        with shard.lock:
            state = shard.cells.get(reading.cell_id)
            if state is None:
                state = shard.cells[reading.cell_id] = _CellState()
            current = state.environment.get(reading.source)
            if current is not None and current.timestamp > reading.timestamp:
                READINGS_INGESTED.labels(city=CITY, source=reading.source.value, result="stale").inc()
                return False
            state.environment[reading.source] = reading

        READINGS_INGESTED.labels(city=CITY, source=reading.source.value, result="accepted").inc()
        return True

    def snapshot(self, cell_id: str, now: datetime | None = None) -> CellSnapshot:
        """
        Copy-on-read view of a cell.

        Counts only events with timestamp >= now - ttl; environmental readings
        older than the environmental TTL are left out. Unknown cells yield an
        empty snapshot.
        """
        now = ensure_utc(now) if now else utcnow()
        window_start = now - self.ttl
        midpoint = now - self.ttl / 2
        env_cutoff = now - self.environment_ttl

        shard = self._shard(cell_id)
        with shard.lock:
            state = shard.cells.get(cell_id)
            if state is None:
                return CellSnapshot(cell_id=cell_id, window_start=window_start, window_end=now)
            demand = [e for e in state.demand.values() if e.timestamp >= window_start]
            supply = [e for e in state.supply.values() if e.timestamp >= window_start]
            environment = {
                source: reading
                for source, reading in state.environment.items()
                if reading.timestamp >= env_cutoff
            }

        # Events are frozen; everything below works on private copies
        demand_by_status = Tally(e.status.value for e in demand)
        supply_by_status = Tally(e.status.value for e in supply)
        recent = sum(1 for e in demand if e.timestamp >= midpoint)

        return CellSnapshot(
            cell_id=cell_id,
            window_start=window_start,
            window_end=now,
            demand_count=len(demand),
            supply_count=len(supply),
            available_supply=supply_by_status.get(SupplyStatus.AVAILABLE.value, 0),
            demand_by_status=MappingProxyType(dict(demand_by_status)),
            supply_by_status=MappingProxyType(dict(supply_by_status)),
            demand_previous_half=len(demand) - recent,
            demand_recent_half=recent,
            weather=environment.get(SourceKind.WEATHER),
            traffic=environment.get(SourceKind.TRAFFIC),
            venue_events=environment.get(SourceKind.VENUE_EVENT),
        )

    def active_cell_ids(self) -> set[str]:
        """Cells with non-empty state: the driving set for periodic prediction."""
        active = set()
        for shard in self._shards:
            with shard.lock:
                active.update(
                    cell_id
                    for cell_id, state in shard.cells.items()
                    if state.demand or state.supply or state.environment
                )
        return active

    def cleanup(self, now: datetime | None = None) -> dict:
        """
        Drop expired demand/supply records and cells left with nothing recent.

        Returns:
            {"records": expired record count, "cells": dropped cell count}
        """
        now = ensure_utc(now) if now else utcnow()
        cutoff = now - self.ttl
        env_cutoff = now - self.environment_ttl
        expired: list[tuple[SourceKind, str, str]] = []
        dropped_cells = 0
        remaining = 0

        for shard in self._shards:
            with shard.lock:
                for cell_id in list(shard.cells):
                    state = shard.cells[cell_id]
                    for kind, records in (
                        (SourceKind.DEMAND, state.demand),
                        (SourceKind.SUPPLY, state.supply),
                    ):
                        for event_id in [i for i, e in records.items() if e.timestamp < cutoff]:
                            del records[event_id]
                            expired.append((kind, event_id, cell_id))
                    for source in [s for s, r in state.environment.items() if r.timestamp < env_cutoff]:
                        del state.environment[source]
                    if not state.demand and not state.supply and not state.environment:
                        del shard.cells[cell_id]
                        dropped_cells += 1
                remaining += len(shard.cells)

        # Index entries are removed only if they still point at the expired
        # record's cell; a concurrent re-ingest may have moved the id.
        for kind, event_id, cell_id in expired:
            id_shard = self._id_shard(kind, event_id)
            with id_shard.lock:
                if id_shard.locations.get((kind, event_id)) != cell_id:
                    continue
                shard = self._shard(cell_id)
                with shard.lock:
                    state = shard.cells.get(cell_id)
                    if state is None or event_id not in self._records(state, kind):
                        del id_shard.locations[(kind, event_id)]

        RECORDS_EXPIRED.labels(city=CITY).inc(len(expired))
        ACTIVE_CELLS.labels(city=CITY).set(remaining)
        if expired or dropped_cells:
            logger.info(f"Cleanup expired {len(expired)} records, dropped {dropped_cells} cells")
        return {"records": len(expired), "cells": dropped_cells}
