"""
Polling of weather / traffic / venue-event providers.

Each provider sits behind a fetch function returning the ingestion-contract
payload for a coordinate. Fetches are time-bounded; a failed or slow fetch
leaves the aggregator's last reading in place (it ages out on the
environmental TTL) and marks the source stale.
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable

import requests
from prometheus_client import Counter, Gauge

from surgecast.aggregation.aggregator import WindowedAggregator
from surgecast.common.config import (
    CITY,
    ENVIRONMENT_TTL_MINUTES,
    SOURCE_POLL_WORKERS,
    SOURCE_TIMEOUT_SECONDS,
)
from surgecast.common.errors import TransientSourceError, ValidationError
from surgecast.common.time_utils import ensure_utc, utcnow
from surgecast.geo.grid import GridIndex
from surgecast.ingestion.events import SourceKind, parse_event

logger = logging.getLogger(__name__)

SOURCE_FETCHES = Counter(
    'surgecast_source_fetches_total',
    'Environmental source fetches by outcome',
    ['city', 'source', 'status']
)

SOURCE_STALE = Gauge(
    'surgecast_source_stale',
    '1 when the source has no successful fetch within the environmental TTL',
    ['city', 'source']
)

ENVIRONMENT_KINDS = (SourceKind.WEATHER, SourceKind.TRAFFIC, SourceKind.VENUE_EVENT)


class HttpEnvironmentClient:
    """
    Client for an HTTP environmental provider.

    GET {host}/v1/{kind}?lat=..&lon=.. returning the payload object of the
    ingestion contract.
    """

    def __init__(self, host: str, timeout: float = SOURCE_TIMEOUT_SECONDS):
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def fetch(self, kind: SourceKind, lat: float, lng: float) -> dict:
        """
        Fetch the current payload for a coordinate.

        Raises:
            TransientSourceError: If the request fails or returns a non-object body
        """
        url = f"{self.host}/v1/{kind.value}"
        try:
            resp = self._session.get(url, params={"lat": lat, "lon": lng}, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.Timeout:
            raise TransientSourceError(f"{kind.value} request timed out after {self.timeout}s", source=kind.value)
        except requests.exceptions.ConnectionError as e:
            raise TransientSourceError(f"{kind.value} connection failed: {e}", source=kind.value)
        except requests.exceptions.HTTPError as e:
            raise TransientSourceError(f"{kind.value} HTTP error: {e}", source=kind.value)
        except ValueError as e:
            raise TransientSourceError(f"{kind.value} returned invalid JSON: {e}", source=kind.value)

        if not isinstance(data, dict):
            raise TransientSourceError(f"{kind.value} returned {type(data).__name__}, expected object", source=kind.value)
        return data

    def close(self):
        self._session.close()


class EnvironmentalSource:
    """
    One provider of one reading kind, polled per cell.

    The source is stale while the latest poll of any tracked cell failed, or
    when nothing succeeded within stale_after.

    Args:
        kind: weather, traffic or venue-event
        fetch: (lat, lon) -> payload dict; may raise
        timeout: Upper bound for one fetch
    """

    def __init__(
        self,
        kind: SourceKind,
        fetch: Callable[[float, float], dict],
        timeout: float = SOURCE_TIMEOUT_SECONDS,
        stale_after: timedelta = timedelta(minutes=ENVIRONMENT_TTL_MINUTES),
        executor: Executor | None = None,
        city: str = CITY,
    ):
        if kind not in ENVIRONMENT_KINDS:
            raise ValueError(f"{kind.value} is not an environmental source kind")
        self.kind = kind
        self.fetch = fetch
        self.timeout = timeout
        self.stale_after = stale_after
        self.city = city
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=SOURCE_POLL_WORKERS, thread_name_prefix=f"source-{kind.value}"
        )
        self._lock = threading.Lock()
        self.last_success: datetime | None = None
        self.last_error: str | None = None
        self.failed_cells: dict[str, str] = {}

    @property
    def name(self) -> str:
        return self.kind.value

    def _fetch_bounded(self, lat: float, lng: float) -> dict:
        future = self._executor.submit(self.fetch, lat, lng)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            raise TransientSourceError(f"{self.name} fetch timed out after {self.timeout}s", source=self.name)
        except TransientSourceError:
            raise
        except Exception as e:
            raise TransientSourceError(f"{self.name} fetch failed: {e}", source=self.name) from e

    def _update_gauge(self, now: datetime):
        SOURCE_STALE.labels(city=self.city, source=self.name).set(1 if self.is_stale(now) else 0)

    def poll(self, grid: GridIndex, cell_id: str, now: datetime | None = None):
        """
        Fetch and parse the current reading for a cell.

        Returns:
            The parsed reading

        Raises:
            TransientSourceError: fetch failed, timed out or returned an invalid payload
        """
        now = ensure_utc(now) if now else utcnow()
        lat, lng = grid.center_of(cell_id)
        try:
            payload = self._fetch_bounded(lat, lng)
            reading = parse_event(
                {
                    "sourceKind": self.kind.value,
                    "cellHintLat": lat,
                    "cellHintLon": lng,
                    "timestamp": now.isoformat(),
                    "payload": payload,
                },
                grid,
                grid.resolution_of(cell_id),
            )
        except (TransientSourceError, ValidationError) as e:
            with self._lock:
                self.last_error = str(e)
                self.failed_cells[cell_id] = str(e)
            SOURCE_FETCHES.labels(city=self.city, source=self.name, status="failed").inc()
            self._update_gauge(now)
            if isinstance(e, ValidationError):
                raise TransientSourceError(f"{self.name} returned invalid payload: {e}", source=self.name) from e
            raise

        with self._lock:
            self.last_success = now
            self.failed_cells.pop(cell_id, None)
            if not self.failed_cells:
                self.last_error = None
        SOURCE_FETCHES.labels(city=self.city, source=self.name, status="ok").inc()
        self._update_gauge(now)
        return reading

    def retain_cells(self, cell_ids):
        """Forget failures for cells that are no longer polled."""
        keep = set(cell_ids)
        with self._lock:
            for cell_id in [c for c in self.failed_cells if c not in keep]:
                del self.failed_cells[cell_id]
            if not self.failed_cells:
                self.last_error = None

    def is_stale(self, now: datetime | None = None) -> bool:
        now = ensure_utc(now) if now else utcnow()
        with self._lock:
            if self.failed_cells:
                return True
            if self.last_success is None:
                return False
            return now - self.last_success > self.stale_after

    def status(self, now: datetime | None = None) -> dict:
        with self._lock:
            last_success, last_error = self.last_success, self.last_error
            failed = sorted(self.failed_cells)
        return {
            "source": self.name,
            "stale": self.is_stale(now),
            "lastSuccess": last_success.isoformat() if last_success else None,
            "lastError": last_error,
            "failedCells": failed,
        }

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)


class EnvironmentPoller:
    """
    Polls every source for a set of cells and feeds the aggregator.

    (source, cell) fetches run on a bounded pool and one poll waits at most
    `deadline` seconds in total. Fetches still running at the deadline are
    counted as late; they finish in the background and ingest whatever they
    return.
    """

    def __init__(
        self,
        sources: list[EnvironmentalSource],
        aggregator: WindowedAggregator,
        grid: GridIndex,
        workers: int = SOURCE_POLL_WORKERS,
        deadline: float = SOURCE_TIMEOUT_SECONDS,
    ):
        self.sources = list(sources)
        self.aggregator = aggregator
        self.grid = grid
        self.deadline = deadline
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="env-poll")

    def _poll_one(self, source: EnvironmentalSource, cell_id: str, now: datetime) -> str:
        try:
            reading = source.poll(self.grid, cell_id, now)
        except TransientSourceError as e:
            logger.warning(f"Source {source.name} unavailable for {cell_id}: {e}")
            return "failed"
        return "ingested" if self.aggregator.ingest_environmental(reading) else "ignored"

    def poll_cells(self, cell_ids, now: datetime | None = None) -> dict:
        """
        Poll every source for every cell, bounded by the poller deadline.

        Returns:
            {"ingested": n, "failed": m, "late": k}
        """
        now = ensure_utc(now) if now else utcnow()
        cell_ids = list(cell_ids)
        for source in self.sources:
            source.retain_cells(cell_ids)

        futures = [
            self._executor.submit(self._poll_one, source, cell_id, now)
            for source in self.sources
            for cell_id in cell_ids
        ]
        if not futures:
            return {"ingested": 0, "failed": 0, "late": 0}

        done, pending = wait(futures, timeout=self.deadline)
        for future in pending:
            future.cancel()

        ingested = failed = 0
        for future in done:
            try:
                outcome = future.result()
            except Exception as e:
                logger.error(f"Environmental poll crashed: {e}")
                outcome = "failed"
            if outcome == "ingested":
                ingested += 1
            elif outcome == "failed":
                failed += 1

        if pending:
            logger.warning(f"{len(pending)} environmental fetches still running after {self.deadline}s")
        return {"ingested": ingested, "failed": failed, "late": len(pending)}

    def stale_sources(self, now: datetime | None = None) -> list[str]:
        return [s.name for s in self.sources if s.is_stale(now)]

    def close(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
        for source in self.sources:
            source.close()


def http_source(kind: SourceKind, client: HttpEnvironmentClient, **kwargs) -> EnvironmentalSource:
    return EnvironmentalSource(kind, lambda lat, lng: client.fetch(kind, lat, lng), **kwargs)
