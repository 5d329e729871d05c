"""
The running engine: ingestion, periodic prediction cycles and cleanup.

Data flows one way:

    raw events -> parse -> WindowedAggregator
    active cells -> snapshot -> FeatureBuilder -> PredictionConsensus
        -> spatial smoothing -> {publisher, history, notifications, price locks,
           driver guidance}

Per-cell work runs on a bounded worker pool. A failure in one cell is logged
and counted; the rest of the cycle carries on.
"""

import time
import queue
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import numpy as np
from prometheus_client import Counter, Gauge, Histogram

from surgecast.aggregation.aggregator import CellSnapshot, WindowedAggregator
from surgecast.common.config import (
    CITY,
    CLEANUP_INTERVAL_SECONDS,
    EVENT_MAX_DISTANCE_M,
    PREDICTION_INTERVAL_SECONDS,
    PREDICTION_WORKERS,
    SHUTDOWN_GRACE_SECONDS,
    SMOOTHING_WEIGHT,
)
from surgecast.common.errors import ValidationError
from surgecast.common.time_utils import ensure_utc, utcnow
from surgecast.engine.health import HealthMonitor, HealthReport
from surgecast.environment.sources import EnvironmentPoller
from surgecast.features.builder import FeatureBuilder, FeatureVector, local_time
from surgecast.geo.grid import GridIndex
from surgecast.guidance.recommendations import DriverGuidanceAdvisor
from surgecast.ingestion.events import DemandEvent, SupplyEvent, VenueEvent, parse_event
from surgecast.notifications.policy import NotificationDispatcher, NotificationPolicy
from surgecast.prediction.consensus import ConsensusResult, PredictionConsensus
from surgecast.prediction.types import SurgePrediction
from surgecast.pricing.price_lock import PriceLockAllocator
from surgecast.storage.history import HistoryStore

logger = logging.getLogger(__name__)

EVENTS_SUBMITTED = Counter(
    'surgecast_events_submitted_total',
    'Raw events accepted into the aggregator',
    ['city', 'kind']
)

EVENTS_REJECTED = Counter(
    'surgecast_events_rejected_total',
    'Raw events dropped at the ingestion boundary',
    ['city', 'reason']
)

PREDICTIONS_EMITTED = Counter(
    'surgecast_predictions_emitted_total',
    'Predictions produced by the cycle',
    ['city', 'strategy']
)

CELL_FAILURES = Counter(
    'surgecast_cell_failures_total',
    'Per-cell failures isolated during a cycle',
    ['city', 'stage']
)

CYCLE_DURATION = Histogram(
    'surgecast_cycle_duration_seconds',
    'Wall time of one prediction cycle',
    ['city'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

CYCLE_CELLS = Gauge(
    'surgecast_cycle_cells',
    'Active cells evaluated in the last cycle',
    ['city']
)


@dataclass(frozen=True)
class CycleReport:
    started_at: datetime
    cells: int
    predictions: list[SurgePrediction]
    notifications: int
    price_locks: int
    failures: int
    duration_seconds: float
    recommendations: int = 0


@dataclass
class _CellWork:
    snapshot: CellSnapshot
    vector: FeatureVector | None = None
    result: ConsensusResult | None = None
    prediction: SurgePrediction | None = None


def smooth_scores(
    grid: GridIndex,
    scores: dict[str, float],
    weight: float,
) -> dict[str, float]:
    """
    Blend each cell's score with the mean of its ring-1 neighbors' scores.

    Only neighbors present in `scores` (predicted in the same cycle) count; a
    cell with none keeps its own score.
    """
    if weight <= 0:
        return dict(scores)
    smoothed = {}
    for cell_id, score in scores.items():
        neighbor_scores = [scores[n] for n in grid.neighbors(cell_id) if n in scores]
        if neighbor_scores:
            smoothed[cell_id] = (1 - weight) * score + weight * float(np.mean(neighbor_scores))
        else:
            smoothed[cell_id] = score
    return smoothed


class SurgePipeline:
    """
    Owns the ingestion channel, the prediction cycle and the cleanup loop.

    Collaborators left as None are skipped: no publisher means predictions are
    only kept as latest-per-cell, no dispatcher means notifications are
    evaluated but not delivered, and so on.
    """

    def __init__(
        self,
        grid: GridIndex,
        aggregator: WindowedAggregator,
        builder: FeatureBuilder,
        consensus: PredictionConsensus,
        notification_policy: NotificationPolicy | None = None,
        dispatcher: NotificationDispatcher | None = None,
        allocator: PriceLockAllocator | None = None,
        publisher: Callable[[SurgePrediction], None] | None = None,
        history: HistoryStore | None = None,
        poller: EnvironmentPoller | None = None,
        guidance: DriverGuidanceAdvisor | None = None,
        channel: queue.Queue | None = None,
        interval_seconds: float = PREDICTION_INTERVAL_SECONDS,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
        workers: int = PREDICTION_WORKERS,
        smoothing_weight: float = SMOOTHING_WEIGHT,
        max_event_distance_m: float = EVENT_MAX_DISTANCE_M,
        city: str = CITY,
    ):
        self.grid = grid
        self.aggregator = aggregator
        self.builder = builder
        self.consensus = consensus
        self.notification_policy = notification_policy or NotificationPolicy(city=city)
        self.dispatcher = dispatcher
        self.allocator = allocator
        self.publisher = publisher
        self.history = history
        self.poller = poller
        self.guidance = guidance
        self.channel = channel if channel is not None else queue.Queue()
        self.interval_seconds = interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.smoothing_weight = smoothing_weight
        self.max_event_distance_m = max_event_distance_m
        self.city = city
        self.health_monitor = HealthMonitor(interval_seconds, city)

        self._executor = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="cell-worker")
        self._in_flight: set[Future] = set()
        self._in_flight_lock = threading.Lock()
        self._stop = threading.Event()
        self._accepting = True
        self._running = False
        self._threads: list[threading.Thread] = []
        self._latest: dict[str, SurgePrediction] = {}
        self._latest_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self.started_at: datetime | None = None
        self.last_cycle_at: datetime | None = None
        self.last_excluded: tuple[str, ...] = ()
        self.events_ingested = 0

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def submit(self, raw_event: dict) -> bool:
        """
        Validate a raw event and fold it into the aggregator.

        Returns:
            True if the event was stored; False if rejected, stale or the
            pipeline is shutting down
        """
        if not self._accepting:
            EVENTS_REJECTED.labels(city=self.city, reason="shutting_down").inc()
            return False

        try:
            event = parse_event(raw_event, self.grid)
        except ValidationError as e:
            EVENTS_REJECTED.labels(city=self.city, reason="validation").inc()
            logger.warning(f"Rejected event: {e}")
            return False

        if isinstance(event, (DemandEvent, SupplyEvent)):
            stored = self.aggregator.ingest(event)
            kind = event.kind.value
        else:
            stored = self.aggregator.ingest_environmental(event)
            kind = event.source.value

        if stored:
            EVENTS_SUBMITTED.labels(city=self.city, kind=kind).inc()
            self.events_ingested += 1
        return stored

    def _ingest_loop(self):
        start_time = time.time()
        last_log_time = start_time
        while not self._stop.is_set():
            try:
                raw = self.channel.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.submit(raw)
            except Exception as e:
                EVENTS_REJECTED.labels(city=self.city, reason="exception").inc()
                logger.error(f"Error ingesting event: {e}")
            finally:
                self.channel.task_done()

            # Log every 10 seconds
            if time.time() - last_log_time >= 10:
                elapsed = time.time() - start_time
                logger.info(
                    f"[{elapsed:.0f}s] Ingested: {self.events_ingested} "
                    f"({self.events_ingested / elapsed:.1f}/s) | Queue: {self.channel.qsize()}"
                )
                last_log_time = time.time()

    # ------------------------------------------------------------------
    # Prediction cycle
    # ------------------------------------------------------------------

    def _submit_work(self, fn, *args) -> Future | None:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError:
            # Executor already shut down
            return None
        with self._in_flight_lock:
            self._in_flight.add(future)
        future.add_done_callback(self._discard_in_flight)
        return future

    def _discard_in_flight(self, future: Future):
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def _run_stage(self, stage: str, fn, items: dict) -> int:
        """Run fn(key, item) for every item on the worker pool; returns failure count."""
        futures = {}
        for key, item in items.items():
            future = self._submit_work(fn, key, item)
            if future is not None:
                futures[future] = key

        failures = 0
        for future in wait(futures).done:
            if future.cancelled():
                failures += 1
                continue
            error = future.exception()
            if error is not None:
                failures += 1
                CELL_FAILURES.labels(city=self.city, stage=stage).inc()
                logger.error(f"Cell {futures[future]} failed during {stage}: {error}")
        return failures

    def _nearby_events(self, cell_id: str, venue_index: dict[str, tuple[VenueEvent, ...]]) -> list[VenueEvent]:
        if not venue_index:
            return []
        center = self.grid.center_of(cell_id)
        resolution = self.grid.resolution_of(cell_id)
        events: dict[str, VenueEvent] = {}
        for nearby in self.grid.cells_within_radius(center, self.max_event_distance_m, resolution):
            for event in venue_index.get(nearby, ()):
                events.setdefault(event.id, event)
        return list(events.values())

    def _evaluate_cell(self, cell_id: str, work: _CellWork, now: datetime, venue_index: dict):
        work.vector = self.builder.build(work.snapshot, now, self._nearby_events(cell_id, venue_index))
        work.result = self.consensus.evaluate(work.vector)

    def _finalize_cell(self, cell_id: str, work: _CellWork, score: float | None, now: datetime) -> dict:
        prediction = self.consensus.to_prediction(work.result, work.vector, score)
        work.prediction = prediction
        with self._latest_lock:
            self._latest[cell_id] = prediction
        PREDICTIONS_EMITTED.labels(city=self.city, strategy=prediction.strategy).inc()

        if self.history is not None and prediction.strategy != "fallback":
            local = local_time(now, self.builder.tz)
            self.history.record(cell_id, local.hour, local.weekday(), prediction.multiplier)

        if self.publisher is not None:
            try:
                self.publisher(prediction)
            except Exception as e:
                CELL_FAILURES.labels(city=self.city, stage="publish").inc()
                logger.error(f"Failed to publish prediction for {cell_id}: {e}")

        outcome = {"notified": 0, "locks": 0, "guidance": 0}
        notification = self.notification_policy.evaluate(prediction, now)
        if notification is not None:
            outcome["notified"] = 1
            if self.dispatcher is not None:
                self.dispatcher.dispatch(notification)

        if self.allocator is not None:
            allocation = self.allocator.allocate(
                prediction,
                current_demand=work.snapshot.demand_count,
                available_supply=work.snapshot.available_supply,
                now=now,
            )
            if allocation.created:
                outcome["locks"] = allocation.quantity

        if self.guidance is not None:
            self.guidance.recommend(cell_id, work.snapshot.demand_count, work.snapshot.available_supply, now)
            outcome["guidance"] = 1
        return outcome

    def run_cycle(self, now: datetime | None = None) -> CycleReport:
        """
        Predict every active cell once.

        Args:
            now: Evaluation instant (defaults to the current time)

        Returns:
            CycleReport with the predictions produced in this cycle
        """
        now = ensure_utc(now) if now else utcnow()
        start = time.perf_counter()

        with self._cycle_lock:
            cell_ids = sorted(self.aggregator.active_cell_ids())
            if self.poller is not None and cell_ids:
                self.poller.poll_cells(cell_ids, now)

            work = {}
            for cell_id in cell_ids:
                snapshot = self.aggregator.snapshot(cell_id, now)
                if not snapshot.is_empty:
                    work[cell_id] = _CellWork(snapshot)

            venue_index = {
                cell_id: w.snapshot.venue_events.events
                for cell_id, w in work.items()
                if w.snapshot.venue_events is not None and w.snapshot.venue_events.events
            }

            failures = self._run_stage(
                "evaluate",
                lambda cell_id, w: self._evaluate_cell(cell_id, w, now, venue_index),
                work,
            )
            evaluated = {c: w for c, w in work.items() if w.result is not None}

            scores = {c: w.result.selected_score for c, w in evaluated.items() if not w.result.is_fallback}
            smoothed = smooth_scores(self.grid, scores, self.smoothing_weight)

            outcomes: dict[str, dict] = {}

            def finalize(cell_id, w):
                outcomes[cell_id] = self._finalize_cell(cell_id, w, smoothed.get(cell_id), now)

            failures += self._run_stage("finalize", finalize, evaluated)

            excluded = set()
            for w in evaluated.values():
                excluded.update(w.result.excluded)
            self.last_excluded = tuple(sorted(excluded))
            self.last_cycle_at = now

        predictions = [w.prediction for w in work.values() if w.prediction is not None]
        duration = time.perf_counter() - start
        report = CycleReport(
            started_at=now,
            cells=len(work),
            predictions=predictions,
            notifications=sum(o["notified"] for o in outcomes.values()),
            price_locks=sum(o["locks"] for o in outcomes.values()),
            failures=failures,
            duration_seconds=duration,
            recommendations=sum(o["guidance"] for o in outcomes.values()),
        )

        CYCLE_DURATION.labels(city=self.city).observe(duration)
        CYCLE_CELLS.labels(city=self.city).set(len(work))
        logger.info(
            f"Cycle: {report.cells} cells | {len(predictions)} predictions | "
            f"{report.notifications} notifications | {report.price_locks} locks | "
            f"{failures} failures | {duration * 1000:.0f}ms"
        )
        return report

    def _cycle_loop(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Prediction cycle failed: {e}")

    def _cleanup_loop(self):
        while not self._stop.wait(self.cleanup_interval_seconds):
            self.cleanup()

    def cleanup(self, now: datetime | None = None) -> dict:
        now = ensure_utc(now) if now else utcnow()
        removed = self.aggregator.cleanup(now)
        if self.allocator is not None:
            removed["price_locks"] = self.allocator.expire_due(now)
        if self.guidance is not None:
            removed["driver_recommendations"] = self.guidance.cleanup(now)
        with self._latest_lock:
            active = self.aggregator.active_cell_ids()
            for cell_id in [c for c in self._latest if c not in active]:
                del self._latest[cell_id]
        logger.info(f"Cleanup: {removed}")
        return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if self._running:
            return
        self._stop.clear()
        self._accepting = True
        self._running = True
        self.started_at = utcnow()
        self._threads = [
            threading.Thread(target=self._ingest_loop, name="ingest", daemon=True),
            threading.Thread(target=self._cycle_loop, name="prediction-cycle", daemon=True),
            threading.Thread(target=self._cleanup_loop, name="cleanup", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            f"Pipeline started: cycle every {self.interval_seconds}s, "
            f"cleanup every {self.cleanup_interval_seconds}s"
        )

    def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS):
        """
        Stop accepting events, give in-flight work up to grace_seconds to
        finish, then cancel anything still queued.
        """
        self._accepting = False
        self._stop.set()
        deadline = time.monotonic() + grace_seconds

        with self._in_flight_lock:
            in_flight = set(self._in_flight)
        if in_flight:
            logger.info(f"Waiting up to {grace_seconds}s for {len(in_flight)} in-flight tasks")
            _, pending = wait(in_flight, timeout=grace_seconds)
            if pending:
                logger.warning(f"Cancelling {len(pending)} tasks still pending after grace period")

        self._executor.shutdown(wait=False, cancel_futures=True)
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self.consensus.close()
        if self.poller is not None:
            self.poller.close()
        self._running = False
        logger.info("Pipeline stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def latest_prediction(self, cell_id: str) -> SurgePrediction | None:
        with self._latest_lock:
            return self._latest.get(cell_id)

    def health(self, now: datetime | None = None) -> HealthReport:
        return self.health_monitor.evaluate(
            running=self._running,
            started_at=self.started_at,
            last_cycle_at=self.last_cycle_at,
            stale_sources=self.poller.stale_sources(now) if self.poller else [],
            excluded_predictors=list(self.last_excluded),
            now=now,
        )
