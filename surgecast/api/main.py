import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from surgecast.aggregation.aggregator import CellSnapshot
from surgecast.common.errors import ValidationError
from surgecast.engine.health import HealthStatus
from surgecast.engine.pipeline import SurgePipeline
from surgecast.geo.utils import is_valid_coordinate

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def snapshot_to_dict(snapshot: CellSnapshot) -> dict:
    return {
        "cellId": snapshot.cell_id,
        "windowStart": snapshot.window_start.isoformat(),
        "windowEnd": snapshot.window_end.isoformat(),
        "demand": {
            "count": snapshot.demand_count,
            "byStatus": dict(snapshot.demand_by_status),
            "previousHalf": snapshot.demand_previous_half,
            "recentHalf": snapshot.demand_recent_half,
        },
        "supply": {
            "count": snapshot.supply_count,
            "available": snapshot.available_supply,
            "byStatus": dict(snapshot.supply_by_status),
        },
        "weather": None if snapshot.weather is None else {
            "temperature": snapshot.weather.temperature_c,
            "precipitation": snapshot.weather.precipitation_mm,
            "windSpeed": snapshot.weather.wind_speed_kmh,
            "condition": snapshot.weather.condition,
            "timestamp": snapshot.weather.timestamp.isoformat(),
        },
        "traffic": None if snapshot.traffic is None else {
            "congestionLevel": snapshot.traffic.congestion_level,
            "incidentCount": snapshot.traffic.incident_count,
            "roadClosure": snapshot.traffic.road_closure,
            "timestamp": snapshot.traffic.timestamp.isoformat(),
        },
        "venueEvents": 0 if snapshot.venue_events is None else len(snapshot.venue_events.events),
    }


def create_app(pipeline: SurgePipeline | None = None) -> FastAPI:
    """
    Operational HTTP surface over a pipeline.

    With no pipeline given, the lifespan wires the production pipeline
    against Redis and runs it for the life of the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage pipeline lifecycle."""
        redis_client = None
        if app.state.pipeline is None:
            from surgecast.engine.bootstrap import build_pipeline, get_redis_client

            redis_client = get_redis_client()
            app.state.pipeline = build_pipeline(redis_client)
            app.state.pipeline.start()
            logger.info("Pipeline started by API lifespan")

        yield

        if redis_client is not None:
            app.state.pipeline.shutdown()
            redis_client.close()
            logger.info("Redis connection closed")

    app = FastAPI(
        title="Surgecast",
        description="Real-time surge aggregation and prediction engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    def current(request: Request) -> SurgePipeline:
        return request.app.state.pipeline

    def checked_cell(p: SurgePipeline, cell_id: str) -> str:
        try:
            p.grid.resolution_of(cell_id)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return cell_id

    @app.get("/health")
    def health(request: Request):
        """Health check endpoint."""
        report = current(request).health()
        status_code = 503 if report.status is HealthStatus.STANDBY else 200
        return JSONResponse(status_code=status_code, content=report.to_dict())

    @app.post("/v1/events", status_code=202)
    def submit_event(event: dict, request: Request):
        """Push one raw event through the ingestion boundary."""
        if not current(request).submit(event):
            raise HTTPException(status_code=400, detail="Event rejected")
        return {"accepted": True}

    @app.get("/v1/cells/lookup")
    def lookup_cell(lat: float, lng: float, request: Request):
        try:
            cell = current(request).grid.cell(lat, lng)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid coordinates: {e}")
        return {"cellId": cell.id, "resolution": cell.resolution, "center": list(cell.center)}

    @app.get("/v1/cells/active")
    def active_cells(request: Request):
        cells = sorted(current(request).aggregator.active_cell_ids())
        return {"count": len(cells), "cells": cells}

    @app.get("/v1/cells/{cell_id}/snapshot")
    def cell_snapshot(cell_id: str, request: Request):
        p = current(request)
        return snapshot_to_dict(p.aggregator.snapshot(checked_cell(p, cell_id)))

    @app.get("/v1/cells/{cell_id}/features")
    def cell_features(cell_id: str, request: Request):
        """
        Debug endpoint to inspect the feature vector a cell would be scored on.

        Returns:
            Named features plus the schema version
        """
        p = current(request)
        vector = p.builder.build(p.aggregator.snapshot(checked_cell(p, cell_id)))
        return {
            "cellId": vector.cell_id,
            "timestamp": vector.timestamp.isoformat(),
            "schemaVersion": vector.schema_version,
            "features": vector.as_dict(),
        }

    @app.get("/v1/predictions/{cell_id}/latest")
    def latest_prediction(cell_id: str, request: Request):
        p = current(request)
        prediction = p.latest_prediction(checked_cell(p, cell_id))
        if prediction is None:
            raise HTTPException(status_code=404, detail=f"No prediction for {cell_id}")
        return prediction.to_dict()

    @app.get("/v1/cells/{cell_id}/price-locks")
    def price_locks(cell_id: str, request: Request):
        p = current(request)
        checked_cell(p, cell_id)
        if p.allocator is None:
            raise HTTPException(status_code=404, detail="Price locks are disabled")
        return {"cellId": cell_id, "available": p.allocator.available_count(cell_id)}

    @app.get("/v1/guidance")
    def driver_guidance(lat: float, lng: float, request: Request, radiusKm: float = 2.0):
        """Best unexpired driver recommendations around a position."""
        p = current(request)
        if p.guidance is None:
            raise HTTPException(status_code=404, detail="Driver guidance is disabled")
        if not is_valid_coordinate(lat, lng) or radiusKm <= 0:
            raise HTTPException(status_code=400, detail="Invalid coordinates or radius")
        recommendations = p.guidance.for_area(lat, lng, radiusKm)
        return {"count": len(recommendations), "recommendations": [r.to_dict() for r in recommendations]}

    return app


app = create_app()
