"""
Development load generator.

Publishes ingestion-contract events for a set of Madrid zones to the events
topic: ride requests (demand), driver pings (supply), and every few seconds
weather, traffic and venue-event readings per zone.
"""

import json
import math
import time
import uuid
import random
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from surgecast.common.config import CITY
from surgecast.transport.kafka import EVENTS_TOPIC, delivery_report, get_producer

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

METRICS_PORT = 8001

EVENT_INTERVAL = 0.5
RIDES_PER_BATCH = 10
NUM_DRIVERS = 2000
DRIVER_PING_INTERVAL = 5
ENVIRONMENT_INTERVAL = 30
DRIVER_MOVE_DELTA = 0.002

# LOW VOLUME - Testing/Development
# EVENT_INTERVAL = 1.0
# RIDES_PER_BATCH = 1
# NUM_DRIVERS = 200

# EXTREME VOLUME - Peak demand
# EVENT_INTERVAL = 0.25
# RIDES_PER_BATCH = 20
# NUM_DRIVERS = 3000

EVENTS_PRODUCED = Counter(
    'surgecast_simulator_events_produced_total',
    'Simulated events produced',
    ['city', 'kind']
)

ACTIVE_DRIVERS = Gauge(
    'surgecast_simulator_drivers',
    'Simulated drivers by status',
    ['city', 'status']
)

PRODUCE_LATENCY = Histogram(
    'surgecast_simulator_batch_seconds',
    'Time to produce one batch',
    ['city'],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5]
)


@dataclass
class Zone:
    """A demand zone in the city"""
    name: str
    lat: float
    lng: float
    radius_km: float
    demand_weight: float
    driver_weight: float


MADRID_ZONES = [
    Zone("Sol-Gran Via", 40.4169, -3.7034, 0.8, demand_weight=20, driver_weight=25),
    Zone("Atocha", 40.4065, -3.6895, 0.6, demand_weight=15, driver_weight=18),
    Zone("Chamartin", 40.4722, -3.6824, 0.6, demand_weight=12, driver_weight=14),
    Zone("Barajas T1-T3", 40.4719, -3.5674, 0.8, demand_weight=14, driver_weight=12),
    Zone("Azca", 40.4505, -3.6925, 0.5, demand_weight=10, driver_weight=12),
    Zone("Malasana", 40.4260, -3.7060, 0.4, demand_weight=9, driver_weight=10),
    Zone("Salamanca", 40.4280, -3.6820, 0.6, demand_weight=8, driver_weight=10),
    Zone("Santiago Bernabeu", 40.4531, -3.6883, 0.3, demand_weight=5, driver_weight=6),
    Zone("Retiro", 40.4153, -3.6845, 0.6, demand_weight=4, driver_weight=3),
]

VENUES = [
    ("Santiago Bernabeu", "sports", 78_000),
    ("Azca", "conference", 4_000),
]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sample_point(zone: Zone) -> tuple[float, float]:
    sigma_lat = zone.radius_km / 111.0 / 2
    sigma_lng = zone.radius_km / (111.0 * math.cos(math.radians(zone.lat))) / 2
    return random.gauss(zone.lat, sigma_lat), random.gauss(zone.lng, sigma_lng)


def envelope(kind: str, lat: float, lng: float, payload: dict) -> dict:
    return {
        "sourceKind": kind,
        "cellHintLat": lat,
        "cellHintLon": lng,
        "timestamp": now_iso(),
        "payload": payload,
    }


def ride_request() -> dict:
    zone = random.choices(MADRID_ZONES, weights=[z.demand_weight for z in MADRID_ZONES])[0]
    lat, lng = sample_point(zone)
    return envelope("demand", lat, lng, {"id": str(uuid.uuid4()), "status": "pending"})


class DriverFleet:
    def __init__(self, num_drivers: int, ping_interval: float, event_interval: float):
        self.pings_per_interval = max(1, int(ping_interval / event_interval))
        self.tick = 0
        weights = [z.driver_weight for z in MADRID_ZONES]
        self.drivers = {}
        for i in range(num_drivers):
            zone = random.choices(MADRID_ZONES, weights=weights)[0]
            lat, lng = sample_point(zone)
            self.drivers[f"d_{i:05d}"] = {
                "lat": lat,
                "lng": lng,
                "status": "available",
                "ticks_in_status": 0,
                "ping_offset": i % self.pings_per_interval,
            }
        logger.info(f"Initialized {num_drivers} drivers across {len(MADRID_ZONES)} zones")

    def _step(self, state: dict):
        state["lat"] += random.uniform(-DRIVER_MOVE_DELTA, DRIVER_MOVE_DELTA)
        state["lng"] += random.uniform(-DRIVER_MOVE_DELTA, DRIVER_MOVE_DELTA)
        state["ticks_in_status"] += 1
        if state["status"] == "available":
            if random.random() < min(0.02 + state["ticks_in_status"] * 0.005, 0.15):
                state["status"], state["ticks_in_status"] = "busy", 0
        elif random.random() < state["ticks_in_status"] / 50.0:
            state["status"], state["ticks_in_status"] = "available", 0

    def pings(self) -> list[dict]:
        offset = self.tick % self.pings_per_interval
        events = []
        for driver_id, state in self.drivers.items():
            if state["ping_offset"] != offset:
                continue
            self._step(state)
            events.append(envelope("supply", state["lat"], state["lng"], {"id": driver_id, "status": state["status"]}))
        self.tick += 1
        return events

    def stats(self) -> dict:
        available = sum(1 for d in self.drivers.values() if d["status"] == "available")
        return {"available": available, "busy": len(self.drivers) - available}


def environment_readings() -> list[dict]:
    events = []
    raining = random.random() < 0.2
    for zone in MADRID_ZONES:
        events.append(envelope("weather", zone.lat, zone.lng, {
            "temperature": random.gauss(19, 4),
            "precipitation": random.uniform(2, 10) if raining else 0.0,
            "windSpeed": abs(random.gauss(12, 6)),
            "condition": "rain" if raining else "clear",
        }))
        events.append(envelope("traffic", zone.lat, zone.lng, {
            "congestionLevel": min(1.0, max(0.0, random.gauss(0.4, 0.2))),
            "incidentCount": random.randint(0, 2),
            "roadClosure": random.random() < 0.02,
            "averageSpeed": random.uniform(10, 45),
        }))

    start = datetime.now(timezone.utc) + timedelta(minutes=45)
    zones = {z.name: z for z in MADRID_ZONES}
    for name, category, attendance in VENUES:
        zone = zones[name]
        events.append(envelope("venue-event", zone.lat, zone.lng, {"events": [{
            "id": f"{name.lower().replace(' ', '-')}-{start:%Y%m%d}",
            "title": f"{name} {category}",
            "category": category,
            "latitude": zone.lat,
            "longitude": zone.lng,
            "startTime": start.isoformat(),
            "endTime": (start + timedelta(hours=2)).isoformat(),
            "expectedAttendance": attendance,
        }]}))
    return events


def main():
    start_http_server(METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {METRICS_PORT}")

    producer = get_producer()
    fleet = DriverFleet(NUM_DRIVERS, DRIVER_PING_INTERVAL, EVENT_INTERVAL)

    logger.info("=" * 60)
    logger.info("Surge Event Simulator")
    logger.info("=" * 60)
    logger.info(f"  Metrics endpoint: http://localhost:{METRICS_PORT}/metrics")
    logger.info(f"  Events topic: {EVENTS_TOPIC}")
    logger.info(f"  Expected: {RIDES_PER_BATCH / EVENT_INTERVAL * 60:.0f} rides/min, "
                f"{NUM_DRIVERS / DRIVER_PING_INTERVAL * 60:.0f} pings/min")
    logger.info("=" * 60)

    def send(event: dict):
        producer.produce(
            topic=EVENTS_TOPIC,
            value=json.dumps(event).encode("utf-8"),
            callback=delivery_report
        )
        EVENTS_PRODUCED.labels(city=CITY, kind=event["sourceKind"]).inc()

    total = 0
    start_time = time.time()
    last_log_time = start_time
    last_environment_time = 0.0

    try:
        while True:
            batch_start = time.time()

            batch = [ride_request() for _ in range(RIDES_PER_BATCH)] + fleet.pings()
            if batch_start - last_environment_time >= ENVIRONMENT_INTERVAL:
                batch.extend(environment_readings())
                last_environment_time = batch_start

            for event in batch:
                send(event)
            total += len(batch)
            producer.poll(0)

            PRODUCE_LATENCY.labels(city=CITY).observe(time.time() - batch_start)
            stats = fleet.stats()
            ACTIVE_DRIVERS.labels(city=CITY, status="available").set(stats["available"])
            ACTIVE_DRIVERS.labels(city=CITY, status="busy").set(stats["busy"])

            if time.time() - last_log_time >= 10:
                elapsed = time.time() - start_time
                logger.info(
                    f"[{elapsed:.0f}s] Events: {total} ({total / elapsed:.1f}/s) | "
                    f"Drivers: {stats['available']} available, {stats['busy']} busy"
                )
                last_log_time = time.time()

            time.sleep(max(0.0, EVENT_INTERVAL - (time.time() - batch_start)))

    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        producer.flush(10)
        logger.info("=" * 60)
        logger.info(f"Final: {total} events in {time.time() - start_time:.1f}s")
        logger.info("=" * 60)


if __name__ == "__main__":
    main()
