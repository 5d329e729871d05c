import os
from datetime import date
from dotenv import load_dotenv

from surgecast.common.errors import ConfigurationError

load_dotenv()


def _int(key: str, default: int) -> int:
    raw = os.getenv(key, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _float(key: str, default: float) -> float:
    raw = os.getenv(key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


def _dates(key: str) -> frozenset[date]:
    raw = os.getenv(key, "")
    try:
        return frozenset(
            date.fromisoformat(part.strip()) for part in raw.split(",") if part.strip()
        )
    except ValueError:
        raise ConfigurationError(f"{key} must be comma-separated ISO dates, got {raw!r}")


KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = _int("REDIS_PORT", 6379)

CITY = os.getenv("CITY", "madrid")
CITY_TIMEZONE = os.getenv("CITY_TIMEZONE", "UTC")

# Grid
H3_RESOLUTION = _int("H3_RESOLUTION", 8)
H3_MIN_RESOLUTION = _int("H3_MIN_RESOLUTION", 4)
H3_MAX_RESOLUTION = _int("H3_MAX_RESOLUTION", 12)

# Aggregation
EVENT_TTL_MINUTES = _float("EVENT_TTL_MINUTES", 15)
ENVIRONMENT_TTL_MINUTES = _float("ENVIRONMENT_TTL_MINUTES", 30)
AGGREGATOR_SHARDS = _int("AGGREGATOR_SHARDS", 64)
CLEANUP_INTERVAL_SECONDS = _float("CLEANUP_INTERVAL_SECONDS", 60)

# Prediction cycle
PREDICTION_INTERVAL_SECONDS = _float("PREDICTION_INTERVAL_SECONDS", 30)
PREDICTION_WORKERS = _int("PREDICTION_WORKERS", 8)
PREDICTOR_TIMEOUT_SECONDS = _float("PREDICTOR_TIMEOUT_SECONDS", 2.0)
SOURCE_TIMEOUT_SECONDS = _float("SOURCE_TIMEOUT_SECONDS", 5.0)
SOURCE_POLL_WORKERS = _int("SOURCE_POLL_WORKERS", 8)
SHUTDOWN_GRACE_SECONDS = _float("SHUTDOWN_GRACE_SECONDS", 20)
PREDICTOR_MODEL_PATH = os.getenv("PREDICTOR_MODEL_PATH", "/app/models/surge_model.joblib")

# Features
EVENT_MAX_DISTANCE_M = _float("EVENT_MAX_DISTANCE_M", 3000)
SMOOTHING_WEIGHT = _float("SMOOTHING_WEIGHT", 0.2)
HOLIDAYS = _dates("HOLIDAYS")

# Price locks
PRICE_LOCK_EXPIRY_MINUTES = _float("PRICE_LOCK_EXPIRY_MINUTES", 30)

# Driver guidance
GUIDANCE_EXPIRY_MINUTES = _float("GUIDANCE_EXPIRY_MINUTES", 30)
DEMAND_GROWTH_FACTOR = _float("DEMAND_GROWTH_FACTOR", 1.2)
BASE_LOCK_RATE = _float("BASE_LOCK_RATE", 1.0)

# Environmental providers; empty disables polling
ENVIRONMENT_API_URL = os.getenv("ENVIRONMENT_API_URL", "")

# Startup retries for Kafka and Redis; 0 attempts retries forever
CONNECT_RETRY_ATTEMPTS = _int("CONNECT_RETRY_ATTEMPTS", 0)
CONNECT_RETRY_DELAY_SECONDS = _float("CONNECT_RETRY_DELAY_SECONDS", 3)

METRICS_PORT = _int("METRICS_PORT", 8003)

if not 0 <= H3_MIN_RESOLUTION <= H3_MAX_RESOLUTION <= 15:
    raise ConfigurationError(
        f"H3 resolution range {H3_MIN_RESOLUTION}..{H3_MAX_RESOLUTION} is outside 0..15"
    )
