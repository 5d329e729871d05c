"""Wiring of the production pipeline from configuration."""

import queue
import logging

import redis

from surgecast.aggregation.aggregator import WindowedAggregator
from surgecast.common.config import CITY, ENVIRONMENT_API_URL, H3_RESOLUTION, REDIS_HOST, REDIS_PORT
from surgecast.common.retry import connect_with_retry
from surgecast.engine.pipeline import SurgePipeline
from surgecast.environment.sources import ENVIRONMENT_KINDS, EnvironmentPoller, HttpEnvironmentClient, http_source
from surgecast.features.builder import FeatureBuilder
from surgecast.geo.grid import GridIndex
from surgecast.guidance.recommendations import DriverGuidanceAdvisor
from surgecast.notifications.policy import NotificationDispatcher, NotificationPolicy
from surgecast.prediction.consensus import PredictionConsensus
from surgecast.prediction.predictors import build_default_predictors
from surgecast.pricing.price_lock import PriceLockAllocator
from surgecast.storage.history import RedisHistoryStore
from surgecast.storage.price_locks import RedisPriceLockStore

logger = logging.getLogger(__name__)


def get_redis_client(host: str = REDIS_HOST, port: int = REDIS_PORT, **retry) -> redis.Redis:
    """
    Pooled Redis client, returned once the server answers PING.

    Keyword arguments are passed to connect_with_retry (attempts, delay).
    """
    pool = redis.ConnectionPool(
        host=host,
        port=port,
        decode_responses=True,
        max_connections=20,
        socket_connect_timeout=5,
        socket_keepalive=True,
    )
    client = redis.Redis(connection_pool=pool)
    connect_with_retry("Redis", client.ping, **retry)
    logger.info(f"Redis ready at {host}:{port}")
    return client


def redis_recipient_lookup(redis_client: redis.Redis, city: str = CITY):
    """Users subscribed to a cell live in the set {city}:subscribers:{cell}."""
    def lookup(cell_id: str) -> list[str]:
        return sorted(redis_client.smembers(f"{city}:subscribers:{cell_id}"))
    return lookup


def build_pipeline(
    redis_client: redis.Redis,
    publisher=None,
    notification_sink=None,
    guidance_publisher=None,
    channel: queue.Queue | None = None,
) -> SurgePipeline:
    grid = GridIndex(H3_RESOLUTION)
    aggregator = WindowedAggregator()
    history = RedisHistoryStore(redis_client)

    poller = None
    if ENVIRONMENT_API_URL:
        client = HttpEnvironmentClient(ENVIRONMENT_API_URL)
        poller = EnvironmentPoller([http_source(kind, client) for kind in ENVIRONMENT_KINDS], aggregator, grid)
        logger.info(f"Polling environmental providers at {ENVIRONMENT_API_URL}")

    dispatcher = None
    if notification_sink is not None:
        dispatcher = NotificationDispatcher(redis_recipient_lookup(redis_client), notification_sink)

    return SurgePipeline(
        grid=grid,
        aggregator=aggregator,
        builder=FeatureBuilder(grid, history=history),
        consensus=PredictionConsensus(build_default_predictors()),
        notification_policy=NotificationPolicy(),
        dispatcher=dispatcher,
        allocator=PriceLockAllocator(RedisPriceLockStore(redis_client)),
        publisher=publisher,
        history=history,
        poller=poller,
        guidance=DriverGuidanceAdvisor(grid, publisher=guidance_publisher),
        channel=channel,
    )
