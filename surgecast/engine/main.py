import time
import queue
import signal
import logging
import threading

from prometheus_client import start_http_server

from surgecast.common.config import (
    CITY,
    H3_RESOLUTION,
    METRICS_PORT,
    PREDICTION_INTERVAL_SECONDS,
    PREDICTION_WORKERS,
    SHUTDOWN_GRACE_SECONDS,
)
from surgecast.engine.bootstrap import build_pipeline, get_redis_client
from surgecast.transport.kafka import (
    EVENTS_TOPIC,
    GUIDANCE_TOPIC,
    NOTIFICATIONS_TOPIC,
    PREDICTIONS_TOPIC,
    KafkaEventBridge,
    KafkaGuidancePublisher,
    KafkaNotificationSink,
    KafkaPredictionPublisher,
    get_consumer,
    get_producer,
    wait_for_topics,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    """Headless surge engine: Kafka in, predictions, notifications and driver guidance out."""
    start_http_server(METRICS_PORT)
    logger.info(f"Prometheus metrics server started on port {METRICS_PORT}")

    redis_client = get_redis_client()
    consumer = get_consumer()
    producer = get_producer()

    wait_for_topics(consumer, [EVENTS_TOPIC])

    channel = queue.Queue()
    pipeline = build_pipeline(
        redis_client,
        publisher=KafkaPredictionPublisher(producer),
        notification_sink=KafkaNotificationSink(producer),
        guidance_publisher=KafkaGuidancePublisher(producer),
        channel=channel,
    )
    bridge = KafkaEventBridge(consumer, channel)

    logger.info("=" * 60)
    logger.info(f"Surge Engine ({CITY})")
    logger.info("=" * 60)
    logger.info(f"  Metrics endpoint: http://localhost:{METRICS_PORT}/metrics")
    logger.info(f"  Events topic: {EVENTS_TOPIC}")
    logger.info(f"  Predictions topic: {PREDICTIONS_TOPIC}")
    logger.info(f"  Notifications topic: {NOTIFICATIONS_TOPIC}")
    logger.info(f"  Guidance topic: {GUIDANCE_TOPIC}")
    logger.info(f"  H3 resolution: {H3_RESOLUTION}")
    logger.info(f"  Cycle: every {PREDICTION_INTERVAL_SECONDS}s on {PREDICTION_WORKERS} workers")
    logger.info("=" * 60)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    start_time = time.time()
    pipeline.start()
    bridge.start()

    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        bridge.stop()
        pipeline.shutdown(SHUTDOWN_GRACE_SECONDS)
        producer.flush(10)
        elapsed = time.time() - start_time
        logger.info("=" * 60)
        logger.info(f"Final: {pipeline.events_ingested} events ingested in {elapsed:.1f}s")
        logger.info("=" * 60)
        redis_client.close()


if __name__ == "__main__":
    main()
