import json
import time
import queue
import logging
import threading

from confluent_kafka import Consumer, KafkaError, Producer
from prometheus_client import Counter, Gauge

from surgecast.common.config import CITY, KAFKA_BOOTSTRAP_SERVERS
from surgecast.common.errors import DependencyUnavailable
from surgecast.common.retry import connect_with_retry
from surgecast.guidance.recommendations import DriverRecommendation
from surgecast.prediction.types import SurgePrediction

logger = logging.getLogger(__name__)

EVENTS_TOPIC = f"surge.events.{CITY}"
PREDICTIONS_TOPIC = f"surge.predictions.{CITY}"
NOTIFICATIONS_TOPIC = f"surge.notifications.{CITY}"
GUIDANCE_TOPIC = f"surge.guidance.{CITY}"

CONSUMER_CONFIG = {
    "bootstrap.servers": KAFKA_BOOTSTRAP_SERVERS,
    "group.id": f"{CITY}-surge-engine",
    "auto.offset.reset": "latest",
    "fetch.min.bytes": 1024,
    "fetch.wait.max.ms": 100,
    "session.timeout.ms": 30000,
    "heartbeat.interval.ms": 10000,
}

PRODUCER_CONFIG = {
    "bootstrap.servers": KAFKA_BOOTSTRAP_SERVERS,
    "linger.ms": 20,
}

MESSAGES_CONSUMED = Counter(
    'surgecast_kafka_messages_consumed_total',
    'Messages read from Kafka',
    ['city', 'topic', 'status']
)

MESSAGES_PRODUCED = Counter(
    'surgecast_kafka_messages_produced_total',
    'Messages handed to the Kafka producer',
    ['city', 'topic']
)

KAFKA_ERRORS = Counter(
    'surgecast_kafka_errors_total',
    'Kafka delivery and consumer errors',
    ['city', 'topic']
)

CHANNEL_DEPTH = Gauge(
    'surgecast_event_channel_depth',
    'Raw events waiting in the in-process channel',
    ['city']
)


def get_consumer(config: dict = CONSUMER_CONFIG, **retry) -> Consumer:
    """
    Build a consumer once the brokers answer a metadata request.

    Keyword arguments are passed to connect_with_retry (attempts, delay).
    """
    def connect():
        consumer = Consumer(config)
        try:
            consumer.list_topics(timeout=5)
        except Exception:
            consumer.close()
            raise
        return consumer

    consumer = connect_with_retry("Kafka consumer", connect, **retry)
    logger.info(f"Kafka consumer ready ({config['bootstrap.servers']}, group {config.get('group.id')})")
    return consumer


def get_producer(config: dict = PRODUCER_CONFIG, **retry) -> Producer:
    """Build a producer once the brokers answer a metadata request."""
    def connect():
        producer = Producer(config)
        producer.list_topics(timeout=5)
        return producer

    producer = connect_with_retry("Kafka producer", connect, **retry)
    logger.info(f"Kafka producer ready ({config['bootstrap.servers']})")
    return producer


def missing_topics(consumer: Consumer, topics) -> set[str]:
    """Topics absent from cluster metadata or reporting a metadata error."""
    metadata = consumer.list_topics(timeout=10)
    return {
        topic for topic in topics
        if topic not in metadata.topics or metadata.topics[topic].error is not None
    }


def wait_for_topics(consumer: Consumer, topics: list[str], timeout: float = 120, poll_interval: float = 3):
    """
    Block until every topic exists.

    Raises:
        DependencyUnavailable: some topic is still missing after timeout seconds
    """
    deadline = time.monotonic() + timeout
    checks = 0
    missing = set(topics)
    while True:
        checks += 1
        try:
            missing = missing_topics(consumer, missing)
        except Exception as e:
            logger.warning(f"Topic metadata request failed: {e}")
        if not missing:
            logger.info(f"Topics ready: {', '.join(topics)}")
            return
        if time.monotonic() >= deadline:
            raise DependencyUnavailable(f"Kafka topics {sorted(missing)}", checks)
        logger.info(f"Waiting for topics: {sorted(missing)}")
        time.sleep(poll_interval)


def delivery_report(err, msg):
    if err is not None:
        logger.error(f"Delivery failed: {err}")
        KAFKA_ERRORS.labels(city=CITY, topic=msg.topic()).inc()
    else:
        logger.debug(f"Delivered to {msg.topic()} [{msg.partition()}]")


class KafkaEventBridge:
    """
    Moves raw events from a Kafka topic into the pipeline's channel.

    Messages that are not valid JSON are counted and skipped; schema
    validation happens in the pipeline.
    """

    def __init__(self, consumer: Consumer, channel: queue.Queue, topic: str = EVENTS_TOPIC, city: str = CITY):
        self.consumer = consumer
        self.channel = channel
        self.topic = topic
        self.city = city
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def handle(self, msg) -> bool:
        if msg.error():
            if msg.error().code() == KafkaError._PARTITION_EOF:
                pass
            elif msg.error().code() == KafkaError.UNKNOWN_TOPIC_OR_PART:
                logger.warning("Topic unavailable, waiting...")
                time.sleep(5)
            else:
                logger.error(f"Consumer error: {msg.error()}")
                KAFKA_ERRORS.labels(city=self.city, topic=self.topic).inc()
            return False

        try:
            event = json.loads(msg.value().decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            MESSAGES_CONSUMED.labels(city=self.city, topic=msg.topic(), status="invalid_json").inc()
            logger.error(f"Invalid JSON: {e}")
            return False

        self.channel.put(event)
        MESSAGES_CONSUMED.labels(city=self.city, topic=msg.topic(), status="received").inc()
        return True

    def run(self):
        self.consumer.subscribe([self.topic])
        try:
            while not self._stop.is_set():
                msg = self.consumer.poll(0.1)
                if msg is None:
                    continue
                self.handle(msg)
                CHANNEL_DEPTH.labels(city=self.city).set(self.channel.qsize())
        finally:
            self.consumer.close()

    def start(self):
        self._thread = threading.Thread(target=self.run, name="kafka-bridge", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)


class KafkaPredictionPublisher:
    """Callable publisher: one JSON message per prediction, keyed by cell."""

    def __init__(self, producer: Producer, topic: str = PREDICTIONS_TOPIC, city: str = CITY):
        self.producer = producer
        self.topic = topic
        self.city = city

    def __call__(self, prediction: SurgePrediction):
        self.producer.produce(
            topic=self.topic,
            key=prediction.cell_id.encode("utf-8"),
            value=json.dumps(prediction.to_dict()).encode("utf-8"),
            callback=delivery_report
        )
        self.producer.poll(0)
        MESSAGES_PRODUCED.labels(city=self.city, topic=self.topic).inc()


class KafkaNotificationSink:
    """Notification sink writing one message per recipient, keyed by user."""

    def __init__(self, producer: Producer, topic: str = NOTIFICATIONS_TOPIC, city: str = CITY):
        self.producer = producer
        self.topic = topic
        self.city = city

    def send(self, user_id: str, payload: dict):
        self.producer.produce(
            topic=self.topic,
            key=user_id.encode("utf-8"),
            value=json.dumps({"userId": user_id, **payload}).encode("utf-8"),
            callback=delivery_report
        )
        self.producer.poll(0)
        MESSAGES_PRODUCED.labels(city=self.city, topic=self.topic).inc()


class KafkaGuidancePublisher:
    """Callable publisher for driver recommendations, keyed by cell."""

    def __init__(self, producer: Producer, topic: str = GUIDANCE_TOPIC, city: str = CITY):
        self.producer = producer
        self.topic = topic
        self.city = city

    def __call__(self, recommendation: DriverRecommendation):
        self.producer.produce(
            topic=self.topic,
            key=recommendation.cell_id.encode("utf-8"),
            value=json.dumps(recommendation.to_dict()).encode("utf-8"),
            callback=delivery_report
        )
        self.producer.poll(0)
        MESSAGES_PRODUCED.labels(city=self.city, topic=self.topic).inc()
