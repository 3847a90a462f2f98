import json
import logging
from typing import Any

import redis
from opentelemetry import trace
from redis.exceptions import RedisError

from core.correlation import get_current_correlation_id
from metrics.prometheus_exporter import dispatch_publish_errors_total
from pubsub.broadcaster import EventBroadcaster, Subscription
from pubsub.channels import validate_topic
from settings import RedisSettings

logger = logging.getLogger(__name__)


_tracer = trace.get_tracer(__name__)


class RedisSubscription(Subscription):
    """Subscription backed by a Redis pub/sub connection."""

    def __init__(self, topic: str, pubsub: Any):
        super().__init__(topic)
        self._pubsub = pubsub
        self._pubsub.subscribe(topic)

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        try:
            message = self._pubsub.get_message(
                ignore_subscribe_messages=True, timeout=timeout or 0.0
            )
        except RedisError as e:
            logger.error("Failed to read from topic %s: %s", self.topic, e)
            return None
        if message is None or message.get("type") != "message":
            return None
        try:
            return json.loads(message["data"])
        except json.JSONDecodeError:
            logger.warning("Discarding malformed message on %s", self.topic)
            return None

    def close(self) -> None:
        super().close()
        try:
            self._pubsub.unsubscribe(self.topic)
            self._pubsub.close()
        except RedisError as e:
            logger.debug("Error closing subscription to %s: %s", self.topic, e)


class RedisPublisher(EventBroadcaster):
    """Synchronous Redis broadcaster.

    Uses the sync Redis client so it can be called from request threads
    and the background matcher alike. Connection failures are logged and
    counted, never raised: delivery is best-effort.
    """

    backend = "redis"

    def __init__(self, config: dict[str, Any], client: Any = None):
        super().__init__()
        self.config = config
        self._client = client or redis.Redis(
            host=config["host"],
            port=config["port"],
            db=config.get("db", 0),
            password=config.get("password") or None,
            ssl=config.get("ssl", False),
            decode_responses=True,
        )

    @classmethod
    def from_settings(cls, settings: RedisSettings) -> "RedisPublisher":
        return cls(settings.model_dump())

    def _deliver(self, topic: str, payload: dict[str, Any]) -> None:
        with _tracer.start_as_current_span("redis.publish") as span:
            span.set_attribute("db.system", "redis")
            span.set_attribute("db.redis.channel", topic)

            # Bridge correlation_id to trace span
            correlation_id = get_current_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)

            try:
                self._client.publish(topic, json.dumps(payload))
            except RedisError as e:
                span.record_exception(e)
                dispatch_publish_errors_total.labels(
                    backend=self.backend, error_type=type(e).__name__
                ).inc()
                logger.error("Failed to publish to topic %s: %s", topic, e)

    def subscribe(self, topic: str) -> RedisSubscription:
        validate_topic(topic)
        return RedisSubscription(topic, self._client.pubsub())

    def close(self) -> None:
        self._client.close()
