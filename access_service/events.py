import json
from datetime import datetime, timezone
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from access_service.config import get_settings
from access_service.logger import logger

_producer: Optional[AIOKafkaProducer] = None


def custom_serializer(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f'Object of type {obj.__class__.__name__} is not JSON serializable')


def build_event(action: str, **fields) -> dict:
    event = {"action": action, "timestamp": datetime.now(timezone.utc).isoformat()}
    event.update(fields)
    return event


async def _get_producer() -> AIOKafkaProducer:
    global _producer
    if _producer is None:
        settings = get_settings()
        producer = AIOKafkaProducer(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            value_serializer=lambda v: json.dumps(v, default=custom_serializer).encode('utf-8')
        )
        await producer.start()
        _producer = producer
    return _producer


async def send_event(action: str, **fields) -> None:
    """Publish an audit event. Never fails the calling request."""
    settings = get_settings()
    event = build_event(action, **fields)
    if not settings.events_enabled:
        logger.debug("Event publishing disabled", extra={"event_action": action})
        return
    try:
        producer = await _get_producer()
        await producer.send_and_wait(settings.kafka_topic, value=event)
    except KafkaError as e:
        logger.error("Failed to publish event", extra={"event_action": action, "error": str(e)})


async def close_producer() -> None:
    global _producer
    if _producer is not None:
        await _producer.stop()
        _producer = None
