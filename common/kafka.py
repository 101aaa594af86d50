from functools import lru_cache
from confluent_kafka import Producer
from common.settings import settings

TOPIC_CREDIT_EVENTS = "credit_events"

@lru_cache(maxsize=1)
def get_producer() -> Producer:
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
