import logging, time
from sqlalchemy import select, update
from confluent_kafka import KafkaException
from common.kafka import get_producer
from common.settings import settings
from ledger_service.db import SessionLocal
from ledger_service.models import Outbox

logger = logging.getLogger(__name__)

def publish_pending(session_factory=SessionLocal, producer=None, limit: int = None) -> int:
    """Publish one batch of new outbox rows. Returns how many were sent."""
    producer = producer or get_producer()
    sent = 0
    with session_factory() as db:
        rows = db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(limit or settings.outbox_batch_size)
        ).scalars().all()
        for row in rows:
            try:
                producer.produce(row.topic, value=row.payload.encode("utf-8"))
                producer.flush()
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="sent"))
                sent += 1
            except KafkaException as e:
                logger.error(f"Failed to publish outbox row {row.id}: {e}")
                db.execute(update(Outbox).where(Outbox.id == row.id).values(status="failed"))
            db.commit()
    return sent

def run():
    logger.info("Outbox worker started")
    while True:
        try:
            publish_pending()
        except Exception:
            logger.exception("Outbox poll failed")
        time.sleep(settings.outbox_poll_interval)

if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    run()
