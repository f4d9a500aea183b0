"""
Shared job runner for scheduled background jobs.
Used by the server scheduler. Each run_* returns a dict with "message" and "count".
"""
import logging
from datetime import datetime, timezone

from database import database
from services.notification_orchestrator import notification_orchestrator

logger = logging.getLogger(__name__)

RETRY_BATCH_SIZE = 50


async def run_notification_retry_worker():
    """Process notification retry queue (outbox pattern). Picks items with next_run_at <= now and re-attempts send."""
    try:
        db = database.get_db()
        now = datetime.now(timezone.utc)
        cursor = db.notification_retry_queue.find(
            {"status": "PENDING", "next_run_at": {"$lte": now}},
            {"_id": 0, "message_id": 1},
        ).sort("next_run_at", 1).limit(RETRY_BATCH_SIZE)
        items = await cursor.to_list(RETRY_BATCH_SIZE)
        processed = 0
        for item in items:
            try:
                await notification_orchestrator.process_retry(item["message_id"])
                processed += 1
            except Exception as e:
                logger.warning(f"Notification retry for {item.get('message_id')} failed: {e}")
        if processed:
            logger.info(f"Notification retry worker processed {processed} message(s)")
        return {"message": f"Processed {processed} notification retries", "count": processed}
    except Exception as e:
        logger.error(f"Notification retry worker failed: {e}")
        raise
