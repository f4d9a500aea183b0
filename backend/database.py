from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Collection per document type
QUOTES_COLLECTION = "quotes"
BILLING_INVOICES_COLLECTION = "billing_invoices"

# (collection, keys, options) created at startup
INDEXES = [
    # Documents shared through /validation/{id}
    (QUOTES_COLLECTION, "id", {"unique": True}),
    (QUOTES_COLLECTION, "status", {}),
    (BILLING_INVOICES_COLLECTION, "id", {"unique": True}),
    (BILLING_INVOICES_COLLECTION, "payment_status", {}),
    # Per-document audit timeline
    ("audit_logs", [("resource_id", 1), ("timestamp", -1)], {}),
    ("audit_logs", [("action", 1), ("timestamp", -1)], {}),
    # Outbox: a duplicate idempotency_key must not send twice
    ("message_logs", "idempotency_key", {"unique": True, "sparse": True}),
    ("message_logs", [("document_id", 1), ("created_at", -1)], {}),
    ("message_logs", "postmark_message_id", {"sparse": True}),
    ("notification_retry_queue", [("status", 1), ("next_run_at", 1)], {}),
    ("notification_retry_queue", "message_id", {}),
    # Stripe webhook idempotency
    ("stripe_events", "event_id", {"unique": True}),
    # Payments confirmed by Stripe but not recorded on the document
    ("payment_reconciliation_issues", [("status", 1), ("created_at", -1)], {}),
    ("payment_reconciliation_issues", "session_id", {}),
]


class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        db_name = os.environ.get('DB_NAME', 'quote_validation')
        try:
            self.client = AsyncIOMotorClient(os.environ['MONGO_URL'])
            self.db = self.client[db_name]
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {db_name}")
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
        await self._create_indexes()

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create the validation workflow indexes. An index that already exists with other options is skipped."""
        created = 0
        for collection, keys, options in INDEXES:
            try:
                await self.db[collection].create_index(keys, **options)
                created += 1
            except PyMongoError as e:
                logger.warning(f"Index on {collection} {keys} not created: {e}")
        logger.info(f"MongoDB indexes created/verified: {created}/{len(INDEXES)}")


# Global database instance
database = Database()
