from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    async def _create_indexes(self):
        """Create MongoDB indexes. Unique indexes back the idempotency guarantees."""
        try:
            # Subscriptions - one per business, lookups by provider correlation ids
            try:
                await self.db.subscriptions.create_index("business_id", unique=True)
            except Exception:
                pass  # Index may already exist with different options
            await self.db.subscriptions.create_index("paypro_subscription_id", sparse=True)
            await self.db.subscriptions.create_index("paypro_order_id", sparse=True)
            await self.db.subscriptions.create_index("lemonsqueezy_subscription_id", sparse=True)
            await self.db.subscriptions.create_index("lemonsqueezy_order_id", sparse=True)
            await self.db.subscriptions.create_index([("status", 1), ("expires_at", 1)])

            # Businesses / users (owned elsewhere, read here)
            await self.db.businesses.create_index("business_id", unique=True)
            await self.db.businesses.create_index("user_id")
            await self.db.users.create_index("user_id", unique=True)

            # Billing event log - duplicate deliveries must not apply twice
            try:
                await self.db.billing_events.create_index(
                    [("provider", 1), ("event_id", 1)],
                    unique=True
                )
            except Exception:
                pass
            await self.db.billing_events.create_index([("status", 1), ("received_at", -1)])
            await self.db.billing_events.create_index([("business_id", 1), ("received_at", -1)])

            # Automations
            await self.db.automation_definitions.create_index("automation_id", unique=True)
            await self.db.automation_definitions.create_index([("is_active", 1), ("created_at", 1)])
            await self.db.automation_executions.create_index(
                [("automation_id", 1), ("user_id", 1), ("created_at", -1)]
            )
            # One firing per (definition, user, UTC day) even under concurrent ticks
            try:
                await self.db.automation_reservations.create_index(
                    [("automation_id", 1), ("user_id", 1), ("window_key", 1)],
                    unique=True
                )
            except Exception:
                pass

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("business_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("resource_type", 1), ("resource_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index("timestamp")

            # Message log indexes - email delivery trail
            await self.db.message_logs.create_index([("created_at", -1)])
            await self.db.message_logs.create_index([("status", 1), ("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()
