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
            self.client = AsyncIOMotorClient(mongo_url)
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
        """Create MongoDB indexes for scans, staging and access facts."""
        try:
            # Scans - scan_id is the row identity; capture_id makes a staged
            # capture committable at most once across processes
            await self.db.scans.create_index("scan_id", unique=True)
            await self.db.scans.create_index("capture_id", unique=True, sparse=True)
            await self.db.scans.create_index([("owner_id", 1), ("created_at", -1)])

            # Profiles and subscription mirror (access facts)
            await self.db.profiles.create_index("user_id", unique=True)
            await self.db.subscriptions.create_index("user_id")

            # Device-scoped staging
            await self.db.device_storage.create_index([("device_id", 1), ("key", 1)], unique=True)

            await self.db.glowup_plans.create_index("scan_id", unique=True)

            await self.db.audit_logs.create_index([("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            logger.info("MongoDB indexes created")
        except Exception as e:
            logger.warning(f"Index creation warning (may already exist): {e}")

# Global database instance
database = Database()

