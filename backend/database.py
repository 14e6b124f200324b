import logging
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None


class _DbProxy:
    """
    Proxy transparent vers l'instance Motor.
    Permet aux services de faire `from database import db` AVANT connect_db().
    db.collection → délégué à _db_instance.collection au moment de l'appel.
    """
    def __getattr__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return getattr(_db_instance, name)

    def __getitem__(self, name):
        if _db_instance is None:
            raise RuntimeError("Database not connected. Call connect_db() first.")
        return _db_instance[name]


db = _DbProxy()


def get_db():
    return _db_instance


def use_database(instance) -> None:
    """Branche une base déjà construite (tests, scripts)."""
    global _db_instance
    _db_instance = instance


async def connect_db():
    global client, _db_instance
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        tz_aware=True,
    )
    _db_instance = client[settings.DB_NAME]
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


async def create_indexes():
    collections_to_index = {
        "profiles": [
            IndexModel([("user_id", 1)], unique=True),
            IndexModel([("email", 1)], unique=True),
            IndexModel([("phone_number", 1)], sparse=True),
            IndexModel([("role", 1)]),
        ],
        "user_sessions": [
            IndexModel([("refresh_token", 1)], unique=True),
            IndexModel([("user_id", 1)]),
            IndexModel([("expires_at", 1)]),
        ],
        "waste_reports": [
            IndexModel([("report_id", 1)], unique=True),
            IndexModel([("farmer_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("rider_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "customers": [
            IndexModel([("customer_id", 1)], unique=True),
            IndexModel([("profile_id", 1)], sparse=True),
            IndexModel([("phone_number", 1)]),
        ],
        "products": [
            IndexModel([("product_id", 1)], unique=True),
        ],
        "orders": [
            IndexModel([("order_id", 1)], unique=True),
            IndexModel([("customer_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("assigned_rider", 1)]),
        ],
        "order_items": [
            IndexModel([("item_id", 1)], unique=True),
            IndexModel([("order_id", 1)]),
            IndexModel([("farmer_id", 1)]),
        ],
        "payments": [
            IndexModel([("payment_id", 1)], unique=True),
            # Clé de corrélation envoyée à la passerelle : jamais deux fois
            IndexModel([("account_reference", 1)], unique=True),
            # Un seul Payment actif par commande / signalement (retiré en failed / expired)
            IndexModel([("lock_key", 1)], unique=True, sparse=True),
            IndexModel([("checkout_request_id", 1)], sparse=True),
            IndexModel([("conversation_id", 1)], sparse=True),
            IndexModel([("farmer_id", 1)]),
            IndexModel([("order_id", 1)]),
            IndexModel([("waste_report_id", 1)]),
            IndexModel([("status", 1), ("created_at", 1)]),
        ],
        "riders": [
            IndexModel([("rider_id", 1)], unique=True),
            IndexModel([("status", 1)]),
        ],
        "notifications": [
            IndexModel([("notification_id", 1)], unique=True),
            IndexModel([("recipient_id", 1), ("is_read", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "tickets": [
            IndexModel([("ticket_id", 1)], unique=True),
            IndexModel([("user_id", 1)]),
            IndexModel([("status", 1), ("created_at", 1)]),
        ],
        "ticket_responses": [
            IndexModel([("response_id", 1)], unique=True),
            IndexModel([("ticket_id", 1), ("created_at", 1)]),
        ],
        "status_events": [
            IndexModel([("entity_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
