"""
Database initialization and connection management.

MongoDB (through Motor and the Beanie ODM) is the durable store for payment
transactions and elections. The in-process tracker sits in front of it as a
cache only.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from beanie import init_beanie
from tenacity import retry, stop_after_attempt, wait_exponential

from votepay.models import PaymentTransaction, Election
from votepay.core.config import DatabaseConfig
from votepay.core.exceptions import DatabaseError, ConfigurationError
from votepay.core.monitoring import monitor_errors

logger = logging.getLogger(__name__)

# Global database client instance
_db_client: Optional[AsyncIOMotorClient] = None


@monitor_errors("database_init")
@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
async def init_db(config: DatabaseConfig) -> AsyncIOMotorClient:
    """
    Connect to MongoDB and initialize Beanie with the payment document models.

    Raises:
        DatabaseError: If database connection fails
        ConfigurationError: If configuration is invalid
    """
    global _db_client

    try:
        if not config.url:
            raise ConfigurationError(
                "MONGO_URL is not set",
                config_key="MONGO_URL",
                expected_value="mongodb://localhost:27017/votepay",
            )

        connection_kwargs = {
            "maxPoolSize": config.max_pool_size,
            "minPoolSize": config.min_pool_size,
            "maxIdleTimeMS": config.max_idle_time_ms,
            "serverSelectionTimeoutMS": config.server_selection_timeout_ms,
            "connectTimeoutMS": config.connect_timeout_ms,
            "socketTimeoutMS": config.socket_timeout_ms,
            "retryWrites": config.retry_writes,
            "w": config.write_concern,
        }

        # Pool settings only, never the connection string
        logger.info(
            f"Connecting to MongoDB (pool: min={config.min_pool_size}, "
            f"max={config.max_pool_size})"
        )

        client = AsyncIOMotorClient(config.url, **connection_kwargs)

        try:
            await asyncio.wait_for(client.admin.command("ping"), timeout=5.0)
        except asyncio.TimeoutError:
            raise DatabaseError("Database connection timeout", operation="ping_test")

        await init_beanie(
            database=client.get_default_database(),
            document_models=[PaymentTransaction, Election],
        )

        _db_client = client
        logger.info("MongoDB connected and Beanie initialized successfully")

        return client

    except (ConfigurationError, DatabaseError):
        raise
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=True)
        raise DatabaseError(
            "Database initialization failed",
            operation="init_db",
        ) from e


async def get_database_client() -> AsyncIOMotorClient:
    """
    Get the database client instance.

    Raises:
        DatabaseError: If database is not initialized
    """
    if _db_client is None:
        raise DatabaseError(
            "Database not initialized. Call init_db() first.",
            operation="get_client",
        )

    return _db_client


async def close_database():
    """Close the database connection gracefully."""
    global _db_client

    if _db_client:
        _db_client.close()
        _db_client = None
        logger.info("Database connection closed")


async def health_check() -> Dict[str, Any]:
    """Ping the database and touch the payment collection."""
    try:
        client = await get_database_client()
        await client.admin.command("ping")
        await PaymentTransaction.find_one({})

        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    except Exception as e:
        logger.warning(f"Database health check failed: {type(e).__name__}")
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
