"""
MongoDB connection handling for the lifecycle repositories.

One motor client is shared by the process. It is opened lazily by the first
repository that needs it (or eagerly by the application lifespan when the
``mongodb`` backend is configured) and closed on shutdown.
"""

import asyncio
import time
from typing import Any, Dict, Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

from backend.app.core.exceptions import DatabaseError, ErrorCode
from backend.app.utils.logging import get_logger, performance_context, persistence_logger
from backend.config.settings import get_settings

logger = get_logger(__name__)


def _redact(url: str) -> str:
    return url.rsplit("@", 1)[-1]


class MongoDBManager:
    """Owns the motor client and the lifecycle database handle."""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.is_connected: bool = False
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Open the client and verify the server answers a ping.

        Concurrent callers wait on the same attempt; later calls are no-ops.

        Raises:
            DatabaseError: When the server cannot be reached
        """
        if self.is_connected:
            return

        async with self._lock:
            if self.is_connected:
                return

            config = get_settings().database
            try:
                with performance_context("mongodb_connect", database=config.mongodb_database):
                    client = AsyncIOMotorClient(
                        config.mongodb_url,
                        serverSelectionTimeoutMS=config.server_selection_timeout_ms,
                        retryWrites=True,
                        tz_aware=True
                    )
                    await client.admin.command("ping")
            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                persistence_logger.connection_failed("mongodb", str(e))
                raise DatabaseError(
                    f"Cannot reach MongoDB at {_redact(config.mongodb_url)}: {e}",
                    error_code=ErrorCode.DATABASE_CONNECTION_ERROR,
                    database_type="mongodb",
                    operation="connect"
                ) from e

            self.client = client
            self.database = client[config.mongodb_database]
            self.is_connected = True
            persistence_logger.connected("mongodb", config.mongodb_database)
            logger.info("MongoDB ready", host=_redact(config.mongodb_url), database=config.mongodb_database)

    async def disconnect(self) -> None:
        if self.client is not None:
            self.client.close()
            logger.info("MongoDB connection closed")
        self.client = None
        self.database = None
        self.is_connected = False

    async def health_check(self) -> Dict[str, Any]:
        """Ping the server and report the round trip in milliseconds."""
        if not self.is_connected or self.client is None:
            return {"status": "disconnected"}

        started = time.perf_counter()
        try:
            await self.client.admin.command("ping")
        except PyMongoError as e:
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy",
            "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        }

    def get_database(self) -> AsyncIOMotorDatabase:
        if not self.is_connected or self.database is None:
            raise DatabaseError(
                "MongoDB is not connected",
                error_code=ErrorCode.DATABASE_CONNECTION_ERROR,
                database_type="mongodb",
                operation="get_database"
            )
        return self.database


_manager: Optional[MongoDBManager] = None


def get_database_manager() -> MongoDBManager:
    global _manager
    if _manager is None:
        _manager = MongoDBManager()
    return _manager


async def init_databases() -> None:
    await get_database_manager().connect()


async def close_databases() -> None:
    global _manager
    if _manager is not None:
        await _manager.disconnect()
        _manager = None


async def get_mongodb_database() -> AsyncIOMotorDatabase:
    """Return the lifecycle database, connecting on first use."""
    manager = get_database_manager()
    await manager.connect()
    return manager.get_database()
