"""
Database connection manager module.

Provides a singleton DatabaseManager class for MongoDB connections using
PyMongo's asyncio client, with event loop change handling, Beanie ODM
initialization and idempotent index creation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from datetime import UTC
from typing import Any, Final, Self

import certifi
from pymongo import AsyncMongoClient
from pymongo.asynchronous.collection import AsyncCollection
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

DEFAULT_MONGO_URI: Final[str] = "mongodb://localhost:27017"
MONGODB_URI_ENV_VAR: Final[str] = "MONGODB_URI"


def _get_mongo_uri() -> str:
    mongo_uri = os.getenv(MONGODB_URI_ENV_VAR, "").strip()
    return mongo_uri or DEFAULT_MONGO_URI


class DatabaseManager:
    """
    Singleton class to manage the MongoDB client and database connection.

    This class handles:
    - Connection pooling and lifecycle management
    - Event loop change detection and reconnection
    - Beanie ODM initialization for the planning documents
    - Thread-safe singleton pattern
    Environment Variables:
        MONGODB_URI: Optional MongoDB URI override
        MONGODB_DATABASE: Database name (default: place_visits)
        MONGODB_MAX_POOL_SIZE: Connection pool size (default: 50)
        MONGODB_CONNECTION_TIMEOUT_MS: Connection timeout (default: 5000)
        MONGODB_SERVER_SELECTION_TIMEOUT_MS: Server selection timeout (default: 10000)
        MONGODB_SOCKET_TIMEOUT_MS: Socket timeout (default: 30000)
    """

    _instance: DatabaseManager | None = None
    _lock = threading.Lock()

    def __new__(cls) -> Self:
        """Create or return the singleton instance."""
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        """Initialize the database manager with configuration from environment."""
        if not getattr(self, "_initialized", False):
            self._client: AsyncMongoClient | None = None
            self._db: AsyncDatabase | None = None
            self._bound_loop: asyncio.AbstractEventLoop | None = None
            self._connection_healthy = True
            self._beanie_initialized = False
            self._initialized = True

            self._max_pool_size = int(os.getenv("MONGODB_MAX_POOL_SIZE", "50"))
            self._connection_timeout_ms = int(
                os.getenv("MONGODB_CONNECTION_TIMEOUT_MS", "5000"),
            )
            self._server_selection_timeout_ms = int(
                os.getenv("MONGODB_SERVER_SELECTION_TIMEOUT_MS", "10000"),
            )
            self._socket_timeout_ms = int(
                os.getenv("MONGODB_SOCKET_TIMEOUT_MS", "30000"),
            )
            self._db_name = os.getenv("MONGODB_DATABASE", "place_visits")

            logger.debug(
                "Database configuration initialized with pool size %s",
                self._max_pool_size,
            )

    def _client_kwargs(self, mongo_uri: str) -> dict[str, Any]:
        client_kwargs: dict[str, Any] = {
            "tz_aware": True,
            "tzinfo": UTC,
            "maxPoolSize": self._max_pool_size,
            "minPoolSize": 0,
            "maxIdleTimeMS": 60000,
            "connectTimeoutMS": self._connection_timeout_ms,
            "serverSelectionTimeoutMS": self._server_selection_timeout_ms,
            "socketTimeoutMS": self._socket_timeout_ms,
            "retryWrites": True,
            "retryReads": True,
            "appname": "PlaceVisits",
        }
        if mongo_uri.startswith("mongodb+srv://"):
            client_kwargs.update(tls=True, tlsCAFile=certifi.where())
        return client_kwargs

    def _initialize_client(self) -> None:
        """
        Initialize the MongoDB client with proper connection settings.

        Raises:
            Exception: If client initialization fails.
        """
        try:
            mongo_uri = _get_mongo_uri()
            logger.debug("Initializing MongoDB client")
            self._client = AsyncMongoClient(mongo_uri, **self._client_kwargs(mongo_uri))
            self._db = self._client[self._db_name]
            self._connection_healthy = True
            logger.info("MongoDB client initialized successfully")
        except Exception:
            self._connection_healthy = False
            logger.exception("Failed to initialize MongoDB client")
            raise

    @staticmethod
    def _get_current_loop() -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _reset_client_state(self) -> None:
        """Drop client references after an event loop change.

        The async client cannot be closed synchronously; it is bound to the
        old loop and is released with it.
        """
        self._client = None
        self._db = None
        self._bound_loop = None
        self._beanie_initialized = False

    def _check_loop_and_reconnect(self) -> None:
        """Check if event loop has changed and reconnect if necessary."""
        current_loop = self._get_current_loop()

        if (
            self._client is not None
            and self._bound_loop is not None
            and self._bound_loop.is_closed()
        ):
            logger.info(
                "Event loop is closed (was %s), reconnecting MongoDB client",
                id(self._bound_loop),
            )
            self._reset_client_state()

        if (
            self._client is not None
            and current_loop is not None
            and self._bound_loop != current_loop
        ):
            logger.info(
                "Event loop changed (was %s, now %s), reconnecting MongoDB client",
                id(self._bound_loop),
                id(current_loop),
            )
            self._reset_client_state()

    @property
    def db(self) -> AsyncDatabase:
        """
        Get the database instance, initializing if necessary.

        Raises:
            RuntimeError: If database cannot be initialized.
        """
        self._check_loop_and_reconnect()
        if self._db is None or not self._connection_healthy:
            self._initialize_client()
            self._bound_loop = self._get_current_loop()
        if self._db is None:
            msg = "Database instance could not be initialized."
            raise RuntimeError(msg)
        return self._db

    @property
    def connection_healthy(self) -> bool:
        return self._connection_healthy

    def get_collection(self, collection_name: str) -> AsyncCollection:
        """Get a collection by name from the current database."""
        return self.db[collection_name]

    async def safe_create_index(
        self,
        collection_name: str,
        keys: str | list[tuple[str, Any]],
        **kwargs: Any,
    ) -> str | None:
        """Create an index unless an index with the same name already exists.

        Args:
            collection_name: Name of the collection
            keys: Keys to index
            **kwargs: Additional arguments for create_index

        Returns:
            Name of the created or existing index, None on failure.
        """
        collection = self.get_collection(collection_name)
        try:
            existing_indexes = await collection.index_information()
            index_name = kwargs.get("name")
            if index_name and index_name in existing_indexes:
                logger.debug(
                    "Index %s already exists on %s, skipping creation",
                    index_name,
                    collection_name,
                )
                return index_name

            result = await collection.create_index(keys, **kwargs)
        except OperationFailure as e:
            logger.warning(
                "Could not create index on %s (%s): %s",
                collection_name,
                kwargs.get("name") or keys,
                e,
            )
            return None
        else:
            logger.info(
                "Index created on %s with keys %s (Name: %s)",
                collection_name,
                keys,
                result,
            )
            return result

    async def init_beanie(self) -> None:
        """
        Initialize Beanie ODM with all document models.

        This should be called once during process startup.
        """
        self._check_loop_and_reconnect()
        current_loop = self._get_current_loop()

        if (
            self._beanie_initialized
            and self._db is not None
            and self._bound_loop == current_loop
        ):
            logger.debug("Beanie already initialized, skipping")
            return

        from beanie import init_beanie

        from db.models import ALL_DOCUMENT_MODELS

        await init_beanie(
            database=self.db,
            document_models=ALL_DOCUMENT_MODELS,
        )
        self._beanie_initialized = True
        logger.info(
            "Beanie ODM initialized with %d document models",
            len(ALL_DOCUMENT_MODELS),
        )

    async def cleanup_connections(self) -> None:
        """Clean up MongoDB client connections."""
        if self._client:
            try:
                logger.info("Closing MongoDB client connections...")
                await self._client.close()
            except Exception:
                logger.exception("Error closing MongoDB client")
            finally:
                self._client = None
                self._db = None
                self._connection_healthy = False
                self._beanie_initialized = False
                logger.info("MongoDB client state reset")


# Singleton instance
db_manager = DatabaseManager()
