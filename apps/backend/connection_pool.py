"""
Laburandik Seller Ops - Connection Pooling
==========================================
Shared HTTP and Redis connections for the hosted database, the
MercadoLibre API and the KV token store.
"""

import asyncio
from typing import Optional

import httpx
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import Settings, get_settings
from logging_config import get_logger
from services.database import DatabaseClient
from services.meli_client import MeliClient
import metrics as app_metrics

logger = get_logger(__name__)


class ConnectionPool:
    """
    Singleton holder of long-lived clients.

    Example:
        ```python
        pool = await ConnectionPool.get_instance()
        rows = await pool.database.table("cogs").select("*").execute()

        # Cleanup on shutdown
        await pool.close()
        ```
    """

    _instance: Optional["ConnectionPool"] = None
    _lock = asyncio.Lock()

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize pool (use get_instance() instead)."""
        if ConnectionPool._instance is not None:
            raise RuntimeError("Use ConnectionPool.get_instance() instead of direct instantiation")

        self.settings = settings or get_settings()
        self._db_http: Optional[httpx.AsyncClient] = None
        self._meli_http: Optional[httpx.AsyncClient] = None
        self._database: Optional[DatabaseClient] = None
        self._meli: Optional[MeliClient] = None
        self._redis: Optional[redis.Redis] = None
        self._initialized = False

    @classmethod
    async def get_instance(cls, settings: Optional[Settings] = None) -> "ConnectionPool":
        if cls._instance is None:
            async with cls._lock:
                if cls._instance is None:
                    cls._instance = ConnectionPool(settings)
                    await cls._instance.initialize()
        return cls._instance

    async def initialize(self):
        if self._initialized:
            logger.warning("ConnectionPool already initialized")
            return

        timeout = httpx.Timeout(self.settings.http_timeout_seconds, connect=10.0)
        limits = httpx.Limits(max_connections=50, max_keepalive_connections=20)

        self._db_http = httpx.AsyncClient(
            base_url=self.settings.supabase_url, timeout=timeout, limits=limits
        )
        self._meli_http = httpx.AsyncClient(
            base_url=self.settings.meli_api_base_url, timeout=timeout, limits=limits
        )
        self._database = DatabaseClient(self.settings, http_client=self._db_http)
        self._meli = MeliClient(self.settings, http_client=self._meli_http)

        if self.settings.token_storage == "kv":
            self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)

        self._initialized = True
        logger.info(
            "ConnectionPool initialized",
            token_storage=self.settings.token_storage,
        )

    def _require(self, client, name: str):
        if not self._initialized or client is None:
            raise RuntimeError(
                f"{name} not available. Use ConnectionPool.get_instance() to get an initialized pool."
            )
        return client

    @property
    def database(self) -> DatabaseClient:
        return self._require(self._database, "Database client")

    @property
    def meli(self) -> MeliClient:
        return self._require(self._meli, "MercadoLibre client")

    @property
    def redis(self) -> Optional[redis.Redis]:
        """Redis connection, or None when tokens are kept in the database."""
        return self._redis

    async def close(self):
        logger.info("Closing ConnectionPool")

        for name, client in (("database", self._db_http), ("mercadolibre", self._meli_http)):
            if client is not None:
                try:
                    await client.aclose()
                except httpx.HTTPError as e:
                    logger.error("Error closing HTTP client", client=name, error=str(e))

        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.error("Error closing Redis client", error=str(e))

        self._db_http = self._meli_http = None
        self._database = self._meli = None
        self._redis = None
        self._initialized = False

    async def health_check(self) -> dict:
        """
        Check health of the backing services.

        Returns:
            Dictionary with health status for each service
        """
        health = {"database": "unknown"}

        if self._database is not None:
            health["database"] = await self._database.health_check()
        app_metrics.database_is_healthy.set(1 if health["database"] == "healthy" else 0)

        if self._redis is not None:
            try:
                await self._redis.ping()
                health["redis"] = "healthy"
                app_metrics.redis_is_healthy.set(1)
            except RedisError as e:
                logger.warning("Redis health check failed", error=str(e))
                health["redis"] = "unhealthy"
                app_metrics.redis_is_healthy.set(0)

        return health

    @classmethod
    async def reset_instance(cls):
        """Reset singleton instance (primarily for testing)."""
        async with cls._lock:
            if cls._instance:
                await cls._instance.close()
                cls._instance = None
