"""Redis client lifecycle shared by the event and notification streams."""

import logging
from typing import Optional

import redis.asyncio as redis

from automation_engine.config import Settings, get_settings

logger = logging.getLogger(__name__)


class RedisConnection:
    """Pooled client built from ``RedisSettings``; PINGs on init."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._client: Optional[redis.Redis] = None

    async def init(self) -> None:
        cfg = self._settings.redis
        client = redis.from_url(
            cfg.url,
            max_connections=cfg.max_connections,
            socket_timeout=cfg.socket_timeout,
            socket_connect_timeout=cfg.socket_connect_timeout,
            client_name="automation-engine",
            decode_responses=True,
        )
        try:
            await client.ping()
        except redis.RedisError:
            await client.aclose()
            raise

        self._client = client
        logger.info(f"Connected to Redis at {cfg.host}:{cfg.port}/{cfg.db}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis not initialized. Call init() first.")
        return self._client

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False
