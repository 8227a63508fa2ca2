"""Redis client for caching, counters and pub/sub."""

import logging
from typing import Any, Dict, List, Optional
import json

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis wrapper: every failure is logged and reported as None/False.

    Callers treat a None read as "cache unavailable" and fall back to the
    durable store. All keys and channels get the configured prefix.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "",
        client: Optional[Any] = None,
    ):
        self._host = host
        self._port = port
        self._db = db
        self._password = password
        self._prefix = prefix
        self._client: Optional[Any] = client
        self._available = False

    @classmethod
    def from_settings(cls, settings) -> "RedisClient":
        return cls(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password or None,
            prefix=settings.redis_prefix,
        )

    async def connect(self):
        """Connect to Redis server (or adopt the client passed in)."""
        try:
            if self._client is None:
                self._client = redis.Redis(
                    host=self._host,
                    port=self._port,
                    db=self._db,
                    password=self._password,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                )
            # Test connection
            await self._client.ping()
            self._available = True
            logger.info(f"Connected to Redis at {self._host}:{self._port}")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis: {e}. Cache disabled, using durable store only")
            self._available = False

    async def close(self):
        """Close Redis connection."""
        if self._client:
            await self._client.aclose()
            self._available = False
            logger.info("Redis connection closed")

    @property
    def is_available(self) -> bool:
        """Check if Redis is available."""
        return self._available

    def key(self, name: str) -> str:
        """Apply the instance prefix to a key or channel name."""
        return f"{self._prefix}{name}"

    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""
        if not self._available:
            return None
        try:
            return await self._client.get(self.key(key))
        except Exception as e:
            logger.error(f"Redis GET error: {e}")
            return None

    async def set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
    ) -> bool:
        """
        Set key-value pair.

        Args:
            key: Key name
            value: Value to store
            ex: Expiration time in seconds

        Returns:
            True if successful
        """
        if not self._available:
            return False
        try:
            await self._client.set(self.key(key), value, ex=ex)
            return True
        except Exception as e:
            logger.error(f"Redis SET error: {e}")
            return False

    async def set_if_absent(self, key: str, value: str, ex: int) -> bool:
        """SET NX EX; True only when this call created the key."""
        if not self._available:
            return False
        try:
            return bool(await self._client.set(self.key(key), value, ex=ex, nx=True))
        except Exception as e:
            logger.error(f"Redis SET NX error: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete key."""
        if not self._available:
            return False
        try:
            await self._client.delete(self.key(key))
            return True
        except Exception as e:
            logger.error(f"Redis DELETE error: {e}")
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        if not self._available:
            return False
        try:
            return await self._client.exists(self.key(key)) > 0
        except Exception as e:
            logger.error(f"Redis EXISTS error: {e}")
            return False

    async def ttl(self, key: str) -> Optional[int]:
        """Get time to live for key."""
        if not self._available:
            return None
        try:
            return await self._client.ttl(self.key(key))
        except Exception as e:
            logger.error(f"Redis TTL error: {e}")
            return None

    async def incr_window(self, key: str, window_seconds: int) -> Optional[int]:
        """
        Count one hit in a fixed window.

        The expiry is set only by the first hit, so the counter vanishes
        ``window_seconds`` after the window opened. SET NX and INCR run in
        one MULTI block.

        Returns:
            Counter value after this hit, or None if Redis is unavailable
        """
        if not self._available:
            return None
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(self.key(key), 0, ex=window_seconds, nx=True)
                pipe.incr(self.key(key))
                _, count = await pipe.execute()
            return int(count)
        except Exception as e:
            logger.error(f"Redis INCR window error: {e}")
            return None

    async def incr_sliding(self, key: str, window_seconds: int) -> Optional[int]:
        """
        Count one hit and push the expiry ``window_seconds`` into the future.

        INCR and EXPIRE run in one MULTI block.

        Returns:
            Counter value after this hit, or None if Redis is unavailable
        """
        if not self._available:
            return None
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incr(self.key(key))
                pipe.expire(self.key(key), window_seconds)
                count, _ = await pipe.execute()
            return int(count)
        except Exception as e:
            logger.error(f"Redis INCR sliding error: {e}")
            return None

    async def get_json(self, key: str) -> Optional[Any]:
        """Get JSON value by key."""
        value = await self.get(key)
        if value:
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                logger.error(f"Failed to decode JSON for key {key}")
        return None

    async def set_json(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
    ) -> bool:
        """Set JSON value."""
        try:
            json_str = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to encode JSON: {e}")
            return False
        return await self.set(key, json_str, ex=ex)

    # Lists

    async def push_bounded(self, key: str, values: List[str], max_length: int) -> bool:
        """
        LPUSH ``values`` (last one ends up at the head) then LTRIM to ``max_length``.

        Returns:
            True if successful
        """
        if not self._available or not values:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lpush(self.key(key), *values)
                pipe.ltrim(self.key(key), 0, max_length - 1)
                await pipe.execute()
            return True
        except Exception as e:
            logger.error(f"Redis LPUSH/LTRIM error: {e}")
            return False

    async def lrange(self, key: str, start: int, end: int) -> Optional[List[str]]:
        """Get list slice; None means unavailable, [] means empty."""
        if not self._available:
            return None
        try:
            return await self._client.lrange(self.key(key), start, end)
        except Exception as e:
            logger.error(f"Redis LRANGE error: {e}")
            return None

    # Hashes

    async def hset(self, key: str, field: str, value: str) -> bool:
        if not self._available:
            return False
        try:
            await self._client.hset(self.key(key), field, value)
            return True
        except Exception as e:
            logger.error(f"Redis HSET error: {e}")
            return False

    async def hdel(self, key: str, *fields: str) -> bool:
        if not self._available or not fields:
            return False
        try:
            await self._client.hdel(self.key(key), *fields)
            return True
        except Exception as e:
            logger.error(f"Redis HDEL error: {e}")
            return False

    async def hgetall(self, key: str) -> Optional[Dict[str, str]]:
        if not self._available:
            return None
        try:
            return await self._client.hgetall(self.key(key))
        except Exception as e:
            logger.error(f"Redis HGETALL error: {e}")
            return None

    # Pub/sub

    async def publish(self, channel: str, payload: str) -> Optional[int]:
        """Publish to a channel; returns the receiver count or None on failure."""
        if not self._available:
            return None
        try:
            return await self._client.publish(self.key(channel), payload)
        except Exception as e:
            logger.error(f"Redis PUBLISH error: {e}")
            return None

    def pubsub(self):
        """Raw pub/sub object for a subscriber; None when Redis is down."""
        if not self._available:
            return None
        return self._client.pubsub()
