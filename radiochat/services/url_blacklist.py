"""URL blacklist: glob patterns redacted from private messages."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from radiochat.database.models import UrlBlacklistEntry
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient

logger = logging.getLogger(__name__)

CACHE_KEY = "url_blacklist_patterns"
CACHE_TTL = 300


@dataclass
class BlacklistEntry:
    id: int
    pattern: str
    description: Optional[str]
    added_by: Optional[str]
    added_at: Optional[datetime]


class UrlBlacklist:
    """Pattern list kept in the durable store, read through a five-minute cache."""

    def __init__(self, database: Database, redis: RedisClient):
        self._db = database
        self._redis = redis

    async def patterns(self) -> List[str]:
        """Every pattern; empty when neither store can answer."""
        cached = await self._redis.get_json(CACHE_KEY)
        if isinstance(cached, list):
            return [str(p) for p in cached]

        try:
            async with self._db.session() as session:
                result = await session.execute(select(UrlBlacklistEntry.pattern))
                patterns = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to load URL blacklist: {e}")
            return []

        await self._redis.set_json(CACHE_KEY, patterns, ex=CACHE_TTL)
        return patterns

    async def list(self) -> List[BlacklistEntry]:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(UrlBlacklistEntry).order_by(UrlBlacklistEntry.added_at.desc())
                )
                return [
                    BlacklistEntry(
                        id=row.id,
                        pattern=row.pattern,
                        description=row.description,
                        added_by=row.added_by,
                        added_at=row.added_at,
                    )
                    for row in result.scalars().all()
                ]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list URL blacklist: {e}")
            return []

    async def add(
        self,
        pattern: str,
        description: Optional[str] = None,
        added_by: Optional[str] = None,
    ) -> bool:
        """
        Add a pattern such as ``spam*.biz``.

        Returns:
            False for an empty or duplicate pattern, or a store failure
        """
        pattern = pattern.strip()
        if not pattern:
            return False
        try:
            async with self._db.session() as session:
                session.add(UrlBlacklistEntry(pattern=pattern, description=description, added_by=added_by))
                await session.commit()
        except IntegrityError:
            logger.info(f"Blacklist pattern already present: {pattern}")
            return False
        except SQLAlchemyError as e:
            logger.error(f"Failed to add blacklist pattern {pattern}: {e}")
            return False

        await self._redis.delete(CACHE_KEY)
        logger.info(f"Blacklist pattern added: {pattern} (by {added_by or 'unknown'})")
        return True

    async def remove(self, pattern: str) -> bool:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(UrlBlacklistEntry).where(UrlBlacklistEntry.pattern == pattern)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove blacklist pattern {pattern}: {e}")
            return False

        await self._redis.delete(CACHE_KEY)
        return result.rowcount > 0
