"""Periodic cleanup of expired bans, stale sessions and old soft-deleted messages."""

import logging
from datetime import timedelta
from typing import Dict

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import BannedIP, BannedNickname, ChatMessage
from radiochat.database.session import Database
from radiochat.services.ban_registry import IP_CACHE_KEY, NICKNAME_CACHE_KEY
from radiochat.services.presence_tracker import PresenceTracker
from radiochat.services.redis_client import RedisClient
from radiochat.utils import utc_now

logger = logging.getLogger(__name__)


class CleanupService:
    def __init__(self, database: Database, redis: RedisClient, presence: PresenceTracker):
        self._db = database
        self._redis = redis
        self._presence = presence

    async def purge_expired_bans(self) -> int:
        """Hard-delete bans whose ``banned_until`` has passed."""
        now = utc_now()
        removed = 0
        for model, cache_key in ((BannedIP, IP_CACHE_KEY), (BannedNickname, NICKNAME_CACHE_KEY)):
            try:
                async with self._db.session() as session:
                    result = await session.execute(
                        delete(model).where(model.banned_until.is_not(None), model.banned_until < now)
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to purge expired {model.__tablename__}: {e}")
                continue
            if result.rowcount:
                await self._redis.delete(cache_key)
                logger.info(f"Cleanup: removed {result.rowcount} expired {model.__tablename__}")
                removed += result.rowcount
        return removed

    async def evict_stale_sessions(self) -> int:
        """Drop stale sessions; when any went away, rebalance decoys and broadcast."""
        evicted = await self._presence.evict_stale()
        if evicted:
            await self._presence.rebalance()
        return evicted

    async def purge_deleted_messages(self, days: int = 30) -> int:
        """Hard-delete soft-deleted messages older than ``days``."""
        cutoff = utc_now() - timedelta(days=days)
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ChatMessage).where(
                        ChatMessage.is_deleted.is_(True),
                        ChatMessage.created_at < cutoff,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to purge deleted messages: {e}")
            return 0
        if result.rowcount:
            logger.info(f"Cleanup: purged {result.rowcount} deleted messages (>{days} days)")
        return result.rowcount

    async def run_all(self, retention_days: int = 30) -> Dict[str, int]:
        return {
            "expired_bans": await self.purge_expired_bans(),
            "stale_sessions": await self.evict_stale_sessions(),
            "deleted_messages": await self.purge_deleted_messages(retention_days),
        }
