"""IP and nickname bans with a read-through cache of the whole ban list."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Type, Union

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import ActiveSession, BannedIP, BannedNickname
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient
from radiochat.utils import to_timestamp, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

IP_CACHE_KEY = "banned_ips"
NICKNAME_CACHE_KEY = "banned_nicknames"
CACHE_TTL = 300


@dataclass
class Ban:
    """
    One ban record.

    Attributes:
        subject: IP address or nickname
        banned_until: None means permanent
    """
    subject: str
    reason: Optional[str]
    banned_by: Optional[str]
    banned_at: Optional[datetime]
    banned_until: Optional[datetime]

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if self.banned_until is None:
            return True
        return to_timestamp(self.banned_until) > to_timestamp(now or utc_now())

    def to_dict(self) -> dict:
        return {
            "subject": self.subject,
            "reason": self.reason,
            "banned_by": self.banned_by,
            "banned_at": to_timestamp(self.banned_at),
            "banned_until": to_timestamp(self.banned_until),
        }


BanModel = Union[Type[BannedIP], Type[BannedNickname]]


class BanRegistry:
    """
    Ban storage for IPs and nicknames.

    Readers consult a cached list of ``[subject, until_epoch]`` pairs per kind,
    refreshed from the durable store every five minutes and dropped on every
    write. Expiry is decided at read time, so an expired row that the
    cleanup job has not purged yet never blocks anyone.
    """

    def __init__(self, database: Database, redis: RedisClient):
        self._db = database
        self._redis = redis

    # =========================================================================
    # Checks
    # =========================================================================

    async def is_ip_banned(self, ip: str) -> bool:
        if not ip:
            return False
        return await self._is_listed(BannedIP, IP_CACHE_KEY, ip)

    async def is_nickname_banned(self, nickname: str) -> bool:
        if not nickname:
            return False
        return await self._is_listed(BannedNickname, NICKNAME_CACHE_KEY, nickname.lower())

    async def _is_listed(self, model: BanModel, cache_key: str, subject: str) -> bool:
        entries = await self._load_list(model, cache_key)
        now = time.time()
        for listed, until in entries:
            if listed == subject and (until is None or until > now):
                return True
        return False

    async def _load_list(self, model: BanModel, cache_key: str) -> list:
        cached = await self._redis.get_json(cache_key)
        if isinstance(cached, list):
            return cached

        column = self._subject_column(model)
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(column, model.banned_until).where(
                        or_(model.banned_until.is_(None), model.banned_until > utc_now())
                    )
                )
                rows = result.all()
        except SQLAlchemyError as e:
            # Fail open: a broken durable store must not lock everyone out
            logger.error(f"Failed to load {model.__tablename__}: {e}")
            return []

        if model is BannedNickname:
            entries = [[subject.lower(), to_timestamp(until)] for subject, until in rows]
        else:
            entries = [[subject, to_timestamp(until)] for subject, until in rows]
        await self._redis.set_json(cache_key, entries, ex=CACHE_TTL)
        return entries

    @staticmethod
    def _subject_column(model: BanModel):
        return BannedIP.ip_address if model is BannedIP else BannedNickname.nickname

    # =========================================================================
    # Writes
    # =========================================================================

    async def ban_ip(
        self,
        ip: str,
        reason: str = "",
        banned_by: str = "admin",
        duration_days: Optional[int] = None,
    ) -> bool:
        """
        Ban an IP (upsert keyed by address).

        Args:
            ip: Address to ban
            reason: Shown to admins
            banned_by: ``system`` for automatic bans
            duration_days: None for a permanent ban

        Returns:
            True if the ban was stored
        """
        ok = await self._upsert(BannedIP, "ip_address", ip, reason, banned_by, duration_days)
        if ok:
            await self._redis.delete(IP_CACHE_KEY)
            logger.warning(f"IP banned: {ip} by {banned_by} ({reason or 'no reason'})")
        return ok

    async def ban_nickname(
        self,
        nickname: str,
        reason: str = "",
        banned_by: str = "admin",
        duration_days: Optional[int] = None,
    ) -> bool:
        """
        Ban a nickname and drop every live session using it (case-insensitive).

        The two writes are independent; if the session delete fails the stale
        session is swept by the next heartbeat or cleanup pass.
        """
        ok = await self._upsert(BannedNickname, "nickname", nickname, reason, banned_by, duration_days)
        if not ok:
            return False

        await self._redis.delete(NICKNAME_CACHE_KEY)
        logger.warning(f"Nickname banned: {nickname} by {banned_by} ({reason or 'no reason'})")

        try:
            async with self._db.session() as session:
                await session.execute(
                    delete(ActiveSession).where(func.lower(ActiveSession.username) == nickname.lower())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to evict sessions for banned nickname {nickname}: {e}")
        return True

    async def _upsert(
        self,
        model: BanModel,
        subject_column: str,
        subject: str,
        reason: str,
        banned_by: str,
        duration_days: Optional[int],
    ) -> bool:
        now = utc_now()
        banned_until = now + timedelta(days=duration_days) if duration_days else None
        stmt = self._db.upsert(
            model,
            {
                subject_column: subject,
                "reason": reason,
                "banned_by": banned_by,
                "banned_at": now,
                "banned_until": banned_until,
            },
            conflict_columns=[subject_column],
            update_columns=["reason", "banned_by", "banned_at", "banned_until"],
        )
        try:
            async with self._db.session() as session:
                await session.execute(stmt)
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to ban {subject}: {e}")
            return False

    async def unban_ip(self, ip: str) -> bool:
        removed = await self._delete(BannedIP, BannedIP.ip_address == ip)
        await self._redis.delete(IP_CACHE_KEY)
        if removed:
            logger.info(f"IP unbanned: {ip}")
        return removed

    async def unban_nickname(self, nickname: str) -> bool:
        removed = await self._delete(
            BannedNickname, func.lower(BannedNickname.nickname) == nickname.lower()
        )
        await self._redis.delete(NICKNAME_CACHE_KEY)
        if removed:
            logger.info(f"Nickname unbanned: {nickname}")
        return removed

    async def _delete(self, model: BanModel, condition) -> bool:
        try:
            async with self._db.session() as session:
                result = await session.execute(delete(model).where(condition))
                await session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete from {model.__tablename__}: {e}")
            return False

    # =========================================================================
    # Listing
    # =========================================================================

    async def list_ip_bans(self) -> List[Ban]:
        return await self._list(BannedIP)

    async def list_nickname_bans(self) -> List[Ban]:
        return await self._list(BannedNickname)

    async def _list(self, model: BanModel) -> List[Ban]:
        column = self._subject_column(model)
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(column, model.reason, model.banned_by, model.banned_at, model.banned_until)
                    .order_by(model.banned_at.desc())
                )
                return [Ban(*row) for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list {model.__tablename__}: {e}")
            return []
