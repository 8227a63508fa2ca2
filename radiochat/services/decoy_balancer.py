"""Decoy users: synthetic presences that keep the room at a minimum occupancy.

The pool of decoys is managed by admins; which of them are active is
decided only here, from the gap between the ``minimum_users`` setting and
the real presence count. Active decoys are mirrored into a Redis hash so the
presence list can be assembled without a durable-store query per read.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from radiochat.database.models import FakeUser
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient
from radiochat.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

DECOY_CACHE_KEY = "presence:decoys"


def decoys_needed(target: int, real_count: int) -> int:
    """How many decoys must be active for ``target`` occupancy."""
    if target <= 0:
        return 0
    return max(0, target - real_count)


@dataclass
class Decoy:
    id: int
    nickname: str
    age: Optional[int] = None
    sex: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = False

    @classmethod
    def from_row(cls, row: FakeUser) -> "Decoy":
        return cls(
            id=row.id,
            nickname=row.nickname,
            age=row.age,
            sex=row.sex,
            location=row.location,
            is_active=bool(row.is_active),
        )

    def to_presence(self) -> Dict[str, Any]:
        """Presence-list entry; decoys carry no join or heartbeat times."""
        return {
            "username": self.nickname,
            "age": self.age,
            "sex": self.sex,
            "location": self.location,
            "is_decoy": True,
            "joined_at": None,
            "last_heartbeat": None,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "nickname": self.nickname,
            "age": self.age,
            "sex": self.sex,
            "location": self.location,
            "is_active": self.is_active,
        }


class DecoyUserBalancer:
    """Activates and deactivates decoys to satisfy the minimum-occupancy target."""

    def __init__(self, database: Database, redis: RedisClient, settings: SettingsService):
        self._db = database
        self._redis = redis
        self._settings = settings

    # =========================================================================
    # Balancing
    # =========================================================================

    async def rebalance(self, real_count: int) -> int:
        """
        Bring the active-decoy count to ``max(0, minimum_users - real_count)``.

        Decoys to toggle are picked at random. Calling twice with the same
        ``real_count`` changes nothing the second time. If the pool is too
        small, every decoy ends up active.

        Returns:
            Number of active decoys afterwards
        """
        target = (await self._settings.snapshot()).minimum_users
        needed = decoys_needed(target, real_count)

        try:
            current = await self._count_active()
            if needed == current:
                await self._resync_cache(current)
                return current

            if needed > current:
                changed = await self._toggle_random(needed - current, activate=True)
                logger.info(f"Decoys activated: {changed} (target {target}, real {real_count})")
                return current + changed

            changed = await self._toggle_random(current - needed, activate=False)
            logger.info(f"Decoys deactivated: {changed} (target {target}, real {real_count})")
            return current - changed
        except SQLAlchemyError as e:
            logger.error(f"Decoy rebalance failed: {e}")
            return 0

    async def _count_active(self) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                select(func.count()).select_from(FakeUser).where(FakeUser.is_active.is_(True))
            )
            return int(result.scalar_one())

    async def _toggle_random(self, count: int, activate: bool) -> int:
        if count <= 0:
            return 0
        async with self._db.session() as session:
            result = await session.execute(
                select(FakeUser)
                .where(FakeUser.is_active.is_(not activate))
                .order_by(func.random())
                .limit(count)
            )
            rows = result.scalars().all()
            for row in rows:
                row.is_active = activate
            await session.commit()
            decoys = [Decoy.from_row(row) for row in rows]

        for decoy in decoys:
            await self._mirror(decoy)
        return len(decoys)

    async def _mirror(self, decoy: Decoy) -> None:
        if decoy.is_active:
            await self._redis.hset(DECOY_CACHE_KEY, decoy.nickname, json.dumps(decoy.to_dict()))
        else:
            await self._redis.hdel(DECOY_CACHE_KEY, decoy.nickname)

    async def _resync_cache(self, active_count: int) -> None:
        """Refill the mirror when it drifted from the durable flags (e.g. Redis restarted)."""
        cached = await self._redis.hgetall(DECOY_CACHE_KEY)
        if cached is None or len(cached) == active_count:
            return
        active = await self._active_from_db()
        await self._redis.delete(DECOY_CACHE_KEY)
        for decoy in active:
            await self._mirror(decoy)
        logger.info(f"Decoy cache resynced with {len(active)} entries")

    # =========================================================================
    # Reads
    # =========================================================================

    async def active_decoys(self) -> List[Decoy]:
        """Active decoys from the mirror, or from the durable store when Redis is down."""
        cached = await self._redis.hgetall(DECOY_CACHE_KEY)
        if cached is not None:
            decoys = []
            for raw in cached.values():
                try:
                    data = json.loads(raw)
                    decoys.append(Decoy(**data))
                except (ValueError, TypeError) as e:
                    logger.warning(f"Skipping unreadable decoy cache entry: {e}")
            return sorted(decoys, key=lambda d: d.nickname.lower())

        try:
            return await self._active_from_db()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load active decoys: {e}")
            return []

    async def _active_from_db(self) -> List[Decoy]:
        async with self._db.session() as session:
            result = await session.execute(
                select(FakeUser).where(FakeUser.is_active.is_(True)).order_by(FakeUser.nickname)
            )
            return [Decoy.from_row(row) for row in result.scalars().all()]

    async def is_decoy_nickname(self, nickname: str) -> bool:
        """True for any pool member, active or not (case-insensitive)."""
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(FakeUser.id).where(func.lower(FakeUser.nickname) == nickname.lower())
                )
                return result.first() is not None
        except SQLAlchemyError as e:
            # Unknown means reserved: guests must never take a decoy's name
            logger.error(f"Failed to check decoy nickname {nickname}: {e}")
            return True

    async def is_active_decoy(self, nickname: str) -> bool:
        return any(d.nickname.lower() == nickname.lower() for d in await self.active_decoys())

    # =========================================================================
    # Pool management
    # =========================================================================

    async def list_decoys(self) -> List[Decoy]:
        try:
            async with self._db.session() as session:
                result = await session.execute(select(FakeUser).order_by(FakeUser.created_at.desc()))
                return [Decoy.from_row(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Failed to list decoys: {e}")
            return []

    async def add_decoy(
        self,
        nickname: str,
        age: Optional[int] = None,
        sex: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Optional[Decoy]:
        """Add an inactive decoy; None if the nickname is taken or the store fails."""
        try:
            async with self._db.session() as session:
                row = FakeUser(nickname=nickname, age=age, sex=sex, location=location, is_active=False)
                session.add(row)
                await session.commit()
                return Decoy.from_row(row)
        except IntegrityError:
            logger.info(f"Decoy nickname already exists: {nickname}")
            return None
        except SQLAlchemyError as e:
            logger.error(f"Failed to add decoy {nickname}: {e}")
            return None

    async def delete_decoy(self, decoy_id: int) -> bool:
        await self.set_active(decoy_id, False)
        try:
            async with self._db.session() as session:
                result = await session.execute(delete(FakeUser).where(FakeUser.id == decoy_id))
                await session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete decoy {decoy_id}: {e}")
            return False

    async def set_active(self, decoy_id: int, active: bool) -> bool:
        """Force one decoy on or off; the next rebalance may undo it."""
        try:
            async with self._db.session() as session:
                await session.execute(
                    update(FakeUser).where(FakeUser.id == decoy_id).values(is_active=active)
                )
                await session.commit()
                row = await session.get(FakeUser, decoy_id)
                if row is None:
                    return False
                decoy = Decoy.from_row(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to toggle decoy {decoy_id}: {e}")
            return False

        await self._mirror(decoy)
        return True
