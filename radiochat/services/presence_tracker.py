"""Presence: live sessions, heartbeats, nickname ownership and the presence snapshot.

A session row is keyed by (username, session_id). Guests hold a nickname
in one session at a time (case-insensitive); registered identities may hold
theirs in as many sessions as they are logged in from. A session without a
heartbeat for five minutes is stale and evicted before every mutation.

Every change ends the same way: rebalance decoys against the real count,
then publish the new snapshot.
"""

import json
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import ActiveSession, UserProfile
from radiochat.database.session import Database
from radiochat.errors import ValidationError
from radiochat.services.ban_registry import BanRegistry
from radiochat.services.broadcaster import PRESENCE, BroadcastEvent, Broadcaster
from radiochat.services.decoy_balancer import DecoyUserBalancer
from radiochat.services.identity import IdentityVerifier
from radiochat.services.redis_client import RedisClient
from radiochat.utils import to_timestamp, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

STALE_AFTER = timedelta(minutes=5)
KICK_KEY_PREFIX = "banned_session:"
DEFAULT_KICK_SECONDS = 3600

MIN_AGE = 18
MAX_AGE = 120


@dataclass
class Profile:
    """Optional self-declared details shown in the presence list."""
    age: Optional[int] = None
    location: Optional[str] = None
    sex: Optional[str] = None

    def __post_init__(self):
        if self.age is not None:
            try:
                self.age = int(self.age)
            except (TypeError, ValueError):
                raise ValidationError("invalid_age", f"Age must be between {MIN_AGE} and {MAX_AGE}")
            if not MIN_AGE <= self.age <= MAX_AGE:
                raise ValidationError("invalid_age", f"Age must be between {MIN_AGE} and {MAX_AGE}")

    @property
    def is_empty(self) -> bool:
        return self.age is None and self.location is None and self.sex is None


class PresenceTracker:
    """Session bookkeeping plus the aggregated presence view."""

    def __init__(
        self,
        database: Database,
        redis: RedisClient,
        bans: BanRegistry,
        identity: IdentityVerifier,
        decoys: DecoyUserBalancer,
        broadcaster: Broadcaster,
    ):
        self._db = database
        self._redis = redis
        self._bans = bans
        self._identity = identity
        self._decoys = decoys
        self._broadcaster = broadcaster

    # =========================================================================
    # Housekeeping
    # =========================================================================

    async def evict_stale(self) -> int:
        """Delete sessions whose last heartbeat is older than five minutes."""
        cutoff = utc_now() - STALE_AFTER
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ActiveSession).where(ActiveSession.last_heartbeat < cutoff)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to evict stale sessions: {e}")
            return 0
        if result.rowcount:
            logger.info(f"Evicted {result.rowcount} stale sessions")
        return result.rowcount

    async def real_count(self) -> int:
        """Distinct usernames with a live session (decoys excluded)."""
        try:
            async with self._db.session() as session:
                result = await session.execute(select(func.count(distinct(ActiveSession.username))))
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Failed to count sessions: {e}")
            return 0

    async def _holders(self, username: str) -> List[str]:
        """Session ids currently holding ``username`` (case-insensitive)."""
        async with self._db.session() as session:
            result = await session.execute(
                select(ActiveSession.session_id).where(
                    func.lower(ActiveSession.username) == username.lower()
                )
            )
            return list(result.scalars().all())

    async def is_kicked(self, session_id: str) -> bool:
        return bool(session_id) and await self._redis.exists(f"{KICK_KEY_PREFIX}{session_id}")

    # =========================================================================
    # Nickname ownership
    # =========================================================================

    async def is_nickname_available(self, nickname: str, session_id: str = "") -> bool:
        """
        Whether ``session_id`` may use ``nickname``.

        Registered names are available only to sessions logged in as them.
        Decoy names are never available. Anything else is available unless
        another live session holds it.
        """
        nickname = nickname.strip()
        if not nickname:
            return False

        await self.evict_stale()

        if await self._identity.is_registered(nickname):
            return await self._identity.can_act_as(nickname, session_id)

        if await self._decoys.is_decoy_nickname(nickname):
            return False

        try:
            holders = await self._holders(nickname)
        except SQLAlchemyError as e:
            logger.error(f"Failed to check nickname {nickname}: {e}")
            return False
        return all(holder == session_id for holder in holders)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def register_session(
        self,
        username: str,
        session_id: str,
        ip: str,
        profile: Optional[Profile] = None,
    ) -> bool:
        """
        Join the room (or refresh an existing session).

        Returns:
            False when the session is kicked, the IP or nickname is banned,
            the name belongs to an identity this session cannot prove, the
            name is a decoy's, or a guest name is held by another session
        """
        username = username.strip()
        if not username or not session_id:
            return False

        if await self.is_kicked(session_id):
            logger.info(f"Registration blocked: session {session_id} is kicked")
            return False

        if await self._bans.is_ip_banned(ip) or await self._bans.is_nickname_banned(username):
            logger.info(f"Registration blocked: {username} / {ip} is banned")
            return False

        await self.evict_stale()

        if await self._identity.is_registered(username):
            if not await self._identity.can_act_as(username, session_id):
                logger.info(
                    f"Registration blocked: '{username}' is registered and session {session_id} "
                    f"is not logged in as it"
                )
                return False
        else:
            if await self._decoys.is_decoy_nickname(username):
                logger.info(f"Registration blocked: '{username}' is a decoy nickname")
                return False
            try:
                holders = await self._holders(username)
            except SQLAlchemyError as e:
                logger.error(f"Failed to check nickname {username}: {e}")
                return False
            if any(holder != session_id for holder in holders):
                logger.info(f"Registration blocked: '{username}' is taken by another session")
                return False

        now = utc_now()
        try:
            async with self._db.session() as session:
                await session.execute(
                    self._db.upsert(
                        ActiveSession,
                        {
                            "username": username,
                            "session_id": session_id,
                            "ip_address": ip,
                            "joined_at": now,
                            "last_heartbeat": now,
                        },
                        conflict_columns=["username", "session_id"],
                        update_columns=["ip_address", "last_heartbeat"],
                    )
                )
                if profile is not None and not profile.is_empty:
                    await session.execute(
                        self._db.upsert(
                            UserProfile,
                            {
                                "username": username,
                                "session_id": session_id,
                                "age": profile.age,
                                "location": profile.location,
                                "sex": profile.sex,
                            },
                            conflict_columns=["username", "session_id"],
                            update_columns=["age", "location", "sex"],
                        )
                    )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to register session for {username}: {e}")
            return False

        logger.info(f"User joined: {username} ({session_id}) from {ip}")
        await self._changed()
        return True

    async def heartbeat(self, username: str, session_id: str) -> bool:
        """Refresh one session; False when it no longer exists (e.g. it was evicted)."""
        await self.evict_stale()
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    update(ActiveSession)
                    .where(ActiveSession.username == username, ActiveSession.session_id == session_id)
                    .values(last_heartbeat=utc_now())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update heartbeat for {username}: {e}")
            return False

        await self._changed()
        return result.rowcount > 0

    async def remove_session(self, username: str, session_id: str) -> bool:
        await self.evict_stale()
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ActiveSession).where(
                        ActiveSession.username == username,
                        ActiveSession.session_id == session_id,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove session for {username}: {e}")
            return False

        logger.info(f"User left: {username} ({session_id})")
        await self._changed()
        return result.rowcount > 0

    async def logout(self, session_id: str) -> bool:
        """Remove every name held by one session."""
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    delete(ActiveSession).where(ActiveSession.session_id == session_id)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to log out session {session_id}: {e}")
            return False

        await self._changed()
        return result.rowcount > 0

    async def kick(self, username: str, duration: int = DEFAULT_KICK_SECONDS) -> int:
        """
        Remove every session of ``username`` and keep those sessions out for ``duration`` seconds.

        Returns:
            Number of sessions kicked (0 if the user was not present)
        """
        try:
            session_ids = await self._holders(username)
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up sessions for {username}: {e}")
            return 0
        if not session_ids:
            return 0

        marker = json.dumps({"username": username, "reason": "Kicked by admin", "kicked_at": int(time.time())})
        for session_id in session_ids:
            await self._redis.set(f"{KICK_KEY_PREFIX}{session_id}", marker, ex=duration)

        try:
            async with self._db.session() as session:
                await session.execute(
                    delete(ActiveSession).where(func.lower(ActiveSession.username) == username.lower())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to remove kicked sessions for {username}: {e}")
            return 0

        logger.warning(f"User kicked: {username} ({len(session_ids)} sessions, {duration}s)")
        await self._broadcaster.emit(
            BroadcastEvent(PRESENCE, "user_kicked", {"username": username, "timestamp": int(time.time())})
        )
        await self._changed()
        return len(session_ids)

    # =========================================================================
    # Views
    # =========================================================================

    async def list_real(self) -> List[Dict[str, Any]]:
        """One entry per username with a live session, earliest join first."""
        try:
            async with self._db.session() as session:
                sessions = (
                    await session.execute(select(ActiveSession).order_by(ActiveSession.joined_at))
                ).scalars().all()
                profiles = (
                    await session.execute(
                        select(UserProfile).where(
                            UserProfile.username.in_({s.username for s in sessions})
                        )
                    )
                ).scalars().all() if sessions else []
        except SQLAlchemyError as e:
            logger.error(f"Failed to list sessions: {e}")
            return []

        by_profile: Dict[str, UserProfile] = {}
        for profile in profiles:
            by_profile.setdefault(profile.username, profile)

        users: Dict[str, Dict[str, Any]] = {}
        for row in sessions:
            entry = users.get(row.username)
            if entry is None:
                profile = by_profile.get(row.username)
                users[row.username] = {
                    "username": row.username,
                    "age": profile.age if profile else None,
                    "sex": profile.sex if profile else None,
                    "location": profile.location if profile else None,
                    "is_decoy": False,
                    "joined_at": to_timestamp(row.joined_at),
                    "last_heartbeat": to_timestamp(row.last_heartbeat),
                }
            else:
                entry["last_heartbeat"] = max(entry["last_heartbeat"] or 0, to_timestamp(row.last_heartbeat) or 0)
        return list(users.values())

    async def list_presence(self) -> List[Dict[str, Any]]:
        """Real users followed by active decoys; decoys carry ``is_decoy: True``."""
        real = await self.list_real()
        decoys = [d.to_presence() for d in await self._decoys.active_decoys()]
        return real + decoys

    async def snapshot(self) -> Dict[str, Any]:
        users = await self.list_presence()
        return {"count": len(users), "users": users}

    async def is_present(self, username: str) -> bool:
        """Live real session or active decoy under ``username``."""
        try:
            if await self._holders(username):
                return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to check presence of {username}: {e}")
        return await self._decoys.is_active_decoy(username)

    async def session_ids_for(self, username: str) -> List[str]:
        try:
            return await self._holders(username)
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up sessions for {username}: {e}")
            return []

    async def rebalance(self) -> None:
        """Rebalance decoys and broadcast; for callers that changed sessions directly."""
        await self._changed()

    async def _changed(self) -> None:
        await self._decoys.rebalance(await self.real_count())
        await self._broadcaster.publish_presence(await self.snapshot())
