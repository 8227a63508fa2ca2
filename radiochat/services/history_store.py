"""Recent message history: a bounded Redis window in front of the durable message log.

Cache-aside contract:

- ``append`` pushes to the head of the window, trims it to ``history_limit``,
  then writes the durable row. Each write may fail on its own.
- ``get_history`` serves the window when it has entries, after asking the
  durable store which of exactly those ids are soft-deleted.
- An empty window is repaired from the durable store: the newest ``limit``
  live rows are pushed back oldest-first so the newest ends at the head.
  Only one process repairs at a time; the others serve the durable rows
  without touching the window.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import ChatMessage
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient
from radiochat.utils import from_timestamp, new_message_id, to_timestamp, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

MESSAGES_KEY = "chat:messages"
REBUILD_LOCK_KEY = "chat:messages:rebuild"
REBUILD_LOCK_TTL = 5


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class ReplySnapshot:
    """What the quoted message looked like when the reply was posted."""
    author: str
    body: str

    def to_dict(self) -> Dict[str, str]:
        return {"author": self.author, "body": self.body}


@dataclass
class Message:
    """
    One public chat message.

    Immutable once persisted apart from ``deleted``.

    Attributes:
        id: Opaque unique id (see ``new_message_id``)
        created_at: Epoch seconds
        reply_snapshot: Point-in-time copy of the quoted message, never refreshed
    """
    author: str
    body: str
    origin_ip: str
    id: str = field(default_factory=new_message_id)
    created_at: float = field(default_factory=lambda: utc_now().timestamp())
    reply_to_id: Optional[str] = None
    reply_snapshot: Optional[ReplySnapshot] = None
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape shared by post results, history and live events."""
        data: Dict[str, Any] = {
            "id": self.id,
            "author": self.author,
            "body": self.body,
            "timestamp": self.created_at,
            "ip": self.origin_ip,
        }
        if self.reply_to_id:
            data["reply_to_id"] = self.reply_to_id
        if self.reply_snapshot is not None:
            data["reply_snapshot"] = self.reply_snapshot.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        snapshot = data.get("reply_snapshot")
        return cls(
            id=str(data["id"]),
            author=str(data["author"]),
            body=str(data["body"]),
            origin_ip=str(data.get("ip") or ""),
            created_at=float(data.get("timestamp") or 0),
            reply_to_id=data.get("reply_to_id"),
            reply_snapshot=ReplySnapshot(str(snapshot["author"]), str(snapshot["body"])) if snapshot else None,
        )

    @classmethod
    def from_row(cls, row: ChatMessage) -> "Message":
        snapshot = None
        if row.reply_username is not None:
            snapshot = ReplySnapshot(row.reply_username, row.reply_message or "")
        return cls(
            id=row.message_id,
            author=row.username,
            body=row.message,
            origin_ip=row.ip_address,
            created_at=to_timestamp(row.created_at) or 0.0,
            reply_to_id=row.reply_to,
            reply_snapshot=snapshot,
            deleted=bool(row.is_deleted),
        )

    def to_row(self) -> ChatMessage:
        return ChatMessage(
            message_id=self.id,
            username=self.author,
            message=self.body,
            ip_address=self.origin_ip,
            created_at=from_timestamp(self.created_at),
            reply_to=self.reply_to_id,
            reply_username=self.reply_snapshot.author if self.reply_snapshot else None,
            reply_message=self.reply_snapshot.body if self.reply_snapshot else None,
            is_deleted=self.deleted,
        )


def _decode(entries: Iterable[str]) -> List[Message]:
    messages = []
    for raw in entries:
        try:
            messages.append(Message.from_dict(json.loads(raw)))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Skipping unreadable history entry: {e}")
    return messages


# ============================================================================
# Store
# ============================================================================

class HistoryStore:
    """Bounded recent-history window backed by the durable message log."""

    def __init__(self, database: Database, redis: RedisClient, history_limit: int = 100):
        self._db = database
        self._redis = redis
        self.history_limit = history_limit

    async def append(self, message: Message) -> bool:
        """
        Push to the window, then write-through to the durable store.

        A durable failure is logged and does not undo the cache write.

        Returns:
            True if at least one store kept the message
        """
        cached = await self._redis.push_bounded(
            MESSAGES_KEY, [json.dumps(message.to_dict())], self.history_limit
        )
        if not cached:
            logger.warning(f"Message {message.id} not cached, relying on durable store")

        durable = await self._persist(message)
        return cached or durable

    async def _persist(self, message: Message) -> bool:
        try:
            async with self._db.session() as session:
                session.add(message.to_row())
                await session.commit()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to store message {message.id} in durable store: {e}")
            return False

    async def get_history(self, limit: Optional[int] = None) -> List[Message]:
        """
        Most recent messages, oldest first, soft-deleted ones excluded.

        Args:
            limit: Window size, capped at ``history_limit``
        """
        limit = self._clamp(limit)
        if limit <= 0:
            return []

        entries = await self._redis.lrange(MESSAGES_KEY, 0, limit - 1)
        if not entries:
            return await self.rebuild(limit, repopulate=entries is not None)

        newest_first = _decode(entries)
        deleted = await self._deleted_ids([m.id for m in newest_first])
        if deleted is None:
            logger.warning("Deletion flags unavailable, serving cached history unchecked")
            deleted = set()

        return [m for m in reversed(newest_first) if m.id not in deleted]

    def _clamp(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.history_limit
        return min(int(limit), self.history_limit)

    async def _deleted_ids(self, ids: List[str]) -> Optional[set]:
        if not ids:
            return set()
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ChatMessage.message_id).where(
                        ChatMessage.message_id.in_(ids),
                        ChatMessage.is_deleted.is_(True),
                    )
                )
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to read deletion flags: {e}")
            return None

    async def rebuild(self, limit: Optional[int] = None, repopulate: bool = True) -> List[Message]:
        """
        Repair an empty window from the durable store.

        Pulls exactly ``limit`` live rows. The window is only refilled by the
        caller that wins the rebuild lock.

        Returns:
            The rebuilt window, oldest first
        """
        limit = self._clamp(limit)
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ChatMessage)
                    .where(ChatMessage.is_deleted.is_(False))
                    .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                    .limit(limit)
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load history from durable store: {e}")
            return []

        oldest_first = [Message.from_row(row) for row in reversed(rows)]
        if not oldest_first or not repopulate:
            return oldest_first

        if await self._redis.set_if_absent(REBUILD_LOCK_KEY, "1", ex=REBUILD_LOCK_TTL):
            try:
                payload = [json.dumps(m.to_dict()) for m in oldest_first]
                await self._redis.push_bounded(MESSAGES_KEY, payload, self.history_limit)
                logger.info(f"History window rebuilt with {len(payload)} messages")
            finally:
                await self._redis.delete(REBUILD_LOCK_KEY)
        return oldest_first

    async def find_message(self, message_id: str) -> Optional[Message]:
        """Look a message up in the window first, then among live durable rows."""
        entries = await self._redis.lrange(MESSAGES_KEY, 0, -1)
        if entries:
            for message in _decode(entries):
                if message.id == message_id:
                    deleted = await self._deleted_ids([message_id])
                    if deleted is None:
                        logger.warning(f"Deletion flag for {message_id} unavailable, using cached copy")
                        deleted = set()
                    return None if message_id in deleted else message

        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(ChatMessage).where(
                        ChatMessage.message_id == message_id,
                        ChatMessage.is_deleted.is_(False),
                    )
                )
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to look up message {message_id}: {e}")
            return None
        return Message.from_row(row) if row else None

    async def soft_delete(self, message_id: str) -> bool:
        """Flag one message deleted; the window is reconciled on read."""
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    update(ChatMessage)
                    .where(ChatMessage.message_id == message_id)
                    .values(is_deleted=True)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to delete message {message_id}: {e}")
            return False
        return result.rowcount > 0

    async def clear(self) -> int:
        """
        Soft-delete every live message and drop the window.

        Returns:
            Number of messages flagged, or -1 on a durable failure
        """
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    update(ChatMessage)
                    .where(ChatMessage.is_deleted.is_(False))
                    .values(is_deleted=True)
                )
                await session.commit()
            cleared = result.rowcount
        except SQLAlchemyError as e:
            logger.error(f"Failed to clear chat history: {e}")
            cleared = -1
        await self._redis.delete(MESSAGES_KEY)
        return cleared
