"""Message ingestion: validate, screen, persist and publish one inbound message.

Public post order (each step short-circuits):

1. required fields and lengths
2. chat mode allows public posts
3. IP ban, then nickname ban
4. rate budget (over budget records a violation and may auto-ban)
5. moderation redaction
6. reply snapshot (unresolved replies just drop the reply metadata)
7. persist to the window and the durable log
8. publish

Every operation returns a ``Result``; nothing here raises to the caller.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import REPLY_PREVIEW_LENGTH, PrivateMessage
from radiochat.database.session import Database
from radiochat.errors import (
    BannedError,
    ChatError,
    RateLimitError,
    Result,
    StoreUnavailable,
    ValidationError,
)
from radiochat.services.ban_registry import BanRegistry
from radiochat.services.broadcaster import MESSAGES, BroadcastEvent, Broadcaster
from radiochat.services.history_store import HistoryStore, Message, ReplySnapshot
from radiochat.services.moderation_filter import ModerationFilter
from radiochat.services.presence_tracker import PresenceTracker
from radiochat.services.settings_service import SettingsService
from radiochat.services.violation_tracker import ViolationTracker
from radiochat.utils import to_timestamp, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Messages shown to users
# ============================================================================

MSG_IP_BANNED = "Your IP address has been banned from the chat."
MSG_NICKNAME_BANNED = "This nickname is not allowed."
MSG_RATE_LIMITED = "Rate limit exceeded. Please wait before sending another message."
MSG_PUBLIC_DISABLED = "Public chat is disabled."
MSG_PRIVATE_DISABLED = "Private messages are disabled."
MSG_RECIPIENT_OFFLINE = "Recipient is not online"

PRIVATE_HISTORY_LIMIT = 50
CONVERSATION_LIMIT = 500


@dataclass
class PrivateMessageView:
    id: int
    from_username: str
    to_username: str
    body: str
    timestamp: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_username": self.from_username,
            "to_username": self.to_username,
            "message": self.body,
            "timestamp": self.timestamp,
            "type": "private",
        }


class MessageGateway:
    """Entry point for every inbound chat message."""

    def __init__(
        self,
        database: Database,
        history: HistoryStore,
        bans: BanRegistry,
        violations: ViolationTracker,
        moderation: ModerationFilter,
        presence: PresenceTracker,
        broadcaster: Broadcaster,
        settings: SettingsService,
        max_message_length: int = 500,
        max_username_length: int = 50,
    ):
        self._db = database
        self._history = history
        self._bans = bans
        self._violations = violations
        self._moderation = moderation
        self._presence = presence
        self._broadcaster = broadcaster
        self._settings = settings
        self.max_message_length = max_message_length
        self.max_username_length = max_username_length

    # =========================================================================
    # Validation helpers
    # =========================================================================

    def _validate(self, author: str, body: str) -> None:
        if not author:
            raise ValidationError("author_required", "Username is required")
        if not body:
            raise ValidationError("body_required", "Message is required")
        if len(author) > self.max_username_length:
            raise ValidationError(
                "author_too_long", f"Username must be at most {self.max_username_length} characters"
            )
        if len(body) > self.max_message_length:
            raise ValidationError(
                "body_too_long", f"Message must be at most {self.max_message_length} characters"
            )

    async def _check_bans(self, author: str, ip: str) -> None:
        if await self._bans.is_ip_banned(ip):
            raise BannedError("ip_banned", MSG_IP_BANNED)
        if await self._bans.is_nickname_banned(author):
            raise BannedError("nickname_banned", MSG_NICKNAME_BANNED)

    async def _reply_snapshot(self, reply_to_id: str) -> Optional[ReplySnapshot]:
        quoted = await self._history.find_message(reply_to_id)
        if quoted is None:
            logger.debug(f"Reply target {reply_to_id} not found, dropping reply metadata")
            return None
        return ReplySnapshot(quoted.author, quoted.body[:REPLY_PREVIEW_LENGTH])

    # =========================================================================
    # Public messages
    # =========================================================================

    async def post_message(
        self,
        author: str,
        body: str,
        origin_ip: str,
        session_id: str = "",
        reply_to_id: Optional[str] = None,
    ) -> Result[Message]:
        """
        Post a message to the public room.

        Returns:
            ``Result`` holding the stored ``Message``, or a ``ValidationError``,
            ``BannedError``, ``RateLimitError`` or ``StoreUnavailable``
        """
        try:
            return Result.success(
                await self._post(author.strip(), body.strip(), origin_ip, session_id, reply_to_id)
            )
        except ChatError as e:
            if isinstance(e, StoreUnavailable):
                logger.error(f"Post from {origin_ip} failed: {e.message}")
            else:
                logger.info(f"Post from {author!r} ({origin_ip}) rejected: {e.reason}")
            return Result.failure(e)
        except Exception as e:
            logger.exception(f"Unexpected error while posting from {origin_ip}: {e}")
            return Result.failure(StoreUnavailable("internal_error"))

    async def _post(
        self,
        author: str,
        body: str,
        origin_ip: str,
        session_id: str,
        reply_to_id: Optional[str],
    ) -> Message:
        self._validate(author, body)

        if not (await self._settings.snapshot()).public_enabled:
            raise ValidationError("public_chat_disabled", MSG_PUBLIC_DISABLED)

        await self._check_bans(author, origin_ip)

        decision = await self._violations.check_rate(origin_ip)
        if not decision.allowed:
            raise RateLimitError("rate_limited", MSG_RATE_LIMITED, retry_after=decision.retry_after)

        filtered = self._moderation.filter_public(body)
        if filtered.modified:
            logger.info(f"Message from {author} filtered: {', '.join(filtered.reasons)}")

        snapshot = await self._reply_snapshot(reply_to_id) if reply_to_id else None

        message = Message(
            author=author,
            body=filtered.filtered,
            origin_ip=origin_ip,
            reply_to_id=reply_to_id if snapshot else None,
            reply_snapshot=snapshot,
        )
        if not await self._history.append(message):
            raise StoreUnavailable(message=f"message {message.id} could not be stored anywhere")

        await self._broadcaster.publish(message.to_dict())
        return message

    async def get_history(self, limit: Optional[int] = None) -> Result[List[Message]]:
        try:
            return Result.success(await self._history.get_history(limit))
        except Exception as e:
            logger.exception(f"Failed to read history: {e}")
            return Result.failure(StoreUnavailable("internal_error"))

    # =========================================================================
    # Moderation deletes
    # =========================================================================

    async def delete_message(self, message_id: str) -> Result[bool]:
        """Soft-delete one message and tell live viewers to drop it."""
        if not await self._history.soft_delete(message_id):
            return Result.failure(StoreUnavailable(message=f"message {message_id} not deleted"))
        await self._broadcaster.emit(
            BroadcastEvent(MESSAGES, "message_deleted", {"message_id": message_id})
        )
        logger.info(f"Message deleted: {message_id}")
        return Result.success(True)

    async def clear_chat(self) -> Result[int]:
        cleared = await self._history.clear()
        if cleared < 0:
            return Result.failure(StoreUnavailable(message="chat could not be cleared"))
        await self._broadcaster.emit(BroadcastEvent(MESSAGES, "clear", {"cleared": cleared}))
        logger.warning(f"Chat cleared: {cleared} messages")
        return Result.success(cleared)

    # =========================================================================
    # Private messages
    # =========================================================================

    async def send_private(
        self,
        from_username: str,
        session_id: str,
        to_username: str,
        body: str,
        origin_ip: str,
    ) -> Result[PrivateMessageView]:
        """
        Deliver a private message to a live user or an active decoy.

        Blacklisted URLs are redacted and count as ``spam_url`` violations.
        """
        try:
            return Result.success(
                await self._send_private(
                    from_username.strip(), session_id, to_username.strip(), body.strip(), origin_ip
                )
            )
        except ChatError as e:
            logger.info(f"Private message from {from_username!r} rejected: {e.reason}")
            return Result.failure(e)
        except Exception as e:
            logger.exception(f"Unexpected error while sending private message: {e}")
            return Result.failure(StoreUnavailable("internal_error"))

    async def _send_private(
        self,
        from_username: str,
        session_id: str,
        to_username: str,
        body: str,
        origin_ip: str,
    ) -> PrivateMessageView:
        if not session_id:
            raise ValidationError("session_required", "Session ID is required")
        if not to_username:
            raise ValidationError("recipient_required", "Recipient is required")
        self._validate(from_username, body)

        if not (await self._settings.snapshot()).private_enabled:
            raise ValidationError("private_chat_disabled", MSG_PRIVATE_DISABLED)

        await self._check_bans(from_username, origin_ip)

        filtered = await self._moderation.filter_private(body, origin_ip)
        if filtered.modified:
            logger.info(f"Private message from {from_username} filtered: {', '.join(filtered.reasons)}")

        to_session_id = await self._recipient_session(to_username)
        if to_session_id is None:
            raise ValidationError("recipient_offline", MSG_RECIPIENT_OFFLINE)

        try:
            async with self._db.session() as session:
                row = PrivateMessage(
                    from_username=from_username,
                    from_session_id=session_id,
                    to_username=to_username,
                    to_session_id=to_session_id,
                    message=filtered.filtered,
                    ip_address=origin_ip,
                    created_at=utc_now(),
                )
                session.add(row)
                await session.commit()
                view = PrivateMessageView(
                    id=row.id,
                    from_username=from_username,
                    to_username=to_username,
                    body=filtered.filtered,
                    timestamp=to_timestamp(row.created_at),
                )
        except SQLAlchemyError as e:
            raise StoreUnavailable(message=f"private message not stored: {e}") from e

        await self._broadcaster.publish_private(view.to_dict())
        return view

    async def _recipient_session(self, to_username: str) -> Optional[str]:
        session_ids = await self._presence.session_ids_for(to_username)
        if session_ids:
            return session_ids[0]
        if await self._presence.is_present(to_username):
            # Active decoy: stable synthetic session id
            return "fake_" + hashlib.md5(to_username.encode("utf-8")).hexdigest()
        return None

    async def get_private_history(
        self,
        username: str,
        session_id: str,
        with_user: Optional[str] = None,
    ) -> Result[List[PrivateMessageView]]:
        """
        Private messages visible to one session.

        With ``with_user`` this is the conversation with that user, oldest
        first; otherwise the most recent messages to or from the session.
        """
        if not username or not session_id:
            return Result.failure(ValidationError("session_required", "Username and session ID are required"))

        sent = and_(PrivateMessage.from_username == username, PrivateMessage.from_session_id == session_id)
        received = and_(PrivateMessage.to_username == username, PrivateMessage.to_session_id == session_id)
        if with_user:
            stmt = (
                select(PrivateMessage)
                .where(
                    or_(
                        and_(sent, PrivateMessage.to_username == with_user),
                        and_(received, PrivateMessage.from_username == with_user),
                    )
                )
                .order_by(PrivateMessage.created_at.asc(), PrivateMessage.id.asc())
                .limit(CONVERSATION_LIMIT)
            )
        else:
            stmt = (
                select(PrivateMessage)
                .where(or_(sent, received))
                .order_by(PrivateMessage.created_at.desc(), PrivateMessage.id.desc())
                .limit(PRIVATE_HISTORY_LIMIT)
            )

        try:
            async with self._db.session() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Failed to load private messages for {username}: {e}")
            return Result.failure(StoreUnavailable())

        return Result.success(
            [
                PrivateMessageView(
                    id=row.id,
                    from_username=row.from_username,
                    to_username=row.to_username,
                    body=row.message,
                    timestamp=to_timestamp(row.created_at),
                )
                for row in rows
            ]
        )
