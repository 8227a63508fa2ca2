"""Composition root: builds every component with explicit collaborators."""

import logging
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from radiochat.config import Settings
from radiochat.database.session import Database
from radiochat.services.ban_registry import BanRegistry
from radiochat.services.broadcaster import MESSAGES, PRESENCE, PRIVATE, BroadcastEvent, Broadcaster
from radiochat.services.cleanup import CleanupService
from radiochat.services.decoy_balancer import DecoyUserBalancer
from radiochat.services.history_store import HistoryStore
from radiochat.services.identity import IdentityVerifier
from radiochat.services.message_gateway import MessageGateway
from radiochat.services.moderation_filter import ModerationFilter
from radiochat.services.presence_tracker import PresenceTracker
from radiochat.services.redis_client import RedisClient
from radiochat.services.settings_service import SettingsService
from radiochat.services.url_blacklist import UrlBlacklist
from radiochat.services.violation_tracker import ViolationTracker

logger = logging.getLogger(__name__)


@dataclass
class ChatCore:
    """
    Every chat component wired together.

    Usage:
        core = ChatCore.create(Settings())
        await core.start()
        result = await core.gateway.post_message("alice", "hi", "203.0.113.7")
        await core.close()
    """

    settings: Settings
    redis: RedisClient
    database: Database
    chat_settings: SettingsService
    blacklist: UrlBlacklist
    bans: BanRegistry
    violations: ViolationTracker
    moderation: ModerationFilter
    history: HistoryStore
    identity: IdentityVerifier
    decoys: DecoyUserBalancer
    broadcaster: Broadcaster
    presence: PresenceTracker
    gateway: MessageGateway
    cleanup: CleanupService

    @classmethod
    def create(
        cls,
        settings: Settings,
        redis: Optional[RedisClient] = None,
        database: Optional[Database] = None,
    ) -> "ChatCore":
        redis = redis or RedisClient.from_settings(settings)
        database = database or Database(settings.database_url)

        chat_settings = SettingsService(database, redis)
        blacklist = UrlBlacklist(database, redis)
        bans = BanRegistry(database, redis)
        violations = ViolationTracker(redis, bans, chat_settings)
        moderation = ModerationFilter(blacklist, violations)
        history = HistoryStore(database, redis, settings.history_limit)
        identity = IdentityVerifier(database)
        decoys = DecoyUserBalancer(database, redis, chat_settings)
        broadcaster = Broadcaster(redis)
        presence = PresenceTracker(database, redis, bans, identity, decoys, broadcaster)
        gateway = MessageGateway(
            database,
            history,
            bans,
            violations,
            moderation,
            presence,
            broadcaster,
            chat_settings,
            max_message_length=settings.max_message_length,
            max_username_length=settings.max_username_length,
        )
        cleanup = CleanupService(database, redis, presence)

        return cls(
            settings=settings,
            redis=redis,
            database=database,
            chat_settings=chat_settings,
            blacklist=blacklist,
            bans=bans,
            violations=violations,
            moderation=moderation,
            history=history,
            identity=identity,
            decoys=decoys,
            broadcaster=broadcaster,
            presence=presence,
            gateway=gateway,
            cleanup=cleanup,
        )

    async def start(self) -> None:
        await self.database.init()
        logger.info(f"Durable store ready ({self.database.dialect_name})")
        await self.redis.connect()

    async def close(self) -> None:
        await self.redis.close()
        await self.database.close()

    async def _initial_events(self) -> List[BroadcastEvent]:
        history = await self.history.get_history()
        return [
            BroadcastEvent(MESSAGES, "history", [m.to_dict() for m in history]),
            BroadcastEvent(PRESENCE, "users", await self.presence.snapshot()),
        ]

    def stream_events(self, username: Optional[str] = None, ping_interval: float = 15.0) -> AsyncIterator[str]:
        """
        SSE stream for one viewer: ``history`` and ``users`` first, then live events.

        Private messages are included only when ``username`` is given, and
        only those sent by or to that user.
        """
        channels = (MESSAGES, PRESENCE, PRIVATE) if username else (MESSAGES, PRESENCE)
        return self.broadcaster.stream(
            self._initial_events, channels=channels, username=username, ping_interval=ping_interval
        )
