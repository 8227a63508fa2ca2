"""Live fan-out over Redis pub/sub.

Three logical channels:

- ``messages`` - new messages, deletions and clears
- ``presence`` - presence snapshots and kicks
- ``private`` - private messages, delivered only to sender and recipient

Nothing is replayed: a subscriber only sees what is published after it
subscribed. Backlog comes from ``HistoryStore``.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

from radiochat.errors import StoreUnavailable
from radiochat.services.redis_client import RedisClient

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

MESSAGES = "messages"
PRESENCE = "presence"
PRIVATE = "private"

CHANNELS: Dict[str, str] = {
    MESSAGES: "chat:updates",
    PRESENCE: "chat:user_updates",
    PRIVATE: "chat:private_messages",
}

DEFAULT_PING_INTERVAL = 15.0


@dataclass
class BroadcastEvent:
    """
    One event on a logical channel.

    Attributes:
        channel: ``messages``, ``presence`` or ``private``
        event: Event name shown to clients (``message``, ``users``, ...)
        data: JSON-serializable payload
    """
    channel: str
    event: str
    data: Any = field(default_factory=dict)

    def encode(self) -> str:
        return json.dumps({"event": self.event, "data": self.data})

    @classmethod
    def decode(cls, channel: str, raw: Any) -> "BroadcastEvent":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        envelope = json.loads(raw)
        return cls(channel=channel, event=envelope["event"], data=envelope.get("data"))

    def to_sse(self) -> str:
        """Server-sent-events frame: ``event: <name>`` then one ``data:`` line."""
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


def _visible_to(event: BroadcastEvent, username: Optional[str]) -> bool:
    if event.channel != PRIVATE:
        return True
    if not username or not isinstance(event.data, dict):
        return False
    name = username.lower()
    return name in (
        str(event.data.get("from_username", "")).lower(),
        str(event.data.get("to_username", "")).lower(),
    )


class Subscription:
    """Open pub/sub subscription; use through ``Broadcaster.subscribe``."""

    def __init__(self, pubsub, channel_names: Dict[str, str], username: Optional[str]):
        self._pubsub = pubsub
        self._logical = {physical: logical for logical, physical in channel_names.items()}
        self.username = username

    async def listen(self, idle_timeout: float = DEFAULT_PING_INTERVAL) -> AsyncIterator[Optional[BroadcastEvent]]:
        """
        Yield events as they arrive, one at a time.

        Yields None after ``idle_timeout`` seconds without a visible event so
        the caller can keep the connection alive.
        """
        loop = asyncio.get_running_loop()
        idle_since = loop.time()
        while True:
            message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None or message.get("type") != "message":
                if loop.time() - idle_since >= idle_timeout:
                    idle_since = loop.time()
                    yield None
                continue

            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")
            try:
                event = BroadcastEvent.decode(self._logical.get(channel, channel), message["data"])
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Dropping malformed event on {channel}: {e}")
                continue

            if _visible_to(event, self.username):
                idle_since = loop.time()
                yield event


class Broadcaster:
    """Publishes events and hands out subscriptions."""

    def __init__(self, redis: RedisClient):
        self._redis = redis
        self._active_subscriptions = 0

    @property
    def active_subscriptions(self) -> int:
        return self._active_subscriptions

    def channel_name(self, logical: str) -> str:
        return self._redis.key(CHANNELS[logical])

    async def emit(self, event: BroadcastEvent) -> bool:
        receivers = await self._redis.publish(CHANNELS[event.channel], event.encode())
        if receivers is None:
            logger.warning(f"Event {event.event} not published on {event.channel}: cache unavailable")
            return False
        logger.debug(f"Published {event.event} on {event.channel} to {receivers} subscribers")
        return True

    async def publish(self, message: Dict[str, Any]) -> bool:
        return await self.emit(BroadcastEvent(MESSAGES, "message", message))

    async def publish_presence(self, snapshot: Dict[str, Any]) -> bool:
        return await self.emit(BroadcastEvent(PRESENCE, "users", snapshot))

    async def publish_private(self, message: Dict[str, Any]) -> bool:
        return await self.emit(BroadcastEvent(PRIVATE, "private_message", message))

    @asynccontextmanager
    async def subscribe(
        self,
        channels: Iterable[str] = (MESSAGES, PRESENCE),
        username: Optional[str] = None,
    ) -> AsyncIterator[Subscription]:
        """
        Subscribe to logical channels for the lifetime of the ``async with`` block.

        The subscription is released when the block exits for any reason,
        including cancellation of the reading task.

        Raises:
            StoreUnavailable: Redis is down
        """
        pubsub = self._redis.pubsub()
        if pubsub is None:
            raise StoreUnavailable(message="Live updates unavailable: cache is down")

        names = {logical: self.channel_name(logical) for logical in channels}
        try:
            await pubsub.subscribe(*names.values())
        except Exception as e:
            logger.error(f"Failed to subscribe to {list(names.values())}: {e}")
            await pubsub.aclose()
            raise StoreUnavailable(message="Live updates unavailable: cache is down") from e
        self._active_subscriptions += 1
        logger.debug(f"Subscriber joined ({self._active_subscriptions} active)")
        try:
            yield Subscription(pubsub, names, username)
        finally:
            self._active_subscriptions -= 1
            try:
                await pubsub.unsubscribe()
                await pubsub.aclose()
            except Exception as e:
                logger.warning(f"Error while releasing subscription: {e}")
            logger.debug(f"Subscriber left ({self._active_subscriptions} active)")

    async def stream(
        self,
        initial: Callable[[], Awaitable[List[BroadcastEvent]]],
        channels: Iterable[str] = (MESSAGES, PRESENCE),
        username: Optional[str] = None,
        ping_interval: float = DEFAULT_PING_INTERVAL,
    ) -> AsyncIterator[str]:
        """
        Server-sent-events stream for one viewer.

        Subscribes first, then sends the ``initial`` events, then live events
        as they arrive, with a ``: ping`` comment on idle.
        """
        async with self.subscribe(channels, username) as subscription:
            for event in await initial():
                yield event.to_sse()
            async for event in subscription.listen(ping_interval):
                yield ": ping\n\n" if event is None else event.to_sse()
