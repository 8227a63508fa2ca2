"""Runtime chat settings: key/value rows exposed as a typed snapshot.

Admins tune these while the service runs, so they live in the ``settings``
table rather than in the environment. Readers get a frozen ``ChatSettings``
parsed once at the boundary and cached in Redis for five minutes.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import Setting
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient
from radiochat.utils import utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

CACHE_KEY = "settings:all"
CACHE_TTL = 300

CHAT_MODES = ("public", "private", "both")

# Never handed to the public surface
PRIVATE_KEYS = frozenset({"admin_password_hash", "rate_limit_messages", "rate_limit_window"})


# ============================================================================
# Snapshot
# ============================================================================

@dataclass(frozen=True)
class ChatSettings:
    """
    Typed view of the tunable settings.

    Attributes:
        rate_limit_messages: Posts allowed per IP in one rate window
        rate_limit_window: Length of the rate window in seconds
        minimum_users: Minimum-occupancy target for decoy balancing (0 = off)
        chat_mode: ``public``, ``private`` or ``both``
    """
    rate_limit_messages: int = 10
    rate_limit_window: int = 60
    minimum_users: int = 0
    chat_mode: str = "both"

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "ChatSettings":
        """Parse string values from the table, keeping the default for anything unusable."""
        defaults = cls()
        chat_mode = str(raw.get("chat_mode") or defaults.chat_mode).strip().lower()
        if chat_mode not in CHAT_MODES:
            chat_mode = defaults.chat_mode
        return cls(
            rate_limit_messages=_positive_int(raw.get("rate_limit_messages"), defaults.rate_limit_messages),
            rate_limit_window=_positive_int(raw.get("rate_limit_window"), defaults.rate_limit_window),
            minimum_users=_non_negative_int(raw.get("minimum_users"), defaults.minimum_users),
            chat_mode=chat_mode,
        )

    @property
    def public_enabled(self) -> bool:
        return self.chat_mode in ("public", "both")

    @property
    def private_enabled(self) -> bool:
        return self.chat_mode in ("private", "both")


def _positive_int(value: Any, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed > 0 else default


def _non_negative_int(value: Any, default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


# ============================================================================
# Service
# ============================================================================

class SettingsService:
    """Read-through cache over the ``settings`` table plus admin CRUD."""

    def __init__(self, database: Database, redis: RedisClient):
        self._db = database
        self._redis = redis

    async def get_all(self) -> Dict[str, Optional[str]]:
        """
        All raw settings rows as ``{key: value}``.

        Served from Redis when cached. On a durable-store failure an empty
        mapping is returned, which the snapshot turns into defaults.
        """
        cached = await self._redis.get_json(CACHE_KEY)
        if isinstance(cached, dict):
            return cached

        try:
            async with self._db.session() as session:
                result = await session.execute(select(Setting.setting_key, Setting.setting_value))
                raw = {key: value for key, value in result.all()}
        except SQLAlchemyError as e:
            logger.error(f"Failed to load settings: {e}")
            return {}

        await self._redis.set_json(CACHE_KEY, raw, ex=CACHE_TTL)
        return raw

    async def snapshot(self) -> ChatSettings:
        return ChatSettings.from_raw(await self.get_all())

    async def get_public(self) -> Dict[str, Any]:
        """Settings safe to show to any client: raw rows minus private keys, plus typed fields."""
        raw = await self.get_all()
        public: Dict[str, Any] = {k: v for k, v in raw.items() if k not in PRIVATE_KEYS}
        typed = asdict(await self.snapshot())
        public["minimum_users"] = typed["minimum_users"]
        public["chat_mode"] = typed["chat_mode"]
        return public

    async def set(self, key: str, value: Any) -> bool:
        return await self.set_many({key: value})

    async def set_many(self, values: Mapping[str, Any]) -> bool:
        """
        Upsert several settings keyed by ``setting_key``.

        Returns:
            True if the rows were written; the cached snapshot is dropped either way
        """
        if not values:
            return True
        try:
            async with self._db.session() as session:
                for key, value in values.items():
                    stmt = self._db.upsert(
                        Setting,
                        {
                            "setting_key": key,
                            "setting_value": None if value is None else str(value),
                            "updated_at": utc_now(),
                        },
                        conflict_columns=["setting_key"],
                        update_columns=["setting_value", "updated_at"],
                    )
                    await session.execute(stmt)
                await session.commit()
            logger.info(f"Settings updated: {', '.join(values.keys())}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Failed to update settings: {e}")
            return False
        finally:
            await self._redis.delete(CACHE_KEY)
