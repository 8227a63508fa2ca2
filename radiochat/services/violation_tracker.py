"""Abuse throttling: per-IP rate budget and violation counters that escalate to bans.

Two kinds of counters live in Redis:

- ``ratelimit:<ip>`` - posts in the current fixed window (budget from the
  settings snapshot, default 10 per 60 seconds).
- ``violations:<kind>:<ip>`` - infractions of one kind; every hit pushes the
  expiry an hour out. Reaching the kind's threshold bans the IP for a day
  and clears the counter.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from radiochat.services.ban_registry import BanRegistry
from radiochat.services.redis_client import RedisClient
from radiochat.services.settings_service import SettingsService

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

RATE_KEY_PREFIX = "ratelimit:"
VIOLATION_KEY_PREFIX = "violations:"

VIOLATION_WINDOW = 3600
AUTO_BAN_DAYS = 1

# Violations of one kind within the window before an automatic ban
THRESHOLDS: Dict[str, int] = {
    "rate_limit": 3,
    "spam_url": 3,
}
DEFAULT_THRESHOLD = 5


def threshold_for(kind: str) -> int:
    return THRESHOLDS.get(kind, DEFAULT_THRESHOLD)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class RateDecision:
    """
    Result of one rate check.

    Attributes:
        allowed: False when the post must be refused
        count: Posts counted in the current window (0 if Redis is down)
        limit: Budget for the window
        retry_after: Seconds until the window resets (0 when allowed)
        banned: True if the refusal escalated into an automatic ban
    """
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0
    banned: bool = False


@dataclass
class ViolationOutcome:
    blocked: bool
    count: int
    threshold: int


# ============================================================================
# Tracker
# ============================================================================

class ViolationTracker:
    """Counts posts and infractions per IP and escalates repeat offenders."""

    def __init__(self, redis: RedisClient, bans: BanRegistry, settings: SettingsService):
        self._redis = redis
        self._bans = bans
        self._settings = settings

    async def check_rate(self, ip: str) -> RateDecision:
        """
        Count one post against the IP's budget.

        Over budget records one ``rate_limit`` violation. When Redis is down
        the check fails open.
        """
        snapshot = await self._settings.snapshot()
        limit = snapshot.rate_limit_messages
        window = snapshot.rate_limit_window

        key = f"{RATE_KEY_PREFIX}{ip}"
        count = await self._redis.incr_window(key, window)
        if count is None:
            logger.warning(f"Rate limit unavailable for {ip}, allowing post")
            return RateDecision(allowed=True, count=0, limit=limit)

        if count <= limit:
            return RateDecision(allowed=True, count=count, limit=limit)

        ttl = await self._redis.ttl(key)
        retry_after = ttl if ttl and ttl > 0 else window
        logger.info(f"Rate limit exceeded for {ip}: {count}/{limit} in {window}s")

        outcome = await self.record_and_check(ip, "rate_limit")
        return RateDecision(
            allowed=False,
            count=count,
            limit=limit,
            retry_after=retry_after,
            banned=outcome.blocked,
        )

    async def record_and_check(self, ip: str, kind: str) -> ViolationOutcome:
        """
        Record one violation of ``kind`` for ``ip``.

        Returns:
            ``blocked=True`` when this violation reached the threshold and
            the IP has been banned
        """
        threshold = threshold_for(kind)
        key = f"{VIOLATION_KEY_PREFIX}{kind}:{ip}"

        count = await self._redis.incr_sliding(key, VIOLATION_WINDOW)
        if count is None:
            logger.warning(f"Could not track {kind} violation for {ip}: cache unavailable")
            return ViolationOutcome(blocked=False, count=0, threshold=threshold)

        if count < threshold:
            logger.info(
                f"Violation tracked for {ip}: {kind} "
                f"(violations: {count}, {threshold - count} more until auto-ban)"
            )
            return ViolationOutcome(blocked=False, count=count, threshold=threshold)

        reason = f"Automatic ban: Repeated {kind} violations ({count} times)"
        banned = await self._bans.ban_ip(ip, reason, "system", AUTO_BAN_DAYS)
        await self._redis.delete(key)
        if banned:
            logger.warning(f"Auto-banned IP {ip} for {kind} violations (count: {count})")
        else:
            logger.error(f"Auto-ban of {ip} for {kind} violations failed to persist")
        return ViolationOutcome(blocked=banned, count=count, threshold=threshold)

    async def violation_count(self, ip: str, kind: str) -> int:
        value = await self._redis.get(f"{VIOLATION_KEY_PREFIX}{kind}:{ip}")
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    async def reset(self, ip: str, kind: Optional[str] = None) -> None:
        """Clear the rate counter and one (or every known) violation counter."""
        await self._redis.delete(f"{RATE_KEY_PREFIX}{ip}")
        kinds = [kind] if kind else list(THRESHOLDS)
        for name in kinds:
            await self._redis.delete(f"{VIOLATION_KEY_PREFIX}{name}:{ip}")
