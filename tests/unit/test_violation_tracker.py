"""Tests for rate limiting and violation escalation."""

import pytest
from unittest.mock import AsyncMock

from radiochat.services.ban_registry import BanRegistry
from radiochat.services.settings_service import SettingsService
from radiochat.services.violation_tracker import (
    DEFAULT_THRESHOLD,
    ViolationTracker,
    threshold_for,
)


@pytest.fixture
def bans(database, redis_client):
    return BanRegistry(database, redis_client)


@pytest.fixture
def chat_settings(database, redis_client):
    return SettingsService(database, redis_client)


@pytest.fixture
def tracker(redis_client, bans, chat_settings):
    return ViolationTracker(redis_client, bans, chat_settings)


def test_thresholds():
    assert threshold_for("rate_limit") == 3
    assert threshold_for("spam_url") == 3
    assert threshold_for("anything_else") == DEFAULT_THRESHOLD == 5


@pytest.mark.asyncio
async def test_rate_budget_default(tracker):
    for _ in range(10):
        assert (await tracker.check_rate("1.1.1.1")).allowed

    denied = await tracker.check_rate("1.1.1.1")
    assert not denied.allowed
    assert 0 < denied.retry_after <= 60
    assert await tracker.violation_count("1.1.1.1", "rate_limit") == 1


@pytest.mark.asyncio
async def test_rate_budget_from_settings(tracker, chat_settings):
    await chat_settings.set_many({"rate_limit_messages": 2, "rate_limit_window": 30})

    assert (await tracker.check_rate("1.1.1.1")).allowed
    assert (await tracker.check_rate("1.1.1.1")).allowed
    decision = await tracker.check_rate("1.1.1.1")
    assert not decision.allowed
    assert decision.limit == 2
    assert decision.retry_after <= 30


@pytest.mark.asyncio
async def test_rate_is_per_ip(tracker, chat_settings):
    await chat_settings.set("rate_limit_messages", 1)

    assert (await tracker.check_rate("1.1.1.1")).allowed
    assert (await tracker.check_rate("2.2.2.2")).allowed
    assert not (await tracker.check_rate("1.1.1.1")).allowed


@pytest.mark.asyncio
async def test_threshold_bans_and_clears_counter(tracker, bans):
    first = await tracker.record_and_check("1.1.1.1", "spam_url")
    second = await tracker.record_and_check("1.1.1.1", "spam_url")
    assert not first.blocked and not second.blocked
    assert not await bans.is_ip_banned("1.1.1.1")

    third = await tracker.record_and_check("1.1.1.1", "spam_url")
    assert third.blocked
    assert third.count == 3
    assert await bans.is_ip_banned("1.1.1.1")
    assert await tracker.violation_count("1.1.1.1", "spam_url") == 0

    listed = await bans.list_ip_bans()
    assert listed[0].banned_by == "system"
    assert listed[0].reason == "Automatic ban: Repeated spam_url violations (3 times)"
    assert listed[0].banned_until is not None


@pytest.mark.asyncio
async def test_other_kinds_need_five(tracker, bans):
    for _ in range(4):
        assert not (await tracker.record_and_check("1.1.1.1", "flood")).blocked
    assert (await tracker.record_and_check("1.1.1.1", "flood")).blocked


@pytest.mark.asyncio
async def test_violation_window_is_one_hour(tracker, redis_client):
    await tracker.record_and_check("1.1.1.1", "rate_limit")
    ttl = await redis_client.ttl("violations:rate_limit:1.1.1.1")
    assert 3500 < ttl <= 3600


@pytest.mark.asyncio
async def test_fails_open_without_cache(database, down_redis):
    bans = AsyncMock()
    tracker = ViolationTracker(down_redis, bans, SettingsService(database, down_redis))

    for _ in range(50):
        assert (await tracker.check_rate("1.1.1.1")).allowed
    outcome = await tracker.record_and_check("1.1.1.1", "spam_url")
    assert not outcome.blocked
    bans.ban_ip.assert_not_awaited()
