"""Tests for the URL blacklist."""

import pytest

from radiochat.services.url_blacklist import CACHE_KEY, UrlBlacklist


@pytest.fixture
def blacklist(database, redis_client):
    return UrlBlacklist(database, redis_client)


@pytest.mark.asyncio
async def test_add_list_remove(blacklist):
    assert await blacklist.add("spam*.biz", "known spam", "admin")
    assert await blacklist.add("  casino*.xyz ")

    entries = await blacklist.list()
    assert {e.pattern for e in entries} == {"spam*.biz", "casino*.xyz"}
    spam = next(e for e in entries if e.pattern == "spam*.biz")
    assert spam.description == "known spam"
    assert spam.added_by == "admin"

    assert await blacklist.remove("spam*.biz")
    assert not await blacklist.remove("spam*.biz")
    assert await blacklist.patterns() == ["casino*.xyz"]


@pytest.mark.asyncio
async def test_rejects_empty_and_duplicate(blacklist):
    assert not await blacklist.add("   ")
    assert await blacklist.add("spam*.biz")
    assert not await blacklist.add("spam*.biz")


@pytest.mark.asyncio
async def test_patterns_are_cached_and_invalidated(blacklist, redis_client):
    await blacklist.add("spam*.biz")
    assert await blacklist.patterns() == ["spam*.biz"]
    assert await redis_client.get_json(CACHE_KEY) == ["spam*.biz"]

    await blacklist.add("other*.com")
    assert await redis_client.get_json(CACHE_KEY) is None
    assert sorted(await blacklist.patterns()) == ["other*.com", "spam*.biz"]


@pytest.mark.asyncio
async def test_works_without_cache(database, down_redis):
    blacklist = UrlBlacklist(database, down_redis)
    await blacklist.add("spam*.biz")

    assert await blacklist.patterns() == ["spam*.biz"]
