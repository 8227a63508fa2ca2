"""Tests for presence, nickname ownership and kicks."""

import json
from datetime import timedelta

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from radiochat.database.models import ActiveSession, AuthSession, RegisteredUser
from radiochat.errors import ValidationError
from radiochat.services.presence_tracker import KICK_KEY_PREFIX, Profile
from radiochat.utils import utc_now


async def register_identity(database, username: str, *session_ids: str, active: bool = True) -> None:
    async with database.session() as session:
        user = RegisteredUser(username=username, is_active=active)
        session.add(user)
        await session.flush()
        for session_id in session_ids:
            session.add(AuthSession(session_id=session_id, user_id=user.id))
        await session.commit()


async def age_sessions(database, minutes: int = 6) -> None:
    async with database.session() as session:
        await session.execute(
            update(ActiveSession).values(last_heartbeat=utc_now() - timedelta(minutes=minutes))
        )
        await session.commit()


# ============================================================================
# Profile
# ============================================================================

class TestProfile:
    def test_age_bounds(self):
        assert Profile(age=18).age == 18
        assert Profile(age="120").age == 120

    @pytest.mark.parametrize("age", [17, 121, "old", -1])
    def test_invalid_age(self, age):
        with pytest.raises(ValidationError) as exc:
            Profile(age=age)
        assert exc.value.reason == "invalid_age"

    def test_empty(self):
        assert Profile().is_empty
        assert not Profile(location="Lviv").is_empty


# ============================================================================
# Nickname ownership
# ============================================================================

@pytest.mark.asyncio
async def test_guest_nickname_single_session(core):
    presence = core.presence
    assert await presence.register_session("alice", "s1", "1.1.1.1")

    assert await presence.is_nickname_available("Alice", "s1")
    assert not await presence.is_nickname_available("ALICE", "s2")
    assert not await presence.register_session("ALICE", "s2", "1.1.1.2")
    assert await presence.is_nickname_available("bob", "s2")


@pytest.mark.asyncio
async def test_reregistering_same_session_refreshes(core):
    assert await core.presence.register_session("alice", "s1", "1.1.1.1")
    assert await core.presence.register_session("alice", "s1", "1.1.1.9")

    assert await core.presence.real_count() == 1


@pytest.mark.asyncio
async def test_decoy_nickname_is_never_available(core):
    await core.decoys.add_decoy("Luna")

    assert not await core.presence.is_nickname_available("luna", "s1")
    assert not await core.presence.register_session("LUNA", "s1", "1.1.1.1")


@pytest.mark.asyncio
async def test_registered_identity(core, database):
    await register_identity(database, "Bob", "s9", "s10")

    assert not await core.presence.is_nickname_available("bob", "s1")
    assert not await core.presence.register_session("bob", "s1", "1.1.1.1")

    assert await core.presence.is_nickname_available("bob", "s9")
    assert await core.presence.register_session("Bob", "s9", "1.1.1.1")
    assert await core.presence.register_session("Bob", "s10", "1.1.1.2")
    # One person in two sessions
    assert await core.presence.real_count() == 1


@pytest.mark.asyncio
async def test_inactive_identity_cannot_be_used(core, database):
    await register_identity(database, "carol", "s1", active=False)

    assert not await core.presence.register_session("carol", "s1", "1.1.1.1")


@pytest.mark.asyncio
async def test_identity_fails_closed(core):
    with patch(
        "sqlalchemy.ext.asyncio.AsyncSession.execute",
        side_effect=OperationalError("SELECT", {}, Exception("database is locked")),
    ):
        assert await core.identity.is_registered("anyone")
        assert not await core.identity.can_act_as("anyone", "s1")
        assert not await core.presence.is_nickname_available("anyone", "s1")


@pytest.mark.asyncio
async def test_stale_holder_frees_nickname(core, database):
    await core.presence.register_session("alice", "s1", "1.1.1.1")
    await age_sessions(database)

    assert await core.presence.is_nickname_available("alice", "s2")


# ============================================================================
# Session lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_banned_users_cannot_join(core):
    await core.bans.ban_ip("6.6.6.6")
    await core.bans.ban_nickname("troll")

    assert not await core.presence.register_session("alice", "s1", "6.6.6.6")
    assert not await core.presence.register_session("Troll", "s2", "1.1.1.1")


@pytest.mark.asyncio
async def test_heartbeat_and_eviction(core, database):
    await core.presence.register_session("alice", "s1", "1.1.1.1")
    assert await core.presence.heartbeat("alice", "s1")

    await age_sessions(database)
    assert await core.presence.evict_stale() == 1
    assert not await core.presence.heartbeat("alice", "s1")
    assert await core.presence.real_count() == 0


@pytest.mark.asyncio
async def test_remove_and_logout(core):
    await core.presence.register_session("alice", "s1", "1.1.1.1")
    await core.presence.register_session("bob", "s2", "1.1.1.2")

    assert await core.presence.remove_session("alice", "s1")
    assert not await core.presence.remove_session("alice", "s1")
    assert await core.presence.logout("s2")
    assert await core.presence.real_count() == 0


@pytest.mark.asyncio
async def test_kick(core, redis_client):
    await core.presence.register_session("alice", "s1", "1.1.1.1")

    with patch.object(core.broadcaster, "emit", AsyncMock(return_value=True)) as emit:
        assert await core.presence.kick("alice", duration=600) == 1

    events = [call.args[0].event for call in emit.await_args_list]
    assert "user_kicked" in events
    assert events[-1] == "users"

    marker = json.loads(await redis_client.get(f"{KICK_KEY_PREFIX}s1"))
    assert marker["username"] == "alice"
    assert marker["reason"] == "Kicked by admin"
    assert 0 < await redis_client.ttl(f"{KICK_KEY_PREFIX}s1") <= 600

    assert await core.presence.is_kicked("s1")
    assert not await core.presence.register_session("alice", "s1", "1.1.1.1")
    # A different session may still take the name
    assert await core.presence.register_session("alice", "s2", "1.1.1.1")


@pytest.mark.asyncio
async def test_kick_absent_user(core):
    assert await core.presence.kick("nobody") == 0


# ============================================================================
# Views
# ============================================================================

@pytest.mark.asyncio
async def test_presence_list_includes_decoys(core):
    await core.chat_settings.set("minimum_users", 2)
    await core.decoys.add_decoy("Luna", age=30)
    await core.decoys.add_decoy("Max")
    await core.decoys.add_decoy("Kira")

    await core.presence.register_session("alice", "s1", "1.1.1.1", Profile(age=33, location="Odesa"))

    snapshot = await core.presence.snapshot()
    assert snapshot["count"] == 2
    real, decoy = snapshot["users"]
    assert real["username"] == "alice"
    assert real["is_decoy"] is False
    assert real["age"] == 33
    assert real["location"] == "Odesa"
    assert real["joined_at"] is not None
    assert decoy["is_decoy"] is True
    assert decoy["joined_at"] is None


@pytest.mark.asyncio
async def test_changes_publish_presence(core):
    with patch.object(core.broadcaster, "publish_presence", AsyncMock(return_value=True)) as publish:
        await core.presence.register_session("alice", "s1", "1.1.1.1")

    snapshot = publish.await_args.args[0]
    assert snapshot["count"] == 1
    assert snapshot["users"][0]["username"] == "alice"


@pytest.mark.asyncio
async def test_is_present(core):
    await core.presence.register_session("alice", "s1", "1.1.1.1")
    luna = await core.decoys.add_decoy("Luna")

    assert await core.presence.is_present("ALICE")
    assert not await core.presence.is_present("Luna")
    await core.decoys.set_active(luna.id, True)
    assert await core.presence.is_present("Luna")
    assert await core.presence.session_ids_for("alice") == ["s1"]
