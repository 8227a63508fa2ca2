"""
Property-based tests for message ingestion.

Any message the gateway accepts comes back from history exactly as it was
stored, whatever script or symbols it is written in.
"""

import asyncio
import tempfile
from pathlib import Path

import fakeredis
from hypothesis import HealthCheck, given, strategies as st, settings

from radiochat.config import Settings
from radiochat.core import ChatCore
from radiochat.database.session import Database
from radiochat.services.redis_client import RedisClient


async def _post_and_read(author: str, body: str):
    with tempfile.TemporaryDirectory() as tmp:
        config = Settings(
            database_url=f"sqlite+aiosqlite:///{Path(tmp) / 'radiochat.db'}",
            redis_prefix="test:",
            log_dir=str(Path(tmp) / "logs"),
        )
        redis = RedisClient(
            prefix="test:",
            client=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True),
        )
        core = ChatCore.create(config, redis=redis, database=Database(config.database_url))
        await core.start()
        try:
            posted = await core.gateway.post_message(author, body, "1.1.1.1")
            history = await core.gateway.get_history()
            return posted, history
        finally:
            await core.close()


class TestHistoryRoundTripProperties:
    """Accepted messages survive the window unchanged."""

    @given(
        author=st.text(min_size=1, max_size=50).filter(str.strip),
        body=st.text(min_size=1, max_size=500).filter(str.strip),
    )
    @settings(max_examples=50, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_posted_message_reads_back(self, author: str, body: str):
        posted, history = asyncio.run(_post_and_read(author, body))

        assert posted.ok
        assert posted.value.author == author.strip()
        assert [m.to_dict() for m in history.value] == [posted.value.to_dict()]
