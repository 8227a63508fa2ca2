"""Registered identities: which usernames are reserved and which sessions own them."""

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from radiochat.database.models import AuthSession, RegisteredUser
from radiochat.database.session import Database

logger = logging.getLogger(__name__)


class IdentityVerifier:
    """
    Answers the two questions presence needs from the login system.

    Rows in ``users`` and ``auth_sessions`` are written by the login flow,
    which lives outside this package. When the durable store cannot answer,
    usernames are treated as reserved and unproven.
    """

    def __init__(self, database: Database):
        self._db = database

    async def is_registered(self, username: str) -> bool:
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(RegisteredUser.id).where(
                        func.lower(RegisteredUser.username) == username.lower()
                    )
                )
                return result.first() is not None
        except SQLAlchemyError as e:
            logger.error(f"Failed to check registered username {username}: {e}")
            return True

    async def can_act_as(self, username: str, session_id: str) -> bool:
        """True when ``session_id`` is logged in as the active account ``username``."""
        if not session_id:
            return False
        try:
            async with self._db.session() as session:
                result = await session.execute(
                    select(AuthSession.session_id)
                    .join(RegisteredUser, AuthSession.user_id == RegisteredUser.id)
                    .where(
                        AuthSession.session_id == session_id,
                        func.lower(RegisteredUser.username) == username.lower(),
                        RegisteredUser.is_active.is_(True),
                    )
                )
                return result.first() is not None
        except SQLAlchemyError as e:
            logger.error(f"Failed to verify session {session_id} for {username}: {e}")
            return False
