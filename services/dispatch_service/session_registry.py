"""Registry of open courier sessions, one per captain user."""
import asyncio
import logging
from typing import Callable, Dict, Optional, Set
from uuid import UUID

from .captain_session import CaptainNotificationSession

logger = logging.getLogger(__name__)

SessionFactory = Callable[[UUID], CaptainNotificationSession]


class SessionRegistry:
    """Opens, looks up and closes courier sessions for the dispatch service."""

    def __init__(self, session_factory: SessionFactory):
        self._factory = session_factory
        self._sessions: Dict[UUID, CaptainNotificationSession] = {}
        self._streams: Set[UUID] = set()
        self._lock = asyncio.Lock()

    async def open(self, user_id: UUID) -> CaptainNotificationSession:
        """Return the user's session, starting a new one if none is open."""
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is not None and not session.closed:
                return session

            session = self._factory(user_id)
            await session.start()
            self._sessions[user_id] = session

        logger.info(f"Opened courier session for user {user_id} ({len(self._sessions)} open)")
        return session

    def get(self, user_id: UUID) -> Optional[CaptainNotificationSession]:
        session = self._sessions.get(user_id)
        if session is None or session.closed:
            return None
        return session

    def attach_stream(self, user_id: UUID) -> bool:
        """Claim the single live stream for a user. False if one is already attached."""
        if user_id in self._streams:
            return False
        self._streams.add(user_id)
        return True

    def detach_stream(self, user_id: UUID):
        self._streams.discard(user_id)

    async def close(self, user_id: UUID) -> bool:
        async with self._lock:
            session = self._sessions.pop(user_id, None)
            self._streams.discard(user_id)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self):
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._streams.clear()
        for session in sessions:
            await session.close()
        if sessions:
            logger.info(f"Closed {len(sessions)} courier session(s)")

    def __len__(self) -> int:
        return len(self._sessions)
