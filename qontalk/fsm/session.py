"""In-memory session store for the Session Rule Engine.

Sessions live only in process memory; persistence across restarts is left
to a host-provided store implementing the same methods.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Collection, Dict, List, Optional, Tuple

from qontalk.fsm.models import UserSession, utcnow
from qontalk.utils.structured_logger import get_structured_logger

logger = get_structured_logger("fsm.session")


class SessionStore:
    """Mapping of user id to UserSession guarded by an asyncio.Lock.

    The store's own lock only protects the mapping itself. Serializing a
    whole message for one user is the caller's job, see ``user_lock``.
    """

    def __init__(self):
        self._sessions: Dict[str, UserSession] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._sessions

    def get(self, user_id: str) -> Optional[UserSession]:
        return self._sessions.get(user_id)

    def user_ids(self) -> List[str]:
        return list(self._sessions)

    def user_lock(self, user_id: str) -> asyncio.Lock:
        """Return the lock serializing messages of one user."""
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = self._user_locks[user_id] = asyncio.Lock()
        return lock

    def busy_user_ids(self) -> List[str]:
        """User ids whose lock is currently held."""
        return [user_id for user_id, lock in self._user_locks.items() if lock.locked()]

    async def get_or_create(
        self, user_id: str, initial_state: str
    ) -> Tuple[UserSession, bool]:
        """Get the user's session, creating it at ``initial_state`` if absent.

        Returns:
            Tuple of (session, created)
        """
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session, False

            session = UserSession(user_id=user_id, state=initial_state)
            self._sessions[user_id] = session

        logger.info("Session created", user_id=user_id, state=initial_state)
        return session, True

    async def delete(self, user_id: str) -> bool:
        async with self._lock:
            lock = self._user_locks.get(user_id)
            if lock is not None and not lock.locked():
                del self._user_locks[user_id]
            return self._sessions.pop(user_id, None) is not None

    async def sweep(
        self,
        timeout: timedelta,
        now: Optional[datetime] = None,
        skip: Collection[str] = (),
    ) -> List[str]:
        """Evict sessions idle for longer than ``timeout``.

        Args:
            timeout: Maximum idle age
            now: Reference time (defaults to current UTC time)
            skip: User ids that must not be evicted (message in flight)

        Returns:
            Evicted user ids
        """
        now = now or utcnow()
        async with self._lock:
            expired = [
                user_id
                for user_id, session in self._sessions.items()
                if user_id not in skip and session.is_expired(timeout, now)
            ]
            for user_id in expired:
                del self._sessions[user_id]
                self._user_locks.pop(user_id, None)

        if expired:
            logger.info(f"Evicted {len(expired)} expired sessions", user_ids=expired)
        return expired

    async def flag_error(
        self, user_id: str, kind: str, state: Optional[str] = None
    ) -> bool:
        """Flag error condition ``kind`` for the user's session.

        Args:
            user_id: Session owner
            kind: Error condition name
            state: State to flag (defaults to the session's current state)

        Returns:
            True if the session exists and was flagged
        """
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return False
            session.flag_error(kind, state)

        logger.debug("Error condition flagged", user_id=user_id, kind=kind)
        return True

    async def clear_error(
        self, user_id: str, kind: str, state: Optional[str] = None
    ) -> bool:
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                return False
            session.clear_error(kind, state)
            return True
