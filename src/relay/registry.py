# File: src/relay/registry.py
# In-memory registry user_id -> Session. Reads are lock-free; mutations for a key
# happen under that key's lock, held by the LifecycleController.

import asyncio
import weakref
from typing import Dict, List, Optional

from relay.state import Session


class SessionRegistry:
    """One live session per user id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        # a lock lives only while some caller holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def get(self, user_id: str) -> Optional[Session]:
        return self._sessions.get(user_id)

    def put(self, user_id: str, session: Session) -> None:
        self._sessions[user_id] = session

    def remove(self, user_id: str) -> Optional[Session]:
        return self._sessions.pop(user_id, None)

    def is_current(self, session: Session) -> bool:
        return self._sessions.get(session.user_id) is session

    def size(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())
