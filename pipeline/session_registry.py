import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterator

from pipeline.models import ChunkRecord, SessionConfig, SessionSeed


@dataclass
class Session:
    session_id: str
    config: SessionConfig
    started_at_ms: int
    seed: SessionSeed
    active: bool = True
    seed_registered: bool = False
    next_index: int = 0
    chunks: list[ChunkRecord] = field(default_factory=list)

    @property
    def interval_ms(self) -> int:
        return self.config.interval_ms


class SessionRegistry:
    """
    Process-wide table of live sessions.

    Mutations for one session are serialised with that session's lock;
    sessions never share state.
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[Session | None]:
        """
        Hold the session's lock and yield the session, or None if it is not
        registered. A lock nobody waits on and no session owns is dropped on
        the way out, so lookups for unknown ids leave nothing behind.
        """
        lock = self.lock(session_id)
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield self._sessions.get(session_id)
        finally:
            users = self._lock_users.pop(session_id) - 1
            if users:
                self._lock_users[session_id] = users
            elif session_id not in self._sessions and self._locks.get(session_id) is lock:
                del self._locks[session_id]

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def add(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Session | None:
        # A lock still in use is dropped by locked() once its last user leaves.
        if not self._lock_users.get(session_id):
            self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))
