from contextlib import contextmanager
from typing import Iterator, Set

from codex_relay.domain.errors import BusyError


class SessionLocks:
    """In-process advisory lock set: at most one agent run per session.

    Scoped to a single process. Several processes sharing one database can
    still overlap runs against the same continuation.
    """

    def __init__(self) -> None:
        self._busy: Set[str] = set()

    def try_acquire(self, session_id: str) -> bool:
        if session_id in self._busy:
            return False
        self._busy.add(session_id)
        return True

    def release(self, session_id: str) -> None:
        self._busy.discard(session_id)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    def busy_sessions(self) -> Set[str]:
        return set(self._busy)

    @contextmanager
    def hold(self, session_id: str, slot: str = "") -> Iterator[None]:
        if not self.try_acquire(session_id):
            raise BusyError(session_id, slot)
        try:
            yield
        finally:
            self.release(session_id)
