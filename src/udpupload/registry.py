from __future__ import annotations

import threading
from typing import Dict, Generic, List, Optional, Tuple, TypeVar

from .net import Address

S = TypeVar("S")


class SessionRegistry(Generic[S]):
    """Thread-safe map from client identity to its in-progress session.

    Every operation holds one lock, so insert/lookup/remove on the same
    identity are linearizable.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[Address, S] = {}

    def insert(self, identity: Address, session: S) -> Optional[S]:
        """Register ``session``; returns the session it displaced, if any."""
        with self._lock:
            previous = self._sessions.get(identity)
            self._sessions[identity] = session
            return previous

    def lookup(self, identity: Address) -> Optional[S]:
        with self._lock:
            return self._sessions.get(identity)

    def remove(self, identity: Address) -> Optional[S]:
        with self._lock:
            return self._sessions.pop(identity, None)

    def snapshot(self) -> List[Tuple[Address, S]]:
        with self._lock:
            return list(self._sessions.items())

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
