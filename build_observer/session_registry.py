"""
Session Registry

Explicit owner of every live log session. Observation surfaces receive the
registry by reference instead of sharing module-level state, so each surface
can only see and tear down the sessions it owns.

Ownership model:
- An owner key identifies one viewing slot (an inline viewer, a history
  browser's detail pane)
- An owner holds at most one session; opening a new one stops the old one
- A session stays "current" only while its owner still points at it, which
  lets late fetch results from a replaced session be discarded
"""

import logging
from typing import Any, Dict, Hashable, List, Optional

from .build_client import BuildRef
from .config import DEFAULT_POLL_INTERVAL
from .log_synchronizer import LogFetcher, LogSynchronizer, Scheduler, SnapshotListener

logger = logging.getLogger("session_registry")


class SessionRegistry:
    """Creates, tracks and stops LogSynchronizer sessions per owner."""

    def __init__(
        self,
        fetcher: LogFetcher,
        interval: float = DEFAULT_POLL_INTERVAL,
        scheduler: Optional[Scheduler] = None
    ):
        self._fetcher = fetcher
        self._interval = interval
        self._scheduler = scheduler
        self._sessions: Dict[Hashable, LogSynchronizer] = {}

    def open(
        self,
        owner: Hashable,
        ref: BuildRef,
        status: Any,
        on_update: Optional[SnapshotListener] = None
    ) -> LogSynchronizer:
        """Replace whatever the owner was watching with a fresh session."""
        self.close(owner)

        session = LogSynchronizer(
            fetcher=self._fetcher,
            interval=self._interval,
            scheduler=self._scheduler,
            is_current=self.is_current,
            on_update=on_update,
        )
        self._sessions[owner] = session
        session.start(ref, status)
        logger.debug(f"Owner {owner!r} now watching {ref}")
        return session

    def get(self, owner: Hashable) -> Optional[LogSynchronizer]:
        return self._sessions.get(owner)

    def close(self, owner: Hashable) -> None:
        session = self._sessions.pop(owner, None)
        if session is not None:
            session.stop()

    def close_all(self) -> None:
        for owner in list(self._sessions):
            self.close(owner)

    def is_current(self, session: LogSynchronizer) -> bool:
        return any(s is session for s in self._sessions.values())

    def owners(self) -> List[Hashable]:
        return list(self._sessions)

    def active_timer_count(self) -> int:
        """Number of sessions with an armed polling timer."""
        return sum(1 for s in self._sessions.values() if s.is_live)

    def __len__(self) -> int:
        return len(self._sessions)
