"""
Log Synchronizer - Polling Log Sessions

Keeps one build's log view current with the minimum network activity:
- Live builds (non-terminal status) are polled on a fixed interval
- Finished builds (terminal status) are fetched exactly once
- A live build that finishes gets one final fetch, then polling stops

Session state machine:

    UNBOUND -> FETCHING_INITIAL -> POLLING            (non-terminal status)
    FETCHING_INITIAL | POLLING -> FINAL_FETCH -> STOPPED   (became terminal)
    UNBOUND -> FETCHING_ONCE -> STOPPED               (terminal from the start)
    any -> STOPPED                                    (stop())

There is no way out of STOPPED. Observing the build again requires a new
session.

IMPORTANT:
- At most one armed timer per session, ever
- Fetches are not serialized: a tick may fire while the previous fetch is
  still in flight. Results are reconciled by sequence number, and a result
  is only applied while the session is still the active one for its build
- Fetch failures never propagate to the caller; they become snapshot state
- A terminal state never regresses; terminal -> non-terminal is logged and
  ignored
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .build_client import BuildRef, BuildServiceError, LogFetchResult
from .config import DEFAULT_POLL_INTERVAL
from .status_classifier import LifecycleState, classify, is_terminal

logger = logging.getLogger("log_synchronizer")

# -----------------------------------------------------------------------------
# Messages shown in the log pane
# -----------------------------------------------------------------------------
LOADING_MESSAGE = "Loading logs..."
EMPTY_LOG_MESSAGE = "No logs available"
NOT_FOUND_MESSAGE = "Logs are not available for this build yet."
ERROR_MESSAGE = "Failed to load logs. Retrying..."

LogFetcher = Callable[[BuildRef], Awaitable[LogFetchResult]]
# (delay_seconds, callback) -> handle with cancel()
Scheduler = Callable[[float, Callable[[], None]], Any]
SnapshotListener = Callable[["LogSnapshot"], None]


class FetchOutcome(str, Enum):
    """Outcome of the fetch a snapshot was built from."""
    PENDING = "pending"      # nothing resolved yet
    OK = "ok"
    NOT_FOUND = "not_found"  # log resource does not exist (yet)
    ERROR = "error"          # transient failure, next tick retries


class SyncPhase(str, Enum):
    """Session lifecycle phases."""
    UNBOUND = "unbound"
    FETCHING_INITIAL = "fetching_initial"
    POLLING = "polling"
    FINAL_FETCH = "final_fetch"
    FETCHING_ONCE = "fetching_once"
    STOPPED = "stopped"


class SessionLifecycleError(RuntimeError):
    """A surface used a session outside its lifecycle (programming error)."""


@dataclass(frozen=True)
class LogSnapshot:
    """Latest known log content for a session."""
    text: str = ""
    outcome: FetchOutcome = FetchOutcome.PENDING
    sequence: int = 0
    message: Optional[str] = None
    fetched_at: Optional[datetime] = None

    @property
    def failed(self) -> bool:
        return self.outcome == FetchOutcome.ERROR

    @property
    def display_text(self) -> str:
        """What the log pane shows for this snapshot."""
        if self.outcome == FetchOutcome.PENDING:
            return LOADING_MESSAGE
        if self.outcome == FetchOutcome.NOT_FOUND:
            return self.message or NOT_FOUND_MESSAGE
        if self.outcome == FetchOutcome.ERROR:
            # Keep the last good content visible under the failure indicator
            return self.text or self.message or ERROR_MESSAGE
        return self.text or EMPTY_LOG_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "outcome": self.outcome.value,
            "sequence": self.sequence,
            "message": self.message,
            "display_text": self.display_text,
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
        }


class LogSynchronizer:
    """
    Polling session for a single build's log.

    The session is driven by an explicit start/update_status/stop contract
    so that its scheduling is independent of any UI lifecycle.
    """

    def __init__(
        self,
        fetcher: LogFetcher,
        interval: float = DEFAULT_POLL_INTERVAL,
        scheduler: Optional[Scheduler] = None,
        is_current: Optional[Callable[["LogSynchronizer"], bool]] = None,
        on_update: Optional[SnapshotListener] = None
    ):
        if interval <= 0:
            raise ValueError(f"Polling interval must be positive, got {interval}")
        self._fetcher = fetcher
        self._interval = interval
        self._scheduler = scheduler
        self._is_current = is_current
        self._on_update = on_update

        self._ref: Optional[BuildRef] = None
        self._state: LifecycleState = LifecycleState.UNKNOWN
        self._phase = SyncPhase.UNBOUND
        self._active = False
        self._seen_terminal = False
        self._timer: Optional[Any] = None
        self._next_sequence = 0
        self._applied_sequence = 0
        self._fetch_count = 0
        self._snapshot = LogSnapshot()
        self._pending: Set["asyncio.Future[None]"] = set()

    # -------------------------------------------------------------------------
    # Read-only view
    # -------------------------------------------------------------------------
    @property
    def ref(self) -> Optional[BuildRef]:
        return self._ref

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def active(self) -> bool:
        """False once stop() has been called."""
        return self._active

    @property
    def is_live(self) -> bool:
        """True while a polling timer is armed."""
        return self._timer is not None

    @property
    def fetch_count(self) -> int:
        return self._fetch_count

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def get_snapshot(self) -> LogSnapshot:
        return self._snapshot

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def start(self, ref: BuildRef, initial_status: Any) -> None:
        """Bind the session, fetch immediately and poll if the build is live."""
        if self._phase == SyncPhase.STOPPED:
            raise SessionLifecycleError(f"Session for {ref} was stopped; create a new session")
        if self._phase != SyncPhase.UNBOUND:
            raise SessionLifecycleError(f"Session already bound to {self._ref}")

        self._ref = ref
        self._state = classify(initial_status)
        self._active = True

        if is_terminal(self._state):
            self._seen_terminal = True
            self._phase = SyncPhase.FETCHING_ONCE
            logger.info(f"Session {ref}: {self._state.value}, fetching once")
            self._issue_fetch()
            return

        self._phase = SyncPhase.FETCHING_INITIAL
        logger.info(f"Session {ref}: {self._state.value}, polling every {self._interval}s")
        self._issue_fetch()
        self._arm_timer()

    def update_status(self, new_status: Any) -> SyncPhase:
        """
        Re-evaluate scheduling for a new raw status.

        Returns:
            The session phase after the update
        """
        if self._phase == SyncPhase.UNBOUND:
            raise SessionLifecycleError("update_status() called on a session that was never started")
        if not self._active:
            logger.debug(f"Ignoring status {new_status!r} for stopped session {self._ref}")
            return self._phase

        new_state = classify(new_status)

        if self._seen_terminal:
            if not is_terminal(new_state):
                logger.warning(
                    f"Unsupported transition for {self._ref}: "
                    f"{self._state.value} -> {new_state.value}; keeping {self._state.value}"
                )
            return self._phase

        self._state = new_state
        if not is_terminal(new_state):
            # Still live: the armed timer keeps running as is
            return self._phase

        self._seen_terminal = True
        self._cancel_timer()
        self._phase = SyncPhase.FINAL_FETCH
        logger.info(f"Session {self._ref}: reached {new_state.value}, issuing final fetch")
        self._issue_fetch()
        return self._phase

    def stop(self) -> None:
        """Cancel polling and deactivate. Safe to call repeatedly."""
        if not self._active and self._phase in (SyncPhase.STOPPED, SyncPhase.UNBOUND):
            self._phase = SyncPhase.STOPPED
            return
        self._active = False
        self._cancel_timer()
        self._phase = SyncPhase.STOPPED
        logger.info(f"Session {self._ref} stopped")

    async def wait_for_pending(self) -> None:
        """Wait until every fetch issued so far has resolved."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Timer
    # -------------------------------------------------------------------------
    def _schedule(self, delay: float, callback: Callable[[], None]) -> Any:
        if self._scheduler is not None:
            return self._scheduler(delay, callback)
        return asyncio.get_running_loop().call_later(delay, callback)

    def _arm_timer(self) -> None:
        self._cancel_timer()
        self._timer = self._schedule(self._interval, self._on_tick)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_tick(self) -> None:
        self._timer = None
        if not self._active or self._seen_terminal:
            return
        logger.debug(f"Tick for {self._ref}")
        self._arm_timer()
        self._issue_fetch()

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------
    def _issue_fetch(self) -> None:
        self._next_sequence += 1
        self._fetch_count += 1
        sequence = self._next_sequence
        task = asyncio.ensure_future(self._run_fetch(sequence, self._phase))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_fetch(self, sequence: int, issued_in: SyncPhase) -> None:
        ref = self._ref
        try:
            result = await self._fetcher(ref)
        except BuildServiceError as e:
            logger.warning(f"Log fetch #{sequence} for {ref} failed: {e}")
            snapshot = self._failure(sequence)
        except Exception as e:
            logger.error(f"Unexpected error fetching log #{sequence} for {ref}: {e}")
            snapshot = self._failure(sequence)
        else:
            if result.found:
                snapshot = LogSnapshot(
                    text=result.text,
                    outcome=FetchOutcome.OK,
                    sequence=sequence,
                    fetched_at=datetime.utcnow(),
                )
            else:
                snapshot = LogSnapshot(
                    outcome=FetchOutcome.NOT_FOUND,
                    sequence=sequence,
                    message=NOT_FOUND_MESSAGE,
                    fetched_at=datetime.utcnow(),
                )

        self._apply(snapshot)
        self._advance_phase(issued_in)

    @staticmethod
    def _failure(sequence: int) -> LogSnapshot:
        return LogSnapshot(
            outcome=FetchOutcome.ERROR,
            sequence=sequence,
            message=ERROR_MESSAGE,
            fetched_at=datetime.utcnow(),
        )

    def _accepts(self, sequence: int) -> bool:
        if not self._active:
            return False
        if self._is_current is not None and not self._is_current(self):
            return False
        return sequence > self._applied_sequence

    def _apply(self, snapshot: LogSnapshot) -> None:
        if not self._accepts(snapshot.sequence):
            logger.debug(f"Discarding stale log fetch #{snapshot.sequence} for {self._ref}")
            return
        # Keep the last good text across a failure
        if snapshot.failed:
            snapshot = replace(snapshot, text=self._snapshot.text)
        self._applied_sequence = snapshot.sequence
        self._snapshot = snapshot

        if self._on_update is not None:
            try:
                self._on_update(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed for {self._ref}: {e}")

    def _advance_phase(self, issued_in: SyncPhase) -> None:
        if not self._active:
            return
        if issued_in == SyncPhase.FETCHING_INITIAL and self._phase == SyncPhase.FETCHING_INITIAL:
            self._phase = SyncPhase.POLLING
        elif issued_in in (SyncPhase.FINAL_FETCH, SyncPhase.FETCHING_ONCE) and self._phase == issued_in:
            self._phase = SyncPhase.STOPPED
            logger.info(f"Session {self._ref} finished polling ({self._state.value})")
