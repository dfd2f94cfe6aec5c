"""
Observation Surfaces

Thin controllers between the dashboard views and the log sessions:
- InlineLogViewer:     the terminal on a project card, bound to one build
- BuildHistoryBrowser: build list -> selected build's logs, two levels
- DashboardCoordinator: owns the session registry and the build client,
                        hands surfaces out by id

Guarantee shared by both surfaces: exactly one armed polling timer per
visible live build, and zero timers once a surface navigates away, closes
or unmounts.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from .build_client import BuildRecord, BuildRef, BuildServiceClient, BuildServiceError
from .config import DEFAULT_POLL_INTERVAL
from .log_synchronizer import LogSnapshot, LogSynchronizer, Scheduler, SessionLifecycleError
from .session_registry import SessionRegistry
from .status_classifier import badge_label

logger = logging.getLogger("surfaces")

HISTORY_FETCH_ERROR = "Failed to fetch build history"
NO_BUILDS_MESSAGE = "No builds found for this project"


MINUTES_IN_HOUR = 60
MINUTES_IN_DAY = 24 * MINUTES_IN_HOUR
MINUTES_IN_MONTH = 30 * MINUTES_IN_DAY


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def relative_time(timestamp: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Human distance between timestamp and now, e.g. '5 minutes ago'."""
    if timestamp is None:
        return ""
    if now is None:
        now = datetime.now(timezone.utc) if timestamp.tzinfo else datetime.utcnow()
    elif (now.tzinfo is None) != (timestamp.tzinfo is None):
        # Naive values are taken as UTC
        timestamp = timestamp.replace(tzinfo=timezone.utc) if timestamp.tzinfo is None else timestamp
        now = now.replace(tzinfo=timezone.utc) if now.tzinfo is None else now

    seconds = (now - timestamp).total_seconds()
    future = seconds < 0
    seconds = abs(seconds)
    # Half-up rounding to whole minutes, as in date-fns formatDistance
    minutes = int(seconds / 60 + 0.5)

    if seconds < 30:
        distance = "less than a minute"
    elif minutes < 2:
        distance = "1 minute"
    elif minutes < 45:
        distance = f"{minutes} minutes"
    elif minutes < MINUTES_IN_HOUR * 1.5:
        distance = "about 1 hour"
    elif minutes < MINUTES_IN_DAY:
        distance = f"about {_round_half_up(minutes / MINUTES_IN_HOUR)} hours"
    elif minutes < MINUTES_IN_HOUR * 42:
        distance = "1 day"
    elif minutes < MINUTES_IN_MONTH:
        distance = f"{_round_half_up(minutes / MINUTES_IN_DAY)} days"
    elif minutes < MINUTES_IN_MONTH * 2:
        months = _round_half_up(minutes / MINUTES_IN_MONTH)
        distance = "about 1 month" if months == 1 else f"about {months} months"
    else:
        months = minutes // MINUTES_IN_MONTH
        if months < 12:
            distance = f"{months} months"
        else:
            years, remainder = divmod(months, 12)
            if remainder < 3:
                distance = "about 1 year" if years == 1 else f"about {years} years"
            elif remainder < 9:
                distance = "over 1 year" if years == 1 else f"over {years} years"
            else:
                distance = f"almost {years + 1} years"

    return f"in {distance}" if future else f"{distance} ago"


def started_label(build: BuildRecord, now: Optional[datetime] = None) -> str:
    """Start time of a build for display; unparseable wire values are shown as sent."""
    if build.start_time is None:
        return build.start_time_text or ""
    return relative_time(build.start_time, now)


# -----------------------------------------------------------------------------
# Inline Viewer
# -----------------------------------------------------------------------------
class InlineLogViewer:
    """
    Log terminal for one build on a project card.

    show() is called whenever the card's inputs change: a new run name binds
    a fresh session, a new status for the same run only re-evaluates
    scheduling.
    """

    def __init__(self, registry: SessionRegistry, viewer_id: str):
        self.registry = registry
        self.viewer_id = viewer_id
        self._owner = ("inline", viewer_id)
        self._raw_status: Optional[str] = None

    @property
    def session(self) -> Optional[LogSynchronizer]:
        return self.registry.get(self._owner)

    def show(self, ref: Optional[BuildRef], status: Any) -> Optional[LogSynchronizer]:
        """Bind or re-target the viewer. A ref without a run name unmounts."""
        if ref is None or not ref.run_name:
            self.unmount()
            return None

        self._raw_status = status
        current = self.session
        if current is not None and current.active and current.ref == ref:
            current.update_status(status)
            return current

        return self.registry.open(self._owner, ref, status)

    def unmount(self) -> None:
        self.registry.close(self._owner)
        self._raw_status = None

    @property
    def snapshot(self) -> Optional[LogSnapshot]:
        session = self.session
        return session.get_snapshot() if session else None

    @property
    def is_live(self) -> bool:
        session = self.session
        return bool(session and session.is_live)

    @property
    def status_label(self) -> str:
        return badge_label(self._raw_status)

    def to_dict(self) -> Dict[str, Any]:
        session = self.session
        snapshot = self.snapshot
        return {
            "viewer_id": self.viewer_id,
            "build": str(session.ref) if session else None,
            "status": self.status_label if session else None,
            "phase": session.phase.value if session else None,
            "live": self.is_live,
            "snapshot": snapshot.to_dict() if snapshot else None,
        }


# -----------------------------------------------------------------------------
# History Browser
# -----------------------------------------------------------------------------
class BuildHistoryBrowser:
    """
    Build history for one project: list level and detail level.

    Only the detail level owns a session. Leaving it (back, close, reopen)
    always stops that session and clears what is displayed.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: BuildServiceClient,
        project_id: Union[int, str],
        project_name: Optional[str] = None
    ):
        self.registry = registry
        self.client = client
        self.project_id = project_id
        self.project_name = project_name
        self._owner = ("history", project_id)
        self.is_open = False
        self.builds: List[BuildRecord] = []
        self.selected: Optional[BuildRecord] = None
        self.error: Optional[str] = None

    @property
    def session(self) -> Optional[LogSynchronizer]:
        return self.registry.get(self._owner)

    @property
    def snapshot(self) -> Optional[LogSnapshot]:
        session = self.session
        return session.get_snapshot() if session else None

    async def open(self) -> List[BuildRecord]:
        """Open (or reopen) the browser with a freshly fetched build list."""
        self.close()
        self.is_open = True
        await self._load_builds()
        return self.builds

    async def _load_builds(self) -> bool:
        try:
            builds = await self.client.list_builds(self.project_id)
        except BuildServiceError as e:
            logger.error(f"Fetch builds error for project {self.project_id}: {e}")
            self.error = HISTORY_FETCH_ERROR
            return False
        self.builds = builds
        self.error = None
        return True

    def _find(self, build_id: int) -> Optional[BuildRecord]:
        for build in self.builds:
            if build.id == build_id:
                return build
        return None

    def _ref_for(self, build: BuildRecord) -> BuildRef:
        project = self.project_name if self.project_name else self.project_id
        return BuildRef(run_name=build.run_name, project=project)

    def select(self, build: Union[BuildRecord, int]) -> LogSynchronizer:
        """Show one build's logs."""
        if not self.is_open:
            raise SessionLifecycleError("History browser is closed")
        if not isinstance(build, BuildRecord):
            found = self._find(build)
            if found is None:
                raise KeyError(f"Build {build} not in history of project {self.project_id}")
            build = found

        self.selected = build
        return self.registry.open(self._owner, self._ref_for(build), build.raw_status)

    def back(self) -> None:
        """Return to the list level."""
        self.registry.close(self._owner)
        self.selected = None

    def close(self) -> None:
        self.back()
        self.is_open = False
        self.builds = []
        self.error = None

    async def refresh(self) -> List[BuildRecord]:
        """
        Re-fetch the list and feed the selected build's latest status into
        its session. A failed refresh keeps the current list.
        """
        if not self.is_open:
            raise SessionLifecycleError("History browser is closed")
        if not await self._load_builds():
            return self.builds

        if self.selected is not None:
            updated = self._find(self.selected.id)
            session = self.session
            if updated is not None:
                self.selected = updated
                if session is not None and session.active:
                    session.update_status(updated.raw_status)
        return self.builds

    def rows(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """List-level rows in display order."""
        return [
            {
                "id": build.id,
                "title": f"Build #{build.id}",
                "run_name": build.run_name,
                "state": build.lifecycle_state.value,
                "status": badge_label(build.raw_status),
                "started": started_label(build, now),
            }
            for build in self.builds
        ]

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        session = self.session
        snapshot = self.snapshot
        detail = None
        if self.selected is not None:
            detail = {
                "id": self.selected.id,
                "title": f"Build #{self.selected.id} Logs",
                "run_name": self.selected.run_name,
                "status": badge_label(self.selected.raw_status),
                "raw_status": self.selected.raw_status,
                "started": started_label(self.selected, now),
                "live": bool(session and session.is_live),
                "snapshot": snapshot.to_dict() if snapshot else None,
            }
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "open": self.is_open,
            "error": self.error,
            "empty_message": NO_BUILDS_MESSAGE if self.is_open and not self.builds and not self.error else None,
            "builds": self.rows(now),
            "selected": detail,
        }


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------
class DashboardCoordinator:
    """Owns the registry and client, and the surfaces built on top of them."""

    def __init__(
        self,
        client: BuildServiceClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        scheduler: Optional[Scheduler] = None
    ):
        self.client = client
        self.registry = SessionRegistry(client.fetch_log, interval=interval, scheduler=scheduler)
        self._viewers: Dict[str, InlineLogViewer] = {}
        self._browsers: Dict[Union[int, str], BuildHistoryBrowser] = {}

    def inline_viewer(self, viewer_id: str) -> InlineLogViewer:
        if viewer_id not in self._viewers:
            self._viewers[viewer_id] = InlineLogViewer(self.registry, viewer_id)
        return self._viewers[viewer_id]

    def find_viewer(self, viewer_id: str) -> Optional[InlineLogViewer]:
        return self._viewers.get(viewer_id)

    def remove_viewer(self, viewer_id: str) -> None:
        viewer = self._viewers.pop(viewer_id, None)
        if viewer is not None:
            viewer.unmount()

    def history_browser(
        self,
        project_id: Union[int, str],
        project_name: Optional[str] = None
    ) -> BuildHistoryBrowser:
        browser = self._browsers.get(project_id)
        if browser is None:
            browser = BuildHistoryBrowser(self.registry, self.client, project_id, project_name)
            self._browsers[project_id] = browser
        elif project_name:
            browser.project_name = project_name
        return browser

    def find_browser(self, project_id: Union[int, str]) -> Optional[BuildHistoryBrowser]:
        return self._browsers.get(project_id)

    def remove_browser(self, project_id: Union[int, str]) -> None:
        browser = self._browsers.pop(project_id, None)
        if browser is not None:
            browser.close()

    async def trigger_deploy(self, project_id: Union[int, str]) -> None:
        """Fire-and-forget deploy; progress shows up in later build statuses."""
        await self.client.trigger_deploy(project_id)

    def shutdown(self) -> None:
        for viewer_id in list(self._viewers):
            self.remove_viewer(viewer_id)
        for project_id in list(self._browsers):
            self.remove_browser(project_id)
        self.registry.close_all()
        logger.info("Dashboard coordinator shut down")

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self.registry),
            "live_timers": self.registry.active_timer_count(),
            "viewers": len(self._viewers),
            "browsers": len(self._browsers),
        }
