"""
Log Synchronizer Tests

Proves:
1. SCHEDULING: live builds poll, finished builds are fetched exactly once
2. TRANSITIONS: live -> finished issues one final fetch and tears the timer down
3. ORDERING: late, older responses never overwrite newer content
4. FAILURE ABSORPTION: not-found and errors become snapshot state, polling goes on
5. LIFECYCLE: stop() is idempotent, misuse fails loudly, STOPPED is final
"""

import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from build_observer.build_client import BuildRef, BuildServiceError, LogFetchResult
from build_observer.log_synchronizer import (
    ERROR_MESSAGE,
    LOADING_MESSAGE,
    EMPTY_LOG_MESSAGE,
    NOT_FOUND_MESSAGE,
    FetchOutcome,
    LogSnapshot,
    LogSynchronizer,
    SessionLifecycleError,
    SyncPhase,
)
from build_observer.status_classifier import LifecycleState

from tests.conftest import FakeScheduler, ScriptedFetcher, async_test, settle

REF = BuildRef(run_name="run-42", project=7)


def ok(text):
    return LogFetchResult(text=text, found=True)


def make_session(fetcher, scheduler=None, **kwargs):
    return LogSynchronizer(fetcher, interval=3.0, scheduler=scheduler or FakeScheduler(), **kwargs)


# =============================================================================
# Start behavior
# =============================================================================
class TestStart:
    """start() decides between polling and a single fetch."""

    @async_test
    async def test_terminal_status_fetches_once_without_timer(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("build failed at step 3"))
        session = make_session(fetcher, scheduler)

        session.start(REF, "Failed")
        assert session.phase == SyncPhase.FETCHING_ONCE
        await session.wait_for_pending()

        assert len(fetcher.calls) == 1
        assert scheduler.handles == []
        assert session.is_live is False
        assert session.phase == SyncPhase.STOPPED
        assert session.state == LifecycleState.FAILED
        assert session.get_snapshot().text == "build failed at step 3"

    @async_test
    async def test_live_status_fetches_and_arms_timer(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("cloning"))
        session = make_session(fetcher, scheduler)

        session.start(REF, "running")
        assert session.phase == SyncPhase.FETCHING_INITIAL
        assert len(scheduler.armed) == 1
        assert scheduler.armed[0].delay == 3.0

        await session.wait_for_pending()
        assert len(fetcher.calls) == 1
        assert fetcher.calls[0] == REF
        assert session.phase == SyncPhase.POLLING
        assert session.is_live is True

    @async_test
    async def test_unknown_status_is_polled(self):
        scheduler = FakeScheduler()
        session = make_session(ScriptedFetcher(), scheduler)

        session.start(REF, "queued-for-approval")

        assert session.state == LifecycleState.UNKNOWN
        assert len(scheduler.armed) == 1

    @async_test
    async def test_each_tick_fetches_and_rearms(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher()
        session = make_session(fetcher, scheduler)
        session.start(REF, "pending")
        await session.wait_for_pending()

        for expected in (2, 3, 4):
            assert scheduler.tick() == 1
            await session.wait_for_pending()
            assert session.fetch_count == expected
            assert len(scheduler.armed) == 1

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            LogSynchronizer(ScriptedFetcher(), interval=0)


# =============================================================================
# Status updates
# =============================================================================
class TestUpdateStatus:
    """update_status() re-evaluates scheduling without restarting fetches."""

    @async_test
    async def test_live_to_live_keeps_timer(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher()
        session = make_session(fetcher, scheduler)
        session.start(REF, "pending")
        await session.wait_for_pending()
        handle = scheduler.armed[0]

        phase = session.update_status("building...")

        assert phase == SyncPhase.POLLING
        assert scheduler.armed == [handle]
        assert session.fetch_count == 1
        assert session.state == LifecycleState.IN_PROGRESS

    @async_test
    async def test_live_to_terminal_issues_single_final_fetch(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("a"), ok("a\nb"))
        session = make_session(fetcher, scheduler)
        session.start(REF, "running")
        await session.wait_for_pending()

        phase = session.update_status("Succeeded")

        assert phase == SyncPhase.FINAL_FETCH
        assert scheduler.armed == []
        assert session.fetch_count == 2
        assert session.is_live is False

        await session.wait_for_pending()
        assert session.phase == SyncPhase.STOPPED
        assert session.get_snapshot().text == "a\nb"
        # Still readable, still the owner's session
        assert session.active is True

    @async_test
    async def test_no_timer_after_terminal_even_with_more_updates(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher()
        session = make_session(fetcher, scheduler)
        session.start(REF, "running")
        session.update_status("failed")
        await session.wait_for_pending()

        session.update_status("failed")
        session.update_status("success")
        session.update_status("running")
        await settle()

        assert scheduler.armed == []
        assert scheduler.tick() == 0
        assert session.fetch_count == 2

    @async_test
    async def test_terminal_regression_is_logged_and_ignored(self, caplog):
        scheduler = FakeScheduler()
        session = make_session(ScriptedFetcher(), scheduler)
        session.start(REF, "succeeded")
        await session.wait_for_pending()

        with caplog.at_level(logging.WARNING, logger="log_synchronizer"):
            phase = session.update_status("running")

        assert phase == SyncPhase.STOPPED
        assert session.state == LifecycleState.SUCCEEDED
        assert scheduler.handles == []
        assert "Unsupported transition" in caplog.text

    @async_test
    async def test_terminal_while_initial_fetch_in_flight(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("early"), ok("complete"))
        gate = fetcher.hold(1)
        session = make_session(fetcher, scheduler)
        session.start(REF, "running")
        await settle()

        session.update_status("failed")
        assert scheduler.armed == []
        assert session.fetch_count == 2

        gate.set()
        await session.wait_for_pending()
        assert session.get_snapshot().sequence == 2
        assert session.get_snapshot().text == "complete"
        assert session.phase == SyncPhase.STOPPED

    def test_update_before_start_fails_loudly(self):
        session = make_session(ScriptedFetcher())
        with pytest.raises(SessionLifecycleError):
            session.update_status("running")

    @async_test
    async def test_update_after_stop_is_noop(self):
        scheduler = FakeScheduler()
        session = make_session(ScriptedFetcher(), scheduler)
        session.start(REF, "running")
        session.stop()

        assert session.update_status("succeeded") == SyncPhase.STOPPED
        assert session.fetch_count == 1


# =============================================================================
# Ordering
# =============================================================================
class TestSequenceOrdering:
    """Fetch results are applied by sequence, not completion order."""

    @async_test
    async def test_older_response_never_overwrites_newer(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("first"), ok("second"))
        gate = fetcher.hold(1)
        session = make_session(fetcher, scheduler)

        session.start(REF, "running")
        await settle()
        scheduler.tick()
        await settle()

        assert session.get_snapshot().text == "second"
        assert session.get_snapshot().sequence == 2

        gate.set()
        await session.wait_for_pending()
        assert session.get_snapshot().text == "second"
        assert session.get_snapshot().sequence == 2

    @async_test
    async def test_overlapping_fetches_are_allowed(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher()
        fetcher.hold(1)
        fetcher.hold(2)
        session = make_session(fetcher, scheduler)

        session.start(REF, "running")
        await settle()
        scheduler.tick()
        await settle()

        assert session.in_flight == 2
        assert len(scheduler.armed) == 1

    @async_test
    async def test_late_response_after_stop_is_discarded(self):
        fetcher = ScriptedFetcher(ok("stale"))
        gate = fetcher.hold(1)
        session = make_session(fetcher)
        session.start(REF, "running")
        await settle()

        session.stop()
        gate.set()
        await session.wait_for_pending()

        assert session.get_snapshot().outcome == FetchOutcome.PENDING
        assert session.get_snapshot().text == ""

    @async_test
    async def test_response_for_replaced_session_is_discarded(self):
        current = {"session": None}
        session = make_session(ScriptedFetcher(ok("old build")), is_current=lambda s: s is current["session"])
        session.start(REF, "succeeded")
        await session.wait_for_pending()

        assert session.get_snapshot().outcome == FetchOutcome.PENDING


# =============================================================================
# Failure policy
# =============================================================================
class TestFailurePolicy:
    """Not-found and transport failures never stop polling or raise."""

    @async_test
    async def test_not_found_shows_placeholder_and_keeps_polling(self):
        scheduler = FakeScheduler()
        session = make_session(ScriptedFetcher(LogFetchResult(text="", found=False)), scheduler)

        session.start(REF, "New")
        await session.wait_for_pending()

        snapshot = session.get_snapshot()
        assert snapshot.outcome == FetchOutcome.NOT_FOUND
        assert snapshot.display_text == NOT_FOUND_MESSAGE
        assert session.is_live is True

    @async_test
    async def test_error_keeps_last_good_text(self):
        scheduler = FakeScheduler()
        fetcher = ScriptedFetcher(ok("line 1"), BuildServiceError("boom", status_code=502), ok("line 1\nline 2"))
        session = make_session(fetcher, scheduler)
        session.start(REF, "running")
        await session.wait_for_pending()

        scheduler.tick()
        await session.wait_for_pending()

        snapshot = session.get_snapshot()
        assert snapshot.outcome == FetchOutcome.ERROR
        assert snapshot.failed is True
        assert snapshot.text == "line 1"
        assert snapshot.message == ERROR_MESSAGE
        assert snapshot.display_text == "line 1"
        assert session.is_live is True

        scheduler.tick()
        await session.wait_for_pending()
        assert session.get_snapshot().outcome == FetchOutcome.OK
        assert session.get_snapshot().text == "line 1\nline 2"

    @async_test
    async def test_error_without_content_shows_retry_message(self):
        session = make_session(ScriptedFetcher(BuildServiceError("timeout")))
        session.start(REF, "running")
        await session.wait_for_pending()

        assert session.get_snapshot().display_text == ERROR_MESSAGE

    @async_test
    async def test_unexpected_exception_is_absorbed(self):
        scheduler = FakeScheduler()
        session = make_session(ScriptedFetcher(RuntimeError("decoder exploded")), scheduler)
        session.start(REF, "running")
        await session.wait_for_pending()

        assert session.get_snapshot().outcome == FetchOutcome.ERROR
        assert len(scheduler.armed) == 1

    @async_test
    async def test_listener_failure_does_not_break_session(self):
        listener = MagicMock(side_effect=ValueError("render failed"))
        session = make_session(ScriptedFetcher(ok("x")), on_update=listener)
        session.start(REF, "success")
        await session.wait_for_pending()

        listener.assert_called_once()
        assert session.get_snapshot().text == "x"
        assert session.phase == SyncPhase.STOPPED


# =============================================================================
# Stop / lifecycle
# =============================================================================
class TestStopAndLifecycle:

    @async_test
    async def test_stop_is_idempotent(self):
        handle = MagicMock()
        scheduler = MagicMock(return_value=handle)
        session = LogSynchronizer(ScriptedFetcher(), interval=3.0, scheduler=scheduler)
        session.start(REF, "running")

        session.stop()
        session.stop()

        handle.cancel.assert_called_once()
        assert session.active is False
        assert session.phase == SyncPhase.STOPPED

    def test_stop_before_start_is_safe(self):
        session = make_session(ScriptedFetcher())
        session.stop()
        session.stop()
        assert session.phase == SyncPhase.STOPPED

    @async_test
    async def test_no_restart_after_stop(self):
        session = make_session(ScriptedFetcher())
        session.start(REF, "running")
        session.stop()

        with pytest.raises(SessionLifecycleError):
            session.start(REF, "running")

    @async_test
    async def test_double_start_fails(self):
        session = make_session(ScriptedFetcher())
        session.start(REF, "running")

        with pytest.raises(SessionLifecycleError):
            session.start(BuildRef(run_name="run-43"), "running")

    @async_test
    async def test_real_event_loop_timer(self):
        fetcher = ScriptedFetcher()
        session = LogSynchronizer(fetcher, interval=0.01)
        session.start(REF, "running")

        await asyncio.sleep(0.1)
        session.stop()
        await session.wait_for_pending()
        fetched = session.fetch_count

        assert fetched >= 2
        await asyncio.sleep(0.05)
        assert session.fetch_count == fetched


# =============================================================================
# Snapshot rendering
# =============================================================================
class TestSnapshot:

    def test_initial_snapshot_is_loading(self):
        assert LogSnapshot().display_text == LOADING_MESSAGE

    def test_empty_ok_log(self):
        assert LogSnapshot(outcome=FetchOutcome.OK).display_text == EMPTY_LOG_MESSAGE

    def test_to_dict(self):
        data = LogSnapshot(text="hello", outcome=FetchOutcome.OK, sequence=3).to_dict()
        assert data["text"] == "hello"
        assert data["outcome"] == "ok"
        assert data["sequence"] == 3
        assert data["display_text"] == "hello"
        assert data["fetched_at"] is None

    def test_get_snapshot_never_fetches(self):
        fetcher = ScriptedFetcher()
        session = make_session(fetcher)
        session.get_snapshot()
        assert fetcher.calls == []
