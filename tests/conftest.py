"""
Pytest configuration for Build Observer tests.

This module provides:
1. Async test support without pytest-asyncio
2. A deterministic fake scheduler (timers fire only when told to)
3. A scripted log fetcher that can hold responses to force out-of-order completion
"""

import asyncio
import functools
from typing import Any, Callable, Dict, List

import pytest

from build_observer.build_client import BuildRecord, BuildRef, BuildServiceError, LogFetchResult


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


async def settle(rounds: int = 10) -> None:
    """Let pending callbacks and ready tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# -----------------------------------------------------------------------------
# Fake Timer
# -----------------------------------------------------------------------------
class FakeTimerHandle:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Stands in for loop.call_later; tick() fires every armed handle once."""

    def __init__(self):
        self.handles: List[FakeTimerHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimerHandle:
        handle = FakeTimerHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def armed(self) -> List[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def tick(self) -> int:
        due = self.armed
        for handle in due:
            handle.fired = True
            handle.callback()
        return len(due)


# -----------------------------------------------------------------------------
# Scripted Fetcher
# -----------------------------------------------------------------------------
class ScriptedFetcher:
    """
    Async log fetcher returning queued results in call order.

    A queued Exception instance is raised instead of returned. hold(n) makes
    the n-th call (1-based) wait until the returned event is set.
    """

    def __init__(self, *results: Any, default: LogFetchResult = None):
        self.results = list(results)
        self.default = default or LogFetchResult(text="", found=True)
        self.calls: List[BuildRef] = []
        self._gates: Dict[int, asyncio.Event] = {}

    def hold(self, call_number: int) -> asyncio.Event:
        event = asyncio.Event()
        self._gates[call_number] = event
        return event

    async def __call__(self, ref: BuildRef) -> LogFetchResult:
        self.calls.append(ref)
        number = len(self.calls)
        result = self.results.pop(0) if self.results else self.default
        gate = self._gates.get(number)
        if gate is not None:
            await gate.wait()
        if isinstance(result, Exception):
            raise result
        return result


class FakeBuildClient:
    """BuildServiceClient stand-in backed by in-memory builds and a fetcher."""

    def __init__(self, fetcher: ScriptedFetcher, builds: Dict[Any, List[Dict[str, Any]]] = None):
        self.fetcher = fetcher
        self.builds = builds or {}
        self.list_calls: List[Any] = []
        self.deploys: List[Any] = []
        self.fail_listing = False
        self.fail_deploy = False

    async def list_builds(self, project_id):
        self.list_calls.append(project_id)
        if self.fail_listing:
            raise BuildServiceError("List builds failed with HTTP 500", status_code=500)
        return [BuildRecord.model_validate(b) for b in self.builds.get(project_id, [])]

    async def fetch_log(self, ref: BuildRef) -> LogFetchResult:
        return await self.fetcher(ref)

    async def trigger_deploy(self, project_id) -> None:
        if self.fail_deploy:
            raise BuildServiceError("Deploy failed with HTTP 500", status_code=500)
        self.deploys.append(project_id)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def sample_builds():
    """Build list for project 7 as served by the build service."""
    return {
        7: [
            {"id": 43, "pipeline_run_name": "run-43", "status": "Running",
             "start_time": "2026-01-19T12:00:00Z"},
            {"id": 42, "pipeline_run_name": "run-42", "status": "Failed",
             "start_time": "2026-01-19T11:00:00Z"},
            {"id": 41, "pipeline_run_name": "run-41", "status": "New",
             "start_time": "2026-01-19T10:00:00Z"},
        ]
    }


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
TEST_PROJECT_ID = 7
TEST_PROJECT_NAME = "shop-frontend"
TEST_RUN_NAME = "run-42"
