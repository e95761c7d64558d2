"""
Shared test fixtures: an in-memory DevPulse backend and watchers wired to it.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from devpulse.models.analysis_models import (
    AnalysisSubject, ResourceSnapshot, StatusUpdate
)
from devpulse.services.job_watcher import AsyncJobWatcher


class FakeBackend:
    """
    Scripted stand-in for the three backend operations.

    ``script`` items are replayed as soon as a stream opens; afterwards the
    stream waits for items sent with ``push``. Items are event bodies (dicts),
    exceptions (raised as transport errors) or ``CLOSE``.
    """

    # Ends the event stream without a terminal event
    CLOSE = object()

    def __init__(self):
        self.trigger_calls: List[Any] = []
        self.trigger_error: Optional[Exception] = None
        self.trigger_gate: Optional[asyncio.Event] = None

        self.script: List[Any] = []
        self.stream_calls = 0
        self.stream_closed = False
        self._queue: Optional[asyncio.Queue] = None

        self.snapshots: List[Any] = []
        self.fetch_calls = 0

    @property
    def queue(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def push(self, item: Any) -> None:
        self.queue.put_nowait(item)

    async def trigger_analysis(self, subject, kind, options=None) -> Dict[str, Any]:
        self.trigger_calls.append((subject, kind, options))
        if self.trigger_gate is not None:
            await self.trigger_gate.wait()
        if self.trigger_error is not None:
            raise self.trigger_error
        return {"status": "queued"}

    async def open_event_stream(self, subject, kind):
        self.stream_calls += 1
        try:
            for item in list(self.script):
                await asyncio.sleep(0)
                if item is self.CLOSE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield StatusUpdate.from_event_data(json.dumps(item))

            while True:
                item = await self.queue.get()
                if item is self.CLOSE:
                    return
                if isinstance(item, Exception):
                    raise item
                yield StatusUpdate.from_event_data(json.dumps(item))
        finally:
            self.stream_closed = True

    async def fetch_current_state(self, subject) -> ResourceSnapshot:
        self.fetch_calls += 1
        if len(self.snapshots) > 1:
            data = self.snapshots.pop(0)
        elif self.snapshots:
            data = self.snapshots[0]
        else:
            data = {}
        if isinstance(data, Exception):
            raise data
        return ResourceSnapshot(subject=subject, data=data)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_watcher(backend: FakeBackend):
    """Build watchers with short timings against the fake backend."""
    def _make(max_wait: float = 2.0, poll_interval: float = 0.05) -> AsyncJobWatcher:
        return AsyncJobWatcher(
            backend.trigger_analysis,
            backend.open_event_stream,
            backend.fetch_current_state,
            max_wait=max_wait,
            poll_interval=poll_interval,
        )
    return _make


@pytest.fixture
def watcher(make_watcher) -> AsyncJobWatcher:
    return make_watcher()


@pytest.fixture
def repo_subject() -> AnalysisSubject:
    return AnalysisSubject(repository_id="repo-1")


@pytest.fixture
def pr_subject() -> AnalysisSubject:
    return AnalysisSubject(repository_id="repo-1", pull_request_number=42)
