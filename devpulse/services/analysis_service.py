"""
Analysis service coordinating dashboard requests with the job watcher.
"""

from collections import OrderedDict
from typing import Any, Dict, List, Optional

import structlog

from ..config import settings
from ..models.analysis_models import (
    AnalysisJobView, AnalysisKind, AnalysisSubject, ResourceSnapshot, TerminalOutcome
)
from .devpulse_client import DevPulseClient
from .job_watcher import AsyncJobWatcher, WatchHandle

logger = structlog.get_logger(__name__)


class AnalysisService:
    """Service for starting, tracking and cancelling analysis watches."""

    def __init__(
        self,
        client: DevPulseClient,
        watcher: Optional[AsyncJobWatcher] = None,
        history_limit: Optional[int] = None
    ):
        """Initialize the service with a backend client and its watcher."""
        self.client = client
        self.watcher = watcher or AsyncJobWatcher.from_client(client)
        self.history_limit = history_limit or settings.job_history_limit

        # Watches by job id, oldest first
        self._handles: "OrderedDict[str, WatchHandle]" = OrderedDict()

    async def start_repository_analysis(
        self,
        repository_id: str,
        known_result: Optional[Dict[str, Any]] = None
    ) -> WatchHandle:
        """Start an AI summary of a whole repository."""
        subject = AnalysisSubject(repository_id=repository_id)
        return await self._start(subject, AnalysisKind.REPOSITORY, known_result)

    async def start_pull_request_analysis(
        self,
        repository_id: str,
        pull_request_number: int,
        known_result: Optional[Dict[str, Any]] = None
    ) -> WatchHandle:
        """Start an AI review of one pull request."""
        subject = AnalysisSubject(repository_id=repository_id, pull_request_number=pull_request_number)
        return await self._start(subject, AnalysisKind.PULL_REQUEST, known_result)

    async def start_release_risk_analysis(
        self,
        repository_id: str,
        pr_ids: List[str],
        known_result: Optional[Dict[str, Any]] = None
    ) -> WatchHandle:
        """Start a release risk assessment over the selected pull requests."""
        if not pr_ids:
            raise ValueError("No pull requests selected")
        subject = AnalysisSubject(repository_id=repository_id)
        return await self._start(subject, AnalysisKind.RELEASE_RISK, known_result, {"pr_ids": list(pr_ids)})

    async def _start(
        self,
        subject: AnalysisSubject,
        kind: AnalysisKind,
        known_result: Optional[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None
    ) -> WatchHandle:
        handle = await self.watcher.start(subject, kind, known_result=known_result, options=options)
        self._remember(handle)
        return handle

    def _remember(self, handle: WatchHandle) -> None:
        self._handles[handle.job_id] = handle

        # Evict the oldest finished watches first; running ones are kept
        excess = len(self._handles) - self.history_limit
        if excess <= 0:
            return
        for job_id in [job_id for job_id, h in self._handles.items() if not h.active][:excess]:
            del self._handles[job_id]

    def get_handle(self, job_id: str) -> Optional[WatchHandle]:
        return self._handles.get(job_id)

    def get_job(self, job_id: str) -> Optional[AnalysisJobView]:
        handle = self._handles.get(job_id)
        if handle is None:
            return None
        return AnalysisJobView.from_job(handle.job, handle.outcome)

    def list_jobs(self, active_only: bool = False) -> List[AnalysisJobView]:
        """Jobs for dashboard display, newest first."""
        handles = reversed(list(self._handles.values()))
        return [
            AnalysisJobView.from_job(handle.job, handle.outcome)
            for handle in handles
            if handle.active or not active_only
        ]

    def cancel(self, job_id: str) -> Optional[AnalysisJobView]:
        """Cancel a watch; cancelling a finished or cancelled one changes nothing."""
        handle = self._handles.get(job_id)
        if handle is None:
            return None
        self.watcher.cancel(handle)
        return AnalysisJobView.from_job(handle.job, handle.outcome)

    async def wait_for_outcome(self, job_id: str) -> Optional[TerminalOutcome]:
        handle = self._handles.get(job_id)
        if handle is None:
            return None
        return await handle.wait()

    async def refresh(self, repository_id: str, pull_request_number: Optional[int] = None) -> ResourceSnapshot:
        """Manual refresh of a resource, e.g. after a watch timed out."""
        subject = AnalysisSubject(repository_id=repository_id, pull_request_number=pull_request_number)
        snapshot = await self.client.fetch_current_state(subject)

        logger.info("Refreshed analysis resource", subject=subject.key)
        return snapshot

    @property
    def active_count(self) -> int:
        return len(self.watcher.active_handles())

    async def shutdown(self) -> None:
        await self.watcher.shutdown()
