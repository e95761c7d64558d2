"""
Watcher for asynchronous analysis jobs.

An analysis is triggered on the DevPulse backend and finishes later. The
watcher learns about completion from the backend's event stream, falls back
to polling the analyzed resource once if the stream breaks, and gives up
after a deadline. Each job yields exactly one terminal outcome unless the
watch is cancelled first.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog

from ..config import settings
from ..exceptions import AlreadyInProgress, AnalysisFailed, DevPulseError, TimedOut, TransportDegraded, TriggerFailed
from ..models.analysis_models import (
    AnalysisJob, AnalysisKind, AnalysisSubject, JobStatus, ResourceSnapshot,
    StatusUpdate, TerminalOutcome, WatchChannel, extract_result
)

logger = structlog.get_logger(__name__)

TriggerAnalysis = Callable[[AnalysisSubject, AnalysisKind, Optional[Dict[str, Any]]], Awaitable[Any]]
OpenEventStream = Callable[[AnalysisSubject, AnalysisKind], AsyncIterator[StatusUpdate]]
FetchCurrentState = Callable[[AnalysisSubject], Awaitable[ResourceSnapshot]]
OutcomeCallback = Callable[[TerminalOutcome], Any]


def _current_task() -> Optional["asyncio.Task[Any]"]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class WatchSession:
    """Stream task, poll task and deadline timer backing one in-flight job."""

    def __init__(self, job: AnalysisJob, deadline: float, baseline: Optional[Dict[str, Any]]):
        self.job = job
        self.deadline = deadline
        self.baseline = baseline
        self.alive = True
        self.fallback_used = False

        self.stream_task: Optional[asyncio.Task] = None
        self.poll_task: Optional[asyncio.Task] = None
        self.deadline_timer: Optional[asyncio.TimerHandle] = None

    def release(self) -> None:
        """Stop every channel and the deadline timer. Safe to call repeatedly."""
        self.alive = False
        current = _current_task()

        # A task that finishes the job itself returns on its own
        for task in (self.stream_task, self.poll_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        if self.deadline_timer is not None:
            self.deadline_timer.cancel()

        self.job.channel = WatchChannel.NONE

    async def wait_closed(self) -> None:
        """Wait until the background tasks have actually exited."""
        current = _current_task()
        tasks = [
            task for task in (self.stream_task, self.poll_task)
            if task is not None and task is not current
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class WatchHandle:
    """Caller-side reference to one watched analysis job."""

    def __init__(self, watcher: "AsyncJobWatcher", job: AnalysisJob):
        self._watcher = watcher
        self.job = job
        self.session: Optional[WatchSession] = None
        self.outcome: Optional[TerminalOutcome] = None
        self.cancelled = False

        self._callbacks: List[OutcomeCallback] = []
        self._waiters: List[asyncio.Future] = []
        self._callback_tasks: Set["asyncio.Future[Any]"] = set()

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def done(self) -> bool:
        return self.outcome is not None

    @property
    def active(self) -> bool:
        return not self.done and not self.cancelled

    def on_terminal(self, callback: OutcomeCallback) -> None:
        self._watcher.on_terminal(self, callback)

    def cancel(self) -> None:
        self._watcher.cancel(self)

    async def wait(self) -> Optional[TerminalOutcome]:
        """Wait for the terminal outcome; None if the watch gets cancelled."""
        if self.done or self.cancelled:
            return self.outcome
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        return await waiter

    async def wait_closed(self) -> None:
        if self.session is not None:
            await self.session.wait_closed()

    def _invoke(self, callback: OutcomeCallback) -> None:
        try:
            result = callback(self.outcome)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_done)
        except Exception as e:
            self._log_callback_error(e)

    def _callback_done(self, task: "asyncio.Future[Any]") -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log_callback_error(error)

    def _log_callback_error(self, error: BaseException) -> None:
        logger.error("Terminal outcome callback failed",
                    job_id=self.job_id,
                    error=str(error),
                    error_type=type(error).__name__)

    def _deliver(self, outcome: TerminalOutcome) -> None:
        self.outcome = outcome
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback)
        self._resolve_waiters()

    def _resolve_waiters(self) -> None:
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(self.outcome)


class AsyncJobWatcher:
    """
    Trigger analysis jobs and report exactly one terminal outcome for each.

    The watcher is parameterized by the three backend operations, so the same
    state machine serves repository, pull request and release-risk analyses.
    """

    def __init__(
        self,
        trigger_analysis: TriggerAnalysis,
        open_event_stream: OpenEventStream,
        fetch_current_state: FetchCurrentState,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self._trigger_analysis = trigger_analysis
        self._open_event_stream = open_event_stream
        self._fetch_current_state = fetch_current_state
        self.max_wait = max_wait if max_wait is not None else settings.analysis_max_wait
        self.poll_interval = poll_interval if poll_interval is not None else settings.analysis_poll_interval

        self._active: Dict[Tuple[AnalysisSubject, AnalysisKind], WatchHandle] = {}

    @classmethod
    def from_client(cls, client: Any, **kwargs: Any) -> "AsyncJobWatcher":
        """Build a watcher on top of a DevPulseClient."""
        return cls(client.trigger_analysis, client.open_event_stream, client.fetch_current_state, **kwargs)

    def get(self, subject: AnalysisSubject, kind: AnalysisKind) -> Optional[WatchHandle]:
        return self._active.get((subject, AnalysisKind(kind)))

    def active_handles(self) -> List[WatchHandle]:
        return list(self._active.values())

    async def start(
        self,
        subject: AnalysisSubject,
        kind: AnalysisKind,
        known_result: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> WatchHandle:
        """
        Trigger an analysis and start watching it.

        Args:
            subject: Repository or pull request to analyze
            kind: Kind of analysis
            known_result: Result the caller already shows for the subject; the
                polling fallback only reports content that differs from it.
                When omitted, the resource is read once before the trigger
                and its current result is used instead
            options: Extra trigger parameters (e.g. ``pr_ids`` for release risk)

        Returns:
            WatchHandle; already terminal when the trigger failed

        Raises:
            AlreadyInProgress: a watch for the same subject and kind is running
            ValueError: the subject does not fit the analysis kind
        """
        kind = AnalysisKind(kind)
        subject.validate_for(kind)

        key = (subject, kind)
        existing = self._active.get(key)
        if existing is not None:
            raise AlreadyInProgress(subject.key, kind.value, existing.job_id)

        loop = asyncio.get_running_loop()
        job = AnalysisJob(subject=subject, kind=kind)
        handle = WatchHandle(self, job)
        self._active[key] = handle

        job.transition(JobStatus.REQUESTED)
        job.started_at = datetime.now()
        deadline = loop.time() + self.max_wait

        logger.info("Triggering analysis",
                   job_id=job.job_id,
                   subject=subject.key,
                   kind=kind.value)

        try:
            if known_result is None:
                baseline = await self._read_baseline(job)
            else:
                baseline = extract_result(kind, known_result)
            if handle.cancelled:
                return handle

            await self._trigger_analysis(subject, kind, options)
        except asyncio.CancelledError:
            self.cancel(handle)
            raise
        except Exception as e:
            if handle.cancelled:
                return handle
            error = e if isinstance(e, TriggerFailed) else TriggerFailed(str(e) or type(e).__name__)
            logger.error("Failed to trigger analysis",
                        job_id=job.job_id,
                        subject=subject.key,
                        kind=kind.value,
                        error=str(e),
                        error_type=type(e).__name__)
            self._finish(handle, JobStatus.FAILED, error=error)
            return handle

        if handle.cancelled:
            return handle

        job.transition(JobStatus.IN_PROGRESS)
        session = WatchSession(job, deadline, baseline)
        handle.session = session
        session.deadline_timer = loop.call_at(deadline, self._on_deadline, handle)

        job.channel = WatchChannel.STREAM
        session.stream_task = asyncio.ensure_future(self._consume_stream(handle, session))

        logger.info("Analysis triggered, watching for completion",
                   job_id=job.job_id,
                   subject=subject.key,
                   kind=kind.value,
                   max_wait=self.max_wait)

        return handle

    def cancel(self, handle: WatchHandle) -> None:
        """Stop watching; no outcome is delivered afterwards. Idempotent."""
        if handle.done or handle.cancelled:
            return

        handle.cancelled = True
        if handle.session is not None:
            handle.session.release()

        job = handle.job
        if job.status != JobStatus.IDLE:
            job.transition(JobStatus.IDLE)
        self._forget(handle)
        handle._resolve_waiters()

        logger.info("Analysis watch cancelled",
                   job_id=job.job_id,
                   subject=job.subject.key,
                   kind=job.kind.value)

    def on_terminal(self, handle: WatchHandle, callback: OutcomeCallback) -> None:
        """Register a callback for the terminal outcome; runs now if it already happened."""
        if handle.cancelled:
            return
        if handle.outcome is not None:
            handle._invoke(callback)
            return
        handle._callbacks.append(callback)

    async def shutdown(self) -> None:
        """Cancel every active watch and wait for its tasks to exit."""
        handles = self.active_handles()
        for handle in handles:
            self.cancel(handle)
        for handle in handles:
            await handle.wait_closed()

        if handles:
            logger.info("Analysis watcher shut down", cancelled=len(handles))

    def _forget(self, handle: WatchHandle) -> None:
        key = (handle.job.subject, handle.job.kind)
        if self._active.get(key) is handle:
            del self._active[key]

    async def _read_baseline(self, job: AnalysisJob) -> Optional[Dict[str, Any]]:
        """Result the resource already carries before the analysis runs."""
        try:
            snapshot = await self._fetch_current_state(job.subject)
        except Exception as e:
            logger.warning("Failed to read current analysis result",
                          job_id=job.job_id,
                          subject=job.subject.key,
                          error=str(e),
                          error_type=type(e).__name__)
            return None
        return snapshot.result_for(job.kind)

    def _finish(
        self,
        handle: WatchHandle,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[DevPulseError] = None,
    ) -> bool:
        """Perform the single terminal transition of a job."""
        if not handle.active:
            return False

        session = handle.session
        if session is not None:
            if not session.alive:
                return False
            session.release()

        job = handle.job
        job.transition(status)
        job.finished_at = datetime.now()
        job.result = result if status == JobStatus.COMPLETED else None
        job.error_message = str(error) if error is not None else None
        self._forget(handle)

        outcome = TerminalOutcome(
            job_id=job.job_id,
            status=status,
            result=job.result,
            error=error,
            message=job.error_message,
            finished_at=job.finished_at,
        )

        log = logger.warning if status != JobStatus.COMPLETED else logger.info
        log("Analysis finished",
            job_id=job.job_id,
            subject=job.subject.key,
            kind=job.kind.value,
            status=status.value,
            error_type=outcome.error_type)

        handle._deliver(outcome)
        return True

    async def _consume_stream(self, handle: WatchHandle, session: WatchSession) -> None:
        job = handle.job
        error: Optional[Exception] = None
        stream: Optional[AsyncIterator[StatusUpdate]] = None

        try:
            stream = self._open_event_stream(job.subject, job.kind)
            async for update in stream:
                if not session.alive:
                    break
                self._handle_update(handle, update)
                if not session.alive:
                    break
        except Exception as e:
            error = e
        finally:
            if stream is not None:
                await self._close_stream(stream, job)

        if session.alive:
            self._fall_back_to_polling(
                handle,
                error or TransportDegraded("Event stream ended before the analysis finished"),
            )

    async def _close_stream(self, stream: AsyncIterator[StatusUpdate], job: AnalysisJob) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("Error while closing analysis stream",
                        job_id=job.job_id,
                        error=str(e))

    def _handle_update(self, handle: WatchHandle, update: StatusUpdate) -> None:
        job = handle.job

        if update.is_completed:
            result = update.result_for(job.kind)
            if result:
                self._finish(handle, JobStatus.COMPLETED, result=result)
            else:
                # Completion of another analysis kind sharing the stream
                logger.debug("Ignoring completion without matching content",
                            job_id=job.job_id,
                            kind=job.kind.value,
                            keys=list(update.raw.keys()))
            return

        if update.is_error:
            self._finish(handle, JobStatus.FAILED, error=AnalysisFailed(update.message or "Analysis failed"))
            return

        job.progress = update.status
        logger.debug("Analysis progress",
                    job_id=job.job_id,
                    status=update.status,
                    progress=update.progress)

    def _fall_back_to_polling(self, handle: WatchHandle, error: Exception) -> None:
        session = handle.session
        if session is None or not session.alive or session.fallback_used:
            return

        session.fallback_used = True
        handle.job.channel = WatchChannel.POLLING
        logger.warning("Analysis stream unavailable, falling back to polling",
                      job_id=handle.job_id,
                      subject=handle.job.subject.key,
                      error=str(error),
                      error_type=type(error).__name__,
                      poll_interval=self.poll_interval)

        session.poll_task = asyncio.ensure_future(self._poll(handle, session))

    async def _poll(self, handle: WatchHandle, session: WatchSession) -> None:
        job = handle.job

        while session.alive:
            await asyncio.sleep(self.poll_interval)
            if not session.alive:
                return

            try:
                snapshot = await self._fetch_current_state(job.subject)
            except Exception as e:
                logger.warning("Polling for analysis result failed",
                              job_id=job.job_id,
                              subject=job.subject.key,
                              error=str(e))
                continue

            if not session.alive:
                return

            fresh = snapshot.result_for(job.kind)
            if fresh and fresh != session.baseline:
                self._finish(handle, JobStatus.COMPLETED, result=fresh)
                return

    def _on_deadline(self, handle: WatchHandle) -> None:
        session = handle.session
        if session is None or not session.alive:
            return
        self._finish(handle, JobStatus.TIMED_OUT, error=TimedOut(self.max_wait))
