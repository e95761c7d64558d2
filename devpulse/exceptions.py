"""
Error taxonomy for analysis jobs and the DevPulse backend.
"""

from typing import Optional


class DevPulseError(Exception):
    """Base class for DevPulse errors."""


class DevPulseAPIError(DevPulseError):
    """A request to the DevPulse backend did not succeed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TriggerFailed(DevPulseAPIError):
    """The request that starts an analysis was rejected or never answered."""


class TransportDegraded(DevPulseAPIError):
    """The event stream broke before the job finished.

    Handled inside the watcher by switching to polling; callers never see it.
    """


class AnalysisFailed(DevPulseError):
    """The analysis engine reported failure on the event stream."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TimedOut(DevPulseError):
    """No completion signal arrived before the deadline.

    Not a failure: the job may still finish server-side and a manual refresh
    can pick the result up later.
    """

    def __init__(self, waited_seconds: float):
        super().__init__(f"Analysis is taking longer than expected ({waited_seconds:g}s)")
        self.message = str(self)
        self.waited_seconds = waited_seconds


class AlreadyInProgress(DevPulseError):
    """A watch for the same subject and analysis kind is still running."""

    def __init__(self, subject_key: str, kind: str, job_id: str):
        super().__init__(f"{kind} already in progress for {subject_key} (job {job_id})")
        self.subject_key = subject_key
        self.kind = kind
        self.job_id = job_id
