"""
Pydantic models for analysis jobs and the DevPulse event stream.
"""

import json
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..exceptions import DevPulseError


class AnalysisKind(str, Enum):
    """Kind of analysis the DevPulse engine performs."""
    REPOSITORY = "repository_analysis"
    PULL_REQUEST = "pull_request_analysis"
    RELEASE_RISK = "release_risk_analysis"


class JobStatus(str, Enum):
    """Analysis job status enumeration."""
    IDLE = "idle"
    REQUESTED = "requested"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT})


class WatchChannel(str, Enum):
    """Channel currently used to learn about job completion."""
    NONE = "none"
    STREAM = "stream"
    POLLING = "polling"


class SuggestedAction(str, Enum):
    """What the dashboard should offer after a terminal outcome."""
    NONE = "none"
    RETRY = "retry"
    REFRESH = "refresh"


# Fields of a repository / pull request resource that carry analysis output
RESULT_FIELDS: Dict[AnalysisKind, Tuple[str, ...]] = {
    AnalysisKind.REPOSITORY: ("ai_summary",),
    AnalysisKind.PULL_REQUEST: ("ai_summary", "ai_decision"),
    AnalysisKind.RELEASE_RISK: ("release_risk_score", "release_changelog", "release_risk_analysis"),
}

_CODE_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*(.*?)\s*```\s*$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Unwrap engine output that arrives inside a markdown code fence."""
    text = text.strip()
    match = _CODE_FENCE.match(text)
    if match:
        return match.group(1).strip()
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def extract_result(kind: AnalysisKind, data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Pick the analysis output for ``kind`` out of a resource or event body.

    Returns None when no result field is present and non-empty. A numeric
    score of 0 counts as present.
    """
    if not data:
        return None

    result: Dict[str, Any] = {}
    for field in RESULT_FIELDS[kind]:
        value = data.get(field)
        if value is None:
            continue
        if isinstance(value, str):
            value = strip_code_fence(value)
            if not value:
                continue
        result[field] = value

    return result or None


class AnalysisSubject(BaseModel):
    """The repository, or repository pull request, being analyzed."""
    repository_id: str = Field(..., min_length=1)
    pull_request_number: Optional[int] = Field(None, ge=1)

    class Config:
        frozen = True

    @property
    def key(self) -> str:
        """Stream key used by the backend: ``repo`` or ``repo:number``."""
        if self.pull_request_number is None:
            return self.repository_id
        return f"{self.repository_id}:{self.pull_request_number}"

    def __str__(self) -> str:
        return self.key

    def validate_for(self, kind: AnalysisKind) -> None:
        """Raise ValueError when the subject does not fit the analysis kind."""
        if kind == AnalysisKind.PULL_REQUEST and self.pull_request_number is None:
            raise ValueError("Pull request analysis requires a pull request number")
        if kind != AnalysisKind.PULL_REQUEST and self.pull_request_number is not None:
            raise ValueError(f"{kind.value} applies to a whole repository, not a pull request")


class StatusUpdate(BaseModel):
    """A single status message received on the analysis event stream."""
    status: str
    result_payload: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    progress: Optional[float] = None
    raw: Dict[str, Any] = {}

    @classmethod
    def from_event_data(cls, data: str) -> "StatusUpdate":
        """Parse the JSON ``data`` of an SSE event; raises ValueError when malformed."""
        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid event data: {e}") from e
        if not isinstance(body, dict):
            raise ValueError("Event data must be a JSON object")

        payload = body.get("result_payload", body.get("resultPayload"))
        progress = body.get("progress")
        return cls(
            status=str(body.get("status", "")),
            result_payload=payload if isinstance(payload, dict) else None,
            message=body.get("message"),
            progress=progress if isinstance(progress, (int, float)) and not isinstance(progress, bool) else None,
            raw=body,
        )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def is_error(self) -> bool:
        return self.status == "error"

    def result_for(self, kind: AnalysisKind) -> Optional[Dict[str, Any]]:
        """Result carried by a ``completed`` update; an explicit payload is kept verbatim."""
        if self.result_payload is not None:
            return dict(self.result_payload) or None
        return extract_result(kind, self.raw)


class ResourceSnapshot(BaseModel):
    """Point-in-time read of the resource an analysis writes to."""
    subject: AnalysisSubject
    data: Dict[str, Any] = {}
    fetched_at: datetime = Field(default_factory=datetime.now)

    def result_for(self, kind: AnalysisKind) -> Optional[Dict[str, Any]]:
        return extract_result(kind, self.data)


class AnalysisJob(BaseModel):
    """One asynchronous analysis requested by the user."""
    job_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject: AnalysisSubject
    kind: AnalysisKind
    status: JobStatus = JobStatus.IDLE
    channel: WatchChannel = WatchChannel.NONE

    # Results
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    progress: Optional[str] = None  # last non-terminal stream status, informational only

    # Timing
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    status_history: List[JobStatus] = [JobStatus.IDLE]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: JobStatus) -> None:
        self.status = status
        self.status_history.append(status)


class TerminalOutcome(BaseModel):
    """The single final result reported for an analysis job."""
    job_id: str
    status: JobStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[DevPulseError] = Field(None, exclude=True)
    message: Optional[str] = None
    finished_at: datetime = Field(default_factory=datetime.now)

    class Config:
        arbitrary_types_allowed = True

    @property
    def is_error(self) -> bool:
        return self.status == JobStatus.FAILED

    @property
    def error_type(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    @property
    def suggested_action(self) -> SuggestedAction:
        if self.status == JobStatus.FAILED:
            return SuggestedAction.RETRY
        if self.status == JobStatus.TIMED_OUT:
            return SuggestedAction.REFRESH
        return SuggestedAction.NONE


class AnalysisJobView(BaseModel):
    """Job information for dashboard display."""
    job_id: str
    repository_id: str
    pull_request_number: Optional[int] = None
    kind: AnalysisKind
    status: JobStatus
    channel: WatchChannel
    progress: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    suggested_action: SuggestedAction = SuggestedAction.NONE
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: AnalysisJob, outcome: Optional[TerminalOutcome] = None) -> "AnalysisJobView":
        return cls(
            job_id=job.job_id,
            repository_id=job.subject.repository_id,
            pull_request_number=job.subject.pull_request_number,
            kind=job.kind,
            status=job.status,
            channel=job.channel,
            progress=job.progress,
            result=job.result,
            error_type=outcome.error_type if outcome else None,
            error_message=job.error_message,
            suggested_action=outcome.suggested_action if outcome else SuggestedAction.NONE,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )
