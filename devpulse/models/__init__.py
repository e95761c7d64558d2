"""
Pydantic models for the DevPulse dashboard application.
"""

from .analysis_models import (
    AnalysisJob,
    AnalysisJobView,
    AnalysisKind,
    AnalysisSubject,
    JobStatus,
    ResourceSnapshot,
    StatusUpdate,
    SuggestedAction,
    TerminalOutcome,
    WatchChannel,
)

__all__ = [
    "AnalysisJob",
    "AnalysisJobView",
    "AnalysisKind",
    "AnalysisSubject",
    "JobStatus",
    "ResourceSnapshot",
    "StatusUpdate",
    "SuggestedAction",
    "TerminalOutcome",
    "WatchChannel",
]
