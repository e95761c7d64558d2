"""
Business logic services for the DevPulse dashboard application.
"""

from .devpulse_client import DevPulseClient
from .job_watcher import AsyncJobWatcher, WatchHandle, WatchSession
from .analysis_service import AnalysisService

__all__ = [
    "DevPulseClient",
    "AsyncJobWatcher",
    "WatchHandle",
    "WatchSession",
    "AnalysisService"
]
