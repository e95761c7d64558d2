"""
Analysis API routes for the dashboard.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from ..exceptions import AlreadyInProgress, DevPulseAPIError
from ..models.analysis_models import AnalysisJobView, ResourceSnapshot
from ..services.analysis_service import AnalysisService
from ..services.job_watcher import WatchHandle
from ..services.sse import format_sse

logger = structlog.get_logger(__name__)
router = APIRouter()


# Dependencies
def get_analysis_service(request: Request) -> AnalysisService:
    return request.app.state.analysis_service


class StartAnalysisRequest(BaseModel):
    """Request to start an analysis."""
    known_result: Optional[Dict[str, Any]] = None


class StartReleaseRiskRequest(BaseModel):
    """Request to start a release risk analysis over selected PRs."""
    pr_ids: List[str] = []
    known_result: Optional[Dict[str, Any]] = None


def _job_view(handle: WatchHandle) -> AnalysisJobView:
    return AnalysisJobView.from_job(handle.job, handle.outcome)


def _conflict(e: AlreadyInProgress) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"message": str(e), "job_id": e.job_id}
    )


@router.post("/repositories/{repository_id}", response_model=AnalysisJobView, status_code=202)
async def start_repository_analysis(
    repository_id: str,
    request: Optional[StartAnalysisRequest] = None,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Trigger an AI analysis of a repository and start watching it."""
    try:
        handle = await analysis_service.start_repository_analysis(
            repository_id,
            known_result=request.known_result if request else None
        )
    except AlreadyInProgress as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Started repository analysis",
               job_id=handle.job_id,
               repository_id=repository_id,
               status=handle.job.status)
    return _job_view(handle)


@router.post("/repositories/{repository_id}/pulls/{pr_number}", response_model=AnalysisJobView, status_code=202)
async def start_pull_request_analysis(
    repository_id: str,
    pr_number: int,
    request: Optional[StartAnalysisRequest] = None,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Trigger an AI review of a pull request and start watching it."""
    try:
        handle = await analysis_service.start_pull_request_analysis(
            repository_id,
            pr_number,
            known_result=request.known_result if request else None
        )
    except AlreadyInProgress as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Started pull request analysis",
               job_id=handle.job_id,
               repository_id=repository_id,
               pr_number=pr_number,
               status=handle.job.status)
    return _job_view(handle)


@router.post("/repositories/{repository_id}/release", response_model=AnalysisJobView, status_code=202)
async def start_release_risk_analysis(
    repository_id: str,
    request: StartReleaseRiskRequest,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Trigger a release risk analysis for the selected pull requests."""
    try:
        handle = await analysis_service.start_release_risk_analysis(
            repository_id,
            request.pr_ids,
            known_result=request.known_result
        )
    except AlreadyInProgress as e:
        raise _conflict(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Started release risk analysis",
               job_id=handle.job_id,
               repository_id=repository_id,
               pr_count=len(request.pr_ids),
               status=handle.job.status)
    return _job_view(handle)


@router.get("/jobs", response_model=List[AnalysisJobView])
async def list_jobs(
    active_only: bool = Query(False, description="Show only jobs still being watched"),
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """List analysis jobs, newest first."""
    return analysis_service.list_jobs(active_only=active_only)


@router.get("/jobs/{job_id}", response_model=AnalysisJobView)
async def get_job(
    job_id: str,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Get the current state of an analysis job."""
    job = analysis_service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Analysis job not found")
    return job


@router.delete("/jobs/{job_id}", response_model=AnalysisJobView)
async def cancel_job(
    job_id: str,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Stop watching an analysis job."""
    job = analysis_service.cancel(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Analysis job not found")

    logger.info("Cancelled analysis job", job_id=job_id, status=job.status)
    return job


@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    job_id: str,
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """
    Relay a job to the browser as server-sent events.

    Sends one ``status`` event with the current job, then one ``outcome``
    event once the job reaches a terminal state (or ``cancelled``).
    """
    handle = analysis_service.get_handle(job_id)
    if handle is None:
        raise HTTPException(status_code=404, detail="Analysis job not found")

    async def event_generator():
        yield format_sse(_job_view(handle).model_dump(mode="json"), event="status")

        outcome = await handle.wait()
        if outcome is None:
            yield format_sse(_job_view(handle).model_dump(mode="json"), event="cancelled")
            return
        yield format_sse(_job_view(handle).model_dump(mode="json"), event="outcome")

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/repositories/{repository_id}/snapshot", response_model=ResourceSnapshot)
async def refresh_resource(
    repository_id: str,
    pr_number: Optional[int] = Query(None, ge=1, description="Pull request number"),
    analysis_service: AnalysisService = Depends(get_analysis_service)
):
    """Re-read a repository or pull request, e.g. after an analysis timed out."""
    try:
        return await analysis_service.refresh(repository_id, pr_number)
    except DevPulseAPIError as e:
        logger.error("Failed to refresh resource",
                    repository_id=repository_id,
                    pr_number=pr_number,
                    error=str(e))
        if e.status_code == 404:
            raise HTTPException(status_code=404, detail="Resource not found")
        raise HTTPException(status_code=502, detail="Failed to reach DevPulse backend")
