"""
Tests for the analysis service.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from devpulse.exceptions import TriggerFailed
from devpulse.models.analysis_models import AnalysisKind, AnalysisSubject, JobStatus, ResourceSnapshot
from devpulse.services.analysis_service import AnalysisService


@pytest.fixture
def service(backend, make_watcher):
    return AnalysisService(client=backend, watcher=make_watcher(), history_limit=2)


@pytest.mark.asyncio
async def test_finished_jobs_are_evicted_oldest_first(backend, service):
    backend.push({"status": "completed", "ai_summary": "done"})
    first = await service.start_repository_analysis("repo-1")
    await service.wait_for_outcome(first.job_id)

    second = await service.start_repository_analysis("repo-2")
    third = await service.start_repository_analysis("repo-3")

    assert service.get_job(first.job_id) is None
    assert service.get_job(second.job_id).status == JobStatus.IN_PROGRESS
    assert service.get_job(third.job_id).status == JobStatus.IN_PROGRESS
    assert service.active_count == 2

    await service.shutdown()
    assert service.active_count == 0


@pytest.mark.asyncio
async def test_running_jobs_are_never_evicted(service):
    handles = [await service.start_repository_analysis(f"repo-{i}") for i in range(3)]

    assert [job.job_id for job in service.list_jobs(active_only=True)] == [h.job_id for h in reversed(handles)]
    await service.shutdown()


@pytest.mark.asyncio
async def test_release_risk_without_selection(service, backend):
    with pytest.raises(ValueError):
        await service.start_release_risk_analysis("repo-1", [])
    assert backend.trigger_calls == []


@pytest.mark.asyncio
async def test_cancel_and_unknown_job(service):
    handle = await service.start_pull_request_analysis("repo-1", 4)

    view = service.cancel(handle.job_id)

    assert view.status == JobStatus.IDLE
    assert view.kind == AnalysisKind.PULL_REQUEST
    assert service.cancel("missing") is None
    assert await service.wait_for_outcome(handle.job_id) is None
    assert await service.wait_for_outcome("missing") is None


@pytest.mark.asyncio
async def test_refresh_reads_resource(service, backend):
    backend.snapshots = [{"ai_summary": "late result"}]

    snapshot = await service.refresh("repo-1")

    assert snapshot.result_for(AnalysisKind.REPOSITORY) == {"ai_summary": "late result"}
    assert backend.fetch_calls == 1


@pytest.mark.asyncio
async def test_default_watcher_uses_client_operations():
    client = MagicMock()
    client.fetch_current_state = AsyncMock(
        return_value=ResourceSnapshot(subject=AnalysisSubject(repository_id="repo-1"), data={})
    )
    client.trigger_analysis = AsyncMock(side_effect=TriggerFailed("backend unavailable", status_code=503))
    service = AnalysisService(client)

    handle = await service.start_repository_analysis("repo-1")

    client.fetch_current_state.assert_awaited_once()
    client.trigger_analysis.assert_awaited_once()
    client.open_event_stream.assert_not_called()
    assert handle.job.status == JobStatus.FAILED
    assert service.get_job(handle.job_id).suggested_action == "retry"


@pytest.mark.asyncio
async def test_polling_ignores_result_from_earlier_analysis(service, backend):
    backend.push(RuntimeError("connection reset"))
    backend.snapshots = [
        {"ai_summary": "old summary"},
        {"ai_summary": "old summary"},
        {"ai_summary": "new summary"},
    ]

    handle = await service.start_repository_analysis("repo-1")
    outcome = await service.wait_for_outcome(handle.job_id)

    assert outcome.status == JobStatus.COMPLETED
    assert outcome.result == {"ai_summary": "new summary"}
    assert backend.fetch_calls == 3
