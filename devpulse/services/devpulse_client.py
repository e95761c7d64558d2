"""
DevPulse backend integration: analysis triggers, event streams and resource reads.
"""

from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

import httpx
import structlog
from httpx import AsyncClient

from ..config import settings
from ..exceptions import DevPulseAPIError, TransportDegraded, TriggerFailed
from ..models.analysis_models import AnalysisKind, AnalysisSubject, ResourceSnapshot, StatusUpdate
from .sse import aiter_events

logger = structlog.get_logger(__name__)


class DevPulseClient:
    """Client for the DevPulse backend REST and event-stream endpoints."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client with API configuration."""
        self.base_url = (base_url or settings.devpulse_api_url).rstrip("/")
        self.headers = headers if headers is not None else settings.devpulse_headers
        self.cookies = cookies if cookies is not None else settings.devpulse_cookies
        self.timeout = timeout if timeout is not None else settings.api_timeout
        self.transport = transport

        logger.info("DevPulse client initialized",
                   base_url=self.base_url,
                   token_configured="Authorization" in self.headers,
                   cookie_configured=bool(self.cookies))

    def _client(self, timeout: Any = None) -> AsyncClient:
        return AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            cookies=self.cookies,
            transport=self.transport,
        )

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    @staticmethod
    def _resource_path(subject: AnalysisSubject) -> str:
        path = f"/v1/repos/{quote(subject.repository_id, safe='')}"
        if subject.pull_request_number is not None:
            path += f"/prs/{subject.pull_request_number}"
        return path

    def _trigger_path(self, subject: AnalysisSubject, kind: AnalysisKind) -> str:
        if kind == AnalysisKind.RELEASE_RISK:
            return f"{self._resource_path(subject)}/release"
        return f"{self._resource_path(subject)}/analyze"

    def _stream_path(self, subject: AnalysisSubject) -> str:
        # Release risk results are pushed on the repository stream
        return f"{self._resource_path(subject)}/analyze/stream"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """Make an HTTP request to the DevPulse API."""
        url = self._url(endpoint)

        try:
            logger.debug("Making DevPulse API request",
                        method=method,
                        url=url,
                        data_keys=list(data.keys()) if data else None)

            async with self._client() as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self.headers,
                    json=data,
                    params=params
                )

            logger.debug("DevPulse API response",
                        status_code=response.status_code,
                        response_size=len(response.content))

            if response.is_success:
                if not response.content:
                    return {}
                try:
                    body = response.json()
                except ValueError:
                    return {}
                return body if isinstance(body, dict) else {"data": body}
            elif response.status_code == 401:
                logger.error("DevPulse API unauthorized", url=url)
                raise DevPulseAPIError("Unauthorized: session expired or invalid token", status_code=401)
            elif response.status_code == 404:
                raise DevPulseAPIError(f"Not found: {endpoint}", status_code=404)
            else:
                logger.error("DevPulse API error",
                            status_code=response.status_code,
                            response_text=response.text[:500])
                raise DevPulseAPIError(
                    f"DevPulse API error: {response.status_code}",
                    status_code=response.status_code
                )

        except httpx.TimeoutException as e:
            logger.error("DevPulse API request timeout", endpoint=endpoint)
            raise DevPulseAPIError("DevPulse API request timeout") from e
        except httpx.HTTPError as e:
            logger.error("DevPulse API request failed",
                        endpoint=endpoint,
                        error=str(e),
                        error_type=type(e).__name__)
            raise DevPulseAPIError(f"DevPulse API request failed: {e}") from e

    async def trigger_analysis(
        self,
        subject: AnalysisSubject,
        kind: AnalysisKind,
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Ask the backend to start an analysis.

        Args:
            subject: Repository or pull request to analyze
            kind: Kind of analysis
            options: ``pr_ids`` selects the pull requests of a release-risk analysis

        Returns:
            The backend acknowledgment body

        Raises:
            TriggerFailed: the request failed or was rejected
        """
        kind = AnalysisKind(kind)
        data = None
        if kind == AnalysisKind.RELEASE_RISK:
            pr_ids = list((options or {}).get("pr_ids") or [])
            if not pr_ids:
                raise TriggerFailed("No pull requests selected for release risk analysis")
            data = {"pr_ids": pr_ids}

        try:
            ack = await self._make_request("POST", self._trigger_path(subject, kind), data)
        except DevPulseAPIError as e:
            raise TriggerFailed(e.message, status_code=e.status_code) from e

        logger.info("Analysis trigger acknowledged",
                   subject=subject.key,
                   kind=kind.value,
                   status=ack.get("status"))
        return ack

    async def open_event_stream(
        self,
        subject: AnalysisSubject,
        kind: AnalysisKind
    ) -> AsyncIterator[StatusUpdate]:
        """
        Stream status updates for an analysis until the connection closes.

        Undecodable events are skipped. Connection-level problems raise
        TransportDegraded.
        """
        url = self._url(self._stream_path(subject))
        headers = dict(self.headers)
        headers["Accept"] = "text/event-stream"
        headers["Cache-Control"] = "no-cache"

        # No read timeout: the stream may stay silent until the engine finishes
        timeout = httpx.Timeout(self.timeout, read=None)

        try:
            async with self._client(timeout=timeout) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if not response.is_success:
                        raise TransportDegraded(
                            f"Event stream rejected: {response.status_code}",
                            status_code=response.status_code
                        )

                    logger.info("Analysis stream connected",
                               subject=subject.key,
                               kind=AnalysisKind(kind).value)

                    async for event in aiter_events(response.aiter_lines()):
                        try:
                            update = StatusUpdate.from_event_data(event.data)
                        except ValueError as e:
                            logger.warning("Discarding undecodable stream event",
                                          subject=subject.key,
                                          error=str(e),
                                          data_preview=event.data[:200])
                            continue
                        yield update

        except httpx.HTTPError as e:
            raise TransportDegraded(f"Event stream failed: {e}") from e

    async def fetch_current_state(self, subject: AnalysisSubject) -> ResourceSnapshot:
        """Read the repository or pull request the analysis writes to."""
        data = await self._make_request("GET", self._resource_path(subject))
        return ResourceSnapshot(subject=subject, data=data)

    async def health(self) -> Dict[str, Any]:
        """Check the backend health endpoint."""
        return await self._make_request("GET", "/v1/health")
