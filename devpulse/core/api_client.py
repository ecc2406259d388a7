"""
DevPulse Client - Job API Client
=================================

Async client for the remote analysis / autonomous-fix service.
Every response is normalized to the canonical schema before it is returned.
"""

from typing import Any, Optional

import httpx
import structlog
from pydantic import ValidationError

from devpulse.core.config import settings
from devpulse.core.exceptions import ApiError, AuthenticationError, TransportError
from devpulse.core.normalize import (
    parse_analysis,
    parse_analysis_page,
    parse_fix_job,
    parse_progress,
    parse_repos,
    parse_submit_result,
    parse_token_status,
    parse_trigger_result,
)
from devpulse.core.schemas import (
    AnalysisPage,
    AnalysisProgress,
    AnalysisRecord,
    FixJobRecord,
    GitHubRepo,
    SubmitAnalysisResult,
    TokenStatus,
    TriggerFixResult,
)
from devpulse.core.session import SessionStore

logger = structlog.get_logger()


def _error_message(response: httpx.Response, fallback: str) -> str:
    """Server-provided message, or `fallback` when the body has none."""
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


class DevPulseClient:
    """
    Client for the DevPulse job API.

    Usage:
        async with DevPulseClient(session=SessionStore.default()) as api:
            page = await api.list_analyses(limit=50)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[SessionStore] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.session = session or SessionStore()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else settings.API_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        logger.debug("devpulse_client_initialized", base_url=self.base_url)

    async def __aenter__(self) -> "DevPulseClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ==================== Transport ====================

    def _auth_headers(self) -> dict[str, str]:
        token = self.session.get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        path: str,
        fallback_error: str,
        **kwargs: Any,
    ) -> Any:
        """Send a request and return the decoded JSON body."""
        try:
            response = await self._client.request(
                method, path, headers=self._auth_headers(), **kwargs
            )
        except httpx.RequestError as e:
            logger.warning("devpulse_request_failed", method=method, path=path, error=str(e))
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code == 401:
            # Stale session: drop it so the UI sends the user back to login
            self.session.remove_token()
            raise AuthenticationError(_error_message(response, "Session expired"), 401)

        if response.is_error:
            message = _error_message(response, fallback_error)
            logger.info(
                "devpulse_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
                message=message,
            )
            raise ApiError(message, response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned a non-JSON body") from e

    def _parse(self, parser, payload: Any, *args: Any):
        try:
            return parser(payload, *args)
        except (ValidationError, TypeError, AttributeError) as e:
            raise TransportError(f"Unexpected response shape: {e}") from e

    # ==================== Analyses ====================

    async def list_analyses(
        self,
        limit: Optional[int] = None,
        offset: int = 0,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
        order: Optional[str] = None,
    ) -> AnalysisPage:
        params: dict[str, Any] = {
            "limit": limit or settings.ANALYSIS_LIST_LIMIT,
            "offset": offset,
        }
        if status:
            params["status"] = status
        if sort_by:
            params["sortBy"] = sort_by
        if order:
            params["order"] = order
        payload = await self._request(
            "GET", "/cline/all-analysis", "Failed to fetch analyses", params=params
        )
        return self._parse(parse_analysis_page, payload)

    async def get_analysis(self, analysis_id: str) -> AnalysisRecord:
        payload = await self._request(
            "GET", f"/cline/analysis/{analysis_id}", "Failed to fetch analysis"
        )
        return self._parse(parse_analysis, payload)

    async def get_analysis_progress(self, analysis_id: str) -> AnalysisProgress:
        payload = await self._request(
            "GET", f"/cline/analysis/{analysis_id}/progress", "Failed to fetch progress"
        )
        return self._parse(parse_progress, payload)

    async def submit_analysis(self, repo_url: str, repo_name: str, owner: str) -> SubmitAnalysisResult:
        payload = await self._request(
            "POST",
            "/cline/analyze",
            "Failed to start analysis",
            json={"repoUrl": repo_url, "repoName": repo_name, "owner": owner},
        )
        result = self._parse(parse_submit_result, payload)
        if not result.analysis_id:
            raise TransportError("Submit response did not include an analysis id")
        return result

    # ==================== Autonomous Fix ====================

    async def trigger_fix(self, analysis_id: str, access_token: Optional[str] = None) -> TriggerFixResult:
        body: dict[str, Any] = {"analysisId": analysis_id}
        if access_token:
            body["accessToken"] = access_token
        payload = await self._request(
            "POST", "/cline/autonomous-fix", "Failed to start PR creation", json=body
        )
        result = self._parse(parse_trigger_result, payload)
        if not result.job_id:
            raise TransportError("Trigger response did not include a job id")
        if not result.analysis_id:
            result.analysis_id = analysis_id
        return result

    async def get_fix_job(self, job_id: str, analysis_id: Optional[str] = None) -> FixJobRecord:
        payload = await self._request(
            "GET", f"/cline/autonomous-fix/{job_id}", "Failed to fetch fix job"
        )
        return self._parse(parse_fix_job, payload, analysis_id, job_id)

    # ==================== GitHub ====================

    async def list_github_repos(self) -> list[GitHubRepo]:
        payload = await self._request("GET", "/github/repos", "Failed to fetch repositories")
        return self._parse(parse_repos, payload)

    async def save_github_token(self, access_token: str) -> TokenStatus:
        payload = await self._request(
            "POST", "/github/token", "Failed to save GitHub token",
            json={"accessToken": access_token},
        )
        status = self._parse(parse_token_status, payload)
        status.has_token = True
        return status

    async def get_token_status(self) -> TokenStatus:
        payload = await self._request("GET", "/github/token/status", "Failed to fetch token status")
        return self._parse(parse_token_status, payload)

    async def delete_github_token(self) -> None:
        await self._request("DELETE", "/github/token", "Failed to delete GitHub token")
