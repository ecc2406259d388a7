"""Tests for DevPulseClient against the mock backend"""
import httpx
import pytest

from conftest import BASE_URL, VALID_PAT
from devpulse.core.api_client import DevPulseClient
from devpulse.core.exceptions import ApiError, AuthenticationError, TransportError
from devpulse.core.session import SessionStore
from mock_devpulse_api import MockDevPulse


class TestAnalyses:
    async def test_list_normalizes_camel_case(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1", "completed", codeQuality={"score": 55, "grade": "F"})
        backend.add_fix_job("a1", "j1", status="creating_pr", progress=90)
        backend.add_analysis("a2", "cloning", progress=15, message="Cloning repository")

        page = await api.list_analyses(limit=10)

        assert [record.analysis_id for record in page.analyses] == ["a2", "a1"]
        assert page.pagination.total == 2
        running, done = page.analyses
        assert running.progress == 15
        assert running.message == "Cloning repository"
        assert done.repo_owner == "acme"
        assert done.quality_score == 55
        assert done.fixes[0].job_id == "j1"
        assert done.fixes[0].analysis_id == "a1"
        assert done.has_active_fixes is True

    async def test_list_sends_limit(self, api: DevPulseClient, backend: MockDevPulse):
        for i in range(3):
            backend.add_analysis(f"a{i}")

        page = await api.list_analyses(limit=2)

        assert len(page.analyses) == 2
        assert page.pagination.total == 3
        assert page.pagination.total_pages == 2

    async def test_progress_with_nested_percentage(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1", "analyzing")
        backend.script_progress(
            "a1", {"status": "ai_analyzing", "progress": {"percentage": 75, "message": "AI review"}}
        )

        progress = await api.get_analysis_progress("a1")

        assert progress.status == "ai_analyzing"
        assert progress.percentage == 75
        assert progress.message == "AI review"

    async def test_detail_unwraps_envelope(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1", "completed", structure={"files": 40})

        record = await api.get_analysis("a1")

        assert record.analysis_id == "a1"
        assert record.structure == {"files": 40}

    async def test_submit_returns_server_id(self, api: DevPulseClient, backend: MockDevPulse):
        result = await api.submit_analysis("https://github.com/acme/api", "api", "acme")

        assert result.analysis_id == "a1"
        assert result.message == "Analysis started"
        assert backend.analyses["a1"]["status"] == "pending"


class TestFixJobs:
    async def test_trigger_sends_access_token(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1")

        result = await api.trigger_fix("a1", access_token=VALID_PAT)

        assert result.job_id == "j1"
        assert result.analysis_id == "a1"
        assert result.token_source == "request"
        assert backend.received_access_tokens == [VALID_PAT]

    async def test_trigger_without_token_omits_field(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1")

        result = await api.trigger_fix("a1")

        assert result.token_source == "stored"
        assert backend.received_access_tokens == [None]

    async def test_fix_job_status(self, api: DevPulseClient, backend: MockDevPulse):
        backend.add_analysis("a1")
        backend.add_fix_job("a1", "j1", status="pushing", progress=80)

        job = await api.get_fix_job("j1", "a1")

        assert job.job_id == "j1"
        assert job.analysis_id == "a1"
        assert job.status == "pushing"
        assert job.progress == 80


class TestErrors:
    async def test_unauthorized_clears_session(self, backend: MockDevPulse):
        session = SessionStore()
        session.save_token("stale-token")
        transport = httpx.ASGITransport(app=backend.app)

        async with DevPulseClient(base_url=BASE_URL, session=session, transport=transport) as api:
            with pytest.raises(AuthenticationError) as exc_info:
                await api.list_analyses()

        assert exc_info.value.status_code == 401
        assert session.get_token() is None

    async def test_server_message_is_surfaced(self, api: DevPulseClient, backend: MockDevPulse):
        backend.fail("/cline/analyze", 400, "Repository not accessible")

        with pytest.raises(ApiError) as exc_info:
            await api.submit_analysis("https://github.com/acme/private", "private", "acme")

        assert exc_info.value.message == "Repository not accessible"
        assert "HTTP 400" in str(exc_info.value)

    async def test_fallback_message_without_body(self, session: SessionStore):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="upstream exploded")

        async with DevPulseClient(
            base_url=BASE_URL, session=session, transport=httpx.MockTransport(handler)
        ) as api:
            with pytest.raises(ApiError) as exc_info:
                await api.get_analysis_progress("a1")

        assert exc_info.value.message == "Failed to fetch progress"

    async def test_connection_error_is_transport_error(self, session: SessionStore):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with DevPulseClient(
            base_url=BASE_URL, session=session, transport=httpx.MockTransport(handler)
        ) as api:
            with pytest.raises(TransportError):
                await api.list_analyses()

    async def test_submit_without_id_is_rejected(self, session: SessionStore):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": True, "message": "queued"})

        async with DevPulseClient(
            base_url=BASE_URL, session=session, transport=httpx.MockTransport(handler)
        ) as api:
            with pytest.raises(TransportError):
                await api.submit_analysis("https://github.com/acme/api", "api", "acme")


class TestGitHub:
    async def test_token_round_trip(self, api: DevPulseClient, backend: MockDevPulse):
        saved = await api.save_github_token(VALID_PAT)
        assert saved.has_token is True
        assert saved.github_username == "octocat"
        assert backend.github_token == VALID_PAT

        await api.delete_github_token()
        status = await api.get_token_status()
        assert status.has_token is False

    async def test_repos(self, api: DevPulseClient, backend: MockDevPulse):
        backend.repos = [{
            "id": 7,
            "name": "api",
            "full_name": "acme/api",
            "clone_url": "https://github.com/acme/api.git",
            "stargazers_count": 12,
            "owner": {"login": "acme"},
        }]

        repos = await api.list_github_repos()

        assert repos[0].full_name == "acme/api"
        assert repos[0].stars == 12
        assert repos[0].owner_login == "acme"
