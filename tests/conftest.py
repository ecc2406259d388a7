"""
DevPulse Client - Test Fixtures
================================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from devpulse.core.api_client import DevPulseClient
from devpulse.core.config import settings
from devpulse.core.credentials import InMemoryCredentialStore
from devpulse.core.session import SessionStore
from devpulse.core.tracking import AnalysisTracker, PollerRegistry, StateStore
from mock_devpulse_api import SESSION_TOKEN, MockDevPulse

BASE_URL = "http://devpulse.test/api/v1"
VALID_PAT = "ghp_" + "a1B2c3D4e5" * 4

# Poll fast enough that a whole lifecycle fits in a few hundred ms
POLL_INTERVAL = 0.01
REFRESH_DELAY = 0.02


# ==========================================================================
# Settings
# ==========================================================================

@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep session/credential files out of the real home directory."""
    state_dir = tmp_path / "state"
    monkeypatch.setattr(settings, "STATE_DIR", state_dir)
    return state_dir


# ==========================================================================
# Backend Fixtures
# ==========================================================================

@pytest.fixture
def backend() -> MockDevPulse:
    """Fresh mock DevPulse backend per test."""
    return MockDevPulse()


@pytest.fixture
def session() -> SessionStore:
    store = SessionStore()
    store.save_token(SESSION_TOKEN)
    return store


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore(VALID_PAT)


@pytest_asyncio.fixture
async def api(backend: MockDevPulse, session: SessionStore) -> AsyncGenerator[DevPulseClient, None]:
    """
    Job API client wired to the mock backend in-process.
    """
    transport = httpx.ASGITransport(app=backend.app)
    async with DevPulseClient(base_url=BASE_URL, session=session, transport=transport) as client:
        yield client


# ==========================================================================
# Engine Fixtures
# ==========================================================================

@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def registry() -> PollerRegistry:
    return PollerRegistry()


@pytest_asyncio.fixture
async def tracker(
    api: DevPulseClient,
    store: StateStore,
    registry: PollerRegistry,
    credentials: InMemoryCredentialStore,
    session: SessionStore,
) -> AsyncGenerator[AnalysisTracker, None]:
    async with AnalysisTracker(
        api,
        store=store,
        registry=registry,
        credentials=credentials,
        session=session,
        poll_interval=POLL_INTERVAL,
        refresh_delay=REFRESH_DELAY,
    ) as active:
        yield active
