"""
Analysis Tracker
================

Entry points for the user actions that start or stop tracking:
- initial load / manual refresh (bulk listing + poller discovery)
- submitting an analysis
- triggering an automated fix
- opening one analysis

Owns one StateStore and one PollerRegistry. Everything runs on a single
event loop; the tracker must be created and used from inside it.
"""

import asyncio
from typing import Dict, List, Optional, Set, Tuple

import structlog

from devpulse.core.api_client import DevPulseClient
from devpulse.core.config import settings
from devpulse.core.credentials import CredentialStore, InMemoryCredentialStore
from devpulse.core.exceptions import (
    DevPulseError,
    MissingCredentialError,
    MissingSelectionError,
    NotAuthenticatedError,
)
from devpulse.core.schemas import AnalysisRecord, FixJobRecord, TriggerFixResult
from devpulse.core.session import SessionStore
from devpulse.core.tracking.pollers import AnalysisPoller, FixJobPoller
from devpulse.core.tracking.registry import PollerRegistry, PollKey, PollKind
from devpulse.core.tracking.state_store import StateStore

logger = structlog.get_logger()


def split_repo_url(repo_url: str) -> Tuple[str, str]:
    """(owner, name) from a GitHub-style repository URL."""
    path = repo_url.strip().rstrip("/")
    if path.endswith(".git"):
        path = path[:-4]
    parts = [part for part in path.replace(":", "/").split("/") if part]
    if len(parts) < 2:
        return "", parts[-1] if parts else ""
    return parts[-2], parts[-1]


class AnalysisTracker:
    """
    Keeps the analysis list in sync with the remote job API.

    Usage:
        async with AnalysisTracker(api, credentials=store) as tracker:
            await tracker.load()
            await tracker.submit_analysis("https://github.com/acme/api")
            await tracker.wait_idle()
    """

    def __init__(
        self,
        api: DevPulseClient,
        store: Optional[StateStore] = None,
        registry: Optional[PollerRegistry] = None,
        credentials: Optional[CredentialStore] = None,
        session: Optional[SessionStore] = None,
        poll_interval: Optional[float] = None,
        refresh_delay: Optional[float] = None,
        list_limit: Optional[int] = None,
    ):
        self.api = api
        self.store = store if store is not None else StateStore()
        self.registry = registry if registry is not None else PollerRegistry()
        self.credentials = credentials if credentials is not None else InMemoryCredentialStore()
        self.session = session if session is not None else api.session
        self.poll_interval = settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.refresh_delay = (
            settings.FIX_REFRESH_DELAY_SECONDS if refresh_delay is None else refresh_delay
        )
        self.list_limit = list_limit or settings.ANALYSIS_LIST_LIMIT

        # Entities a poller has seen reach completed/failed. A lagging list
        # response must not restart them.
        self._finished: Set[PollKey] = set()
        self._deferred: Set[asyncio.Task] = set()
        self._fix_parents: Dict[str, str] = {}

    async def __aenter__(self) -> "AnalysisTracker":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def analyses(self) -> List[AnalysisRecord]:
        return self.store.analyses

    def get(self, analysis_id: str) -> Optional[AnalysisRecord]:
        return self.store.get(analysis_id)

    # ==========================================================================
    # Listing
    # ==========================================================================

    async def load(self) -> List[AnalysisRecord]:
        """View entry: requires a session, then refreshes and starts polling."""
        if not self.session.is_authenticated():
            raise NotAuthenticatedError("Not signed in. Run `devpulse login` first.")
        return await self.refresh()

    async def refresh(self) -> List[AnalysisRecord]:
        page = await self.api.list_analyses(limit=self.list_limit)
        self.store.set_all(page.analyses)
        started = self.sync_pollers()
        logger.info(
            "analyses_refreshed",
            count=len(page.analyses),
            total=page.pagination.total,
            pollers_started=started,
        )
        return self.store.analyses

    def sync_pollers(self) -> int:
        """
        Start a poller for every non-terminal analysis and fix job in the
        store, and stop pollers whose analysis is no longer listed.

        Returns the number of pollers started.
        """
        started = 0
        for record in self.store.analyses:
            if not record.is_terminal and self.track_analysis(record.analysis_id):
                started += 1
            for fix in record.fixes:
                if fix.is_active and self.track_fix_job(record.analysis_id, fix.job_id):
                    started += 1

        for kind, entity_id in self.registry.active_keys():
            if kind == PollKind.ANALYSIS and entity_id not in self.store:
                self.registry.stop(kind, entity_id)
            elif kind == PollKind.FIX_JOB and self._fix_parents.get(entity_id) not in self.store:
                self.registry.stop(kind, entity_id)

        self._forget_unlisted()
        return started

    def _forget_unlisted(self) -> None:
        """Drop finished/parent bookkeeping for analyses that left the store."""
        stale = {
            (kind, entity_id)
            for kind, entity_id in self._finished
            if (entity_id if kind == PollKind.ANALYSIS else self._fix_parents.get(entity_id))
            not in self.store
        }
        # Mutated in place: running pollers hold a bound `add`
        self._finished.difference_update(stale)
        for job_id in [job_id for job_id, parent in self._fix_parents.items() if parent not in self.store]:
            del self._fix_parents[job_id]

    # ==========================================================================
    # Tracking
    # ==========================================================================

    def track_analysis(self, analysis_id: str) -> bool:
        """Start polling one analysis. False when nothing was started."""
        record = self.store.get(analysis_id)
        if record is None:
            logger.debug("track_rejected_unknown", kind=PollKind.ANALYSIS.value, entity_id=analysis_id)
            return False
        if record.is_terminal or (PollKind.ANALYSIS, analysis_id) in self._finished:
            logger.debug("track_rejected_terminal", kind=PollKind.ANALYSIS.value, entity_id=analysis_id)
            return False

        poller = AnalysisPoller(
            analysis_id,
            self.api,
            self.store,
            self.registry,
            interval=self.poll_interval,
            on_terminal=self._finished.add,
        )
        return poller.start() is not None

    def track_fix_job(self, analysis_id: str, job_id: str) -> bool:
        """Start polling one fix job nested under `analysis_id`."""
        parent = self.store.get(analysis_id)
        if parent is None:
            logger.debug("track_rejected_unknown", kind=PollKind.FIX_JOB.value, entity_id=job_id)
            return False
        job = parent.find_fix(job_id)
        if (job is not None and job.is_terminal) or (PollKind.FIX_JOB, job_id) in self._finished:
            logger.debug("track_rejected_terminal", kind=PollKind.FIX_JOB.value, entity_id=job_id)
            return False

        poller = FixJobPoller(
            analysis_id,
            job_id,
            self.api,
            self.store,
            self.registry,
            interval=self.poll_interval,
            on_terminal=self._finished.add,
            schedule_refresh=self.schedule_refresh,
            refresh_delay=self.refresh_delay,
        )
        self._fix_parents[job_id] = analysis_id
        return poller.start() is not None

    def is_tracking(self, kind: PollKind, entity_id: str) -> bool:
        return self.registry.is_active(kind, entity_id)

    # ==========================================================================
    # User actions
    # ==========================================================================

    async def submit_analysis(
        self,
        repo_url: str,
        repo_name: str = "",
        owner: str = "",
    ) -> AnalysisRecord:
        """Submit a repository and show it immediately as a pending placeholder."""
        repo_url = (repo_url or "").strip()
        if not repo_url:
            raise MissingSelectionError("Please select a repository")

        url_owner, url_name = split_repo_url(repo_url)
        repo_name = repo_name or url_name
        owner = owner or url_owner

        result = await self.api.submit_analysis(repo_url, repo_name, owner)
        record = self.store.upsert_placeholder(
            AnalysisRecord.placeholder(
                result.analysis_id,
                repo_url=repo_url,
                repo_name=repo_name,
                repo_owner=owner,
            )
        )
        self.track_analysis(result.analysis_id)
        logger.info("analysis_submitted", analysis_id=result.analysis_id, repo_url=repo_url)
        return record

    async def trigger_fix(self, analysis_id: str) -> TriggerFixResult:
        """Start automated remediation and a PR for an analysis."""
        if not analysis_id:
            raise MissingSelectionError("Please select an analysis")
        if not self.credentials.has_credential():
            raise MissingCredentialError(
                "GitHub Personal Access Token required. Add one with `devpulse set-pat`."
            )
        if analysis_id not in self.store:
            # Beyond the listed page: fetch the detail so the job has a parent
            await self.open_analysis(analysis_id)

        result = await self.api.trigger_fix(
            analysis_id, access_token=self.credentials.get_credential()
        )
        self.store.append_fix_job_placeholder(
            analysis_id, FixJobRecord.placeholder(result.job_id, analysis_id)
        )
        self.track_fix_job(analysis_id, result.job_id)
        logger.info(
            "fix_job_triggered",
            analysis_id=analysis_id,
            job_id=result.job_id,
            token_source=result.token_source,
        )
        return result

    async def open_analysis(self, analysis_id: str) -> AnalysisRecord:
        """Detail view: fetch the full record and keep polling it if still running."""
        if not analysis_id:
            raise MissingSelectionError("Please select an analysis")

        sequence = self.store.next_sequence()
        full = await self.api.get_analysis(analysis_id)
        self.store.upsert(full, sequence=sequence)
        record = self.store.get(analysis_id) or full

        if not record.is_terminal:
            self.track_analysis(analysis_id)
        for fix in record.fixes:
            if fix.is_active:
                self.track_fix_job(analysis_id, fix.job_id)
        return record

    # ==========================================================================
    # Deferred refresh
    # ==========================================================================

    def schedule_refresh(self, delay: Optional[float] = None) -> asyncio.Task:
        """One-shot bulk refresh after `delay` seconds."""
        delay = self.refresh_delay if delay is None else delay
        task = asyncio.get_running_loop().create_task(
            self._deferred_refresh(delay), name="devpulse:deferred-refresh"
        )
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)
        logger.debug("refresh_scheduled", delay=delay)
        return task

    async def _deferred_refresh(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.refresh()
        except DevPulseError as e:
            logger.warning("deferred_refresh_failed", error=str(e))

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    def is_idle(self) -> bool:
        return len(self.registry) == 0 and not self._deferred

    async def wait_idle(self, timeout: Optional[float] = None, poll_interval: float = 0.1) -> bool:
        """
        Wait until no poller or deferred refresh is left.

        Returns False if `timeout` seconds pass first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self.is_idle():
            if deadline is not None and loop.time() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True

    async def close(self) -> None:
        """Stop every poller and pending refresh (view teardown)."""
        stopped = self.registry.stop_all()
        deferred = list(self._deferred)
        for task in deferred:
            task.cancel()
        await self.registry.wait_cancelled()
        if deferred:
            await asyncio.gather(*deferred, return_exceptions=True)
        logger.info("tracker_closed", pollers_stopped=stopped, refreshes_cancelled=len(deferred))

