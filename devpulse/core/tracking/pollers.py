"""
Pollers
=======

Repeating tasks that track one server-side job each.

Both pollers follow the same loop:
1. sleep one interval
2. fetch status (the only suspension point besides the sleep)
3. if the handle is still registered, merge the response into the store
4. on a terminal status, finish up and deregister

A fetch failure deregisters the poller immediately. There is no retry:
the entity stops updating until the next full refresh.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Optional

import structlog

from devpulse.core.api_client import DevPulseClient
from devpulse.core.config import settings
from devpulse.core.exceptions import DevPulseError
from devpulse.core.schemas import FIX_JOB_PATCH_FIELDS
from devpulse.core.tracking.registry import PollerRegistry, PollHandle, PollKey, PollKind
from devpulse.core.tracking.state_store import StateStore

logger = structlog.get_logger()

TerminalCallback = Callable[[PollKey], None]


class Poller(ABC):
    """Base class for a per-entity polling task."""

    kind: PollKind

    def __init__(
        self,
        entity_id: str,
        api: DevPulseClient,
        store: StateStore,
        registry: PollerRegistry,
        interval: Optional[float] = None,
        on_terminal: Optional[TerminalCallback] = None,
    ):
        self.entity_id = entity_id
        self.api = api
        self.store = store
        self.registry = registry
        self.interval = settings.POLL_INTERVAL_SECONDS if interval is None else interval
        self.on_terminal = on_terminal
        self.ticks = 0

    @property
    def key(self) -> PollKey:
        return (self.kind, self.entity_id)

    def start(self) -> Optional[PollHandle]:
        """Register with the registry. None if this entity is already polled."""
        return self.registry.start(self.kind, self.entity_id, self.run)

    async def run(self, handle: PollHandle) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                if not self.registry.is_current(handle):
                    return
                self.ticks += 1
                if not await self.tick(handle):
                    return
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("poller_crashed", kind=self.kind.value, entity_id=self.entity_id)
        finally:
            self.registry.release(handle)

    @abstractmethod
    async def tick(self, handle: PollHandle) -> bool:
        """One poll. Returns False when polling should stop."""
        pass

    def _finished(self) -> None:
        if self.on_terminal is not None:
            self.on_terminal(self.key)


# ==========================================================================
# Analysis Poller
# ==========================================================================

class AnalysisPoller(Poller):
    """
    Tracks one analysis through the lightweight progress endpoint.

    On completed/failed it fetches the full record once (quality score,
    AI findings are not part of the progress payload) and replaces the
    stored record with it.
    """

    kind = PollKind.ANALYSIS

    @property
    def analysis_id(self) -> str:
        return self.entity_id

    async def tick(self, handle: PollHandle) -> bool:
        sequence = self.store.next_sequence()
        try:
            progress = await self.api.get_analysis_progress(self.analysis_id)
        except DevPulseError as e:
            logger.warning("analysis_poll_failed", analysis_id=self.analysis_id, error=str(e))
            return False

        if not self.registry.is_current(handle):
            return False

        self.store.patch(self.analysis_id, progress.to_patch(), sequence=sequence)
        logger.debug(
            "analysis_progress",
            analysis_id=self.analysis_id,
            status=progress.status,
            percentage=progress.percentage,
        )
        if not progress.is_terminal:
            return True

        logger.info("analysis_finished", analysis_id=self.analysis_id, status=progress.status)
        await self._apply_final_snapshot(handle)
        self._finished()
        return False

    async def _apply_final_snapshot(self, handle: PollHandle) -> None:
        sequence = self.store.next_sequence()
        try:
            full = await self.api.get_analysis(self.analysis_id)
        except DevPulseError as e:
            logger.warning("analysis_snapshot_failed", analysis_id=self.analysis_id, error=str(e))
            return
        if self.registry.is_current(handle):
            self.store.replace(self.analysis_id, full, sequence=sequence)


# ==========================================================================
# Fix Job Poller
# ==========================================================================

class FixJobPoller(Poller):
    """
    Tracks one remediation job nested under an analysis.

    On completed/failed it schedules a delayed bulk refresh so backend state
    the per-job endpoint does not carry (risk flags, PR lists) catches up.
    """

    kind = PollKind.FIX_JOB

    def __init__(
        self,
        analysis_id: str,
        job_id: str,
        api: DevPulseClient,
        store: StateStore,
        registry: PollerRegistry,
        interval: Optional[float] = None,
        on_terminal: Optional[TerminalCallback] = None,
        schedule_refresh: Optional[Callable[[float], object]] = None,
        refresh_delay: Optional[float] = None,
    ):
        super().__init__(job_id, api, store, registry, interval, on_terminal)
        self.analysis_id = analysis_id
        self.schedule_refresh = schedule_refresh
        self.refresh_delay = (
            settings.FIX_REFRESH_DELAY_SECONDS if refresh_delay is None else refresh_delay
        )

    @property
    def job_id(self) -> str:
        return self.entity_id

    async def tick(self, handle: PollHandle) -> bool:
        sequence = self.store.next_sequence()
        try:
            job = await self.api.get_fix_job(self.job_id, self.analysis_id)
        except DevPulseError as e:
            logger.warning(
                "fix_job_poll_failed",
                analysis_id=self.analysis_id,
                job_id=self.job_id,
                error=str(e),
            )
            return False

        if not self.registry.is_current(handle):
            return False

        partial = job.model_dump(include=set(FIX_JOB_PATCH_FIELDS), exclude_unset=True)
        self.store.patch_fix_job(self.analysis_id, self.job_id, partial, sequence=sequence)
        if not job.is_terminal:
            return True

        logger.info(
            "fix_job_finished",
            analysis_id=self.analysis_id,
            job_id=self.job_id,
            status=job.status,
            pr_url=job.pr_url,
        )
        if self.schedule_refresh is not None:
            self.schedule_refresh(self.refresh_delay)
        self._finished()
        return False
