"""
Poller Registry
===============

Owns the set of active repeating polling tasks, keyed by (kind, entity id).

All mutations are synchronous and run on the event loop thread, so two
start() calls for the same key can never both create a task.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger()


class PollKind(str, Enum):
    ANALYSIS = "analysis"
    FIX_JOB = "fixjob"


PollKey = Tuple[PollKind, str]


@dataclass
class PollHandle:
    """A live polling task for one entity."""
    kind: PollKind
    entity_id: str
    generation: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task: Optional[asyncio.Task] = None

    @property
    def key(self) -> PollKey:
        return (self.kind, self.entity_id)


PollRunner = Callable[[PollHandle], Awaitable[None]]


class PollerRegistry:
    """
    At most one active handle per (kind, id).

    Handles leave the registry in two ways:
    - stop()/stop_all(): external teardown, the task is cancelled
    - release(): the task deregisters itself after a terminal state or failure
    """

    def __init__(self):
        self._handles: Dict[PollKey, PollHandle] = {}
        self._generations = itertools.count(1)
        self._cancelled: List[asyncio.Task] = []

    def start(self, kind: PollKind, entity_id: str, runner: PollRunner) -> Optional[PollHandle]:
        """
        Start polling an entity.

        Idempotent: returns None without creating a task when a handle
        already exists for the key. Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        key = (kind, entity_id)
        if key in self._handles:
            logger.debug("poller_already_active", kind=kind.value, entity_id=entity_id)
            return None

        handle = PollHandle(kind=kind, entity_id=entity_id, generation=next(self._generations))
        self._handles[key] = handle
        handle.task = loop.create_task(
            runner(handle), name=f"poll:{kind.value}:{entity_id}"
        )
        logger.info("poller_started", kind=kind.value, entity_id=entity_id, generation=handle.generation)
        return handle

    def stop(self, kind: PollKind, entity_id: str) -> bool:
        """Cancel and remove the handle for a key. No-op when absent."""
        handle = self._handles.pop((kind, entity_id), None)
        if handle is None:
            return False
        self._cancel(handle)
        logger.info("poller_stopped", kind=kind.value, entity_id=entity_id)
        return True

    def stop_all(self) -> int:
        """Cancel every active handle. Returns how many were stopped."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            self._cancel(handle)
        if handles:
            logger.info("pollers_stopped", count=len(handles))
        return len(handles)

    def release(self, handle: PollHandle) -> bool:
        """
        Self-deregistration from inside a running task.

        Only removes the entry if it still belongs to this handle, so a task
        that was stopped and replaced cannot evict its successor.
        """
        if self._handles.get(handle.key) is not handle:
            return False
        del self._handles[handle.key]
        logger.info(
            "poller_released",
            kind=handle.kind.value,
            entity_id=handle.entity_id,
            generation=handle.generation,
        )
        return True

    def is_current(self, handle: PollHandle) -> bool:
        """True while `handle` is the registered handle for its key."""
        return self._handles.get(handle.key) is handle

    def is_active(self, kind: PollKind, entity_id: str) -> bool:
        return (kind, entity_id) in self._handles

    def get(self, kind: PollKind, entity_id: str) -> Optional[PollHandle]:
        return self._handles.get((kind, entity_id))

    def active_keys(self) -> List[PollKey]:
        return list(self._handles.keys())

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    async def wait_cancelled(self) -> None:
        """Await tasks cancelled by stop()/stop_all() so they finish unwinding."""
        pending, self._cancelled = self._cancelled, []
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _cancel(self, handle: PollHandle) -> None:
        task = handle.task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # A poller stopping itself; it exits on its own after this tick
            return
        task.cancel()
        self._cancelled.append(task)
