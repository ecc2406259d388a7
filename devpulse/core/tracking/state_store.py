"""
State Store
===========

Canonical in-memory list of analysis records (and their nested fix jobs).
This is the single read model the presentation layer observes.

Ordering: new submissions are prepended, listing fetches replace the list.
Writes are copy-on-write: a record object handed out is never mutated, each
merge stores a new one. All writes run on the event loop thread, so a merge
is atomic with respect to a single record.

Stale-response guard: writers may pass a sequence number drawn (via
next_sequence()) when their request was sent. A write older than the last
one applied to the same record is dropped.
"""

import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog
from pydantic import BaseModel

from devpulse.core.schemas import (
    AnalysisRecord,
    FixJobRecord,
    RecordState,
)

logger = structlog.get_logger()


class StoreEvent(str, Enum):
    RESET = "reset"
    INSERTED = "inserted"
    PATCHED = "patched"
    REPLACED = "replaced"
    FIX_JOB_ADDED = "fix_job_added"
    FIX_JOB_PATCHED = "fix_job_patched"


@dataclass(frozen=True)
class StoreChange:
    """One write, as seen by subscribers."""
    event: StoreEvent
    version: int
    analysis_id: Optional[str] = None
    job_id: Optional[str] = None
    record: Optional[AnalysisRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "version": self.version,
            "analysis_id": self.analysis_id,
            "job_id": self.job_id,
            "record": self.record.model_dump(mode="json") if self.record else None,
        }


StoreListener = Callable[[StoreChange], None]


def _merge(model: BaseModel, partial: Mapping[str, Any], protected: frozenset) -> BaseModel:
    """Shallow merge: fields absent from `partial` are preserved."""
    fields = type(model).model_fields
    data = model.model_dump()
    data.update({k: v for k, v in partial.items() if k in fields and k not in protected})
    data["state"] = RecordState.CONFIRMED
    return type(model).model_validate(data)


class StateStore:
    """Owns the ordered list of AnalysisRecord."""

    def __init__(self):
        self._records: List[AnalysisRecord] = []
        self._listeners: List[StoreListener] = []
        self._sequences = itertools.count(1)
        self._applied: Dict[str, int] = {}
        self.version = 0

    # ==========================================================================
    # Reads
    # ==========================================================================

    @property
    def analyses(self) -> List[AnalysisRecord]:
        return list(self._records)

    def get(self, analysis_id: str) -> Optional[AnalysisRecord]:
        index = self._index_of(analysis_id)
        return self._records[index] if index is not None else None

    def get_fix_job(self, analysis_id: str, job_id: str) -> Optional[FixJobRecord]:
        record = self.get(analysis_id)
        return record.find_fix(job_id) if record else None

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, analysis_id: object) -> bool:
        return isinstance(analysis_id, str) and self._index_of(analysis_id) is not None

    def snapshot(self) -> List[Dict[str, Any]]:
        return [record.model_dump(mode="json") for record in self._records]

    def next_sequence(self) -> int:
        """Sequence number to tag a request with at send time."""
        return next(self._sequences)

    # ==========================================================================
    # Subscriptions
    # ==========================================================================

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ==========================================================================
    # Writes
    # ==========================================================================

    def set_all(self, records: List[AnalysisRecord]) -> None:
        """Replace the whole list (bulk listing fetch)."""
        self._records = [
            record.model_copy(update={"state": RecordState.CONFIRMED}) for record in records
        ]
        listed = {record.analysis_id for record in self._records}
        for key in [key for key in self._applied if key.partition("/")[0] not in listed]:
            del self._applied[key]
        self._emit(StoreEvent.RESET)

    def upsert_placeholder(self, record: AnalysisRecord) -> AnalysisRecord:
        """Insert a provisional record at the head of the list."""
        placeholder = record.model_copy(update={"state": RecordState.PROVISIONAL})
        self._remove(placeholder.analysis_id)
        self._records.insert(0, placeholder)
        self._emit(StoreEvent.INSERTED, placeholder.analysis_id, record=placeholder)
        return placeholder

    def upsert(self, record: AnalysisRecord, sequence: Optional[int] = None) -> Optional[AnalysisRecord]:
        """Replace the record in place, or prepend it when unknown."""
        if record.analysis_id not in self:
            if not self._accept(record.analysis_id, sequence):
                return None
            confirmed = record.model_copy(update={"state": RecordState.CONFIRMED})
            self._records.insert(0, confirmed)
            self._emit(StoreEvent.INSERTED, confirmed.analysis_id, record=confirmed)
            return confirmed
        return self.replace(record.analysis_id, record, sequence)

    def patch(
        self,
        analysis_id: str,
        partial: Mapping[str, Any],
        sequence: Optional[int] = None,
    ) -> Optional[AnalysisRecord]:
        """
        Shallow-merge `partial` onto a record.

        Unknown ids are a silent no-op: the record may have been superseded
        by a full list refresh.
        """
        index = self._index_of(analysis_id)
        if index is None:
            logger.debug("patch_ignored_unknown_analysis", analysis_id=analysis_id)
            return None
        if not self._accept(analysis_id, sequence):
            return None

        merged = _merge(self._records[index], partial, frozenset({"analysis_id", "state"}))
        if "fixes" in partial:
            merged = merged.with_fixes(merged.fixes)
        self._records[index] = merged
        self._emit(StoreEvent.PATCHED, analysis_id, record=merged)
        return merged

    def replace(
        self,
        analysis_id: str,
        full: AnalysisRecord,
        sequence: Optional[int] = None,
    ) -> Optional[AnalysisRecord]:
        """Substitute the entire record with an authoritative snapshot."""
        index = self._index_of(analysis_id)
        if index is None:
            logger.debug("replace_ignored_unknown_analysis", analysis_id=analysis_id)
            return None
        if not self._accept(analysis_id, sequence):
            return None

        record = full.model_copy(update={
            "analysis_id": analysis_id,
            "state": RecordState.CONFIRMED,
        })
        self._records[index] = record
        self._emit(StoreEvent.REPLACED, analysis_id, record=record)
        return record

    def patch_fix_job(
        self,
        analysis_id: str,
        job_id: str,
        partial: Mapping[str, Any],
        sequence: Optional[int] = None,
    ) -> Optional[FixJobRecord]:
        """
        Merge `partial` into a nested fix job, appending the job when the
        parent does not list it yet. Recomputes the parent's derived flags.
        """
        index = self._index_of(analysis_id)
        if index is None:
            logger.debug("fix_job_patch_ignored_unknown_analysis", analysis_id=analysis_id, job_id=job_id)
            return None
        if not self._accept(f"{analysis_id}/{job_id}", sequence):
            return None

        parent = self._records[index]
        fixes = list(parent.fixes)
        for position, existing in enumerate(fixes):
            if existing.job_id == job_id:
                job = _merge(existing, partial, frozenset({"job_id", "analysis_id", "state"}))
                fixes[position] = job
                event = StoreEvent.FIX_JOB_PATCHED
                break
        else:
            data = {k: v for k, v in partial.items() if k in FixJobRecord.model_fields}
            data.update(job_id=job_id, analysis_id=analysis_id, state=RecordState.CONFIRMED)
            job = FixJobRecord.model_validate(data)
            fixes.append(job)
            event = StoreEvent.FIX_JOB_ADDED

        updated = parent.with_fixes(fixes)
        self._records[index] = updated
        self._emit(event, analysis_id, job_id=job_id, record=updated)
        return job

    def append_fix_job_placeholder(self, analysis_id: str, job: FixJobRecord) -> bool:
        """Insert a provisional fix job right after a trigger succeeds."""
        index = self._index_of(analysis_id)
        if index is None:
            logger.debug("fix_job_placeholder_ignored_unknown_analysis", analysis_id=analysis_id)
            return False

        parent = self._records[index]
        if parent.find_fix(job.job_id) is not None:
            return False

        placeholder = job.model_copy(update={
            "analysis_id": analysis_id,
            "state": RecordState.PROVISIONAL,
        })
        updated = parent.with_fixes([*parent.fixes, placeholder])
        self._records[index] = updated
        self._emit(StoreEvent.FIX_JOB_ADDED, analysis_id, job_id=job.job_id, record=updated)
        return True

    # ==========================================================================
    # Internals
    # ==========================================================================

    def _index_of(self, analysis_id: str) -> Optional[int]:
        for index, record in enumerate(self._records):
            if record.analysis_id == analysis_id:
                return index
        return None

    def _remove(self, analysis_id: str) -> None:
        index = self._index_of(analysis_id)
        if index is not None:
            del self._records[index]

    def _accept(self, key: str, sequence: Optional[int]) -> bool:
        if sequence is None:
            return True
        last = self._applied.get(key, 0)
        if sequence < last:
            logger.info("stale_response_dropped", key=key, sequence=sequence, last_applied=last)
            return False
        self._applied[key] = sequence
        return True

    def _emit(
        self,
        event: StoreEvent,
        analysis_id: Optional[str] = None,
        job_id: Optional[str] = None,
        record: Optional[AnalysisRecord] = None,
    ) -> None:
        self.version += 1
        change = StoreChange(
            event=event,
            version=self.version,
            analysis_id=analysis_id,
            job_id=job_id,
            record=record,
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error("store_listener_failed", store_event=event.value, error=str(e))
