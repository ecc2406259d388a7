"""Tests for the StateStore merge operations"""
from devpulse.core.schemas import AnalysisRecord, CodeQuality, FixJobRecord, RecordState
from devpulse.core.tracking import StateStore, StoreEvent


def _record(analysis_id: str, **fields) -> AnalysisRecord:
    fields.setdefault("repo_name", f"repo-{analysis_id}")
    fields.setdefault("status", "analyzing")
    return AnalysisRecord(analysis_id=analysis_id, **fields)


def _seeded(*records: AnalysisRecord) -> StateStore:
    store = StateStore()
    store.set_all(list(records))
    return store


class TestPlaceholders:
    """Optimistic inserts before the server confirms anything"""

    def test_placeholder_goes_to_head(self):
        store = _seeded(_record("old1"), _record("old2"))
        store.upsert_placeholder(AnalysisRecord.placeholder("a1", repo_url="https://github.com/acme/api"))

        first = store.analyses[0]
        assert first.analysis_id == "a1"
        assert first.status == "pending"
        assert first.progress == 0
        assert first.state == RecordState.PROVISIONAL
        assert [r.analysis_id for r in store.analyses] == ["a1", "old1", "old2"]

    def test_placeholder_replaces_existing_entry_for_same_id(self):
        store = _seeded(_record("x"), _record("a1"))
        store.upsert_placeholder(AnalysisRecord.placeholder("a1"))
        assert [r.analysis_id for r in store.analyses] == ["a1", "x"]

    def test_first_patch_confirms_placeholder(self):
        store = StateStore()
        store.upsert_placeholder(AnalysisRecord.placeholder("a1"))
        store.patch("a1", {"status": "cloning"})
        assert store.get("a1").state == RecordState.CONFIRMED

    def test_fix_job_placeholder(self):
        store = _seeded(_record("a1", status="completed"))
        added = store.append_fix_job_placeholder("a1", FixJobRecord.placeholder("j1", "a1"))

        assert added is True
        record = store.get("a1")
        job = record.find_fix("j1")
        assert job.status == "initializing"
        assert job.state == RecordState.PROVISIONAL
        assert record.has_active_fixes is True

    def test_fix_job_placeholder_is_not_duplicated(self):
        store = _seeded(_record("a1"))
        store.append_fix_job_placeholder("a1", FixJobRecord.placeholder("j1", "a1"))
        assert store.append_fix_job_placeholder("a1", FixJobRecord.placeholder("j1", "a1")) is False
        assert len(store.get("a1").fixes) == 1

    def test_fix_job_placeholder_unknown_parent(self):
        store = StateStore()
        assert store.append_fix_job_placeholder("nope", FixJobRecord.placeholder("j1", "nope")) is False


class TestPatch:
    """Shallow merge semantics"""

    def test_patch_preserves_absent_fields(self):
        store = _seeded(_record(
            "a1",
            repo_url="https://github.com/acme/api",
            message="cloning repository",
            code_quality=CodeQuality(score=80, grade="B"),
            structure={"files": 12},
        ))
        store.patch("a1", {"status": "ai_analyzing", "progress": 75})

        record = store.get("a1")
        assert record.status == "ai_analyzing"
        assert record.progress == 75
        assert record.message == "cloning repository"
        assert record.repo_url == "https://github.com/acme/api"
        assert record.quality_score == 80
        assert record.structure == {"files": 12}

    def test_patch_unknown_id_is_noop(self):
        store = _seeded(_record("a1"))
        version = store.version
        assert store.patch("missing", {"status": "completed"}) is None
        assert store.version == version
        assert len(store) == 1

    def test_patch_cannot_change_identity(self):
        store = _seeded(_record("a1"))
        store.patch("a1", {"analysis_id": "other", "status": "cloning"})
        assert "a1" in store
        assert "other" not in store

    def test_patch_accepts_unknown_status(self):
        store = _seeded(_record("a1"))
        store.patch("a1", {"status": "queued_for_gpu"})
        assert store.get("a1").status == "queued_for_gpu"

    def test_records_are_copy_on_write(self):
        store = _seeded(_record("a1", progress=10))
        before = store.get("a1")
        store.patch("a1", {"progress": 20})
        assert before.progress == 10
        assert store.get("a1").progress == 20


class TestReplace:
    def test_replace_substitutes_whole_record(self):
        store = _seeded(_record("a1", message="scanning", progress=40))
        full = AnalysisRecord(
            analysis_id="a1",
            status="completed",
            progress=100,
            code_quality=CodeQuality(score=62, grade="D"),
        )
        store.replace("a1", full)

        record = store.get("a1")
        assert record.status == "completed"
        assert record.quality_score == 62
        assert record.message == ""

    def test_replace_unknown_id_is_noop(self):
        store = StateStore()
        assert store.replace("a1", _record("a1")) is None
        assert len(store) == 0

    def test_upsert_prepends_unknown_record(self):
        store = _seeded(_record("x"))
        store.upsert(_record("a1"))
        assert [r.analysis_id for r in store.analyses] == ["a1", "x"]


class TestPatchFixJob:
    """Nested fix-job merges and derived parent flags"""

    def test_merges_into_existing_job(self):
        store = _seeded(_record("a1", status="completed"))
        store.append_fix_job_placeholder("a1", FixJobRecord.placeholder("j1", "a1"))
        store.patch_fix_job("a1", "j1", {"status": "fixing", "progress": 50})

        job = store.get_fix_job("a1", "j1")
        assert job.status == "fixing"
        assert job.progress == 50
        assert job.message == "Starting automated fix..."
        assert job.state == RecordState.CONFIRMED

    def test_appends_missing_job(self):
        store = _seeded(_record("a1", status="completed"))
        job = store.patch_fix_job("a1", "j9", {"status": "cloning", "progress": 10})

        assert job.job_id == "j9"
        assert job.analysis_id == "a1"
        assert store.get("a1").has_active_fixes is True

    def test_completion_recomputes_parent_flags(self):
        store = _seeded(_record("a1", status="completed"))
        store.patch_fix_job("a1", "j1", {"status": "pushing"})
        store.patch_fix_job("a1", "j1", {
            "status": "completed",
            "progress": 100,
            "pr_url": "https://github.com/acme/api/pull/7",
            "pr_number": 7,
        })

        record = store.get("a1")
        assert record.has_active_fixes is False
        assert record.has_completed_fixes is True
        assert [fix.pr_number for fix in record.completed_prs] == [7]

    def test_other_jobs_untouched(self):
        store = _seeded(_record("a1", status="completed"))
        store.patch_fix_job("a1", "j1", {"status": "fixing"})
        store.patch_fix_job("a1", "j2", {"status": "cloning"})
        store.patch_fix_job("a1", "j1", {"status": "completed"})

        assert store.get_fix_job("a1", "j2").status == "cloning"
        assert store.get("a1").has_active_fixes is True

    def test_unknown_parent_is_noop(self):
        store = StateStore()
        assert store.patch_fix_job("a1", "j1", {"status": "fixing"}) is None


class TestSequenceGuard:
    """Responses older than the last applied write are dropped"""

    def test_stale_patch_dropped(self):
        store = _seeded(_record("a1"))
        older = store.next_sequence()
        newer = store.next_sequence()

        store.patch("a1", {"progress": 60}, sequence=newer)
        assert store.patch("a1", {"progress": 30}, sequence=older) is None
        assert store.get("a1").progress == 60

    def test_sequences_are_per_record(self):
        store = _seeded(_record("a1"), _record("a2"))
        older = store.next_sequence()
        newer = store.next_sequence()

        store.patch("a1", {"progress": 60}, sequence=newer)
        store.patch("a2", {"progress": 30}, sequence=older)
        assert store.get("a2").progress == 30

    def test_stale_fix_job_patch_dropped(self):
        store = _seeded(_record("a1"))
        older = store.next_sequence()
        newer = store.next_sequence()

        store.patch_fix_job("a1", "j1", {"status": "pushing"}, sequence=newer)
        store.patch_fix_job("a1", "j1", {"status": "cloning"}, sequence=older)
        assert store.get_fix_job("a1", "j1").status == "pushing"

    def test_listing_keeps_guards_for_listed_records(self):
        store = _seeded(_record("a1"))
        older = store.next_sequence()
        newer = store.next_sequence()
        store.patch("a1", {"progress": 60}, sequence=newer)

        store.set_all([_record("a1")])

        assert store.patch("a1", {"progress": 30}, sequence=older) is None

    def test_listing_forgets_guards_for_unlisted_records(self):
        store = _seeded(_record("a1"), _record("a2"))
        older = store.next_sequence()
        newer = store.next_sequence()
        store.patch("a1", {"progress": 60}, sequence=newer)
        store.patch_fix_job("a1", "j1", {"status": "pushing"}, sequence=newer)

        store.set_all([_record("a2")])
        assert store._applied == {}

        store.set_all([_record("a1"), _record("a2")])
        assert store.patch("a1", {"progress": 30}, sequence=older) is not None
        assert store.get("a1").progress == 30


class TestSubscriptions:
    def test_listener_sees_each_write(self):
        store = StateStore()
        events = []
        store.subscribe(lambda change: events.append((change.event, change.analysis_id, change.version)))

        store.set_all([_record("a1")])
        store.patch("a1", {"progress": 5})
        store.patch_fix_job("a1", "j1", {"status": "fixing"})

        assert events == [
            (StoreEvent.RESET, None, 1),
            (StoreEvent.PATCHED, "a1", 2),
            (StoreEvent.FIX_JOB_ADDED, "a1", 3),
        ]

    def test_unsubscribe(self):
        store = StateStore()
        events = []
        unsubscribe = store.subscribe(events.append)
        unsubscribe()
        store.set_all([])
        assert events == []

    def test_failing_listener_does_not_break_writes(self):
        store = StateStore()

        def broken(change):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.set_all([_record("a1")])
        assert "a1" in store

    def test_change_serializes_record(self):
        store = StateStore()
        changes = []
        store.subscribe(changes.append)
        store.upsert_placeholder(AnalysisRecord.placeholder("a1"))

        payload = changes[0].to_dict()
        assert payload["event"] == "inserted"
        assert payload["record"]["analysis_id"] == "a1"
        assert payload["record"]["state"] == "provisional"
