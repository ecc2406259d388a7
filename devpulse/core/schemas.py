"""
DevPulse Client - Pydantic Schemas
===================================

Canonical client-side records and the wire models the engine consumes.
Every inbound payload is converted to these shapes by
`devpulse.core.normalize` before it reaches the state store.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from devpulse.core.config import settings


# ==========================================================================
# Status Enums
# ==========================================================================

class AnalysisStatus(str, Enum):
    """Server-side analysis lifecycle."""
    PENDING = "pending"
    CLONING = "cloning"
    ANALYZING = "analyzing"
    AI_ANALYZING = "ai_analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class FixJobStatus(str, Enum):
    """Server-side remediation job lifecycle."""
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    CLONING = "cloning"
    FIXING = "fixing"
    COMMITTING = "committing"
    PUSHING = "pushing"
    CREATING_PR = "creating_pr"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordState(str, Enum):
    """Whether a record was inserted client-side or came from the server."""
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"


TERMINAL_STATUSES = frozenset({"completed", "failed"})


def status_value(status: Any) -> str:
    """Plain string form of a status (enum member or raw string)."""
    if isinstance(status, Enum):
        return str(status.value)
    return str(status)


def is_terminal(status: Any) -> bool:
    return status_value(status) in TERMINAL_STATUSES


def _clamp_progress(v: Any) -> int:
    if v is None:
        return 0
    try:
        value = int(round(float(v)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, value))


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )


# ==========================================================================
# Analysis Results
# ==========================================================================

class CodeQuality(BaseSchema):
    score: Optional[float] = None
    grade: Optional[str] = None


class HighImpactIssue(BaseSchema):
    """A finding a fix job is trying to remediate."""

    id: Optional[str] = None
    type: Optional[str] = None  # SECURITY, BUG, CODE_QUALITY
    severity: Optional[str] = None
    title: str = ""
    description: str = ""
    file: Optional[str] = None
    priority: Optional[int] = None
    fixable: bool = True


# ==========================================================================
# Fix Job Record
# ==========================================================================

class FixJobRecord(BaseSchema):
    """A remediation job nested under an analysis."""

    job_id: str
    analysis_id: str = ""
    status: str = FixJobStatus.INITIALIZING.value
    progress: int = 0
    message: str = ""
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    high_impact_issues: Optional[list[HighImpactIssue]] = None
    files_modified: Optional[list[str]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    state: RecordState = RecordState.CONFIRMED

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> str:
        return status_value(v) if v is not None else FixJobStatus.INITIALIZING.value

    @field_validator("progress", mode="before")
    @classmethod
    def coerce_progress(cls, v: Any) -> int:
        return _clamp_progress(v)

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    @property
    def is_completed_pr(self) -> bool:
        return self.status == FixJobStatus.COMPLETED.value and bool(self.pr_url)

    @classmethod
    def placeholder(cls, job_id: str, analysis_id: str, message: str = "") -> "FixJobRecord":
        """Provisional entry shown between the trigger response and the first poll."""
        return cls(
            job_id=job_id,
            analysis_id=analysis_id,
            status=FixJobStatus.INITIALIZING.value,
            progress=0,
            message=message or "Starting automated fix...",
            state=RecordState.PROVISIONAL,
        )


# Fields a per-job status response may update on the nested record
FIX_JOB_PATCH_FIELDS = frozenset({
    "status", "progress", "message", "pr_url", "pr_number",
    "error", "high_impact_issues", "files_modified", "completed_at",
})


def derive_fix_flags(fixes: list[FixJobRecord]) -> tuple[bool, bool]:
    """(has_active_fixes, has_completed_fixes) for a fix-job list."""
    has_active = any(fix.is_active for fix in fixes)
    has_completed = any(fix.status == FixJobStatus.COMPLETED.value for fix in fixes)
    return has_active, has_completed


# ==========================================================================
# Analysis Record
# ==========================================================================

class AnalysisRecord(BaseSchema):
    """
    One repository analysis as the client knows it.

    Mutated only through StateStore merge operations.
    """

    analysis_id: str
    repo_name: str = ""
    repo_owner: str = ""
    repo_url: str = ""
    status: str = AnalysisStatus.PENDING.value
    progress: int = 0
    message: str = ""
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    code_quality: Optional[CodeQuality] = None
    structure: Optional[dict[str, Any]] = None
    ai_analysis: Optional[dict[str, Any]] = None
    fixes: list[FixJobRecord] = Field(default_factory=list)
    has_active_fixes: bool = False
    has_completed_fixes: bool = False
    state: RecordState = RecordState.CONFIRMED

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> str:
        return status_value(v) if v is not None else AnalysisStatus.PENDING.value

    @field_validator("progress", mode="before")
    @classmethod
    def coerce_progress(cls, v: Any) -> int:
        return _clamp_progress(v)

    @field_validator("message", mode="before")
    @classmethod
    def coerce_message(cls, v: Any) -> str:
        return "" if v is None else str(v)

    # ----------------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def is_in_progress(self) -> bool:
        return not self.is_terminal

    @property
    def is_provisional(self) -> bool:
        return self.state == RecordState.PROVISIONAL

    # ----------------------------------------------------------------------
    # Quality / risk
    # ----------------------------------------------------------------------

    @property
    def quality_score(self) -> Optional[float]:
        return self.code_quality.score if self.code_quality else None

    @property
    def grade(self) -> Optional[str]:
        return self.code_quality.grade if self.code_quality else None

    @property
    def risk_level(self) -> str:
        """LOW / MEDIUM / HIGH badge, N/A when no score is known."""
        score = self.quality_score
        if not score:
            return "N/A"
        if score >= settings.LOW_RISK_THRESHOLD:
            return "LOW"
        if score >= settings.HIGH_RISK_THRESHOLD:
            return "MEDIUM"
        return "HIGH"

    @property
    def is_high_risk(self) -> bool:
        return (self.quality_score or 0) < settings.HIGH_RISK_THRESHOLD

    # ----------------------------------------------------------------------
    # Fix jobs
    # ----------------------------------------------------------------------

    def find_fix(self, job_id: str) -> Optional[FixJobRecord]:
        for fix in self.fixes:
            if fix.job_id == job_id:
                return fix
        return None

    @property
    def completed_prs(self) -> list[FixJobRecord]:
        return [fix for fix in self.fixes if fix.is_completed_pr]

    @property
    def current_fix(self) -> Optional[FixJobRecord]:
        """Most recent fix job that has not produced a pull request."""
        for fix in reversed(self.fixes):
            if not fix.is_completed_pr:
                return fix
        return None

    @property
    def is_fix_in_progress(self) -> bool:
        current = self.current_fix
        return current is not None and current.is_active

    @property
    def can_raise_pr(self) -> bool:
        return (
            self.status == AnalysisStatus.COMPLETED.value
            and self.is_high_risk
            and not self.has_active_fixes
            and not self.is_fix_in_progress
        )

    def with_fixes(self, fixes: list[FixJobRecord]) -> "AnalysisRecord":
        """Copy with a new fix list and recomputed derived flags."""
        has_active, has_completed = derive_fix_flags(fixes)
        return self.model_copy(update={
            "fixes": list(fixes),
            "has_active_fixes": has_active,
            "has_completed_fixes": has_completed,
        })

    @classmethod
    def placeholder(
        cls,
        analysis_id: str,
        repo_url: str = "",
        repo_name: str = "",
        repo_owner: str = "",
        message: str = "",
    ) -> "AnalysisRecord":
        """Provisional record shown between submission and the first poll."""
        return cls(
            analysis_id=analysis_id,
            repo_url=repo_url,
            repo_name=repo_name,
            repo_owner=repo_owner,
            status=AnalysisStatus.PENDING.value,
            progress=0,
            message=message or "Analysis queued",
            state=RecordState.PROVISIONAL,
        )


# ==========================================================================
# Wire Models
# ==========================================================================

class AnalysisProgress(BaseSchema):
    """Lightweight progress response for one analysis."""

    status: str
    percentage: Optional[int] = None
    message: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v: Any) -> str:
        return status_value(v)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_patch(self) -> dict[str, Any]:
        """Partial record update; absent fields are left out, never nulled."""
        patch: dict[str, Any] = {"status": self.status}
        if self.percentage is not None:
            patch["progress"] = self.percentage
        if self.message is not None:
            patch["message"] = self.message
        return patch


class Pagination(BaseSchema):
    total: int = 0
    limit: int = 0
    offset: int = 0
    page: int = 1
    total_pages: int = 1


class AnalysisPage(BaseSchema):
    analyses: list[AnalysisRecord] = Field(default_factory=list)
    pagination: Pagination = Field(default_factory=Pagination)


class SubmitAnalysisResult(BaseSchema):
    analysis_id: str
    status: Optional[str] = None
    message: str = ""


class TriggerFixResult(BaseSchema):
    job_id: str
    analysis_id: str = ""
    status: Optional[str] = None
    message: str = ""
    token_source: Optional[str] = None


class GitHubRepo(BaseSchema):
    id: Optional[int] = None
    name: str
    full_name: str = ""
    description: Optional[str] = None
    url: str = ""
    clone_url: str = ""
    language: Optional[str] = None
    stars: int = 0
    forks: int = 0
    private: bool = False
    default_branch: str = "main"
    owner_login: str = ""


class TokenStatus(BaseSchema):
    has_token: bool = False
    github_username: Optional[str] = None
    scopes: list[str] = Field(default_factory=list)
    message: str = ""


# ==========================================================================
# Local API
# ==========================================================================

class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    api_base_url: str
    analyses: int
    active_pollers: int
