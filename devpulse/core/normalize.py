"""
DevPulse Client - Wire Normalization
=====================================

The job API is loosely typed: the same concept arrives as `analysis_id` or
`analysisId`, `code_quality` or `codeQuality`, progress as an integer or as
`{percentage, message}`. Everything is converted to the canonical snake_case
schema here, at the API boundary, so shape ambiguity never reaches the store.

Only keys present in the payload end up in the normalized dict. Callers rely
on that to build partial patches.
"""

from typing import Any, Iterable, Mapping, Optional

from devpulse.core.schemas import (
    AnalysisPage,
    AnalysisProgress,
    AnalysisRecord,
    FixJobRecord,
    GitHubRepo,
    Pagination,
    SubmitAnalysisResult,
    TokenStatus,
    TriggerFixResult,
    derive_fix_flags,
)

_MISSING = object()


def pick(payload: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    """First value present under any of `keys` (None counts as absent)."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return default


def unwrap(payload: Any, *keys: str) -> Any:
    """Strip a `{success, <key>: ...}` envelope when present."""
    if isinstance(payload, Mapping):
        for key in keys:
            if key in payload and isinstance(payload[key], (Mapping, list)):
                return payload[key]
    return payload


def _copy_fields(
    source: Mapping[str, Any],
    target: dict[str, Any],
    aliases: Mapping[str, Iterable[str]],
) -> None:
    for canonical, keys in aliases.items():
        value = pick(source, canonical, *keys)
        if value is not _MISSING:
            target[canonical] = value


# ==========================================================================
# Field aliases
# ==========================================================================

FIX_JOB_ALIASES: dict[str, tuple[str, ...]] = {
    "analysis_id": ("analysisId",),
    "status": (),
    "message": ("statusMessage",),
    "pr_url": ("prUrl", "pullRequestUrl"),
    "pr_number": ("prNumber", "pullRequestNumber"),
    "high_impact_issues": ("highImpactIssues", "issues"),
    "files_modified": ("filesModified",),
    "error": ("errorMessage",),
    "created_at": ("createdAt",),
    "completed_at": ("completedAt",),
}

ANALYSIS_ALIASES: dict[str, tuple[str, ...]] = {
    "repo_name": ("repoName",),
    "repo_owner": ("repoOwner", "owner"),
    "repo_url": ("repoUrl",),
    "status": (),
    "error": ("errorMessage",),
    "created_at": ("createdAt",),
    "updated_at": ("updatedAt",),
    "completed_at": ("completedAt",),
    "code_quality": ("codeQuality",),
    "structure": (),
    "ai_analysis": ("aiAnalysis",),
}


# ==========================================================================
# Progress
# ==========================================================================

def _split_progress(raw: Any) -> tuple[Optional[Any], Optional[str]]:
    """(percentage, message) from an integer or `{percentage, message}` progress."""
    if isinstance(raw, Mapping):
        return pick(raw, "percentage", "percent", "value", default=None), pick(raw, "message", default=None)
    return raw, None


def normalize_progress(payload: Mapping[str, Any]) -> dict[str, Any]:
    payload = unwrap(payload, "progress_status", "data")
    percentage, message = _split_progress(payload.get("progress"))
    result: dict[str, Any] = {"status": pick(payload, "status", default="pending")}
    if percentage is not None:
        result["percentage"] = percentage
    if message is None:
        message = pick(payload, "message", default=None)
    if message is not None:
        result["message"] = message
    return result


# ==========================================================================
# Fix jobs
# ==========================================================================

def normalize_fix_job(payload: Mapping[str, Any], analysis_id: Optional[str] = None) -> dict[str, Any]:
    payload = unwrap(payload, "job", "fix", "data")
    result: dict[str, Any] = {}

    job_id = pick(payload, "job_id", "jobId", "id", "_id", default=None)
    if job_id is not None:
        result["job_id"] = str(job_id)

    _copy_fields(payload, result, FIX_JOB_ALIASES)

    if "progress" in payload:
        percentage, message = _split_progress(payload["progress"])
        if percentage is not None:
            result["progress"] = percentage
        if message is not None and "message" not in result:
            result["message"] = message

    if analysis_id and "analysis_id" not in result:
        result["analysis_id"] = analysis_id
    return result


def parse_fix_job(
    payload: Mapping[str, Any],
    analysis_id: Optional[str] = None,
    job_id: Optional[str] = None,
) -> FixJobRecord:
    data = normalize_fix_job(payload, analysis_id)
    if job_id:
        data.setdefault("job_id", job_id)
    return FixJobRecord.model_validate(data)


# ==========================================================================
# Analyses
# ==========================================================================

def normalize_analysis(payload: Mapping[str, Any]) -> dict[str, Any]:
    payload = unwrap(payload, "analysis", "data")
    result: dict[str, Any] = {}

    analysis_id = pick(payload, "analysis_id", "analysisId", "id", "_id", default=None)
    if analysis_id is not None:
        result["analysis_id"] = str(analysis_id)

    _copy_fields(payload, result, ANALYSIS_ALIASES)

    if "progress" in payload:
        percentage, message = _split_progress(payload["progress"])
        if percentage is not None:
            result["progress"] = percentage
        if message is not None:
            result["message"] = message
    if payload.get("message") is not None:
        result["message"] = payload["message"]

    # Flat score fields seen on older listing payloads
    if "code_quality" not in result:
        score = pick(payload, "quality_score", "qualityScore", default=None)
        if score is not None:
            result["code_quality"] = {"score": score, "grade": pick(payload, "grade", default=None)}

    fixes = pick(payload, "fixes", "fix_jobs", "fixJobs", default=None)
    if fixes is not None:
        parent = result.get("analysis_id")
        jobs = [parse_fix_job(item, parent) for item in fixes if isinstance(item, Mapping)]
        result["fixes"] = jobs
        result["has_active_fixes"], result["has_completed_fixes"] = derive_fix_flags(jobs)
    else:
        active = pick(payload, "has_active_fixes", "hasActiveFixes", default=None)
        completed = pick(payload, "has_completed_fixes", "hasCompletedFixes", default=None)
        if active is not None:
            result["has_active_fixes"] = bool(active)
        if completed is not None:
            result["has_completed_fixes"] = bool(completed)
    return result


def parse_analysis(payload: Mapping[str, Any]) -> AnalysisRecord:
    return AnalysisRecord.model_validate(normalize_analysis(payload))


def parse_progress(payload: Mapping[str, Any]) -> AnalysisProgress:
    return AnalysisProgress.model_validate(normalize_progress(payload))


def parse_analysis_page(payload: Any) -> AnalysisPage:
    if isinstance(payload, list):
        items, raw_pagination = payload, {}
    else:
        items = pick(payload, "analyses", "items", "data", default=[])
        raw_pagination = payload.get("pagination") or {}

    analyses = [parse_analysis(item) for item in items if isinstance(item, Mapping)]
    pagination = Pagination(
        total=pick(raw_pagination, "total", default=len(analyses)),
        limit=pick(raw_pagination, "limit", default=len(analyses)),
        offset=pick(raw_pagination, "offset", default=0),
        page=pick(raw_pagination, "page", default=1),
        total_pages=pick(raw_pagination, "total_pages", "totalPages", default=1),
    )
    return AnalysisPage(analyses=analyses, pagination=pagination)


# ==========================================================================
# Action responses
# ==========================================================================

def parse_submit_result(payload: Mapping[str, Any]) -> SubmitAnalysisResult:
    data = unwrap(payload, "analysis", "data")
    return SubmitAnalysisResult(
        analysis_id=str(pick(data, "analysis_id", "analysisId", "id", "_id", default="")),
        status=pick(data, "status", default=None),
        message=pick(payload, "message", default=""),
    )


def parse_trigger_result(payload: Mapping[str, Any]) -> TriggerFixResult:
    data = unwrap(payload, "job", "data")
    return TriggerFixResult(
        job_id=str(pick(data, "job_id", "jobId", "id", default="")),
        analysis_id=str(pick(data, "analysis_id", "analysisId", default="")),
        status=pick(data, "status", default=None),
        message=pick(payload, "message", default=""),
        token_source=pick(payload, "token_source", "tokenSource", default=None),
    )


def parse_repos(payload: Any) -> list[GitHubRepo]:
    items = payload if isinstance(payload, list) else pick(payload, "repos", "repositories", default=[])
    repos = []
    for item in items:
        if not isinstance(item, Mapping):
            continue
        owner = item.get("owner") or {}
        repos.append(GitHubRepo(
            id=item.get("id"),
            name=item.get("name", ""),
            full_name=pick(item, "full_name", "fullName", default=""),
            description=item.get("description"),
            url=pick(item, "url", "html_url", default=""),
            clone_url=pick(item, "clone_url", "cloneUrl", default=""),
            language=item.get("language"),
            stars=pick(item, "stars", "stargazers_count", default=0),
            forks=pick(item, "forks", "forks_count", default=0),
            private=bool(item.get("private", False)),
            default_branch=pick(item, "default_branch", "defaultBranch", default="main"),
            owner_login=pick(owner, "login", default="") if isinstance(owner, Mapping) else str(owner),
        ))
    return repos


def parse_token_status(payload: Mapping[str, Any]) -> TokenStatus:
    return TokenStatus(
        has_token=bool(pick(payload, "has_token", "hasToken", "hasGitHubToken", "connected", default=False)),
        github_username=pick(payload, "github_username", "githubUsername", default=None),
        scopes=pick(payload, "scopes", default=[]),
        message=pick(payload, "message", default=""),
    )
