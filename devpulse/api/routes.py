"""
Analyses API Routes.

Read-model endpoints over the tracker's StateStore, plus the two user
actions (submit analysis, trigger fix) and a manual refresh.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from devpulse.core.schemas import AnalysisRecord, TriggerFixResult
from devpulse.core.tracking import AnalysisTracker, PollKind

router = APIRouter(tags=["analyses"])


def get_tracker(request: Request) -> AnalysisTracker:
    return request.app.state.tracker


# ==========================================================================
# Schemas
# ==========================================================================

class AnalysisListResponse(BaseModel):
    """Current analysis list."""
    analyses: list[AnalysisRecord]
    total: int
    active_pollers: int
    version: int


class AnalysisDetailResponse(BaseModel):
    """One analysis plus its view-model flags."""
    analysis: AnalysisRecord
    risk_level: str
    can_raise_pr: bool
    completed_prs: list[str]
    is_polling: bool


class SubmitAnalysisRequest(BaseModel):
    """Request to analyze a repository."""
    repo_url: str = Field(..., description="Repository clone/browse URL")
    repo_name: str = Field("", description="Repository name; derived from the URL when empty")
    owner: str = Field("", description="Repository owner; derived from the URL when empty")


# ==========================================================================
# Endpoints
# ==========================================================================

@router.get("/analyses", response_model=AnalysisListResponse)
async def list_analyses(
    status_filter: Optional[str] = Query(None, alias="status"),
    tracker: AnalysisTracker = Depends(get_tracker),
):
    """List tracked analyses, newest submissions first."""
    analyses = tracker.analyses
    if status_filter:
        analyses = [record for record in analyses if record.status == status_filter]
    return AnalysisListResponse(
        analyses=analyses,
        total=len(analyses),
        active_pollers=len(tracker.registry),
        version=tracker.store.version,
    )


@router.get("/analyses/{analysis_id}", response_model=AnalysisDetailResponse)
async def get_analysis(
    analysis_id: str,
    tracker: AnalysisTracker = Depends(get_tracker),
):
    record = tracker.get(analysis_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Analysis {analysis_id} not found",
        )
    return AnalysisDetailResponse(
        analysis=record,
        risk_level=record.risk_level,
        can_raise_pr=record.can_raise_pr,
        completed_prs=[fix.pr_url for fix in record.completed_prs if fix.pr_url],
        is_polling=tracker.is_tracking(PollKind.ANALYSIS, analysis_id),
    )


@router.post("/analyses", response_model=AnalysisRecord, status_code=status.HTTP_202_ACCEPTED)
async def submit_analysis(
    request: SubmitAnalysisRequest,
    tracker: AnalysisTracker = Depends(get_tracker),
):
    """Submit a repository; the placeholder record is returned immediately."""
    return await tracker.submit_analysis(request.repo_url, request.repo_name, request.owner)


@router.post(
    "/analyses/{analysis_id}/fixes",
    response_model=TriggerFixResult,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_fix(
    analysis_id: str,
    tracker: AnalysisTracker = Depends(get_tracker),
):
    """Start an automated fix and pull request for an analysis."""
    return await tracker.trigger_fix(analysis_id)


@router.post("/refresh", response_model=AnalysisListResponse)
async def refresh(tracker: AnalysisTracker = Depends(get_tracker)):
    analyses = await tracker.refresh()
    return AnalysisListResponse(
        analyses=analyses,
        total=len(analyses),
        active_pollers=len(tracker.registry),
        version=tracker.store.version,
    )
