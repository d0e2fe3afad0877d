"""
API routes for snapshots, analysis runs, findings and tasks.

The caller's organization and user come from the ``X-Organization-Id`` and
``X-User-Id`` headers; authentication is handled in front of this service.
"""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from pydantic import BaseModel, Field

from .. import __version__
from ..core.errors import NotFoundError
from ..core.findings import FindingsService
from ..core.models import FindingFilters
from ..core.orchestrator import AnalysisOrchestrator
from ..core.snapshots import SnapshotService
from ..utils.secure_logging import get_secure_logger

logger = get_secure_logger(__name__)

router = APIRouter(prefix="/api")


# =============================================================================
# Pydantic Models
# =============================================================================

class AnalyzeRequest(BaseModel):
    """Request to start an analysis run."""
    frameworks: Optional[list[str]] = Field(
        None,
        description="Frameworks to assess (defaults to analysis.default_frameworks)",
    )
    depth: Optional[str] = Field(
        None,
        description="structure_only, security_relevant or full (defaults to analysis.default_depth)",
    )


class AnalyzeResponse(BaseModel):
    """Response to a started analysis run."""
    run_id: str


class HumanOverrideRequest(BaseModel):
    """Reviewer override of an automated verdict."""
    new_status: str
    reason: str = ""
    evidence: Optional[str] = None


class ReviewRequest(BaseModel):
    """Request to review a finding."""
    status: Optional[str] = None
    human_override: Optional[HumanOverrideRequest] = None


class TaskUpdateRequest(BaseModel):
    """Request to update a remediation task."""
    status: Optional[str] = None
    assigned_to_role: Optional[str] = None
    due_date: Optional[datetime] = None


# =============================================================================
# Dependencies
# =============================================================================

def get_snapshot_service(request: Request) -> SnapshotService:
    return request.app.state.snapshots


def get_findings_service(request: Request) -> FindingsService:
    return request.app.state.findings


def get_orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


OrganizationId = Annotated[str, Header(alias="X-Organization-Id")]
UserId = Annotated[str, Header(alias="X-User-Id")]
Snapshots = Annotated[SnapshotService, Depends(get_snapshot_service)]
Findings = Annotated[FindingsService, Depends(get_findings_service)]
Orchestrator = Annotated[AnalysisOrchestrator, Depends(get_orchestrator)]


# =============================================================================
# Health
# =============================================================================

@router.get("/health", tags=["Utilities"])
async def health_check(request: Request):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
        "database": "connected" if getattr(request.app.state, "db", None) else "disconnected",
    }


# =============================================================================
# Repositories
# =============================================================================

@router.get("/repositories", tags=["Repositories"])
async def list_repositories(snapshots: Snapshots, organization_id: OrganizationId):
    """List the organization's snapshots, newest first."""
    return {"repositories": [s.to_dict() for s in snapshots.list_snapshots(organization_id)]}


@router.get("/repositories/{snapshot_id}", tags=["Repositories"])
async def get_repository(snapshot_id: str, snapshots: Snapshots, organization_id: OrganizationId):
    return snapshots.get_snapshot(snapshot_id, organization_id).to_dict()


@router.delete("/repositories/{snapshot_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Repositories"])
async def delete_repository(
    snapshot_id: str,
    snapshots: Snapshots,
    organization_id: OrganizationId,
    user_id: UserId,
):
    """Delete a snapshot together with its findings and tasks."""
    snapshots.delete_snapshot(snapshot_id, organization_id, user_id)


# =============================================================================
# Analysis
# =============================================================================

@router.post(
    "/repositories/{snapshot_id}/analyze",
    response_model=AnalyzeResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["Analysis"],
)
async def start_analysis(
    snapshot_id: str,
    orchestrator: Orchestrator,
    organization_id: OrganizationId,
    user_id: UserId,
    body: Optional[AnalyzeRequest] = None,
):
    """
    Start analyzing an indexed snapshot.

    Returns as soon as the run is registered; poll the run for progress.
    """
    body = body or AnalyzeRequest()
    defaults = orchestrator.settings.analysis
    run_id = await orchestrator.start_analysis(
        snapshot_id,
        body.frameworks or defaults.default_frameworks,
        body.depth or defaults.default_depth,
        organization_id,
        user_id,
    )
    return AnalyzeResponse(run_id=run_id)


@router.get("/repositories/{snapshot_id}/analysis", tags=["Analysis"])
async def get_latest_analysis(snapshot_id: str, orchestrator: Orchestrator, organization_id: OrganizationId):
    """Latest run for a snapshot; ``run`` is null if it was never analyzed."""
    run = orchestrator.get_latest_run(snapshot_id, organization_id)
    return {"run": run.to_dict() if run else None}


@router.get("/analysis/{run_id}", tags=["Analysis"])
async def get_analysis(run_id: str, orchestrator: Orchestrator, organization_id: OrganizationId):
    return orchestrator.get_analysis_status(run_id, organization_id).to_dict()


@router.post("/analysis/{run_id}/cancel", tags=["Analysis"])
async def cancel_analysis(
    run_id: str,
    orchestrator: Orchestrator,
    organization_id: OrganizationId,
    user_id: UserId,
):
    run = await orchestrator.cancel_analysis(run_id, organization_id, user_id)
    return run.to_dict()


# =============================================================================
# Findings
# =============================================================================

@router.get("/repositories/{snapshot_id}/findings", tags=["Findings"])
async def list_findings(
    snapshot_id: str,
    findings: Findings,
    organization_id: OrganizationId,
    framework: Optional[str] = Query(None),
    finding_status: Optional[str] = Query(None, alias="status"),
    confidence_level: Optional[str] = Query(None),
    signal_type: Optional[str] = Query(None),
    control_id: Optional[str] = Query(None),
    page: int = Query(default=1),
    limit: Optional[int] = Query(default=None),
):
    """
    Get a page of findings with the snapshot's summary.

    Page sizes above 100 are capped rather than rejected.
    """
    filters = FindingFilters(
        framework=framework,
        status=finding_status,
        confidence_level=confidence_level,
        signal_type=signal_type,
        control_id=control_id,
        page=page,
        limit=limit,
    )
    result = findings.get_findings(snapshot_id, organization_id, filters)
    summary = findings.get_findings_summary(snapshot_id, organization_id)
    return {**result.to_dict(), "summary": summary.to_dict()}


@router.get("/repositories/{snapshot_id}/findings/summary", tags=["Findings"])
async def get_findings_summary(snapshot_id: str, findings: Findings, organization_id: OrganizationId):
    return findings.get_findings_summary(snapshot_id, organization_id).to_dict()


@router.patch("/repositories/{snapshot_id}/findings/{finding_id}", tags=["Findings"])
async def review_finding(
    snapshot_id: str,
    finding_id: str,
    body: ReviewRequest,
    findings: Findings,
    organization_id: OrganizationId,
    user_id: UserId,
):
    """Record a reviewer's status change or override."""
    finding = findings.get_finding_by_id(finding_id, organization_id)
    if finding.snapshot_id != snapshot_id:
        raise NotFoundError("Finding not found", "FINDING_NOT_FOUND")

    updated = findings.review_finding(
        finding_id,
        organization_id,
        user_id,
        status=body.status,
        human_override=body.human_override.model_dump() if body.human_override else None,
    )
    return updated.to_dict()


# =============================================================================
# Tasks
# =============================================================================

@router.get("/repositories/{snapshot_id}/tasks", tags=["Tasks"])
async def list_tasks(snapshot_id: str, findings: Findings, organization_id: OrganizationId):
    return {"tasks": [t.to_dict() for t in findings.list_tasks(snapshot_id, organization_id)]}


@router.patch("/repositories/{snapshot_id}/tasks/{task_id}", tags=["Tasks"])
async def update_task(
    snapshot_id: str,
    task_id: str,
    body: TaskUpdateRequest,
    findings: Findings,
    organization_id: OrganizationId,
    user_id: UserId,
):
    task = findings.update_task(
        task_id,
        snapshot_id,
        organization_id,
        user_id,
        status=body.status,
        assigned_to_role=body.assigned_to_role,
        due_date=body.due_date,
    )
    return task.to_dict()
