"""
Data models for the compliance analyzer.

This module defines the dataclasses and enums shared by the orchestrator,
the findings service and storage: snapshots, analysis runs, findings,
remediation tasks and their query/summary shapes.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


AI_MODEL_STATIC = "static-pattern-matching"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SnapshotStatus(str, Enum):
    """Lifecycle of an ingested repository snapshot."""

    UPLOADED = "uploaded"
    EXTRACTED = "extracted"
    INDEXED = "indexed"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class AnalysisDepth(str, Enum):
    """How much of the snapshot the detectors read."""

    STRUCTURE_ONLY = "structure_only"
    SECURITY_RELEVANT = "security_relevant"
    FULL = "full"


class PhaseStatus(str, Enum):
    """Status of the current phase of an analysis run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class Framework(str, Enum):
    """Supported compliance frameworks."""

    SOC2 = "SOC2"
    ISO27001 = "ISO27001"
    NIST80053 = "NIST80053"
    FEDRAMP = "FedRAMP"

    @classmethod
    def from_name(cls, name: str) -> "Framework":
        """
        Resolve a user-supplied framework name.

        Matching ignores case, spaces, dashes and underscores, so "soc2",
        "ISO-27001" and "nist 800-53" all resolve.

        Raises:
            ValueError: If the name matches no supported framework
        """
        key = "".join(ch for ch in name.upper() if ch.isalnum())
        aliases = {
            "SOC2": cls.SOC2,
            "ISO27001": cls.ISO27001,
            "NIST": cls.NIST80053,
            "NIST80053": cls.NIST80053,
            "FEDRAMP": cls.FEDRAMP,
        }
        if key not in aliases:
            raise ValueError(f"Unsupported framework: {name}")
        return aliases[key]


class FindingStatus(str, Enum):
    """Verdict for one control."""

    PASS = "pass"
    PARTIAL = "partial"
    FAIL = "fail"
    NOT_OBSERVED = "not_observed"
    NEEDS_HUMAN = "needs_human"


class ConfidenceLevel(str, Enum):
    """How certain the automated mapping is in a verdict."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 0, "medium": 1, "high": 2}[self.value]


class TaskCategory(str, Enum):
    """Kind of remediation work."""

    CODE_CHANGE = "code_change"
    MISSING_EVIDENCE = "missing_evidence"


class TaskPriority(str, Enum):
    """Remediation task priority."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class TaskStatus(str, Enum):
    """Remediation task status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


TASK_GENERATING_STATUSES = (FindingStatus.FAIL, FindingStatus.PARTIAL)


def derive_task_priority(status: FindingStatus, confidence: ConfidenceLevel) -> TaskPriority:
    """
    Derive a remediation task priority from a finding verdict.

    Args:
        status: Finding status (fail or partial)
        confidence: Finding confidence

    Returns:
        critical for a high-confidence fail, high for any other fail,
        medium otherwise
    """
    if status == FindingStatus.FAIL:
        return TaskPriority.CRITICAL if confidence == ConfidenceLevel.HIGH else TaskPriority.HIGH
    return TaskPriority.MEDIUM


def derive_task_category(status: FindingStatus) -> TaskCategory:
    """Failing controls need code changes; partial ones need evidence."""
    if status == FindingStatus.FAIL:
        return TaskCategory.CODE_CHANGE
    return TaskCategory.MISSING_EVIDENCE


@dataclass
class Snapshot:
    """One extracted, analyzable copy of a source repository."""

    id: str = field(default_factory=lambda: str(uuid4()))
    organization_id: str = ""
    name: str = ""
    extracted_path: Optional[str] = None
    status: SnapshotStatus = SnapshotStatus.UPLOADED
    analysis_phase: Optional[str] = None
    analysis_started_at: Optional[datetime] = None
    analysis_completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert snapshot to dictionary for serialization."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "name": self.name,
            "extracted_path": self.extracted_path,
            "status": self.status.value,
            "analysis_phase": self.analysis_phase,
            "analysis_started_at": _iso(self.analysis_started_at),
            "analysis_completed_at": _iso(self.analysis_completed_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class RunMetrics:
    """Counters accumulated over one analysis run."""

    files_analyzed: int = 0
    findings_generated: int = 0
    ai_calls_made: int = 0
    tokens_used: int = 0
    cost_estimate: float = 0.0

    def to_dict(self) -> dict:
        return {
            "files_analyzed": self.files_analyzed,
            "findings_generated": self.findings_generated,
            "ai_calls_made": self.ai_calls_made,
            "tokens_used": self.tokens_used,
            "cost_estimate": self.cost_estimate,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RunMetrics":
        return cls(
            files_analyzed=int(data.get("files_analyzed", 0)),
            findings_generated=int(data.get("findings_generated", 0)),
            ai_calls_made=int(data.get("ai_calls_made", 0)),
            tokens_used=int(data.get("tokens_used", 0)),
            cost_estimate=float(data.get("cost_estimate", 0.0)),
        )


@dataclass
class PhaseError:
    """One entry of a run's error log."""

    error: str
    phase: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "phase": self.phase,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PhaseError":
        return cls(
            error=data["error"],
            phase=data.get("phase"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class AnalysisRun:
    """
    One attempt to analyze a snapshot.

    A run is in flight until ``completed_at`` is stamped; at most one
    in-flight run exists per snapshot.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    snapshot_id: str = ""
    frameworks: list[str] = field(default_factory=list)
    analysis_depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT
    phase: Optional[str] = None
    phase_status: PhaseStatus = PhaseStatus.PENDING
    progress: int = 0
    metrics: RunMetrics = field(default_factory=RunMetrics)
    error_log: list[PhaseError] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    heartbeat_at: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_active(self) -> bool:
        return self.completed_at is None

    def to_dict(self) -> dict:
        """Convert run to dictionary for serialization."""
        return {
            "id": self.id,
            "snapshot_id": self.snapshot_id,
            "frameworks": self.frameworks,
            "analysis_depth": self.analysis_depth.value,
            "phase": self.phase,
            "phase_status": self.phase_status.value,
            "progress": self.progress,
            "metrics": self.metrics.to_dict(),
            "error_log": [e.to_dict() for e in self.error_log],
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "heartbeat_at": _iso(self.heartbeat_at),
            "created_at": _iso(self.created_at),
        }


@dataclass
class EvidenceReference:
    """Pointer into the snapshot backing a finding."""

    file_path: str
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    snippet: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "snippet": self.snippet,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EvidenceReference":
        return cls(
            file_path=data["file_path"],
            line_start=data.get("line_start"),
            line_end=data.get("line_end"),
            snippet=data.get("snippet"),
        )


@dataclass
class HumanOverride:
    """A reviewer's correction of an automated verdict."""

    original_status: FindingStatus
    new_status: FindingStatus
    reason: str
    evidence: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "original_status": self.original_status.value,
            "new_status": self.new_status.value,
            "reason": self.reason,
            "evidence": self.evidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HumanOverride":
        return cls(
            original_status=FindingStatus(data["original_status"]),
            new_status=FindingStatus(data["new_status"]),
            reason=data.get("reason", ""),
            evidence=data.get("evidence"),
        )


@dataclass
class ControlFinding:
    """Verdict for one control, as produced by the control mapper."""

    control_id: str
    framework: str
    status: FindingStatus
    confidence_level: ConfidenceLevel
    signal_type: str
    summary: str
    details: str = ""
    evidence_references: list[EvidenceReference] = field(default_factory=list)
    recommendation: str = ""
    ai_model: str = AI_MODEL_STATIC

    def to_dict(self) -> dict:
        return {
            "control_id": self.control_id,
            "framework": self.framework,
            "status": self.status.value,
            "confidence_level": self.confidence_level.value,
            "signal_type": self.signal_type,
            "summary": self.summary,
            "details": self.details,
            "evidence_references": [e.to_dict() for e in self.evidence_references],
            "recommendation": self.recommendation,
            "ai_model": self.ai_model,
        }


@dataclass
class RepositoryFinding:
    """
    Persisted verdict for one control, framework and snapshot.

    When ``human_override`` is set, ``status`` mirrors its ``new_status``
    and the automated verdict is kept in ``human_override.original_status``.
    """

    id: str = field(default_factory=lambda: str(uuid4()))
    snapshot_id: str = ""
    control_id: str = ""
    framework: str = ""
    status: FindingStatus = FindingStatus.NOT_OBSERVED
    confidence_level: ConfidenceLevel = ConfidenceLevel.LOW
    signal_type: str = ""
    summary: str = ""
    details: str = ""
    evidence_references: list[EvidenceReference] = field(default_factory=list)
    recommendation: str = ""
    ai_model: str = AI_MODEL_STATIC
    human_override: Optional[HumanOverride] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_control_finding(cls, snapshot_id: str, finding: ControlFinding) -> "RepositoryFinding":
        """Build a new persisted finding from a mapper verdict."""
        return cls(
            snapshot_id=snapshot_id,
            control_id=finding.control_id,
            framework=finding.framework,
            status=finding.status,
            confidence_level=finding.confidence_level,
            signal_type=finding.signal_type,
            summary=finding.summary,
            details=finding.details,
            evidence_references=list(finding.evidence_references),
            recommendation=finding.recommendation,
            ai_model=finding.ai_model,
        )

    def to_dict(self) -> dict:
        """Convert finding to dictionary for serialization."""
        return {
            "id": self.id,
            "snapshot_id": self.snapshot_id,
            "control_id": self.control_id,
            "framework": self.framework,
            "status": self.status.value,
            "confidence_level": self.confidence_level.value,
            "signal_type": self.signal_type,
            "summary": self.summary,
            "details": self.details,
            "evidence_references": [e.to_dict() for e in self.evidence_references],
            "recommendation": self.recommendation,
            "ai_model": self.ai_model,
            "human_override": self.human_override.to_dict() if self.human_override else None,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class RepositoryTask:
    """Remediation work item spawned from a failing or partial finding."""

    id: str = field(default_factory=lambda: str(uuid4()))
    snapshot_id: str = ""
    finding_id: Optional[str] = None
    title: str = ""
    description: str = ""
    category: TaskCategory = TaskCategory.MISSING_EVIDENCE
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.OPEN
    assigned_to_role: str = "user"
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert task to dictionary for serialization."""
        return {
            "id": self.id,
            "snapshot_id": self.snapshot_id,
            "finding_id": self.finding_id,
            "title": self.title,
            "description": self.description,
            "category": self.category.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "assigned_to_role": self.assigned_to_role,
            "due_date": _iso(self.due_date),
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class FindingFilters:
    """
    Query filters for findings retrieval.

    Enum-valued filters are kept as raw strings; values that do not parse
    are ignored by the findings service rather than rejected.
    """

    framework: Optional[str] = None
    status: Optional[str] = None
    confidence_level: Optional[str] = None
    signal_type: Optional[str] = None
    control_id: Optional[str] = None
    page: int = 1
    limit: Optional[int] = None


@dataclass
class FindingsPage:
    """One page of findings plus the total match count."""

    findings: list[RepositoryFinding]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0

    def to_dict(self) -> dict:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "total_pages": self.total_pages,
        }


@dataclass
class FindingSummary:
    """Aggregate statistics over a snapshot's findings."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_framework: dict[str, int] = field(default_factory=dict)
    by_confidence: dict[str, int] = field(default_factory=dict)
    critical_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_status": self.by_status,
            "by_framework": self.by_framework,
            "by_confidence": self.by_confidence,
            "critical_count": self.critical_count,
        }
