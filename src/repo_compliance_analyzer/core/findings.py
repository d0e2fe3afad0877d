"""
Findings service.

Persists graded findings per snapshot, serves filtered and paginated
reads, aggregates summaries, applies human review and keeps the
remediation task list in step with failing and partial findings.
"""

from datetime import datetime
from typing import Any, Optional, Sequence

from ..storage.database import Database
from ..utils.secure_logging import get_secure_logger
from .audit import AuditLog
from .errors import NotFoundError, ValidationError, wrap_errors
from .models import (
    TASK_GENERATING_STATUSES,
    ConfidenceLevel,
    ControlFinding,
    FindingFilters,
    FindingsPage,
    FindingStatus,
    FindingSummary,
    Framework,
    HumanOverride,
    RepositoryFinding,
    RepositoryTask,
    Snapshot,
    TaskStatus,
    derive_task_category,
    derive_task_priority,
)

logger = get_secure_logger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def build_remediation_task(finding: RepositoryFinding) -> RepositoryTask:
    """
    Build the remediation task for a failing or partial finding.

    Args:
        finding: Persisted finding with status fail or partial

    Returns:
        Unsaved task whose description lists the control, verdict,
        recommendation and evidence files
    """
    is_fail = finding.status == FindingStatus.FAIL
    prefix = "Fix" if is_fail else "Review"

    lines = [
        f"**Control:** {finding.control_id} ({finding.framework})",
        f"**Status:** {finding.status.value}",
        f"**Confidence:** {finding.confidence_level.value}",
        "",
        f"**Summary:** {finding.summary}",
        "",
        f"**Recommendation:** {finding.recommendation}",
    ]
    if finding.evidence_references:
        lines += ["", "**Evidence:**"]
        for ref in finding.evidence_references:
            location = f":{ref.line_start}" if ref.line_start else ""
            lines.append(f"- {ref.file_path}{location}")

    return RepositoryTask(
        snapshot_id=finding.snapshot_id,
        finding_id=finding.id,
        title=f"{prefix}: {finding.control_id} - {finding.summary}",
        description="\n".join(lines),
        category=derive_task_category(finding.status),
        priority=derive_task_priority(finding.status, finding.confidence_level),
        status=TaskStatus.OPEN,
        assigned_to_role="user",
    )


class FindingsService:
    """
    Store and query compliance findings and their remediation tasks.

    Every operation is scoped to an organization; entities owned by
    another organization are reported as not found.
    """

    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def _require_snapshot(self, snapshot_id: str, organization_id: str) -> Snapshot:
        snapshot = self.db.get_snapshot(snapshot_id, organization_id)
        if snapshot is None:
            raise NotFoundError("Repository snapshot not found", "SNAPSHOT_NOT_FOUND")
        return snapshot

    def create_findings(
        self,
        snapshot_id: str,
        organization_id: str,
        control_findings: Sequence[ControlFinding],
        user_id: str,
    ) -> list[RepositoryFinding]:
        """
        Persist one finding per control verdict.

        Each fail or partial finding then gets a remediation task, in
        insertion order. Task creation is best-effort: a failure is logged
        and the findings are still returned.

        Args:
            snapshot_id: Snapshot the verdicts belong to
            organization_id: Caller's organization
            control_findings: Mapper output
            user_id: User on whose behalf the findings are recorded

        Returns:
            The persisted findings, in input order

        Raises:
            NotFoundError: Snapshot missing or not owned
            AppError: FINDINGS_CREATE_ERROR on storage failures
        """
        with wrap_errors("Failed to create findings", "FINDINGS_CREATE_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)

            findings = [RepositoryFinding.from_control_finding(snapshot_id, cf) for cf in control_findings]
            if findings:
                self.db.insert_findings(findings)

            tasks_created = 0
            for finding in findings:
                if finding.status in TASK_GENERATING_STATUSES and self._create_task_from_finding(finding):
                    tasks_created += 1

            frameworks = sorted({f.framework for f in findings})
            self.audit.log_action(
                "create",
                "repository_findings",
                snapshot_id,
                user_id,
                organization_id,
                {
                    "findings_created": len(findings),
                    "tasks_created": tasks_created,
                    "frameworks": frameworks,
                },
            )

            logger.info(
                "Created %d finding(s) and %d task(s) for snapshot %s",
                len(findings),
                tasks_created,
                snapshot_id,
            )
            return findings

    def _create_task_from_finding(self, finding: RepositoryFinding) -> Optional[RepositoryTask]:
        try:
            return self.db.insert_task(build_remediation_task(finding))
        except Exception as e:
            logger.warning(
                "Failed to create remediation task for finding %s (%s): %s",
                finding.id,
                finding.control_id,
                e,
            )
            return None

    def get_findings(
        self,
        snapshot_id: str,
        organization_id: str,
        filters: Optional[FindingFilters] = None,
    ) -> FindingsPage:
        """
        Get a page of findings, newest first.

        Status and confidence filters that are not valid values are
        ignored. Page numbers below 1 become 1 and the page size is capped
        at 100.
        """
        filters = filters or FindingFilters()
        with wrap_errors("Failed to retrieve findings", "FINDINGS_RETRIEVE_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)

            page = max(filters.page or 1, 1)
            limit = filters.limit if filters.limit and filters.limit > 0 else DEFAULT_PAGE_SIZE
            limit = min(limit, MAX_PAGE_SIZE)

            conditions = self._filter_conditions(filters)
            findings, total = self.db.query_findings(snapshot_id, conditions, limit, (page - 1) * limit)
            return FindingsPage(findings=findings, total=total, page=page, limit=limit)

    @staticmethod
    def _filter_conditions(filters: FindingFilters) -> dict[str, str]:
        conditions: dict[str, str] = {}

        if filters.framework:
            try:
                conditions["framework"] = Framework.from_name(filters.framework).value
            except ValueError:
                conditions["framework"] = filters.framework

        if filters.status:
            try:
                conditions["status"] = FindingStatus(filters.status).value
            except ValueError:
                logger.debug("Ignoring invalid status filter %r", filters.status)

        if filters.confidence_level:
            try:
                conditions["confidence_level"] = ConfidenceLevel(filters.confidence_level).value
            except ValueError:
                logger.debug("Ignoring invalid confidence filter %r", filters.confidence_level)

        if filters.signal_type:
            conditions["signal_type"] = filters.signal_type
        if filters.control_id:
            conditions["control_id"] = filters.control_id

        return conditions

    def get_finding_by_id(self, finding_id: str, organization_id: str) -> RepositoryFinding:
        with wrap_errors("Failed to retrieve finding", "FINDING_RETRIEVE_ERROR", logger):
            finding = self.db.get_finding(finding_id, organization_id)
            if finding is None:
                raise NotFoundError("Finding not found", "FINDING_NOT_FOUND")
            return finding

    def review_finding(
        self,
        finding_id: str,
        organization_id: str,
        user_id: str,
        status: Optional[str] = None,
        human_override: Optional[HumanOverride | dict[str, Any]] = None,
    ) -> RepositoryFinding:
        """
        Apply a reviewer's verdict to a finding.

        The automated verdict is always kept in
        ``human_override.original_status``, also when the reviewer only
        sends a new status or reviews the finding a second time.

        Args:
            finding_id: Finding to review
            organization_id: Caller's organization
            user_id: Reviewer
            status: New status
            human_override: Override payload (``new_status``, ``reason``,
                optional ``evidence``)

        Returns:
            The updated finding

        Raises:
            NotFoundError: Finding missing or not owned
            ValidationError: Nothing to apply, invalid values, or a status
                that disagrees with the override's new status
        """
        with wrap_errors("Failed to review finding", "FINDING_REVIEW_ERROR", logger):
            if status is None and human_override is None:
                raise ValidationError("Provide a status or a human override", "REVIEW_EMPTY")

            new_status = self._parse_status(status) if status is not None else None
            override = self._parse_override(human_override) if human_override is not None else None
            if override and new_status and override.new_status != new_status:
                raise ValidationError(
                    "status must match human_override.new_status",
                    "REVIEW_STATUS_MISMATCH",
                    {"status": new_status.value, "new_status": override.new_status.value},
                )

            finding = self.get_finding_by_id(finding_id, organization_id)
            previous_status = finding.status
            automated_status = (
                finding.human_override.original_status if finding.human_override else finding.status
            )

            if override is not None:
                override.original_status = automated_status
                finding.human_override = override
            elif new_status != finding.status:
                finding.human_override = HumanOverride(
                    original_status=automated_status,
                    new_status=new_status,
                    reason=finding.human_override.reason if finding.human_override else "Status changed during review",
                    evidence=finding.human_override.evidence if finding.human_override else None,
                )

            if finding.human_override is not None:
                finding.status = finding.human_override.new_status
            now = datetime.now()
            finding.reviewed_by = user_id
            finding.reviewed_at = now
            finding.updated_at = now
            self.db.save_finding_review(finding)

            self.audit.log_action(
                "update",
                "repository_finding",
                finding.id,
                user_id,
                organization_id,
                {
                    "original_status": previous_status.value,
                    "new_status": finding.status.value,
                    "had_human_override": override is not None,
                },
            )
            logger.info("Finding %s reviewed: %s -> %s", finding.id, previous_status.value, finding.status.value)
            return finding

    @staticmethod
    def _parse_status(value: str | FindingStatus) -> FindingStatus:
        try:
            return FindingStatus(value)
        except ValueError as e:
            raise ValidationError(f"Invalid finding status: {value}", "INVALID_STATUS") from e

    def _parse_override(self, value: HumanOverride | dict[str, Any]) -> HumanOverride:
        if isinstance(value, HumanOverride):
            return HumanOverride(value.original_status, value.new_status, value.reason, value.evidence)
        if "new_status" not in value:
            raise ValidationError("human_override.new_status is required", "INVALID_OVERRIDE")
        new_status = self._parse_status(value["new_status"])
        original = value.get("original_status")
        return HumanOverride(
            original_status=self._parse_status(original) if original else new_status,
            new_status=new_status,
            reason=value.get("reason") or "",
            evidence=value.get("evidence"),
        )

    def get_findings_summary(self, snapshot_id: str, organization_id: str) -> FindingSummary:
        """
        Aggregate a snapshot's findings.

        ``critical_count`` counts findings that are both ``fail`` and
        ``high`` confidence; partial findings and lower-confidence fails
        are not critical.
        """
        with wrap_errors("Failed to summarize findings", "FINDINGS_SUMMARY_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)

            summary = FindingSummary(
                by_status={s.value: 0 for s in FindingStatus},
                by_confidence={c.value: 0 for c in ConfidenceLevel},
            )
            for row in self.db.finding_counts(snapshot_id):
                count = row["count"]
                summary.total += count
                summary.by_status[row["status"]] = summary.by_status.get(row["status"], 0) + count
                summary.by_framework[row["framework"]] = summary.by_framework.get(row["framework"], 0) + count
                summary.by_confidence[row["confidence_level"]] = (
                    summary.by_confidence.get(row["confidence_level"], 0) + count
                )
                if row["status"] == FindingStatus.FAIL.value and row["confidence_level"] == ConfidenceLevel.HIGH.value:
                    summary.critical_count += count
            return summary

    def delete_snapshot_findings(self, snapshot_id: str, organization_id: str, user_id: str) -> int:
        """Delete all findings of a snapshot; their tasks go with them."""
        with wrap_errors("Failed to delete findings", "FINDINGS_DELETE_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)
            deleted = self.db.delete_findings(snapshot_id)
            self.audit.log_action(
                "delete",
                "repository_findings",
                snapshot_id,
                user_id,
                organization_id,
                {"operation": "bulk_delete", "findings_deleted": deleted},
            )
            logger.info("Deleted %d finding(s) for snapshot %s", deleted, snapshot_id)
            return deleted

    def list_tasks(self, snapshot_id: str, organization_id: str) -> list[RepositoryTask]:
        with wrap_errors("Failed to retrieve tasks", "TASKS_RETRIEVE_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)
            return self.db.list_tasks(snapshot_id)

    def update_task(
        self,
        task_id: str,
        snapshot_id: str,
        organization_id: str,
        user_id: str,
        status: Optional[str] = None,
        assigned_to_role: Optional[str] = None,
        due_date: Optional[datetime] = None,
    ) -> RepositoryTask:
        """
        Update a remediation task.

        Completing a task stamps ``completed_at``/``completed_by``; moving
        it out of ``completed`` clears them.
        """
        with wrap_errors("Failed to update task", "TASK_UPDATE_ERROR", logger):
            self._require_snapshot(snapshot_id, organization_id)
            task = self.db.get_task(task_id, snapshot_id)
            if task is None:
                raise NotFoundError("Task not found", "TASK_NOT_FOUND")

            fields: dict[str, Any] = {}
            if status is not None:
                try:
                    new_status = TaskStatus(status)
                except ValueError as e:
                    raise ValidationError(f"Invalid task status: {status}", "INVALID_STATUS") from e
                fields["status"] = new_status
                if new_status == TaskStatus.COMPLETED:
                    fields["completed_at"] = datetime.now()
                    fields["completed_by"] = user_id
                elif task.status == TaskStatus.COMPLETED:
                    fields["completed_at"] = None
                    fields["completed_by"] = None
            if assigned_to_role is not None:
                fields["assigned_to_role"] = assigned_to_role
            if due_date is not None:
                fields["due_date"] = due_date

            if fields:
                self.db.update_task(task_id, **fields)
                self.audit.log_action(
                    "update",
                    "repository_task",
                    task_id,
                    user_id,
                    organization_id,
                    {
                        "snapshot_id": snapshot_id,
                        "previous_status": task.status.value,
                        "updated_fields": sorted(fields),
                    },
                )

            return self.db.get_task(task_id, snapshot_id)
