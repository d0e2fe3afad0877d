"""
SQLite database for snapshots, analysis runs, findings, tasks and the audit log.

The one-in-flight-run-per-snapshot rule is enforced by a partial unique
index, and run creation happens inside a ``BEGIN IMMEDIATE`` transaction
so the readiness check and the insert cannot interleave with another
writer.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional
from uuid import uuid4

from ..core.errors import ConflictError, NotFoundError
from ..core.models import (
    AnalysisDepth,
    AnalysisRun,
    ConfidenceLevel,
    EvidenceReference,
    FindingStatus,
    HumanOverride,
    PhaseError,
    PhaseStatus,
    RepositoryFinding,
    RepositoryTask,
    RunMetrics,
    Snapshot,
    SnapshotStatus,
    TaskCategory,
    TaskPriority,
    TaskStatus,
)

# Columns that update helpers may write, per table
UPDATABLE_COLUMNS = {
    "snapshots": {
        "name", "extracted_path", "status", "analysis_phase", "analysis_started_at",
        "analysis_completed_at", "error_message",
    },
    "analysis_runs": {
        "phase", "phase_status", "progress", "metrics", "error_log",
        "completed_at", "heartbeat_at",
    },
    "tasks": {"status", "assigned_to_role", "due_date", "completed_at", "completed_by"},
}


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """
    SQLite store for the analysis pipeline.

    Every operation opens its own connection, so one instance can be shared
    by the API, the orchestrator's background tasks and worker threads.
    """

    def __init__(self, db_path: str | Path = "compliance_analysis.db", timeout: float = 30.0):
        """
        Initialize database.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a competing writer's lock
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._ensure_schema()

    @contextmanager
    def _connection(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Get database connection context manager.

        Args:
            immediate: Take the write lock up front (``BEGIN IMMEDIATE``)
                for check-then-write sequences
        """
        if immediate:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        else:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        """Create database schema if not exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    id TEXT PRIMARY KEY,
                    organization_id TEXT NOT NULL,
                    name TEXT,
                    extracted_path TEXT,
                    status TEXT NOT NULL DEFAULT 'uploaded',
                    analysis_phase TEXT,
                    analysis_started_at TIMESTAMP,
                    analysis_completed_at TIMESTAMP,
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                );

                -- Runs are kept as history when their snapshot is deleted
                CREATE TABLE IF NOT EXISTS analysis_runs (
                    id TEXT PRIMARY KEY,
                    snapshot_id TEXT NOT NULL,
                    organization_id TEXT NOT NULL,
                    frameworks TEXT NOT NULL,
                    analysis_depth TEXT NOT NULL,
                    phase TEXT,
                    phase_status TEXT NOT NULL DEFAULT 'pending',
                    progress INTEGER NOT NULL DEFAULT 0,
                    metrics TEXT NOT NULL DEFAULT '{}',
                    error_log TEXT NOT NULL DEFAULT '[]',
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    heartbeat_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL
                );

                CREATE TABLE IF NOT EXISTS findings (
                    id TEXT PRIMARY KEY,
                    snapshot_id TEXT NOT NULL,
                    control_id TEXT NOT NULL,
                    framework TEXT NOT NULL,
                    status TEXT NOT NULL,
                    confidence_level TEXT NOT NULL,
                    signal_type TEXT,
                    summary TEXT,
                    details TEXT,
                    evidence_references TEXT NOT NULL DEFAULT '[]',
                    recommendation TEXT,
                    ai_model TEXT,
                    human_override TEXT,
                    reviewed_by TEXT,
                    reviewed_at TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (snapshot_id) REFERENCES snapshots(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    snapshot_id TEXT NOT NULL,
                    finding_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    category TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'open',
                    assigned_to_role TEXT,
                    due_date TIMESTAMP,
                    completed_at TIMESTAMP,
                    completed_by TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (snapshot_id) REFERENCES snapshots(id) ON DELETE CASCADE,
                    FOREIGN KEY (finding_id) REFERENCES findings(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    id TEXT PRIMARY KEY,
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    user_id TEXT,
                    organization_id TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_one_in_flight
                    ON analysis_runs(snapshot_id) WHERE completed_at IS NULL;
                CREATE INDEX IF NOT EXISTS idx_runs_snapshot ON analysis_runs(snapshot_id);
                CREATE INDEX IF NOT EXISTS idx_snapshots_org ON snapshots(organization_id);
                CREATE INDEX IF NOT EXISTS idx_findings_snapshot ON findings(snapshot_id);
                CREATE INDEX IF NOT EXISTS idx_findings_status ON findings(status);
                CREATE INDEX IF NOT EXISTS idx_tasks_snapshot ON tasks(snapshot_id);
                CREATE INDEX IF NOT EXISTS idx_tasks_finding ON tasks(finding_id);
                CREATE INDEX IF NOT EXISTS idx_audit_org ON audit_log(organization_id);
            """)

    def _update(self, conn: sqlite3.Connection, table: str, row_id: str, fields: dict[str, Any]) -> int:
        unknown = set(fields) - UPDATABLE_COLUMNS[table]
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")
        if not fields:
            return 0

        values = {k: _to_db(v) for k, v in fields.items()}
        if table != "analysis_runs":
            values["updated_at"] = datetime.now().isoformat()
        assignments = ", ".join(f"{column} = ?" for column in values)
        cursor = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            (*values.values(), row_id),
        )
        return cursor.rowcount

    # === Snapshot Operations ===

    def create_snapshot(self, snapshot: Snapshot) -> Snapshot:
        """Insert a snapshot record."""
        with self._connection() as conn:
            conn.execute("""
                INSERT INTO snapshots (
                    id, organization_id, name, extracted_path, status, analysis_phase,
                    analysis_started_at, analysis_completed_at, error_message,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                snapshot.id,
                snapshot.organization_id,
                snapshot.name,
                snapshot.extracted_path,
                snapshot.status.value,
                snapshot.analysis_phase,
                _to_db(snapshot.analysis_started_at),
                _to_db(snapshot.analysis_completed_at),
                snapshot.error_message,
                snapshot.created_at.isoformat(),
                snapshot.updated_at.isoformat(),
            ))
        return snapshot

    def get_snapshot(self, snapshot_id: str, organization_id: Optional[str] = None) -> Optional[Snapshot]:
        """
        Get a snapshot, optionally scoped to an organization.

        Returns:
            The snapshot, or None if missing or owned by another organization
        """
        query = "SELECT * FROM snapshots WHERE id = ?"
        params: list[Any] = [snapshot_id]
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)

        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_snapshot(row) if row else None

    def list_snapshots(self, organization_id: str) -> list[Snapshot]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM snapshots WHERE organization_id = ? ORDER BY created_at DESC",
                (organization_id,),
            ).fetchall()
        return [self._row_to_snapshot(row) for row in rows]

    def update_snapshot(self, snapshot_id: str, **fields: Any) -> bool:
        with self._connection() as conn:
            return self._update(conn, "snapshots", snapshot_id, fields) > 0

    def delete_snapshot(self, snapshot_id: str, organization_id: str) -> bool:
        """Delete a snapshot; findings and tasks cascade."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM snapshots WHERE id = ? AND organization_id = ?",
                (snapshot_id, organization_id),
            )
            return cursor.rowcount > 0

    # === Analysis Run Operations ===

    def begin_analysis_run(self, run: AnalysisRun, organization_id: str, first_phase: str) -> AnalysisRun:
        """
        Atomically validate a snapshot and register a new in-flight run.

        The snapshot must exist under the organization, be ``indexed`` and
        have no in-flight run. On success the run is inserted and the
        snapshot moves to ``analyzing`` in the same transaction.

        Raises:
            NotFoundError: Snapshot missing or not owned
            ConflictError: Snapshot not ready, or a run is already in flight
        """
        try:
            with self._connection(immediate=True) as conn:
                row = conn.execute(
                    "SELECT status FROM snapshots WHERE id = ? AND organization_id = ?",
                    (run.snapshot_id, organization_id),
                ).fetchone()
                if row is None:
                    raise NotFoundError("Repository snapshot not found", "SNAPSHOT_NOT_FOUND")

                active = conn.execute(
                    "SELECT id FROM analysis_runs WHERE snapshot_id = ? AND completed_at IS NULL",
                    (run.snapshot_id,),
                ).fetchone()
                if active is not None:
                    raise ConflictError(
                        "An analysis is already in progress for this snapshot",
                        "ANALYSIS_IN_PROGRESS",
                        {"run_id": active["id"]},
                    )

                if row["status"] != SnapshotStatus.INDEXED.value:
                    raise ConflictError(
                        f"Snapshot is not ready for analysis (status: {row['status']})",
                        "SNAPSHOT_NOT_READY",
                        {"status": row["status"]},
                    )

                conn.execute("""
                    INSERT INTO analysis_runs (
                        id, snapshot_id, organization_id, frameworks, analysis_depth,
                        phase, phase_status, progress, metrics, error_log,
                        started_at, completed_at, heartbeat_at, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    run.id,
                    run.snapshot_id,
                    organization_id,
                    json.dumps(run.frameworks),
                    run.analysis_depth.value,
                    run.phase,
                    run.phase_status.value,
                    run.progress,
                    json.dumps(run.metrics.to_dict()),
                    json.dumps([e.to_dict() for e in run.error_log]),
                    run.started_at.isoformat(),
                    None,
                    run.heartbeat_at.isoformat(),
                    run.created_at.isoformat(),
                ))
                self._update(conn, "snapshots", run.snapshot_id, {
                    "status": SnapshotStatus.ANALYZING,
                    "analysis_phase": first_phase,
                    "analysis_started_at": run.started_at,
                    "analysis_completed_at": None,
                    "error_message": None,
                })
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                "An analysis is already in progress for this snapshot",
                "ANALYSIS_IN_PROGRESS",
            ) from e
        return run

    def get_run(self, run_id: str, organization_id: Optional[str] = None) -> Optional[AnalysisRun]:
        """Get a run; with an organization, ownership is checked via its snapshot."""
        if organization_id is None:
            query = "SELECT * FROM analysis_runs WHERE id = ?"
            params: tuple = (run_id,)
        else:
            query = """
                SELECT r.* FROM analysis_runs r
                JOIN snapshots s ON s.id = r.snapshot_id
                WHERE r.id = ? AND s.organization_id = ?
            """
            params = (run_id, organization_id)

        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()
        return self._row_to_run(row) if row else None

    def get_latest_run(self, snapshot_id: str, organization_id: str) -> Optional[AnalysisRun]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT r.* FROM analysis_runs r
                JOIN snapshots s ON s.id = r.snapshot_id
                WHERE r.snapshot_id = ? AND s.organization_id = ?
                ORDER BY r.created_at DESC, r.rowid DESC
                LIMIT 1
            """, (snapshot_id, organization_id)).fetchone()
        return self._row_to_run(row) if row else None

    def update_run(self, run_id: str, **fields: Any) -> bool:
        with self._connection() as conn:
            return self._update(conn, "analysis_runs", run_id, fields) > 0

    def finalize_run(
        self,
        run_id: str,
        run_fields: dict[str, Any],
        snapshot_id: str,
        snapshot_fields: dict[str, Any],
    ) -> bool:
        """
        Close a run and update its snapshot in one transaction.

        Only a run that is still in flight is closed; returns False if it
        had already been finalized (for example by the stale-run sweeper).
        The check and the writes share one ``BEGIN IMMEDIATE`` transaction,
        so concurrent finalizers from other processes close a run once.
        """
        with self._connection(immediate=True) as conn:
            row = conn.execute(
                "SELECT completed_at FROM analysis_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            if row is None or row["completed_at"] is not None:
                return False
            self._update(conn, "analysis_runs", run_id, run_fields)
            self._update(conn, "snapshots", snapshot_id, snapshot_fields)
        return True

    def list_in_flight_runs(self, heartbeat_before: Optional[datetime] = None) -> list[AnalysisRun]:
        """List runs without a completion timestamp, optionally only stale ones."""
        query = "SELECT * FROM analysis_runs WHERE completed_at IS NULL"
        params: list[Any] = []
        if heartbeat_before is not None:
            query += " AND heartbeat_at < ?"
            params.append(heartbeat_before.isoformat())
        query += " ORDER BY started_at"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    # === Finding Operations ===

    def insert_findings(self, findings: list[RepositoryFinding]) -> None:
        """Insert findings in one transaction, preserving their order."""
        with self._connection() as conn:
            conn.executemany("""
                INSERT INTO findings (
                    id, snapshot_id, control_id, framework, status, confidence_level,
                    signal_type, summary, details, evidence_references, recommendation,
                    ai_model, human_override, reviewed_by, reviewed_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    f.id,
                    f.snapshot_id,
                    f.control_id,
                    f.framework,
                    f.status.value,
                    f.confidence_level.value,
                    f.signal_type,
                    f.summary,
                    f.details,
                    json.dumps([e.to_dict() for e in f.evidence_references]),
                    f.recommendation,
                    f.ai_model,
                    json.dumps(f.human_override.to_dict()) if f.human_override else None,
                    f.reviewed_by,
                    _to_db(f.reviewed_at),
                    f.created_at.isoformat(),
                    f.updated_at.isoformat(),
                )
                for f in findings
            ])

    def query_findings(
        self,
        snapshot_id: str,
        conditions: dict[str, str],
        limit: int,
        offset: int,
    ) -> tuple[list[RepositoryFinding], int]:
        """
        Get a page of findings, newest first.

        Args:
            snapshot_id: Snapshot to read
            conditions: Exact-match filters keyed by column name
            limit: Page size
            offset: Rows to skip

        Returns:
            (findings, total matching rows)
        """
        allowed = {"framework", "status", "confidence_level", "signal_type", "control_id"}
        where = ["snapshot_id = ?"]
        params: list[Any] = [snapshot_id]
        for column, value in conditions.items():
            if column not in allowed:
                raise ValueError(f"Cannot filter findings on {column}")
            where.append(f"{column} = ?")
            params.append(value)
        clause = " AND ".join(where)

        with self._connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM findings WHERE {clause}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM findings WHERE {clause} "
                "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [self._row_to_finding(row) for row in rows], total

    def get_finding(self, finding_id: str, organization_id: str) -> Optional[RepositoryFinding]:
        with self._connection() as conn:
            row = conn.execute("""
                SELECT f.* FROM findings f
                JOIN snapshots s ON s.id = f.snapshot_id
                WHERE f.id = ? AND s.organization_id = ?
            """, (finding_id, organization_id)).fetchone()
        return self._row_to_finding(row) if row else None

    def save_finding_review(self, finding: RepositoryFinding) -> None:
        """Persist the review fields of a finding."""
        with self._connection() as conn:
            conn.execute("""
                UPDATE findings
                SET status = ?, human_override = ?, reviewed_by = ?, reviewed_at = ?, updated_at = ?
                WHERE id = ?
            """, (
                finding.status.value,
                json.dumps(finding.human_override.to_dict()) if finding.human_override else None,
                finding.reviewed_by,
                _to_db(finding.reviewed_at),
                finding.updated_at.isoformat(),
                finding.id,
            ))

    def finding_counts(self, snapshot_id: str) -> list[sqlite3.Row]:
        """Finding counts grouped by status, framework and confidence."""
        with self._connection() as conn:
            return conn.execute("""
                SELECT status, framework, confidence_level, COUNT(*) AS count
                FROM findings
                WHERE snapshot_id = ?
                GROUP BY status, framework, confidence_level
                ORDER BY status, framework, confidence_level
            """, (snapshot_id,)).fetchall()

    def delete_findings(self, snapshot_id: str) -> int:
        """Delete a snapshot's findings; their tasks cascade."""
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM findings WHERE snapshot_id = ?", (snapshot_id,))
            return cursor.rowcount

    # === Task Operations ===

    def insert_task(self, task: RepositoryTask) -> RepositoryTask:
        with self._connection() as conn:
            conn.execute("""
                INSERT INTO tasks (
                    id, snapshot_id, finding_id, title, description, category, priority,
                    status, assigned_to_role, due_date, completed_at, completed_by,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                task.id,
                task.snapshot_id,
                task.finding_id,
                task.title,
                task.description,
                task.category.value,
                task.priority.value,
                task.status.value,
                task.assigned_to_role,
                _to_db(task.due_date),
                _to_db(task.completed_at),
                task.completed_by,
                task.created_at.isoformat(),
                task.updated_at.isoformat(),
            ))
        return task

    def list_tasks(self, snapshot_id: str) -> list[RepositoryTask]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE snapshot_id = ? ORDER BY created_at DESC, rowid DESC",
                (snapshot_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_task(self, task_id: str, snapshot_id: str) -> Optional[RepositoryTask]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE id = ? AND snapshot_id = ?",
                (task_id, snapshot_id),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def update_task(self, task_id: str, **fields: Any) -> bool:
        with self._connection() as conn:
            return self._update(conn, "tasks", task_id, fields) > 0

    # === Audit Operations ===

    def insert_audit_entry(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        user_id: Optional[str],
        organization_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        entry_id = str(uuid4())
        with self._connection() as conn:
            conn.execute("""
                INSERT INTO audit_log (
                    id, action, entity_type, entity_id, user_id, organization_id, metadata, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry_id,
                action,
                entity_type,
                entity_id,
                user_id,
                organization_id,
                json.dumps(metadata or {}, default=str),
                datetime.now().isoformat(),
            ))
        return entry_id

    def list_audit_entries(
        self,
        organization_id: str,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM audit_log WHERE organization_id = ?"
        params: list[Any] = [organization_id]
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            {**dict(row), "metadata": json.loads(row["metadata"]) if row["metadata"] else {}}
            for row in rows
        ]

    # === Row Conversion ===

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> Snapshot:
        return Snapshot(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"] or "",
            extracted_path=row["extracted_path"],
            status=SnapshotStatus(row["status"]),
            analysis_phase=row["analysis_phase"],
            analysis_started_at=_dt(row["analysis_started_at"]),
            analysis_completed_at=_dt(row["analysis_completed_at"]),
            error_message=row["error_message"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> AnalysisRun:
        return AnalysisRun(
            id=row["id"],
            snapshot_id=row["snapshot_id"],
            frameworks=json.loads(row["frameworks"]),
            analysis_depth=AnalysisDepth(row["analysis_depth"]),
            phase=row["phase"],
            phase_status=PhaseStatus(row["phase_status"]),
            progress=row["progress"],
            metrics=RunMetrics.from_dict(json.loads(row["metrics"] or "{}")),
            error_log=[PhaseError.from_dict(e) for e in json.loads(row["error_log"] or "[]")],
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
            heartbeat_at=_dt(row["heartbeat_at"]),
            created_at=_dt(row["created_at"]),
        )

    @staticmethod
    def _row_to_finding(row: sqlite3.Row) -> RepositoryFinding:
        override = json.loads(row["human_override"]) if row["human_override"] else None
        return RepositoryFinding(
            id=row["id"],
            snapshot_id=row["snapshot_id"],
            control_id=row["control_id"],
            framework=row["framework"],
            status=FindingStatus(row["status"]),
            confidence_level=ConfidenceLevel(row["confidence_level"]),
            signal_type=row["signal_type"] or "",
            summary=row["summary"] or "",
            details=row["details"] or "",
            evidence_references=[
                EvidenceReference.from_dict(e) for e in json.loads(row["evidence_references"] or "[]")
            ],
            recommendation=row["recommendation"] or "",
            ai_model=row["ai_model"] or "",
            human_override=HumanOverride.from_dict(override) if override else None,
            reviewed_by=row["reviewed_by"],
            reviewed_at=_dt(row["reviewed_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> RepositoryTask:
        return RepositoryTask(
            id=row["id"],
            snapshot_id=row["snapshot_id"],
            finding_id=row["finding_id"],
            title=row["title"],
            description=row["description"] or "",
            category=TaskCategory(row["category"]),
            priority=TaskPriority(row["priority"]),
            status=TaskStatus(row["status"]),
            assigned_to_role=row["assigned_to_role"] or "user",
            due_date=_dt(row["due_date"]),
            completed_at=_dt(row["completed_at"]),
            completed_by=row["completed_by"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )
