"""Tests for the SQLite store."""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest

from repo_compliance_analyzer.core.errors import ConflictError
from repo_compliance_analyzer.core.models import AnalysisRun, PhaseStatus, Snapshot, SnapshotStatus
from repo_compliance_analyzer.storage.database import Database

from .conftest import ORG_ID, OTHER_ORG_ID, USER_ID


class TestSnapshots:
    """Test snapshot storage."""

    def test_create_and_scope_by_organization(self, db: Database, indexed_snapshot: Snapshot):
        assert db.get_snapshot(indexed_snapshot.id, ORG_ID).name == "example-service"
        assert db.get_snapshot(indexed_snapshot.id, OTHER_ORG_ID) is None
        assert [s.id for s in db.list_snapshots(ORG_ID)] == [indexed_snapshot.id]
        assert db.list_snapshots(OTHER_ORG_ID) == []

    def test_update_rejects_unknown_columns(self, db: Database, indexed_snapshot: Snapshot):
        with pytest.raises(ValueError):
            db.update_snapshot(indexed_snapshot.id, organization_id=OTHER_ORG_ID)

    def test_delete_cascades_but_keeps_runs(
        self,
        db: Database,
        findings_service,
        indexed_snapshot: Snapshot,
        control_findings,
    ):
        run = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id, frameworks=["SOC2"]), ORG_ID, "x")
        findings_service.create_findings(indexed_snapshot.id, ORG_ID, control_findings, USER_ID)

        assert db.delete_snapshot(indexed_snapshot.id, ORG_ID)

        findings, total = db.query_findings(indexed_snapshot.id, {}, 50, 0)
        assert total == 0
        assert db.list_tasks(indexed_snapshot.id) == []
        assert db.get_run(run.id) is not None


class TestAnalysisRuns:
    """Test run registration and the one-in-flight rule."""

    def test_begin_moves_snapshot_to_analyzing(self, db: Database, indexed_snapshot: Snapshot):
        run = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id, frameworks=["SOC2"]), ORG_ID, "first")

        snapshot = db.get_snapshot(indexed_snapshot.id)
        assert snapshot.status == SnapshotStatus.ANALYZING
        assert snapshot.analysis_phase == "first"
        assert db.get_run(run.id, ORG_ID).frameworks == ["SOC2"]
        assert db.get_run(run.id, OTHER_ORG_ID) is None

    def test_second_begin_conflicts(self, db: Database, indexed_snapshot: Snapshot):
        first = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")

        with pytest.raises(ConflictError) as exc_info:
            db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")

        assert exc_info.value.code == "ANALYSIS_IN_PROGRESS"
        assert exc_info.value.details == {"run_id": first.id}

    def test_unique_index_backs_the_rule(self, db: Database, indexed_snapshot: Snapshot):
        db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")
        now = datetime.now().isoformat()

        conn = sqlite3.connect(db.db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    "INSERT INTO analysis_runs (id, snapshot_id, organization_id, frameworks, analysis_depth, "
                    "started_at, heartbeat_at, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    ("rogue", indexed_snapshot.id, ORG_ID, "[]", "full", now, now, now),
                )
        finally:
            conn.close()

    def test_finalize_only_closes_once(self, db: Database, indexed_snapshot: Snapshot):
        run = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")
        fields = {"completed_at": datetime.now()}

        assert db.finalize_run(run.id, fields, indexed_snapshot.id, {"status": SnapshotStatus.COMPLETED})
        assert not db.finalize_run(run.id, fields, indexed_snapshot.id, {"status": SnapshotStatus.FAILED})
        assert db.get_snapshot(indexed_snapshot.id).status == SnapshotStatus.COMPLETED
        assert db.list_in_flight_runs() == []


class TestConcurrentWriters:
    """Test the run guards with separate connections racing in threads."""

    def test_concurrent_begins_admit_one_run(self, db: Database, indexed_snapshot: Snapshot):
        barrier = threading.Barrier(4)

        def begin(_):
            store = Database(db.db_path)
            barrier.wait()
            try:
                store.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")
                return "started"
            except ConflictError as e:
                return e.code

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(begin, range(4)))

        assert results.count("started") == 1
        assert results.count("ANALYSIS_IN_PROGRESS") == 3
        assert len(db.list_in_flight_runs()) == 1

    def test_concurrent_finalizers_close_once(self, db: Database, indexed_snapshot: Snapshot):
        run = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id), ORG_ID, "first")
        outcomes = [
            (PhaseStatus.COMPLETED, SnapshotStatus.COMPLETED),
            (PhaseStatus.FAILED, SnapshotStatus.FAILED),
        ]
        barrier = threading.Barrier(len(outcomes))

        def finalize(outcome):
            phase_status, snapshot_status = outcome
            store = Database(db.db_path)
            barrier.wait()
            return store.finalize_run(
                run.id,
                {"phase_status": phase_status, "completed_at": datetime.now()},
                indexed_snapshot.id,
                {"status": snapshot_status},
            )

        with ThreadPoolExecutor(max_workers=len(outcomes)) as pool:
            results = list(pool.map(finalize, outcomes))

        assert results.count(True) == 1
        winner = outcomes[results.index(True)]
        assert db.get_run(run.id).phase_status == winner[0]
        assert db.get_snapshot(indexed_snapshot.id).status == winner[1]
