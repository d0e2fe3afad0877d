"""Tests for the analysis orchestrator."""

import asyncio
from datetime import datetime, timedelta

import pytest

from repo_compliance_analyzer.core.errors import ConflictError, NotFoundError, ValidationError
from repo_compliance_analyzer.core.models import (
    AnalysisRun,
    PhaseStatus,
    Snapshot,
    SnapshotStatus,
)
from repo_compliance_analyzer.core.orchestrator import (
    CANCELLED_MESSAGE,
    AnalysisOrchestrator,
    normalize_frameworks,
)
from repo_compliance_analyzer.core.phases import AUTHENTICATION, OVERVIEW, PHASE_NAMES
from repo_compliance_analyzer.signals.detector import CodeSignalDetector

from .conftest import ORG_ID, OTHER_ORG_ID, USER_ID


class RecordingDetector(CodeSignalDetector):
    """Detector that records which scans ran and can be told to misbehave."""

    def __init__(self, settings, fail_auth: bool = False, overview_delay: float = 0):
        super().__init__(settings)
        self.fail_auth = fail_auth
        self.overview_delay = overview_delay
        self.calls: list[str] = []

    async def collect_overview(self, snapshot_id, extracted_path, **kwargs):
        self.calls.append("overview")
        if self.overview_delay:
            await asyncio.sleep(self.overview_delay)
        return await super().collect_overview(snapshot_id, extracted_path, **kwargs)

    async def scan_for_auth_patterns(self, snapshot_id, extracted_path, **kwargs):
        self.calls.append("auth")
        if self.fail_auth:
            raise Exception("db timeout")
        return await super().scan_for_auth_patterns(snapshot_id, extracted_path, **kwargs)

    async def scan_for_access_control(self, snapshot_id, extracted_path, **kwargs):
        self.calls.append("access_control")
        return await super().scan_for_access_control(snapshot_id, extracted_path, **kwargs)

    async def scan_for_encryption(self, snapshot_id, extracted_path, **kwargs):
        self.calls.append("encryption")
        return await super().scan_for_encryption(snapshot_id, extracted_path, **kwargs)

    async def scan_for_logging(self, snapshot_id, extracted_path, **kwargs):
        self.calls.append("logging")
        return await super().scan_for_logging(snapshot_id, extracted_path, **kwargs)


def _orchestrator(db, findings_service, audit, settings, **detector_kwargs):
    detector = RecordingDetector(settings, **detector_kwargs)
    return AnalysisOrchestrator(db, findings_service, audit, detector=detector, settings=settings), detector


class TestStartAnalysis:
    """Test run registration."""

    @pytest.mark.asyncio
    async def test_snapshot_is_analyzing_on_return(self, orchestrator: AnalysisOrchestrator, db, indexed_snapshot):
        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID)

        snapshot = db.get_snapshot(indexed_snapshot.id)
        run = db.get_run(run_id)
        assert snapshot.status == SnapshotStatus.ANALYZING
        assert snapshot.analysis_phase == OVERVIEW
        assert run.is_active
        assert run.phase == OVERVIEW

        await orchestrator.wait_for_run(run_id)

    @pytest.mark.asyncio
    async def test_second_start_while_running_conflicts(self, orchestrator: AnalysisOrchestrator, indexed_snapshot):
        results = await asyncio.gather(
            orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID),
            orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID),
            return_exceptions=True,
        )

        run_ids = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(run_ids) == 1
        assert len(conflicts) == 1
        assert conflicts[0].code == "ANALYSIS_IN_PROGRESS"

        await orchestrator.wait_for_run(run_ids[0])

    @pytest.mark.asyncio
    async def test_snapshot_not_indexed(self, orchestrator: AnalysisOrchestrator, db, snapshot_tree):
        snapshot = db.create_snapshot(Snapshot(organization_id=ORG_ID, extracted_path=str(snapshot_tree)))

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.start_analysis(snapshot.id, ["SOC2"], "full", ORG_ID, USER_ID)

        assert exc_info.value.code == "SNAPSHOT_NOT_READY"

    @pytest.mark.asyncio
    async def test_other_organization(self, orchestrator: AnalysisOrchestrator, indexed_snapshot):
        with pytest.raises(NotFoundError):
            await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "full", OTHER_ORG_ID, USER_ID)

    @pytest.mark.asyncio
    async def test_invalid_input(self, orchestrator: AnalysisOrchestrator, indexed_snapshot):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.start_analysis(indexed_snapshot.id, ["HIPAA"], "full", ORG_ID, USER_ID)
        assert exc_info.value.code == "UNSUPPORTED_FRAMEWORK"

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "everything", ORG_ID, USER_ID)
        assert exc_info.value.code == "INVALID_DEPTH"

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.start_analysis(indexed_snapshot.id, [], "full", ORG_ID, USER_ID)
        assert exc_info.value.code == "FRAMEWORKS_REQUIRED"

    def test_frameworks_are_canonicalized(self):
        assert normalize_frameworks(["soc2", "SOC-2", "iso27001"]) == ["SOC2", "ISO27001"]


class TestRunExecution:
    """Test phase sequencing and terminal states."""

    @pytest.mark.asyncio
    async def test_successful_run(self, orchestrator: AnalysisOrchestrator, db, findings_service, indexed_snapshot, monkeypatch):
        transitions = []
        progress = []
        original_update = db.update_run

        def recording_update(run_id, **fields):
            if "phase_status" in fields:
                phase = fields.get("phase") or db.get_run(run_id).phase
                transitions.append((phase, fields["phase_status"]))
            if "phase" in fields:
                progress.append(fields["progress"])
            return original_update(run_id, **fields)

        monkeypatch.setattr(db, "update_run", recording_update)

        run_id = await orchestrator.start_analysis(
            indexed_snapshot.id, ["SOC2", "ISO27001"], "security_relevant", ORG_ID, USER_ID
        )
        run = await orchestrator.wait_for_run(run_id)

        expected = []
        for name in PHASE_NAMES:
            expected += [(name, PhaseStatus.RUNNING), (name, PhaseStatus.COMPLETED)]
        assert transitions == expected
        assert progress == [0, 14, 29, 43, 57, 71, 86]

        assert run.phase_status == PhaseStatus.COMPLETED
        assert run.progress == 100
        assert run.completed_at is not None
        assert run.error_log == []
        assert run.metrics.files_analyzed == 6
        assert run.metrics.findings_generated == 16

        snapshot = db.get_snapshot(indexed_snapshot.id)
        assert snapshot.status == SnapshotStatus.COMPLETED
        assert snapshot.analysis_completed_at is not None
        assert findings_service.get_findings_summary(indexed_snapshot.id, ORG_ID).total == 16

    @pytest.mark.asyncio
    async def test_failing_phase_stops_the_run(self, db, findings_service, audit, settings, indexed_snapshot):
        orchestrator, detector = _orchestrator(db, findings_service, audit, settings, fail_auth=True)

        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID)
        run = await orchestrator.wait_for_run(run_id)

        assert run.phase_status == PhaseStatus.FAILED
        assert run.phase == AUTHENTICATION
        assert len(run.error_log) == 1
        assert run.error_log[0].phase == AUTHENTICATION
        assert run.error_log[0].error == "db timeout"
        assert not run.is_active

        assert "access_control" not in detector.calls
        assert "encryption" not in detector.calls
        assert "logging" not in detector.calls

        snapshot = db.get_snapshot(indexed_snapshot.id)
        assert snapshot.status == SnapshotStatus.FAILED
        assert snapshot.error_message == "db timeout"
        assert findings_service.get_findings_summary(indexed_snapshot.id, ORG_ID).total == 0

    @pytest.mark.asyncio
    async def test_phase_timeout(self, db, findings_service, audit, settings, indexed_snapshot):
        settings.analysis.phase_timeout_seconds = 0.05
        orchestrator, _ = _orchestrator(db, findings_service, audit, settings, overview_delay=5)

        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID)
        run = await orchestrator.wait_for_run(run_id)

        assert run.phase_status == PhaseStatus.TIMED_OUT
        assert run.phase == OVERVIEW
        assert run.error_log[0].error.startswith("Phase timed out")
        assert db.get_snapshot(indexed_snapshot.id).status == SnapshotStatus.FAILED

    @pytest.mark.asyncio
    async def test_latest_run(self, orchestrator: AnalysisOrchestrator, indexed_snapshot):
        assert orchestrator.get_latest_run(indexed_snapshot.id, ORG_ID) is None

        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "full", ORG_ID, USER_ID)
        await orchestrator.wait_for_run(run_id)

        assert orchestrator.get_latest_run(indexed_snapshot.id, ORG_ID).id == run_id
        assert orchestrator.get_analysis_status(run_id, ORG_ID).id == run_id
        with pytest.raises(NotFoundError):
            orchestrator.get_analysis_status(run_id, OTHER_ORG_ID)


class TestCancellation:
    """Test cancelling runs."""

    @pytest.mark.asyncio
    async def test_long_phase_keeps_heartbeat_fresh(self, db, findings_service, audit, settings, indexed_snapshot):
        settings.analysis.phase_timeout_seconds = None
        settings.analysis.heartbeat_interval_seconds = 0.05
        orchestrator, _ = _orchestrator(db, findings_service, audit, settings, overview_delay=0.5)

        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "security_relevant", ORG_ID, USER_ID)
        await asyncio.sleep(0.05)
        started = db.get_run(run_id).heartbeat_at
        await asyncio.sleep(0.3)

        assert db.get_run(run_id).phase == OVERVIEW
        assert db.get_run(run_id).heartbeat_at > started
        assert orchestrator.reconcile_stale_runs(max_age_seconds=0.2) == []

        run = await orchestrator.wait_for_run(run_id)
        assert run.phase_status == PhaseStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_running_analysis(self, db, findings_service, audit, settings, indexed_snapshot):
        orchestrator, _ = _orchestrator(db, findings_service, audit, settings, overview_delay=5)

        run_id = await orchestrator.start_analysis(indexed_snapshot.id, ["SOC2"], "full", ORG_ID, USER_ID)
        await asyncio.sleep(0.01)

        run = await orchestrator.cancel_analysis(run_id, ORG_ID, USER_ID)

        assert not run.is_active
        assert run.phase_status == PhaseStatus.FAILED
        assert run.error_log[-1].error == CANCELLED_MESSAGE

        snapshot = db.get_snapshot(indexed_snapshot.id)
        assert snapshot.status == SnapshotStatus.FAILED
        assert snapshot.error_message == CANCELLED_MESSAGE

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.cancel_analysis(run_id, ORG_ID, USER_ID)
        assert exc_info.value.code == "ANALYSIS_NOT_RUNNING"

    @pytest.mark.asyncio
    async def test_cancel_unknown_run(self, orchestrator: AnalysisOrchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.cancel_analysis("missing", ORG_ID, USER_ID)


class TestReconciliation:
    """Test closing runs abandoned by a previous process."""

    def test_stale_run_is_failed(self, orchestrator: AnalysisOrchestrator, db, indexed_snapshot):
        stale = AnalysisRun(
            snapshot_id=indexed_snapshot.id,
            frameworks=["SOC2"],
            phase=AUTHENTICATION,
            heartbeat_at=datetime.now() - timedelta(hours=2),
        )
        db.begin_analysis_run(stale, ORG_ID, OVERVIEW)

        reconciled = orchestrator.reconcile_stale_runs(max_age_seconds=60)

        assert reconciled == [stale.id]
        run = db.get_run(stale.id)
        assert not run.is_active
        assert run.error_log[-1].error.startswith("Analysis abandoned")
        assert run.error_log[-1].phase == AUTHENTICATION

        snapshot = db.get_snapshot(indexed_snapshot.id)
        assert snapshot.status == SnapshotStatus.FAILED

    def test_fresh_run_is_left_alone(self, orchestrator: AnalysisOrchestrator, db, indexed_snapshot):
        run = db.begin_analysis_run(AnalysisRun(snapshot_id=indexed_snapshot.id, frameworks=["SOC2"]), ORG_ID, OVERVIEW)

        assert orchestrator.reconcile_stale_runs(max_age_seconds=3600) == []
        assert db.get_run(run.id).is_active
