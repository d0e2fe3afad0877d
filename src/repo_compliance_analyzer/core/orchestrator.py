"""
Analysis orchestrator.

Owns the run state machine. ``start_analysis`` validates and registers a
run, then launches the seven phases on a background task and returns the
run id without waiting. Everything that goes wrong after that point is
recorded on the run and its snapshot and logged, never raised to the
caller.

Run lifecycle::

    pending -> running -> completed     (per phase)
                       -> failed | timed_out   (terminal for the run)

Snapshot lifecycle: indexed -> analyzing -> completed | failed.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional, Sequence

from ..mapping.mapper import ControlMapper
from ..signals.detector import CodeSignalDetector
from ..storage.database import Database
from ..utils.secure_logging import get_secure_logger
from .audit import AuditLog
from .config import Settings, get_settings
from .errors import ConflictError, NotFoundError, ValidationError, wrap_errors
from .findings import FindingsService
from .models import (
    AnalysisDepth,
    AnalysisRun,
    Framework,
    PhaseError,
    PhaseStatus,
    SnapshotStatus,
)
from .phases import AnalysisContext, AnalysisPhase, PhaseBodies

logger = get_secure_logger(__name__)

CANCELLED_MESSAGE = "Analysis cancelled"


class PhaseFailure(Exception):
    """A phase failed and its error is already in the run's error log."""

    def __init__(self, phase: str, error: str, status: PhaseStatus):
        super().__init__(error)
        self.phase = phase
        self.error = error
        self.status = status


def normalize_frameworks(frameworks: Sequence[str]) -> list[str]:
    """
    Validate and canonicalize requested frameworks, dropping duplicates.

    Raises:
        ValidationError: If the list is empty or names an unsupported framework
    """
    if not frameworks:
        raise ValidationError("At least one framework is required", "FRAMEWORKS_REQUIRED")

    resolved: list[str] = []
    for name in frameworks:
        try:
            value = Framework.from_name(name).value
        except ValueError as e:
            raise ValidationError(
                str(e),
                "UNSUPPORTED_FRAMEWORK",
                {"supported": [f.value for f in Framework]},
            ) from e
        if value not in resolved:
            resolved.append(value)
    return resolved


class AnalysisOrchestrator:
    """
    Sequences analysis phases and drives run and snapshot state.

    Background runs are tracked by id so they can be awaited or cancelled
    from the same process; runs orphaned by a process restart are picked
    up by :meth:`reconcile_stale_runs`.
    """

    def __init__(
        self,
        db: Database,
        findings: FindingsService,
        audit: AuditLog,
        detector: Optional[CodeSignalDetector] = None,
        mapper: Optional[ControlMapper] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.findings = findings
        self.audit = audit
        self.settings = settings or get_settings()
        self.detector = detector or CodeSignalDetector(self.settings)
        self.mapper = mapper or ControlMapper()
        self.phases: list[AnalysisPhase] = PhaseBodies(self.detector, self.mapper, findings).phases()
        self._tasks: dict[str, asyncio.Task] = {}
        self._contexts: dict[str, AnalysisContext] = {}

    @property
    def phase_timeout(self) -> Optional[float]:
        return self.settings.analysis.phase_timeout_seconds

    async def start_analysis(
        self,
        snapshot_id: str,
        frameworks: Sequence[str],
        depth: str | AnalysisDepth,
        organization_id: str,
        user_id: str,
    ) -> str:
        """
        Register a run for an indexed snapshot and launch it.

        Validation and registration complete before this coroutine returns;
        the phases run on a background task it does not await.

        Args:
            snapshot_id: Snapshot to analyze
            frameworks: Target frameworks (e.g. ``["soc2", "ISO27001"]``)
            depth: Analysis depth
            organization_id: Caller's organization
            user_id: User starting the run

        Returns:
            The new run id

        Raises:
            ValidationError: Unsupported framework or depth
            NotFoundError: Snapshot missing or not owned
            ConflictError: Snapshot not indexed, or a run is already in flight
        """
        resolved_frameworks = normalize_frameworks(frameworks)
        try:
            resolved_depth = AnalysisDepth(depth)
        except ValueError as e:
            raise ValidationError(f"Invalid analysis depth: {depth}", "INVALID_DEPTH") from e

        with wrap_errors("Failed to start analysis", "ANALYSIS_START_ERROR", logger):
            snapshot = self.db.get_snapshot(snapshot_id, organization_id)
            if snapshot is None:
                raise NotFoundError("Repository snapshot not found", "SNAPSHOT_NOT_FOUND")

            run = AnalysisRun(
                snapshot_id=snapshot_id,
                frameworks=resolved_frameworks,
                analysis_depth=resolved_depth,
                phase=self.phases[0].name,
                phase_status=PhaseStatus.PENDING,
                progress=0,
            )
            self.db.begin_analysis_run(run, organization_id, self.phases[0].name)

            self.audit.log_action(
                "create",
                "repository_analysis_run",
                run.id,
                user_id,
                organization_id,
                {
                    "snapshot_id": snapshot_id,
                    "frameworks": resolved_frameworks,
                    "depth": resolved_depth.value,
                },
            )

        context = AnalysisContext(
            run_id=run.id,
            snapshot_id=snapshot_id,
            organization_id=organization_id,
            user_id=user_id,
            extracted_path=snapshot.extracted_path or "",
            frameworks=resolved_frameworks,
            depth=resolved_depth,
        )
        self._contexts[run.id] = context
        task = asyncio.create_task(self._execute_analysis(context), name=f"analysis-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._forget(run.id))

        logger.info(
            "Started analysis run %s for snapshot %s (%s, %s)",
            run.id,
            snapshot_id,
            ", ".join(resolved_frameworks),
            resolved_depth.value,
        )
        return run.id

    def _forget(self, run_id: str) -> None:
        self._tasks.pop(run_id, None)
        self._contexts.pop(run_id, None)

    async def _execute_analysis(self, context: AnalysisContext) -> None:
        try:
            for index, phase in enumerate(self.phases):
                await self._run_phase(context, index, phase)
            self._complete_analysis(context)
        except PhaseFailure as failure:
            logger.error("Analysis run %s failed in %s: %s", context.run_id, failure.phase, failure.error)
            self._fail_analysis(context, failure.error, failure.status)
        except asyncio.CancelledError:
            context.cancel_event.set()
            logger.warning("Analysis run %s cancelled during %s", context.run_id, context.current_phase)
            self._record_error(context, CANCELLED_MESSAGE)
            self._fail_analysis(context, CANCELLED_MESSAGE, PhaseStatus.FAILED)
        except Exception as e:
            logger.exception("Analysis run %s failed: %s", context.run_id, e)
            self._record_error(context, str(e) or e.__class__.__name__)
            self._fail_analysis(context, str(e) or e.__class__.__name__, PhaseStatus.FAILED)

    def _record_error(self, context: AnalysisContext, error: str) -> None:
        context.error_log.append(PhaseError(error=error, phase=context.current_phase))

    async def _run_phase(self, context: AnalysisContext, index: int, phase: AnalysisPhase) -> None:
        context.current_phase = phase.name
        now = datetime.now()
        self.db.update_run(
            context.run_id,
            phase=phase.name,
            phase_status=PhaseStatus.RUNNING,
            progress=round(index / len(self.phases) * 100),
            heartbeat_at=now,
        )
        self.db.update_snapshot(context.snapshot_id, analysis_phase=phase.name)
        logger.info("Run %s: phase %d/%d %s", context.run_id, index + 1, len(self.phases), phase.name)

        timeout = self.phase_timeout
        try:
            if timeout:
                await asyncio.wait_for(self._execute_with_heartbeat(context, phase), timeout)
            else:
                await self._execute_with_heartbeat(context, phase)
        except asyncio.TimeoutError as e:
            context.cancel_event.set()
            message = f"Phase timed out after {timeout:g}s"
            self._record_error(context, message)
            self.db.update_run(
                context.run_id,
                phase_status=PhaseStatus.TIMED_OUT,
                error_log=[err.to_dict() for err in context.error_log],
            )
            raise PhaseFailure(phase.name, message, PhaseStatus.TIMED_OUT) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self._record_error(context, message)
            self.db.update_run(
                context.run_id,
                phase_status=PhaseStatus.FAILED,
                error_log=[err.to_dict() for err in context.error_log],
            )
            raise PhaseFailure(phase.name, message, PhaseStatus.FAILED) from e

        self.db.update_run(
            context.run_id,
            phase_status=PhaseStatus.COMPLETED,
            heartbeat_at=datetime.now(),
            metrics=context.metrics.to_dict(),
        )

    async def _execute_with_heartbeat(self, context: AnalysisContext, phase: AnalysisPhase) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(context.run_id), name=f"heartbeat-{context.run_id}")
        try:
            await phase.execute(context)
        finally:
            heartbeat.cancel()

    async def _heartbeat(self, run_id: str) -> None:
        """Refresh the run's heartbeat while a long phase is still working."""
        interval = self.settings.analysis.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.db.update_run(run_id, heartbeat_at=datetime.now())
            except Exception as e:
                logger.warning("Run %s: heartbeat not recorded: %s", run_id, e)

    def _complete_analysis(self, context: AnalysisContext) -> None:
        """Persist metrics and mark the run and snapshot completed."""
        now = datetime.now()
        closed = self.db.finalize_run(
            context.run_id,
            {
                "phase_status": PhaseStatus.COMPLETED,
                "progress": 100,
                "metrics": context.metrics.to_dict(),
                "completed_at": now,
                "heartbeat_at": now,
            },
            context.snapshot_id,
            {
                "status": SnapshotStatus.COMPLETED,
                "analysis_completed_at": now,
                "error_message": None,
            },
        )
        if not closed:
            logger.warning("Run %s was already closed; completion not recorded", context.run_id)
            return

        logger.info(
            "Analysis run %s completed: %d file(s), %d finding(s)",
            context.run_id,
            context.metrics.files_analyzed,
            context.metrics.findings_generated,
        )

    def _fail_analysis(self, context: AnalysisContext, error: str, status: PhaseStatus) -> None:
        """
        Mark the run and snapshot failed.

        Storage errors here are logged and swallowed: there is no caller
        left to report them to.
        """
        try:
            closed = self.db.finalize_run(
                context.run_id,
                {
                    "phase_status": status,
                    "metrics": context.metrics.to_dict(),
                    "error_log": [err.to_dict() for err in context.error_log],
                    "completed_at": datetime.now(),
                },
                context.snapshot_id,
                {
                    "status": SnapshotStatus.FAILED,
                    "error_message": error,
                },
            )
            if not closed:
                logger.warning("Run %s was already closed; failure not recorded", context.run_id)
        except Exception as e:
            logger.exception("Could not record failure of run %s: %s", context.run_id, e)

    async def cancel_analysis(self, run_id: str, organization_id: str, user_id: str) -> AnalysisRun:
        """
        Cancel an in-flight run.

        The background task is cancelled and its file walks are told to
        stop. A run with no live task in this process (for example one
        orphaned by a restart) is closed directly.

        Raises:
            NotFoundError: Run missing or not owned
            ConflictError: Run already finished
        """
        run = self.db.get_run(run_id, organization_id)
        if run is None:
            raise NotFoundError("Analysis run not found", "ANALYSIS_NOT_FOUND")
        if not run.is_active:
            raise ConflictError("Analysis run is not in progress", "ANALYSIS_NOT_RUNNING")

        task = self._tasks.get(run_id)
        context = self._contexts.get(run_id)
        if task is not None and not task.done():
            if context is not None:
                context.cancel_event.set()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        run = self.db.get_run(run_id)
        if run is not None and run.is_active:
            # The task never got to handle its cancellation
            self._close_orphan(run, CANCELLED_MESSAGE)

        self.audit.log_action(
            "cancel",
            "repository_analysis_run",
            run_id,
            user_id,
            organization_id,
            {"snapshot_id": run.snapshot_id if run else None},
        )
        logger.info("Analysis run %s cancelled by %s", run_id, user_id)
        return self.db.get_run(run_id)

    def _close_orphan(self, run: AnalysisRun, error: str) -> bool:
        error_log = [err.to_dict() for err in run.error_log]
        error_log.append(PhaseError(error=error, phase=run.phase).to_dict())
        return self.db.finalize_run(
            run.id,
            {
                "phase_status": PhaseStatus.FAILED,
                "error_log": error_log,
                "completed_at": datetime.now(),
            },
            run.snapshot_id,
            {"status": SnapshotStatus.FAILED, "error_message": error},
        )

    def reconcile_stale_runs(self, max_age_seconds: Optional[float] = None) -> list[str]:
        """
        Fail in-flight runs whose heartbeat is older than the threshold.

        Args:
            max_age_seconds: Staleness threshold; defaults to
                ``analysis.stale_run_seconds``

        Returns:
            Ids of the runs that were closed
        """
        max_age = max_age_seconds if max_age_seconds is not None else self.settings.analysis.stale_run_seconds
        threshold = datetime.now() - timedelta(seconds=max_age)

        reconciled = []
        for run in self.db.list_in_flight_runs(heartbeat_before=threshold):
            message = f"Analysis abandoned: no heartbeat since {run.heartbeat_at.isoformat()}"
            if not self._close_orphan(run, message):
                continue
            reconciled.append(run.id)

            task = self._tasks.get(run.id)
            if task is not None and not task.done():
                context = self._contexts.get(run.id)
                if context is not None:
                    context.cancel_event.set()
                task.cancel()
            logger.warning("Reconciled stale analysis run %s (snapshot %s)", run.id, run.snapshot_id)

        return reconciled

    async def wait_for_run(self, run_id: str) -> Optional[AnalysisRun]:
        """Wait for a background run started by this process to finish."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.db.get_run(run_id)

    def get_analysis_status(self, run_id: str, organization_id: str) -> AnalysisRun:
        with wrap_errors("Failed to get analysis status", "ANALYSIS_STATUS_ERROR", logger):
            run = self.db.get_run(run_id, organization_id)
            if run is None:
                raise NotFoundError("Analysis run not found", "ANALYSIS_NOT_FOUND")
            return run

    def get_latest_run(self, snapshot_id: str, organization_id: str) -> Optional[AnalysisRun]:
        with wrap_errors("Failed to get analysis status", "ANALYSIS_STATUS_ERROR", logger):
            if self.db.get_snapshot(snapshot_id, organization_id) is None:
                raise NotFoundError("Repository snapshot not found", "SNAPSHOT_NOT_FOUND")
            return self.db.get_latest_run(snapshot_id, organization_id)

    async def shutdown(self) -> None:
        """Cancel every run still executing in this process."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
