"""
Analysis phases.

A run executes these seven phases strictly in order. Each phase receives
the run's ``AnalysisContext``, which only the task executing that run
reads or writes, and either returns or raises; there is no partial
success inside a phase.
"""

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from ..signals.models import CodeSignals, RepositoryOverview
from ..utils.secure_logging import get_secure_logger
from .models import AnalysisDepth, PhaseError, RunMetrics

if TYPE_CHECKING:
    from ..mapping.mapper import ControlMapper
    from ..signals.detector import CodeSignalDetector
    from .findings import FindingsService

logger = get_secure_logger(__name__)

OVERVIEW = "Repository Overview"
BUILD = "Build & CI/CD"
CONFIGURATION = "Configuration & Secrets"
AUTHENTICATION = "Authentication & Authorization"
DATA_HANDLING = "Data Handling"
OPERATIONS = "Operational Controls"
GAP_IDENTIFICATION = "Gap Identification"

PHASE_NAMES = (
    OVERVIEW,
    BUILD,
    CONFIGURATION,
    AUTHENTICATION,
    DATA_HANDLING,
    OPERATIONS,
    GAP_IDENTIFICATION,
)


@dataclass
class AnalysisContext:
    """Accumulator state for one run."""

    run_id: str
    snapshot_id: str
    organization_id: str
    user_id: str
    extracted_path: str
    frameworks: list[str]
    depth: AnalysisDepth
    signals: CodeSignals = field(default_factory=CodeSignals)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    error_log: list[PhaseError] = field(default_factory=list)
    overview: Optional[RepositoryOverview] = None
    current_phase: Optional[str] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def scan_options(self) -> dict:
        """Keyword arguments shared by every detector call."""
        return {
            "depth": self.depth,
            "stats": self.signals.stats,
            "cancel_event": self.cancel_event,
        }


@dataclass(frozen=True)
class AnalysisPhase:
    """A named step of the analysis."""

    name: str
    description: str
    execute: Callable[[AnalysisContext], Awaitable[None]]


class PhaseBodies:
    """The work each phase performs, bound to its collaborators."""

    def __init__(
        self,
        detector: "CodeSignalDetector",
        mapper: "ControlMapper",
        findings: "FindingsService",
    ):
        self.detector = detector
        self.mapper = mapper
        self.findings = findings

    def phases(self) -> list[AnalysisPhase]:
        return [
            AnalysisPhase(OVERVIEW, "Inventory files, languages and documentation", self.overview),
            AnalysisPhase(BUILD, "Detect CI/CD pipelines and their security checks", self.build),
            AnalysisPhase(CONFIGURATION, "Scan configuration for hardcoded secrets", self.configuration),
            AnalysisPhase(AUTHENTICATION, "Detect authentication and access control", self.authentication),
            AnalysisPhase(DATA_HANDLING, "Detect encryption usage", self.data_handling),
            AnalysisPhase(OPERATIONS, "Detect logging and audit practices", self.operations),
            AnalysisPhase(GAP_IDENTIFICATION, "Map signals to controls and record findings", self.gap_identification),
        ]

    async def overview(self, context: AnalysisContext) -> None:
        overview = await self.detector.collect_overview(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )
        context.overview = overview
        context.metrics.files_analyzed += overview.total_files
        logger.info(
            "Overview for run %s: %d file(s), %d documentation file(s)",
            context.run_id,
            overview.total_files,
            len(overview.documentation_files),
        )

    async def build(self, context: AnalysisContext) -> None:
        context.signals.cicd = await self.detector.scan_for_cicd(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )
        logger.info("Build phase for run %s: %d pipeline(s)", context.run_id, len(context.signals.cicd))

    async def configuration(self, context: AnalysisContext) -> None:
        warnings = await self.detector.scan_for_secrets(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )
        context.signals.secrets_warnings = warnings
        if warnings:
            logger.warning(
                "Run %s: %d secrets warning(s), %d critical",
                context.run_id,
                len(warnings),
                sum(1 for w in warnings if w.severity.value == "critical"),
            )

    async def authentication(self, context: AnalysisContext) -> None:
        context.signals.auth = await self.detector.scan_for_auth_patterns(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )
        context.signals.access_control = await self.detector.scan_for_access_control(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )
        logger.info(
            "Auth phase for run %s: %d auth signal(s), %d access control signal(s)",
            context.run_id,
            len(context.signals.auth),
            len(context.signals.access_control),
        )

    async def data_handling(self, context: AnalysisContext) -> None:
        context.signals.encryption = await self.detector.scan_for_encryption(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )

    async def operations(self, context: AnalysisContext) -> None:
        context.signals.logging = await self.detector.scan_for_logging(
            context.snapshot_id, context.extracted_path, **context.scan_options()
        )

    async def gap_identification(self, context: AnalysisContext) -> None:
        # Frameworks one at a time: each mapping updates the shared metrics
        for framework in context.frameworks:
            control_findings = self.mapper.map_signals_to_controls(context.signals, framework)
            findings = self.findings.create_findings(
                context.snapshot_id,
                context.organization_id,
                control_findings,
                context.user_id,
            )
            context.metrics.findings_generated += len(findings)
            logger.info("Run %s: %d finding(s) for %s", context.run_id, len(findings), framework)
