"""
Control mapper.

Grades each control of interest for a framework from the signals collected
during a run. Mapping is a pure function of its input: signals are sorted
before they are read, no clock or randomness is involved, so the same
signals always yield the same verdicts in the same order.
"""

from typing import Sequence

from ..core.errors import ValidationError
from ..core.models import (
    ConfidenceLevel,
    ControlFinding,
    EvidenceReference,
    FindingStatus,
    Framework,
)
from ..signals.models import (
    AuthKind,
    CICDSignal,
    CodeSignal,
    CodeSignals,
    EncryptionKind,
    LoggingKind,
    SecretSeverity,
    SecretsWarning,
)
from ..utils.secure_logging import get_secure_logger
from .catalog import CONTROL_CATALOG, ControlDefinition, ControlRule

logger = get_secure_logger(__name__)


AUTH_RECOMMENDATIONS = {
    AuthKind.JWT: "Validate JWT signature, issuer, audience and expiry on every request, and keep token lifetimes short.",
    AuthKind.OAUTH: "Use the authorization code flow with PKCE and validate redirect URIs and state.",
    AuthKind.SESSION: "Set Secure, HttpOnly and SameSite cookie flags and rotate the session ID on login.",
    AuthKind.MFA: "Enforce MFA for privileged accounts and document recovery procedures.",
    AuthKind.SAML: "Validate assertion signatures and audience restrictions, and reject unsigned responses.",
}

ENCRYPTION_RECOMMENDATIONS = {
    EncryptionKind.AT_REST: "Use AES-256 (or equivalent) for stored sensitive data and document which data stores are encrypted.",
    EncryptionKind.IN_TRANSIT: "Enforce TLS 1.2+ on every external endpoint and enable HSTS.",
    EncryptionKind.HASHING: "Hash passwords with bcrypt, scrypt or argon2 and avoid fast hashes for credentials.",
    EncryptionKind.KEY_MANAGEMENT: "Keep keys in a managed KMS or vault and rotate them on a documented schedule.",
}

RULE_RECOMMENDATIONS = {
    ControlRule.AUTHENTICATION: "Implement centralized authentication and document the identity provider and account lifecycle.",
    ControlRule.MFA: "Require multi-factor authentication for all users with access to sensitive functions.",
    ControlRule.ACCESS_CONTROL: "Enforce least-privilege authorization checks on every protected route and review role assignments periodically.",
    ControlRule.ENCRYPTION: "Document approved cryptographic algorithms and key management practices.",
    ControlRule.ENCRYPTION_AT_REST: "Encrypt sensitive data at rest and record which stores and keys protect it.",
    ControlRule.ENCRYPTION_IN_TRANSIT: "Encrypt all network traffic carrying sensitive data with TLS 1.2 or later.",
    ControlRule.LOGGING: "Adopt structured logging and ship security-relevant events to a central, tamper-resistant store.",
    ControlRule.AUDIT_LOGGING: "Record who did what and when for privileged and security-relevant actions, and retain the audit trail.",
    ControlRule.CHANGE_MANAGEMENT: "Gate merges on CI with code scanning (e.g. CodeQL), secret scanning and dependency auditing.",
    ControlRule.SECRETS_MANAGEMENT: "Load credentials from environment variables or a secrets manager and rotate any exposed values.",
}

RULE_LABELS = {
    ControlRule.AUTHENTICATION: "authentication mechanisms",
    ControlRule.MFA: "multi-factor authentication",
    ControlRule.ACCESS_CONTROL: "access control enforcement",
    ControlRule.ENCRYPTION: "cryptographic controls",
    ControlRule.ENCRYPTION_AT_REST: "encryption at rest",
    ControlRule.ENCRYPTION_IN_TRANSIT: "encryption in transit",
    ControlRule.LOGGING: "logging",
    ControlRule.AUDIT_LOGGING: "audit or security event logging",
    ControlRule.CHANGE_MANAGEMENT: "a CI/CD pipeline",
    ControlRule.SECRETS_MANAGEMENT: "hardcoded secrets",
}

RULE_SIGNAL_TYPES = {
    ControlRule.AUTHENTICATION: "auth",
    ControlRule.MFA: "auth",
    ControlRule.ACCESS_CONTROL: "access_control",
    ControlRule.ENCRYPTION: "encryption",
    ControlRule.ENCRYPTION_AT_REST: "encryption",
    ControlRule.ENCRYPTION_IN_TRANSIT: "encryption",
    ControlRule.LOGGING: "logging",
    ControlRule.AUDIT_LOGGING: "logging",
    ControlRule.CHANGE_MANAGEMENT: "cicd",
    ControlRule.SECRETS_MANAGEMENT: "secrets",
}


def _signal_sort_key(signal: CodeSignal) -> tuple:
    return (signal.kind.value, tuple(sorted(signal.paths)))


def collect_evidence(signals: Sequence[CodeSignal]) -> list[EvidenceReference]:
    """
    Build evidence references from the signals behind a verdict.

    References are merged per file path and sorted by path; the line range
    spans every matched line in that file.
    """
    by_path: dict[str, EvidenceReference] = {}
    for signal in sorted(signals, key=_signal_sort_key):
        for signal_file in signal.files:
            lines = sorted(signal_file.line_numbers)
            ref = by_path.get(signal_file.path)
            if ref is None:
                by_path[signal_file.path] = EvidenceReference(
                    file_path=signal_file.path,
                    line_start=lines[0] if lines else None,
                    line_end=lines[-1] if lines else None,
                    snippet=signal_file.evidence or None,
                )
                continue
            if lines:
                ref.line_start = min(lines[0], ref.line_start) if ref.line_start else lines[0]
                ref.line_end = max(lines[-1], ref.line_end) if ref.line_end else lines[-1]
    return [by_path[path] for path in sorted(by_path)]


class ControlMapper:
    """Maps code signals onto per-control verdicts for one framework."""

    def map_signals_to_controls(self, signals: CodeSignals, framework: str) -> list[ControlFinding]:
        """
        Produce one verdict per control of interest for ``framework``.

        Args:
            signals: Signals accumulated during the run
            framework: Framework name; case and punctuation are ignored

        Returns:
            Control findings in catalog order

        Raises:
            ValidationError: If the framework is not supported
        """
        try:
            resolved = Framework.from_name(framework)
        except ValueError as e:
            raise ValidationError(str(e), "UNSUPPORTED_FRAMEWORK", {"framework": framework}) from e

        findings = [
            self._grade(control, resolved, signals)
            for control in CONTROL_CATALOG[resolved]
        ]

        logger.info(
            "Mapped %d signal(s) onto %d %s control(s)",
            signals.total(),
            len(findings),
            resolved.value,
        )
        return findings

    def _grade(self, control: ControlDefinition, framework: Framework, signals: CodeSignals) -> ControlFinding:
        if control.rule == ControlRule.CHANGE_MANAGEMENT:
            return self._grade_change_management(control, framework, signals.cicd)
        if control.rule == ControlRule.SECRETS_MANAGEMENT:
            return self._grade_secrets(control, framework, signals.secrets_warnings)
        return self._grade_presence(control, framework, self._supporting_signals(control.rule, signals))

    @staticmethod
    def _supporting_signals(rule: ControlRule, signals: CodeSignals) -> list[CodeSignal]:
        if rule == ControlRule.AUTHENTICATION:
            return list(signals.auth)
        if rule == ControlRule.MFA:
            return [s for s in signals.auth if s.kind in (AuthKind.MFA, AuthKind.PASSKEY)]
        if rule == ControlRule.ACCESS_CONTROL:
            return list(signals.access_control)
        if rule == ControlRule.ENCRYPTION:
            return list(signals.encryption)
        if rule == ControlRule.ENCRYPTION_AT_REST:
            return [s for s in signals.encryption if s.kind in (EncryptionKind.AT_REST, EncryptionKind.KEY_MANAGEMENT)]
        if rule == ControlRule.ENCRYPTION_IN_TRANSIT:
            return [s for s in signals.encryption if s.kind == EncryptionKind.IN_TRANSIT]
        if rule == ControlRule.LOGGING:
            return list(signals.logging)
        if rule == ControlRule.AUDIT_LOGGING:
            return [s for s in signals.logging if s.kind in (LoggingKind.AUDIT, LoggingKind.SECURITY)]
        raise ValueError(f"No presence rule for {rule.value}")

    def _finding(
        self,
        control: ControlDefinition,
        framework: Framework,
        status: FindingStatus,
        confidence: ConfidenceLevel,
        summary: str,
        details: str,
        evidence: list[EvidenceReference],
        recommendation: str,
    ) -> ControlFinding:
        return ControlFinding(
            control_id=control.control_id,
            framework=framework.value,
            status=status,
            confidence_level=confidence,
            signal_type=RULE_SIGNAL_TYPES[control.rule],
            summary=summary,
            details=details,
            evidence_references=evidence,
            recommendation=recommendation,
        )

    def _not_observed(self, control: ControlDefinition, framework: Framework) -> ControlFinding:
        label = RULE_LABELS[control.rule]
        return self._finding(
            control,
            framework,
            FindingStatus.NOT_OBSERVED,
            ConfidenceLevel.LOW,
            f"No evidence of {label} observed in the repository",
            f"{control.title}: no matching code signals were found. The control may be "
            "implemented outside this repository.",
            [],
            RULE_RECOMMENDATIONS[control.rule],
        )

    def _grade_presence(
        self,
        control: ControlDefinition,
        framework: Framework,
        supporting: list[CodeSignal],
    ) -> ControlFinding:
        """
        Grade a control whose evidence is the presence of a mechanism.

        Code can show that a mechanism exists but not that it operates
        effectively, so the best automated verdict is ``partial``. Support
        made only of low-confidence signals is routed to a reviewer.
        """
        if not supporting:
            return self._not_observed(control, framework)

        supporting = sorted(supporting, key=_signal_sort_key)
        best = max((s.confidence for s in supporting), key=lambda c: c.rank)
        kinds = sorted({s.kind.value for s in supporting})
        label = RULE_LABELS[control.rule]
        details = "; ".join(sorted({s.details for s in supporting if s.details}))

        if best == ConfidenceLevel.LOW:
            status = FindingStatus.NEEDS_HUMAN
            summary = f"Weak indicators of {label} ({', '.join(kinds)}); manual review required"
        else:
            status = FindingStatus.PARTIAL
            summary = f"Evidence of {label} observed ({', '.join(kinds)}); operating effectiveness not verified"

        return self._finding(
            control,
            framework,
            status,
            best,
            summary,
            f"{control.title}: {details}" if details else control.title,
            collect_evidence(supporting),
            self._presence_recommendation(control.rule, supporting),
        )

    @staticmethod
    def _presence_recommendation(rule: ControlRule, supporting: list[CodeSignal]) -> str:
        parts = [RULE_RECOMMENDATIONS[rule]]
        seen = []
        for signal in supporting:
            if signal.kind in seen:
                continue
            seen.append(signal.kind)
            extra = AUTH_RECOMMENDATIONS.get(signal.kind) or ENCRYPTION_RECOMMENDATIONS.get(signal.kind)
            if extra:
                parts.append(extra)
        return " ".join(parts)

    def _grade_change_management(
        self,
        control: ControlDefinition,
        framework: Framework,
        pipelines: list[CICDSignal],
    ) -> ControlFinding:
        """
        Pipelines running security scanning are partial evidence of change
        control; pipelines with no scanning at all fail the control.
        """
        if not pipelines:
            return self._not_observed(control, framework)

        pipelines = sorted(pipelines, key=_signal_sort_key)
        kinds = ", ".join(p.kind.value for p in pipelines)
        evidence = collect_evidence(pipelines)
        checks = []
        if any(p.has_security_scanning for p in pipelines):
            checks.append("security scanning")
        if any(p.has_secret_scanning for p in pipelines):
            checks.append("secret scanning")
        if any(p.has_dependency_scanning for p in pipelines):
            checks.append("dependency scanning")

        if "security scanning" in checks:
            status, confidence = FindingStatus.PARTIAL, ConfidenceLevel.HIGH
            summary = f"CI/CD pipeline ({kinds}) runs {', '.join(checks)}"
        elif any(p.has_any_scanning for p in pipelines):
            status, confidence = FindingStatus.PARTIAL, ConfidenceLevel.MEDIUM
            summary = f"CI/CD pipeline ({kinds}) runs {', '.join(checks)} but no code security scanning"
        else:
            status, confidence = FindingStatus.FAIL, ConfidenceLevel.MEDIUM
            summary = f"CI/CD pipeline ({kinds}) detected with NO security scanning"

        return self._finding(
            control,
            framework,
            status,
            confidence,
            summary,
            f"{control.title}: " + "; ".join(p.details for p in pipelines if p.details),
            evidence,
            RULE_RECOMMENDATIONS[control.rule],
        )

    def _grade_secrets(
        self,
        control: ControlDefinition,
        framework: Framework,
        warnings: list[SecretsWarning],
    ) -> ControlFinding:
        """
        Grade secrets management from severity-graded warnings.

        critical → fail/high, high → fail/medium, only medium or low →
        partial/medium, none → pass/medium.
        """
        if not warnings:
            return self._finding(
                control,
                framework,
                FindingStatus.PASS,
                ConfidenceLevel.MEDIUM,
                "No hardcoded secrets detected in scanned files",
                f"{control.title}: pattern scan found no embedded credentials.",
                [],
                "Keep secret scanning enabled in CI to prevent regressions.",
            )

        warnings = sorted(warnings, key=_signal_sort_key)
        severities = {w.severity for w in warnings}
        if SecretSeverity.CRITICAL in severities:
            status, confidence = FindingStatus.FAIL, ConfidenceLevel.HIGH
        elif SecretSeverity.HIGH in severities:
            status, confidence = FindingStatus.FAIL, ConfidenceLevel.MEDIUM
        else:
            status, confidence = FindingStatus.PARTIAL, ConfidenceLevel.MEDIUM

        counts = {
            severity.value: sum(1 for w in warnings if w.severity == severity)
            for severity in SecretSeverity
            if severity in severities
        }
        breakdown = ", ".join(f"{count} {name}" for name, count in counts.items())

        return self._finding(
            control,
            framework,
            status,
            confidence,
            f"{len(warnings)} potential hardcoded secret(s) detected ({breakdown})",
            f"{control.title}: credential kinds found: "
            + ", ".join(sorted({w.kind.value for w in warnings})),
            collect_evidence(warnings),
            RULE_RECOMMENDATIONS[control.rule],
        )
