"""
Code signal detector.

Walks an extracted snapshot and extracts typed signal records for each
category the control mapper understands. Scans are read-only with respect
to the snapshot and return an empty list when nothing is found.
"""

import asyncio
import re
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

from ..core.config import Settings
from ..core.errors import AppError
from ..core.models import AnalysisDepth, ConfidenceLevel
from ..utils.secure_logging import get_secure_logger, mask_sensitive_string
from .base import BaseDetector, DOC_EXTENSIONS, is_doc_path
from .models import (
    AccessControlKind,
    AccessControlSignal,
    AuthKind,
    AuthSignal,
    CICDKind,
    CICDSignal,
    EncryptionKind,
    EncryptionSignal,
    LoggingKind,
    LoggingSignal,
    RepositoryOverview,
    ScanStats,
    SecretsWarning,
    SignalFile,
)
from .secrets import SecretsScanner

logger = get_secure_logger(__name__)

T = TypeVar("T")

EVIDENCE_MAX_LENGTH = 100


@dataclass(frozen=True)
class PatternGroup:
    """Regexes that together indicate one signal kind."""

    patterns: tuple[str, ...]
    confidence: ConfidenceLevel
    description: str

    def compile(self) -> list[re.Pattern]:
        return [re.compile(p, re.IGNORECASE) for p in self.patterns]


AUTH_PATTERNS: dict[AuthKind, PatternGroup] = {
    AuthKind.JWT: PatternGroup(
        (r"jwt\.sign\(", r"jwt\.verify\(", r"jwt\.(en|de)code\(", r"jsonwebtoken", r"\bjose\b", r"Bearer.*token"),
        ConfidenceLevel.HIGH,
        "JSON Web Token authentication",
    ),
    AuthKind.OAUTH: PatternGroup(
        (r"oauth2?", r"passport.*oauth", r"client_id.*client_secret", r"authorization_code", r"access_token.*refresh_token"),
        ConfidenceLevel.MEDIUM,
        "OAuth authorization flow",
    ),
    AuthKind.SESSION: PatternGroup(
        (r"express-session", r"req\.session", r"cookie-session", r"session\.save\(", r"SessionMiddleware", r"flask_login"),
        ConfidenceLevel.HIGH,
        "Server-side session authentication",
    ),
    AuthKind.API_KEY: PatternGroup(
        (r"x-api-key", r"api[_-]?key.*header", r"APIKeyHeader", r"apiKeyAuth"),
        ConfidenceLevel.MEDIUM,
        "API key authentication",
    ),
    AuthKind.MFA: PatternGroup(
        (r"totp", r"two.?factor", r"\b2fa\b", r"\bmfa\b", r"authenticator", r"speakeasy", r"otplib", r"pyotp"),
        ConfidenceLevel.HIGH,
        "Multi-factor authentication",
    ),
    AuthKind.PASSKEY: PatternGroup(
        (r"webauthn", r"passkey", r"fido2"),
        ConfidenceLevel.HIGH,
        "WebAuthn / passkey authentication",
    ),
    AuthKind.BASIC_AUTH: PatternGroup(
        (r"basic.?auth", r"HTTPBasic", r"Authorization.*Basic\s"),
        ConfidenceLevel.MEDIUM,
        "HTTP basic authentication",
    ),
    AuthKind.SAML: PatternGroup(
        (r"saml2?", r"passport-saml", r"sso.*saml"),
        ConfidenceLevel.MEDIUM,
        "SAML single sign-on",
    ),
    AuthKind.OIDC: PatternGroup(
        (r"openid", r"\boidc\b", r"id_token"),
        ConfidenceLevel.MEDIUM,
        "OpenID Connect",
    ),
}

ENCRYPTION_PATTERNS: dict[EncryptionKind, PatternGroup] = {
    EncryptionKind.AT_REST: PatternGroup(
        (r"crypto\.createCipher", r"AES.*encrypt", r"\.?encrypt\(", r"Fernet", r"AESGCM", r"encrypted_field"),
        ConfidenceLevel.MEDIUM,
        "Data encryption at rest",
    ),
    EncryptionKind.IN_TRANSIT: PatternGroup(
        (r"https://", r"\btls\b", r"\bssl\b", r"cert.*pem", r"createSecureServer", r"ssl_context"),
        ConfidenceLevel.MEDIUM,
        "Transport encryption (TLS)",
    ),
    EncryptionKind.HASHING: PatternGroup(
        (r"bcrypt", r"scrypt", r"argon2", r"pbkdf2", r"sha256", r"sha512", r"createHash"),
        ConfidenceLevel.HIGH,
        "Cryptographic hashing",
    ),
    EncryptionKind.KEY_MANAGEMENT: PatternGroup(
        (r"\bkms\b", r"key.?vault", r"secretsmanager", r"\bhsm\b", r"key.?rotation"),
        ConfidenceLevel.MEDIUM,
        "Managed encryption keys",
    ),
}

LOGGING_PATTERNS: dict[LoggingKind, PatternGroup] = {
    LoggingKind.STRUCTURED: PatternGroup(
        (r"winston", r"\bpino\b", r"bunyan", r"structlog", r"loguru", r"JsonFormatter"),
        ConfidenceLevel.MEDIUM,
        "Structured logging library",
    ),
    LoggingKind.AUDIT: PatternGroup(
        (r"audit.?log", r"auditService", r"logAudit", r"auditTrail", r"audit_trail"),
        ConfidenceLevel.HIGH,
        "Audit logging",
    ),
    LoggingKind.SECURITY: PatternGroup(
        (r"security.?log", r"failed.?login", r"login.?attempt", r"suspicious"),
        ConfidenceLevel.MEDIUM,
        "Security event logging",
    ),
    LoggingKind.ACCESS: PatternGroup(
        (r"access.?log", r"\bmorgan\b", r"request.?log"),
        ConfidenceLevel.MEDIUM,
        "Access / request logging",
    ),
    LoggingKind.APPLICATION: PatternGroup(
        (r"logger\.", r"logging\.getLogger", r"console\.log\(", r"\blog4j\b", r"slf4j"),
        ConfidenceLevel.LOW,
        "Application logging",
    ),
}

ACCESS_CONTROL_PATTERNS: dict[AccessControlKind, PatternGroup] = {
    AccessControlKind.RBAC: PatternGroup(
        (r"role.?based", r"\brbac\b", r"hasRole", r"checkRole", r"userRole", r"require_role"),
        ConfidenceLevel.MEDIUM,
        "Role-based access control",
    ),
    AccessControlKind.PERMISSIONS: PatternGroup(
        (r"permission", r"has_perm", r"authorize\(", r"can\(['\"]"),
        ConfidenceLevel.MEDIUM,
        "Permission checks",
    ),
    AccessControlKind.MIDDLEWARE: PatternGroup(
        (r"auth.*middleware", r"requireAuth", r"isAuthenticated", r"protect.*route", r"login_required", r"requires_auth"),
        ConfidenceLevel.HIGH,
        "Authentication middleware guarding routes",
    ),
    AccessControlKind.POLICY: PatternGroup(
        (r"casbin", r"\bopa\b", r"\brego\b", r"policy.?enforce", r"\babac\b"),
        ConfidenceLevel.MEDIUM,
        "Policy engine",
    ),
    AccessControlKind.ACL: PatternGroup(
        (r"\bacl\b", r"access.?control.?list"),
        ConfidenceLevel.MEDIUM,
        "Access control lists",
    ),
}

SECURITY_SCANNING_RE = re.compile(r"codeql|security.*scan|snyk|dependabot|semgrep|trivy", re.IGNORECASE)
SECRET_SCANNING_RE = re.compile(r"trufflehog|gitleaks|secret.*scan|detect-secrets", re.IGNORECASE)
DEPENDENCY_SCANNING_RE = re.compile(r"npm audit|yarn audit|dependency.*check|pip-audit|safety check", re.IGNORECASE)

ALGORITHM_RE = re.compile(
    r"\b(AES(?:-?\d{3})?(?:-GCM|-CBC)?|ChaCha20|RSA|SHA-?(?:256|384|512|1)|MD5|bcrypt|scrypt|argon2|pbkdf2|TLS(?:v?1\.[23])?|Fernet)\b",
    re.IGNORECASE,
)

LOGGING_LIBRARIES = (
    "winston", "pino", "bunyan", "morgan", "structlog", "loguru",
    "log4j", "logback", "slf4j", "serilog", "logging",
)

LANGUAGE_EXTENSIONS = {
    ".py": "Python", ".js": "JavaScript", ".jsx": "JavaScript", ".mjs": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript", ".java": "Java", ".kt": "Kotlin",
    ".go": "Go", ".rb": "Ruby", ".php": "PHP", ".cs": "C#", ".rs": "Rust",
    ".swift": "Swift", ".c": "C", ".cpp": "C++", ".cc": "C++", ".scala": "Scala",
    ".sh": "Shell", ".tf": "HCL", ".sql": "SQL",
}


def ci_kind_for_path(relative_path: str) -> Optional[CICDKind]:
    """Map a repository-relative path to the CI system it configures."""
    path = Path(relative_path)
    name = path.name
    if relative_path.startswith(".github/workflows/") and path.suffix in (".yml", ".yaml"):
        return CICDKind.GITHUB_ACTIONS
    if name == ".gitlab-ci.yml" or ".gitlab-ci" in relative_path:
        return CICDKind.GITLAB_CI
    if name == "Jenkinsfile":
        return CICDKind.JENKINS
    if relative_path.startswith(".circleci/") and path.suffix in (".yml", ".yaml"):
        return CICDKind.CIRCLECI
    if name == ".travis.yml":
        return CICDKind.TRAVIS
    if name in ("azure-pipelines.yml", "azure-pipelines.yaml"):
        return CICDKind.AZURE_DEVOPS
    return None


class CodeSignalDetector(BaseDetector):
    """
    Extracts compliance-relevant signals from an extracted snapshot.

    Every public scan is a coroutine that runs its file walk in a worker
    thread, so the event loop stays free and phase timeouts can fire.
    Pass ``stats`` to accumulate scanned/skipped counters and
    ``cancel_event`` to stop a walk cooperatively.
    """

    name = "code_signals"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.secrets_scanner = SecretsScanner(settings)
        self._auth = {kind: group.compile() for kind, group in AUTH_PATTERNS.items()}
        self._encryption = {kind: group.compile() for kind, group in ENCRYPTION_PATTERNS.items()}
        self._logging = {kind: group.compile() for kind, group in LOGGING_PATTERNS.items()}
        self._access = {kind: group.compile() for kind, group in ACCESS_CONTROL_PATTERNS.items()}

    async def _run_scan(
        self,
        label: str,
        error_code: str,
        snapshot_id: str,
        extracted_path: str | Path,
        scan: Callable[[Path], list[T]],
    ) -> list[T]:
        root = self.resolve_root(extracted_path)
        try:
            signals = await asyncio.to_thread(scan, root)
        except AppError:
            raise
        except Exception as e:
            logger.error("%s scan failed for snapshot %s: %s", label, snapshot_id, e)
            raise AppError(f"{label} scan failed", 500, error_code) from e

        logger.info("%s scan complete for snapshot %s: %d signal(s)", label, snapshot_id, len(signals))
        return signals

    def _match_groups(
        self,
        root: Path,
        depth: AnalysisDepth,
        compiled: dict,
        groups: dict,
        build: Callable,
        stats: Optional[ScanStats],
        cancel_event: Optional[threading.Event],
    ) -> list:
        signals = []
        selector = lambda rel: self.select_for_depth(rel, depth)
        for file_path, relative_path in self.iter_files(root, selector, stats, cancel_event):
            lines = self.read_file_lines(file_path)
            for kind, patterns in compiled.items():
                matches = self.find_pattern_matches(lines, patterns)
                if not matches:
                    continue
                first_line = matches[0][1]
                signal_file = SignalFile(
                    path=relative_path,
                    line_numbers=[number for number, _ in matches],
                    evidence=mask_sensitive_string(first_line)[:EVIDENCE_MAX_LENGTH],
                )
                signals.append(build(kind, groups[kind], signal_file, [text for _, text in matches]))
        return signals

    async def collect_overview(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RepositoryOverview:
        """
        Summarise the snapshot: files in scope, documentation and languages.

        Documentation is always listed, whatever the depth.
        """
        def scan(root: Path) -> list[RepositoryOverview]:
            overview = RepositoryOverview()
            languages: Counter = Counter()
            selector = lambda rel: is_doc_path(rel) or self.select_for_depth(rel, depth)
            for file_path, relative_path in self.iter_files(root, selector, stats, cancel_event):
                if Path(relative_path).suffix.lower() in DOC_EXTENSIONS:
                    overview.documentation_files.append(relative_path)
                if not self.select_for_depth(relative_path, depth):
                    continue
                overview.total_files += 1
                language = LANGUAGE_EXTENSIONS.get(file_path.suffix.lower())
                if language:
                    languages[language] += 1
            overview.languages = dict(sorted(languages.items()))
            return [overview]

        result = await self._run_scan("Overview", "OVERVIEW_SCAN_ERROR", snapshot_id, extracted_path, scan)
        return result[0]

    async def scan_for_cicd(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[CICDSignal]:
        """
        Detect CI/CD pipelines and whether they run security checks.

        Pipeline files are read at every depth; one signal is produced per
        CI system with all of its configuration files.
        """
        def scan(root: Path) -> list[CICDSignal]:
            by_kind: dict[CICDKind, CICDSignal] = {}
            selector = lambda rel: ci_kind_for_path(rel) is not None
            for file_path, relative_path in self.iter_files(root, selector, stats, cancel_event):
                kind = ci_kind_for_path(relative_path)
                signal = by_kind.setdefault(kind, CICDSignal(kind=kind, confidence=ConfidenceLevel.HIGH))
                signal.files.append(SignalFile(
                    path=relative_path,
                    evidence=f"{kind.value.replace('_', ' ')} pipeline configuration",
                ))
                content = self.read_file_content(file_path)
                signal.has_security_scanning |= bool(SECURITY_SCANNING_RE.search(content))
                signal.has_secret_scanning |= bool(SECRET_SCANNING_RE.search(content))
                signal.has_dependency_scanning |= bool(DEPENDENCY_SCANNING_RE.search(content))

            signals = [by_kind[kind] for kind in CICDKind if kind in by_kind]
            for signal in signals:
                signal.details = (
                    f"{signal.kind.value} CI/CD detected with "
                    f"{'' if signal.has_security_scanning else 'NO '}security scanning"
                )
            return signals

        return await self._run_scan("CI/CD", "CICD_SCAN_ERROR", snapshot_id, extracted_path, scan)

    async def scan_for_secrets(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[SecretsWarning]:
        """
        Scan for hardcoded credentials.

        Never fails the analysis: an unreadable snapshot yields an empty
        list. Cancellation still propagates.
        """
        try:
            root = self.resolve_root(extracted_path)
            warnings = await asyncio.to_thread(self.secrets_scanner.scan, root, depth, stats, cancel_event)
        except AppError as e:
            if e.code == "SCAN_CANCELLED":
                raise
            logger.error("Secrets scan failed for snapshot %s: %s", snapshot_id, e.message)
            return []
        except OSError as e:
            logger.error("Secrets scan failed for snapshot %s: %s", snapshot_id, e)
            return []

        if warnings:
            logger.warning(
                "Potential hardcoded secrets detected in snapshot %s: %d warning(s)",
                snapshot_id,
                len(warnings),
            )
        return warnings

    async def scan_for_auth_patterns(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[AuthSignal]:
        """Detect authentication mechanisms."""
        def build(kind, group, signal_file, _texts):
            return AuthSignal(
                kind=kind,
                confidence=group.confidence,
                files=[signal_file],
                details=f"{group.description} detected",
            )

        return await self._run_scan(
            "Auth", "AUTH_SCAN_ERROR", snapshot_id, extracted_path,
            lambda root: self._match_groups(root, depth, self._auth, AUTH_PATTERNS, build, stats, cancel_event),
        )

    async def scan_for_access_control(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[AccessControlSignal]:
        """Detect authorization mechanisms."""
        def build(kind, group, signal_file, _texts):
            return AccessControlSignal(
                kind=kind,
                confidence=group.confidence,
                files=[signal_file],
                details=f"{group.description} detected",
            )

        return await self._run_scan(
            "Access control", "ACCESS_CONTROL_SCAN_ERROR", snapshot_id, extracted_path,
            lambda root: self._match_groups(root, depth, self._access, ACCESS_CONTROL_PATTERNS, build, stats, cancel_event),
        )

    async def scan_for_encryption(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[EncryptionSignal]:
        """Detect encryption usage and, where named, the algorithm."""
        def build(kind, group, signal_file, texts):
            algorithm = None
            for text in texts:
                match = ALGORITHM_RE.search(text)
                if match:
                    algorithm = match.group(1).upper()
                    break
            return EncryptionSignal(
                kind=kind,
                confidence=group.confidence,
                files=[signal_file],
                details=f"{group.description} detected",
                algorithm=algorithm,
            )

        return await self._run_scan(
            "Encryption", "ENCRYPTION_SCAN_ERROR", snapshot_id, extracted_path,
            lambda root: self._match_groups(root, depth, self._encryption, ENCRYPTION_PATTERNS, build, stats, cancel_event),
        )

    async def scan_for_logging(
        self,
        snapshot_id: str,
        extracted_path: str | Path,
        depth: AnalysisDepth = AnalysisDepth.SECURITY_RELEVANT,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[LoggingSignal]:
        """Detect logging practices and the library behind them."""
        def build(kind, group, signal_file, texts):
            library = None
            joined = "\n".join(texts).lower()
            for candidate in LOGGING_LIBRARIES:
                if re.search(rf"\b{candidate}\b", joined):
                    library = candidate
                    break
            return LoggingSignal(
                kind=kind,
                confidence=group.confidence,
                files=[signal_file],
                details=f"{group.description} detected",
                library=library,
            )

        return await self._run_scan(
            "Logging", "LOGGING_SCAN_ERROR", snapshot_id, extracted_path,
            lambda root: self._match_groups(root, depth, self._logging, LOGGING_PATTERNS, build, stats, cancel_event),
        )
