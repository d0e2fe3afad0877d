"""
Signal records produced by the code signal detector.

Each category has its own dataclass with a ``kind`` enum and the metadata
specific to that category, so the control mapper can match on types
instead of probing loosely shaped dictionaries.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Union

from ..core.models import ConfidenceLevel


class SignalCategory(str, Enum):
    """Signal categories, one per detector scan."""

    AUTH = "auth"
    ENCRYPTION = "encryption"
    LOGGING = "logging"
    ACCESS_CONTROL = "access_control"
    CICD = "cicd"
    SECRETS = "secrets"


class AuthKind(str, Enum):
    JWT = "jwt"
    OAUTH = "oauth"
    SESSION = "session"
    API_KEY = "api_key"
    MFA = "mfa"
    PASSKEY = "passkey"
    BASIC_AUTH = "basic_auth"
    SAML = "saml"
    OIDC = "oidc"


class EncryptionKind(str, Enum):
    AT_REST = "at_rest"
    IN_TRANSIT = "in_transit"
    KEY_MANAGEMENT = "key_management"
    HASHING = "hashing"


class LoggingKind(str, Enum):
    STRUCTURED = "structured"
    AUDIT = "audit"
    SECURITY = "security"
    APPLICATION = "application"
    ACCESS = "access"


class AccessControlKind(str, Enum):
    RBAC = "rbac"
    PERMISSIONS = "permissions"
    MIDDLEWARE = "middleware"
    POLICY = "policy"
    ACL = "acl"


class CICDKind(str, Enum):
    GITHUB_ACTIONS = "github_actions"
    GITLAB_CI = "gitlab_ci"
    JENKINS = "jenkins"
    CIRCLECI = "circleci"
    TRAVIS = "travis"
    AZURE_DEVOPS = "azure_devops"


class SecretKind(str, Enum):
    HARDCODED_SECRET = "hardcoded_secret"
    API_KEY = "api_key"
    PASSWORD = "password"
    TOKEN = "token"
    PRIVATE_KEY = "private_key"


class SecretSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


REDACTED = "[REDACTED]"


@dataclass
class SignalFile:
    """A file a signal was observed in."""

    path: str
    line_numbers: list[int] = field(default_factory=list)
    evidence: str = ""


class _SignalMixin:
    category: ClassVar[SignalCategory]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category.value
        return data

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


@dataclass
class AuthSignal(_SignalMixin):
    """Authentication mechanism in use."""

    kind: AuthKind
    confidence: ConfidenceLevel
    files: list[SignalFile] = field(default_factory=list)
    details: str = ""

    category: ClassVar[SignalCategory] = SignalCategory.AUTH


@dataclass
class EncryptionSignal(_SignalMixin):
    """Cryptography usage, with the algorithm when one is named."""

    kind: EncryptionKind
    confidence: ConfidenceLevel
    files: list[SignalFile] = field(default_factory=list)
    details: str = ""
    algorithm: Optional[str] = None

    category: ClassVar[SignalCategory] = SignalCategory.ENCRYPTION


@dataclass
class LoggingSignal(_SignalMixin):
    """Logging practice, with the logging library when recognised."""

    kind: LoggingKind
    confidence: ConfidenceLevel
    files: list[SignalFile] = field(default_factory=list)
    details: str = ""
    library: Optional[str] = None

    category: ClassVar[SignalCategory] = SignalCategory.LOGGING


@dataclass
class AccessControlSignal(_SignalMixin):
    """Authorization mechanism in use."""

    kind: AccessControlKind
    confidence: ConfidenceLevel
    files: list[SignalFile] = field(default_factory=list)
    details: str = ""

    category: ClassVar[SignalCategory] = SignalCategory.ACCESS_CONTROL


@dataclass
class CICDSignal(_SignalMixin):
    """A CI/CD pipeline and the security checks it runs."""

    kind: CICDKind
    confidence: ConfidenceLevel
    files: list[SignalFile] = field(default_factory=list)
    details: str = ""
    has_security_scanning: bool = False
    has_secret_scanning: bool = False
    has_dependency_scanning: bool = False

    category: ClassVar[SignalCategory] = SignalCategory.CICD

    @property
    def has_any_scanning(self) -> bool:
        return self.has_security_scanning or self.has_secret_scanning or self.has_dependency_scanning


@dataclass
class SecretsWarning(_SignalMixin):
    """
    A likely hardcoded credential.

    Warnings are graded by severity rather than pass/fail; file evidence is
    always ``[REDACTED]``.
    """

    kind: SecretKind
    severity: SecretSeverity
    files: list[SignalFile] = field(default_factory=list)
    recommendation: str = ""
    confidence: ConfidenceLevel = ConfidenceLevel.MEDIUM
    details: str = ""

    category: ClassVar[SignalCategory] = SignalCategory.SECRETS


CodeSignal = Union[
    AuthSignal,
    EncryptionSignal,
    LoggingSignal,
    AccessControlSignal,
    CICDSignal,
    SecretsWarning,
]


@dataclass
class ScanStats:
    """Files read versus skipped (binary, oversize, excluded, unreadable)."""

    scanned_files: int = 0
    skipped_files: int = 0


@dataclass
class CodeSignals:
    """Signals accumulated over one analysis run."""

    auth: list[AuthSignal] = field(default_factory=list)
    encryption: list[EncryptionSignal] = field(default_factory=list)
    logging: list[LoggingSignal] = field(default_factory=list)
    access_control: list[AccessControlSignal] = field(default_factory=list)
    cicd: list[CICDSignal] = field(default_factory=list)
    secrets_warnings: list[SecretsWarning] = field(default_factory=list)
    stats: ScanStats = field(default_factory=ScanStats)

    def total(self) -> int:
        return (
            len(self.auth)
            + len(self.encryption)
            + len(self.logging)
            + len(self.access_control)
            + len(self.cicd)
            + len(self.secrets_warnings)
        )

    def to_dict(self) -> dict:
        return {
            "auth": [s.to_dict() for s in self.auth],
            "encryption": [s.to_dict() for s in self.encryption],
            "logging": [s.to_dict() for s in self.logging],
            "access_control": [s.to_dict() for s in self.access_control],
            "cicd": [s.to_dict() for s in self.cicd],
            "secrets_warnings": [s.to_dict() for s in self.secrets_warnings],
            "scanned_files": self.stats.scanned_files,
            "skipped_files": self.stats.skipped_files,
        }


@dataclass
class RepositoryOverview:
    """Shape of the snapshot as seen at the requested depth."""

    total_files: int = 0
    documentation_files: list[str] = field(default_factory=list)
    languages: dict[str, int] = field(default_factory=dict)
