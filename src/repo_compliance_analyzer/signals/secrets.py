"""
Hardcoded credential detection.

Produces severity-graded ``SecretsWarning`` records. Matched values never
leave this module: file evidence is always ``[REDACTED]``.
"""

import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from ..core.config import Settings
from ..core.models import AnalysisDepth, ConfidenceLevel
from ..utils.secure_logging import get_secure_logger
from .base import BaseDetector, is_test_path
from .models import REDACTED, ScanStats, SecretKind, SecretSeverity, SecretsWarning, SignalFile

logger = get_secure_logger(__name__)


@dataclass
class SecretRule:
    """Definition of a credential pattern to detect."""

    name: str
    regex: str
    kind: SecretKind
    severity: SecretSeverity = SecretSeverity.HIGH
    exclude_patterns: list[str] = field(default_factory=list)

    _compiled_regex: Optional[re.Pattern] = field(default=None, repr=False)
    _compiled_excludes: list[re.Pattern] = field(default_factory=list, repr=False)

    def compile(self) -> None:
        """Compile regex patterns for efficiency."""
        self._compiled_regex = re.compile(self.regex, re.IGNORECASE)
        self._compiled_excludes = [re.compile(p, re.IGNORECASE) for p in self.exclude_patterns]

    def matches(self, line: str) -> bool:
        if self._compiled_regex is None:
            self.compile()
        if not self._compiled_regex.search(line):
            return False
        return not any(exclude.search(line) for exclude in self._compiled_excludes)


DEFAULT_RULES = [
    SecretRule(
        name="private_key",
        regex=r"-----BEGIN[A-Z ]*PRIVATE KEY-----",
        kind=SecretKind.PRIVATE_KEY,
        severity=SecretSeverity.CRITICAL,
    ),
    SecretRule(
        name="aws_access_key",
        regex=r"AKIA[0-9A-Z]{16}",
        kind=SecretKind.API_KEY,
        severity=SecretSeverity.CRITICAL,
    ),
    SecretRule(
        name="github_token",
        regex=r"gh[pousr]_[A-Za-z0-9]{36,}",
        kind=SecretKind.TOKEN,
        severity=SecretSeverity.CRITICAL,
    ),
    SecretRule(
        name="stripe_secret_key",
        regex=r"sk_live_[A-Za-z0-9]{24,}",
        kind=SecretKind.API_KEY,
        severity=SecretSeverity.CRITICAL,
    ),
    SecretRule(
        name="database_url",
        regex=r"(mysql|postgresql|postgres|mongodb|redis|amqp)://[^:\s]+:[^@\s]+@[^\s\"']+",
        kind=SecretKind.PASSWORD,
        severity=SecretSeverity.HIGH,
        exclude_patterns=[r"\$\{", r"\{\{"],
    ),
    SecretRule(
        name="generic_api_key",
        regex=r"api[_-]?key\s*[=:]\s*['\"][A-Za-z0-9_\-]{20,}['\"]",
        kind=SecretKind.API_KEY,
        severity=SecretSeverity.HIGH,
    ),
    SecretRule(
        name="generic_password",
        regex=r"(password|passwd|pwd)\s*[=:]\s*['\"][^'\"]{8,}['\"]",
        kind=SecretKind.PASSWORD,
        severity=SecretSeverity.HIGH,
    ),
    SecretRule(
        name="generic_secret",
        regex=r"secret\s*[=:]\s*['\"][A-Za-z0-9_\-+/=]{20,}['\"]",
        kind=SecretKind.HARDCODED_SECRET,
        severity=SecretSeverity.HIGH,
    ),
    SecretRule(
        name="generic_token",
        regex=r"token\s*[=:]\s*['\"][A-Za-z0-9_\-.]{20,}['\"]",
        kind=SecretKind.TOKEN,
        severity=SecretSeverity.MEDIUM,
    ),
]

# A line referencing one of these reads the value from somewhere else
SAFE_REFERENCE_PATTERNS = [
    r"os\.environ",
    r"os\.getenv",
    r"environ\.get",
    r"process\.env",
    r"getenv\(",
    r"vault\.",
    r"secretmanager",
    r"keyvault",
    r"\$\{",
    r"\{\{",
]

PLACEHOLDER_PATTERNS = [
    r"example",
    r"placeholder",
    r"changeme",
    r"dummy",
    r"x{6,}",
    r"your[_-]?(key|token|secret|password)",
    r"<[^>]+>",
    r"\*{3,}",
]


def is_template_path(relative_path: str) -> bool:
    """Example and template files hold placeholders, not live credentials."""
    lowered = relative_path.lower()
    return "example" in lowered or "template" in lowered or lowered.endswith(".sample")


class SecretsScanner(BaseDetector):
    """Finds likely hardcoded credentials in a snapshot."""

    name = "secrets"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self.rules = self._load_rules()
        self._safe_patterns = [re.compile(p, re.IGNORECASE) for p in SAFE_REFERENCE_PATTERNS]
        self._placeholder_patterns = [re.compile(p, re.IGNORECASE) for p in PLACEHOLDER_PATTERNS]

    def _load_rules(self) -> list[SecretRule]:
        """Load built-in rules plus any custom rules from YAML."""
        rules = [
            SecretRule(r.name, r.regex, r.kind, r.severity, list(r.exclude_patterns))
            for r in DEFAULT_RULES
        ]

        patterns_file = Path(self.settings.analysis.secrets_patterns_file)
        if patterns_file.exists():
            try:
                with open(patterns_file) as f:
                    custom = yaml.safe_load(f)

                if custom and "patterns" in custom:
                    for p in custom["patterns"]:
                        rules.append(SecretRule(
                            name=p.get("name", "custom"),
                            regex=p["regex"],
                            kind=SecretKind(p.get("kind", "hardcoded_secret")),
                            severity=SecretSeverity(p.get("severity", "high")),
                            exclude_patterns=p.get("exclude_patterns", []),
                        ))
            except (yaml.YAMLError, KeyError, ValueError, OSError) as e:
                logger.warning("Could not load custom secrets patterns from %s: %s", patterns_file, e)

        for rule in rules:
            rule.compile()

        return rules

    def is_hardcoded(self, line: str) -> bool:
        """
        Check if a credential appears literal rather than referenced.

        Args:
            line: Line content to check

        Returns:
            True if the line neither reads from the environment/a vault nor
            holds an obvious placeholder
        """
        if any(p.search(line) for p in self._safe_patterns):
            return False
        return not any(p.search(line) for p in self._placeholder_patterns)

    def scan(
        self,
        root: Path,
        depth: AnalysisDepth,
        stats: Optional[ScanStats] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> list[SecretsWarning]:
        """
        Scan a snapshot for hardcoded credentials.

        Test, example and template files are not scanned. One warning is
        produced per (file, rule) with every offending line number.
        """
        warnings: list[SecretsWarning] = []

        def selector(relative_path: str) -> bool:
            if is_test_path(relative_path) or is_template_path(relative_path):
                return False
            return self.select_for_depth(relative_path, depth)

        for file_path, relative_path in self.iter_files(root, selector, stats, cancel_event):
            lines = self.read_file_lines(file_path)
            for rule in self.rules:
                line_numbers = [
                    number for number, text in lines
                    if rule.matches(text) and self.is_hardcoded(text)
                ]
                if not line_numbers:
                    continue
                warnings.append(SecretsWarning(
                    kind=rule.kind,
                    severity=rule.severity,
                    files=[SignalFile(path=relative_path, line_numbers=line_numbers, evidence=REDACTED)],
                    recommendation=(
                        f"Move the {rule.kind.value.replace('_', ' ')} to environment variables "
                        "or a secrets manager and rotate it"
                    ),
                    confidence=ConfidenceLevel.HIGH if rule.severity == SecretSeverity.CRITICAL else ConfidenceLevel.MEDIUM,
                    details=f"Rule {rule.name} matched {len(line_numbers)} line(s)",
                ))

        return warnings
