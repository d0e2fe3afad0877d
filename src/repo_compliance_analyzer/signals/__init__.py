"""Code signal detection: typed observations extracted from a snapshot."""

from .detector import CodeSignalDetector
from .models import (
    AccessControlSignal,
    AuthSignal,
    CICDSignal,
    CodeSignals,
    EncryptionSignal,
    LoggingSignal,
    RepositoryOverview,
    ScanStats,
    SecretsWarning,
    SignalFile,
)
from .secrets import SecretsScanner

__all__ = [
    "AccessControlSignal",
    "AuthSignal",
    "CICDSignal",
    "CodeSignalDetector",
    "CodeSignals",
    "EncryptionSignal",
    "LoggingSignal",
    "RepositoryOverview",
    "ScanStats",
    "SecretsScanner",
    "SecretsWarning",
    "SignalFile",
]
