"""
Controls of interest per compliance framework.

Each control is bound to the rule that grades it from code signals. The
order of each tuple is the order verdicts are emitted in.
"""

from dataclasses import dataclass
from enum import Enum

from ..core.models import Framework


class ControlRule(str, Enum):
    """How a control is graded from signals."""

    AUTHENTICATION = "authentication"
    MFA = "mfa"
    ACCESS_CONTROL = "access_control"
    ENCRYPTION = "encryption"
    ENCRYPTION_AT_REST = "encryption_at_rest"
    ENCRYPTION_IN_TRANSIT = "encryption_in_transit"
    LOGGING = "logging"
    AUDIT_LOGGING = "audit_logging"
    CHANGE_MANAGEMENT = "change_management"
    SECRETS_MANAGEMENT = "secrets_management"


@dataclass(frozen=True)
class ControlDefinition:
    """A framework control and its grading rule."""

    control_id: str
    title: str
    rule: ControlRule


_NIST_CONTROLS = (
    ControlDefinition("IA-2", "Identification and Authentication (Organizational Users)", ControlRule.AUTHENTICATION),
    ControlDefinition("IA-2(1)", "Multi-factor Authentication to Privileged Accounts", ControlRule.MFA),
    ControlDefinition("IA-5(7)", "No Embedded Unencrypted Static Authenticators", ControlRule.SECRETS_MANAGEMENT),
    ControlDefinition("AC-3", "Access Enforcement", ControlRule.ACCESS_CONTROL),
    ControlDefinition("SC-8", "Transmission Confidentiality and Integrity", ControlRule.ENCRYPTION_IN_TRANSIT),
    ControlDefinition("SC-13", "Cryptographic Protection", ControlRule.ENCRYPTION),
    ControlDefinition("SC-28", "Protection of Information at Rest", ControlRule.ENCRYPTION_AT_REST),
    ControlDefinition("AU-2", "Event Logging", ControlRule.LOGGING),
    ControlDefinition("AU-12", "Audit Record Generation", ControlRule.AUDIT_LOGGING),
    ControlDefinition("CM-3", "Configuration Change Control", ControlRule.CHANGE_MANAGEMENT),
)

CONTROL_CATALOG: dict[Framework, tuple[ControlDefinition, ...]] = {
    Framework.SOC2: (
        ControlDefinition("CC6.1", "Logical Access Security", ControlRule.AUTHENTICATION),
        ControlDefinition("CC6.2", "User Registration and Authorization (MFA)", ControlRule.MFA),
        ControlDefinition("CC6.3", "Role-Based Access", ControlRule.ACCESS_CONTROL),
        ControlDefinition("CC6.6", "Encryption of Data at Rest", ControlRule.ENCRYPTION_AT_REST),
        ControlDefinition("CC6.7", "Encryption of Data in Transit", ControlRule.ENCRYPTION_IN_TRANSIT),
        ControlDefinition("CC7.2", "System Monitoring", ControlRule.LOGGING),
        ControlDefinition("CC7.3", "Security Event Evaluation", ControlRule.AUDIT_LOGGING),
        ControlDefinition("CC8.1", "Change Management", ControlRule.CHANGE_MANAGEMENT),
    ),
    Framework.ISO27001: (
        ControlDefinition("A.9.2.1", "User Registration and De-registration", ControlRule.AUTHENTICATION),
        ControlDefinition("A.9.2.4", "Management of Secret Authentication Information", ControlRule.SECRETS_MANAGEMENT),
        ControlDefinition("A.9.4.1", "Information Access Restriction", ControlRule.ACCESS_CONTROL),
        ControlDefinition("A.9.4.2", "Secure Log-on Procedures", ControlRule.MFA),
        ControlDefinition("A.10.1.1", "Policy on the Use of Cryptographic Controls", ControlRule.ENCRYPTION),
        ControlDefinition("A.12.4.1", "Event Logging", ControlRule.LOGGING),
        ControlDefinition("A.12.4.3", "Administrator and Operator Logs", ControlRule.AUDIT_LOGGING),
        ControlDefinition("A.14.2.2", "System Change Control Procedures", ControlRule.CHANGE_MANAGEMENT),
    ),
    Framework.NIST80053: _NIST_CONTROLS,
    # FedRAMP baselines are built on NIST SP 800-53 controls
    Framework.FEDRAMP: _NIST_CONTROLS,
}
