"""
Audit logging sink.

Audit writes are a side channel: a failure to record an entry is logged
and never fails the operation being audited.
"""

from typing import Any, Optional, Protocol

from ..storage.database import Database
from ..utils.secure_logging import get_secure_logger, mask_mapping

logger = get_secure_logger(__name__)


class AuditLog(Protocol):
    """Anything that accepts audit records."""

    def log_action(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        user_id: Optional[str],
        organization_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


class DatabaseAuditLog:
    """Audit sink that stores entries in the ``audit_log`` table."""

    def __init__(self, db: Database):
        self.db = db

    def log_action(
        self,
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        user_id: Optional[str],
        organization_id: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Record an audit entry.

        Args:
            action: Verb such as ``create``, ``update`` or ``delete``
            entity_type: Kind of entity acted on
            entity_id: Identifier of the entity
            user_id: Acting user
            organization_id: Owning organization
            metadata: Extra context; credential-like values are masked
        """
        try:
            self.db.insert_audit_entry(
                action,
                entity_type,
                entity_id,
                user_id,
                organization_id,
                mask_mapping(metadata or {}),
            )
        except Exception as e:
            logger.error("Failed to write audit entry %s %s/%s: %s", action, entity_type, entity_id, e)

    def list_entries(self, organization_id: str, entity_id: Optional[str] = None) -> list[dict[str, Any]]:
        return self.db.list_audit_entries(organization_id, entity_id)
