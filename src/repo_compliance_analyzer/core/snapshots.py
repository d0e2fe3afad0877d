"""
Snapshot registry.

Ingestion (upload, extraction, indexing) happens outside this package;
``register_snapshot`` records an already-extracted tree as ``indexed`` so
it can be analyzed.
"""

from pathlib import Path
from typing import Optional

from ..storage.database import Database
from ..utils.secure_logging import get_secure_logger
from .audit import AuditLog
from .errors import ConflictError, NotFoundError, ValidationError, wrap_errors
from .models import Snapshot, SnapshotStatus

logger = get_secure_logger(__name__)


class SnapshotService:
    """Register, look up and delete repository snapshots."""

    def __init__(self, db: Database, audit: AuditLog):
        self.db = db
        self.audit = audit

    def register_snapshot(
        self,
        extracted_path: str | Path,
        organization_id: str,
        user_id: str,
        name: Optional[str] = None,
    ) -> Snapshot:
        """
        Record an extracted repository tree as an indexed snapshot.

        Args:
            extracted_path: Directory holding the extracted repository
            organization_id: Owning organization
            user_id: User registering the snapshot
            name: Display name; defaults to the directory name

        Returns:
            The new snapshot

        Raises:
            ValidationError: If the path is not a directory
        """
        path = Path(extracted_path).expanduser().resolve()
        if not path.is_dir():
            raise ValidationError(f"Not a directory: {path}", "INVALID_SNAPSHOT_PATH")

        with wrap_errors("Failed to register snapshot", "SNAPSHOT_CREATE_ERROR", logger):
            snapshot = Snapshot(
                organization_id=organization_id,
                name=name or path.name,
                extracted_path=str(path),
                status=SnapshotStatus.INDEXED,
            )
            self.db.create_snapshot(snapshot)
            self.audit.log_action(
                "create",
                "repository_snapshot",
                snapshot.id,
                user_id,
                organization_id,
                {"name": snapshot.name},
            )
            logger.info("Registered snapshot %s (%s)", snapshot.id, snapshot.name)
            return snapshot

    def list_snapshots(self, organization_id: str) -> list[Snapshot]:
        with wrap_errors("Failed to list snapshots", "SNAPSHOT_LIST_ERROR", logger):
            return self.db.list_snapshots(organization_id)

    def get_snapshot(self, snapshot_id: str, organization_id: str) -> Snapshot:
        with wrap_errors("Failed to retrieve snapshot", "SNAPSHOT_RETRIEVE_ERROR", logger):
            snapshot = self.db.get_snapshot(snapshot_id, organization_id)
            if snapshot is None:
                raise NotFoundError("Repository snapshot not found", "SNAPSHOT_NOT_FOUND")
            return snapshot

    def delete_snapshot(self, snapshot_id: str, organization_id: str, user_id: str) -> None:
        """
        Delete a snapshot with its findings and tasks.

        Raises:
            NotFoundError: Snapshot missing or not owned
            ConflictError: An analysis of the snapshot is in progress
        """
        snapshot = self.get_snapshot(snapshot_id, organization_id)
        if snapshot.status == SnapshotStatus.ANALYZING:
            raise ConflictError("Cannot delete a snapshot while it is being analyzed", "ANALYSIS_IN_PROGRESS")

        with wrap_errors("Failed to delete snapshot", "SNAPSHOT_DELETE_ERROR", logger):
            self.db.delete_snapshot(snapshot_id, organization_id)
            self.audit.log_action(
                "delete",
                "repository_snapshot",
                snapshot_id,
                user_id,
                organization_id,
                {"name": snapshot.name},
            )
            logger.info("Deleted snapshot %s", snapshot_id)
