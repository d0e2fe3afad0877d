"""Storage module for snapshots, runs, findings, tasks and audit records."""

from .database import Database

__all__ = ["Database"]
