"""
ctxsync — project memory store for AI coding agents.

Core engine: transactional v1 -> v2 schema migration with verified backup,
and consolidation of duplicate projects whose paths differ only in form.
"""

__version__ = "0.1.0"

from ctxsync.types import (
    BackupError,
    ConsolidationResult,
    CtxSyncError,
    DuplicateStats,
    MigrationResult,
    Project,
    TransformError,
)
from ctxsync.store import ProjectStore, SCHEMA_VERSION
from ctxsync.config import CtxSyncConfig
from ctxsync.migrate import MigrationState, SchemaMigrator
from ctxsync.consolidate import DuplicateConsolidator
from ctxsync.gate import MigrationGate

__all__ = [
    "__version__",
    "BackupError",
    "ConsolidationResult",
    "CtxSyncError",
    "DuplicateStats",
    "MigrationResult",
    "Project",
    "TransformError",
    "ProjectStore",
    "SCHEMA_VERSION",
    "CtxSyncConfig",
    "MigrationState",
    "SchemaMigrator",
    "DuplicateConsolidator",
    "MigrationGate",
]
