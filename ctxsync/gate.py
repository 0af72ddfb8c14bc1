"""
Migration Gate — Startup Sequencing

Runs once, synchronously, before the store is handed to any caller:

  1. Schema migration (blocking): detect v1 data and upgrade it
  2. Duplicate check (non-blocking): read-only stats, turned into a notice

Consolidation itself is never automatic; it removes project ids.  The
notice is delivered at most once per session through ``notice_for``.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from ctxsync.config import CtxSyncConfig
from ctxsync.consolidate import DuplicateConsolidator
from ctxsync.migrate import MigrationState, SchemaMigrator
from ctxsync.store import ProjectStore
from ctxsync.types import DuplicateStats, MigrationResult

logger = logging.getLogger(__name__)


class NoticeSession(Protocol):
    """Anything carrying a per-session notice flag (e.g. mcp SessionState)."""
    notice_shown: bool


def build_notice(stats: DuplicateStats, max_groups: int = 3) -> str:
    """Full duplicate notice listing at most *max_groups* paths."""
    lines = [
        "Duplicate projects detected",
        "",
        f"Your store has {stats.total_duplicates} duplicate project(s) across "
        f"{stats.duplicate_groups} path(s). Conversations, decisions and todos "
        f"are preserved and merged into one project per path.",
        "",
        "Affected paths:",
    ]
    for group in stats.duplicate_details[:max_groups]:
        lines.append(f"  - {group.path} ({group.count} duplicates)")
    hidden = len(stats.duplicate_details) - max_groups
    if hidden > 0:
        lines.append(f"  - ... and {hidden} more duplicate groups")
    lines += [
        "",
        "To clean up:",
        "  1. Preview:  get_migration_stats",
        "  2. Test run: migrate_database with dry_run=true",
        "  3. Apply:    migrate_database",
        "",
        "This notice is shown once per session. Consolidation is optional.",
    ]
    return "\n".join(lines)


def lightweight_notice(duplicate_count: int) -> str:
    return (
        f"Tip: your store has {duplicate_count} duplicate projects. "
        f"Run get_migration_stats to see cleanup options."
    )


@dataclass
class GateReport:
    """What happened at startup."""
    schema_state: MigrationState
    migration: Optional[MigrationResult] = None
    duplicates: Optional[DuplicateStats] = None
    notice: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.migration is None or self.migration.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_state": self.schema_state.value,
            "migration": self.migration.to_dict() if self.migration else None,
            "duplicates": self.duplicates.to_dict() if self.duplicates else None,
            "notice": self.notice,
        }


class MigrationGate:
    """Startup check: migrate the schema first, then report duplicates."""

    def __init__(self, store: ProjectStore, config: Optional[CtxSyncConfig] = None):
        self._store = store
        self._config = config or CtxSyncConfig()
        self.report: Optional[GateReport] = None

    def run(self) -> GateReport:
        migrator = SchemaMigrator(self._store, self._config.migration)
        state = migrator.check()
        report = GateReport(schema_state=state)

        if state is MigrationState.NEEDS_MIGRATION:
            if self._config.migration.auto_migrate:
                report.migration = migrator.migrate()
                if not report.migration.success:
                    logger.error(
                        "Schema migration failed, store left at v1: %s",
                        "; ".join(report.migration.errors),
                    )
            else:
                logger.warning("Legacy data found; automatic migration disabled")

        # Duplicate detection must never block startup
        try:
            report.duplicates = DuplicateConsolidator(
                self._store, self._config.consolidate,
            ).get_stats()
        except sqlite3.Error as exc:
            logger.warning("Duplicate project check failed: %s", exc)

        stats = report.duplicates
        if stats is not None and stats.duplicate_groups > 0:
            logger.warning(
                "%d duplicate projects in %d groups; run 'ctxsync dedupe --dry-run'",
                stats.total_duplicates, stats.duplicate_groups,
            )
            if self._config.consolidate.notify_on_startup:
                report.notice = build_notice(
                    stats, self._config.consolidate.notice_max_groups,
                )

        self.report = report
        return report

    def notice_for(self, session: NoticeSession) -> Optional[str]:
        """The startup notice, once per session; None afterwards."""
        if self.report is None or not self.report.notice or session.notice_shown:
            return None
        session.notice_shown = True
        return self.report.notice
