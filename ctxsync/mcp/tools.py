"""
ctxsync MCP Tools — migration and consolidation tools for MCP integration.

Thin wrappers around SchemaMigrator, DuplicateConsolidator and
ProjectStore.  Each tool follows the same middleware order:

    ① Session resolve  — get or create session from MCP context
    ② Tool execution   — business logic, structured result
    ③ Startup notice   — attached to the first response of each session
    ④ Audit log        — always, including on failure (in finally block)

Tools:
    SCHEMA:     migration_status, migrate_schema
    PROJECTS:   get_migration_stats, migrate_database
    HEALTH:     store_stats
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict

from ctxsync.config import CtxSyncConfig
from ctxsync.consolidate import DuplicateConsolidator
from ctxsync.migrate import SchemaMigrator
from ctxsync.store import ProjectStore

logger = logging.getLogger(__name__)


def register_ctxsync_tools(
    mcp,
    store: ProjectStore,
    config: CtxSyncConfig,
    *,
    gate=None,
    session_tracker=None,
    audit=None,
) -> None:
    """
    Register the ctxsync MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        store: Open ProjectStore (startup gate already run).
        config: CtxSyncConfig for migration and consolidation settings.
        gate: MigrationGate holding the startup report (notice source).
        session_tracker: SessionTracker for session state.
        audit: AuditLogger for structured logging.
    """
    from ctxsync.mcp.audit import AuditLogger
    from ctxsync.mcp.session import SessionTracker

    if session_tracker is None:
        session_tracker = SessionTracker()
    if audit is None:
        audit = AuditLogger()

    db_path = store.db_path

    def _session():
        """Resolve session state (FastMCP context or fallback)."""
        session = session_tracker.get_or_create(session_tracker.resolve_session_id(None))
        session.record_call()
        return session

    def _with_notice(result: Dict[str, Any], session) -> Dict[str, Any]:
        if gate is not None:
            notice = gate.notice_for(session)
            if notice:
                result["notice"] = notice
        return result

    # =====================================================================
    # SCHEMA: v1 -> v2 migration
    # =====================================================================

    @mcp.tool()
    def migration_status() -> Dict[str, Any]:
        """Report the schema migration state of the store.

        Returns:
            state: not_needed | needs_migration.
            completed: True when the v2 migration marker exists.
            startup: What the startup gate did (migration result, duplicates).
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session = _session()
        outcome = "ok"
        try:
            migrator = SchemaMigrator(store, config.migration)
            result: Dict[str, Any] = {
                "status": "ok",
                "state": migrator.check().value,
                "completed": migrator.has_completed_migration(),
            }
            if gate is not None and gate.report is not None:
                result["startup"] = gate.report.to_dict()
            return _with_notice(result, session)
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Status failed: {e}"}
        finally:
            audit.log("migration_status", rid, session.session_id, db_path,
                      outcome, {}, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def migrate_schema(force: bool = False) -> Dict[str, Any]:
        """Check and migrate the schema from v1 to v2 if needed.

        Takes a verified backup first, then copies every legacy record
        family in one transaction. A no-op when nothing needs migrating.

        Args:
            force: Ignore the completion marker (v2 tables must be empty).

        Returns:
            success, migrated_tables, records_copied, table_counts,
            skipped, errors, backup_path.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session = _session()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = SchemaMigrator(store, config.migration).migrate(force=force).to_dict()
            detail = audit.make_result_detail(result)
            if not result["success"]:
                outcome = "failed"
            result["status"] = "ok" if result["success"] else "failed"
            return _with_notice(result, session)
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Migration failed: {e}"}
        finally:
            audit.log("migrate_schema", rid, session.session_id, db_path,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # PROJECTS: duplicate detection and consolidation
    # =====================================================================

    @mcp.tool()
    def get_migration_stats() -> Dict[str, Any]:
        """Report duplicate projects without changing anything.

        Returns:
            total_projects, projects_with_paths, duplicate_groups,
            total_duplicates, duplicate_details [{path, count, names}].
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session = _session()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = DuplicateConsolidator(store, config.consolidate).get_stats().to_dict()
            detail = audit.make_result_detail(result)
            result["status"] = "ok"
            if result["duplicate_groups"]:
                result["hint"] = (
                    "Run migrate_database with dry_run=true to preview the merge."
                )
            return _with_notice(result, session)
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Stats failed: {e}"}
        finally:
            audit.log("get_migration_stats", rid, session.session_id, db_path,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    @mcp.tool()
    def migrate_database(dry_run: bool = False) -> Dict[str, Any]:
        """Merge duplicate projects that share a normalized path.

        Conversations, decisions, todos and every other project-owned
        record are re-pointed to the kept project before duplicates are
        deleted. Runs in one transaction.

        Args:
            dry_run: If True, report the merge plan without writing.

        Returns:
            success, duplicates_found, duplicates_removed, projects_merged,
            errors, details, dry_run.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session = _session()
        outcome = "ok"
        detail: Dict[str, Any] = {}
        try:
            result = DuplicateConsolidator(store, config.consolidate).consolidate(
                dry_run=dry_run,
            ).to_dict()
            detail = audit.make_result_detail(result)
            if not result["success"]:
                outcome = "failed"
            result["status"] = "ok" if result["success"] else "failed"
            return _with_notice(result, session)
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Consolidation failed: {e}"}
        finally:
            audit.log("migrate_database", rid, session.session_id, db_path,
                      outcome, detail, (time.monotonic() - t0) * 1000)

    # =====================================================================
    # HEALTH
    # =====================================================================

    @mcp.tool()
    def store_stats() -> Dict[str, Any]:
        """Store statistics: schema version and per-table row counts.

        Returns:
            db_path, schema_version, total_projects, tables.
        """
        t0 = time.monotonic()
        rid = audit.new_rid()
        session = _session()
        outcome = "ok"
        try:
            stats = store.stats()
            stats["status"] = "ok"
            return _with_notice(stats, session)
        except Exception as e:
            outcome = "error"
            return {"status": "error", "message": f"Stats failed: {e}"}
        finally:
            audit.log("store_stats", rid, session.session_id, db_path,
                      outcome, {}, (time.monotonic() - t0) * 1000)
