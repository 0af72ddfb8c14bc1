"""
ctxsync MCP Server — Store Migration and Project Consolidation

Standalone MCP server exposing the ctxsync maintenance operations via the
Model Context Protocol.

Architecture: thin MCP layer delegating to ProjectStore, SchemaMigrator
and DuplicateConsolidator.  The startup MigrationGate runs before any tool
is registered, so a v1 store is upgraded before the first call.

Usage:
    python -m ctxsync.mcp.server --db ~/.ctxsync/data.db
    python -m ctxsync.mcp.server --audit-log /tmp/ctxsync-audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Project memory store maintenance (5 tools).\n"
    "\n"
    "SCHEMA:   migration_status reports the v1 -> v2 state;\n"
    "          migrate_schema upgrades a legacy store (backup first).\n"
    "PROJECTS: get_migration_stats lists duplicate projects (read-only);\n"
    "          migrate_database merges them (use dry_run=true first).\n"
    "HEALTH:   store_stats returns per-table row counts.\n"
    "\n"
    "Rules:\n"
    "- Always preview consolidation with dry_run=true before applying\n"
    "- Consolidation removes the ids of merged duplicate projects\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the ctxsync MCP server."""
    from ctxsync.config import DEFAULT_DB_PATH

    p = argparse.ArgumentParser(
        prog="ctxsync-mcp",
        description="ctxsync MCP Server — store migration and project consolidation",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("CTXSYNC_DB", DEFAULT_DB_PATH),
        help=f"SQLite database path (default: {DEFAULT_DB_PATH} or $CTXSYNC_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("CTXSYNC_CONFIG"),
        help="JSON config file (default: $CTXSYNC_CONFIG)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    a = p.add_argument_group("audit")
    a.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with ctxsync tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, store) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from ctxsync.config import load_config
    from ctxsync.gate import MigrationGate
    from ctxsync.mcp.audit import AuditLogger
    from ctxsync.mcp.session import SessionTracker
    from ctxsync.mcp.tools import register_ctxsync_tools
    from ctxsync.store import ProjectStore

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config)
    config.store.db_path = os.path.expanduser(args.db)

    store = ProjectStore(
        db_path=config.store.db_path,
        wal_mode=config.store.wal_mode,
    )

    # Blocking: schema first, duplicate notice second
    gate = MigrationGate(store, config)
    report = gate.run()

    session_tracker = SessionTracker()

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    mcp = FastMCP(
        name="ctxsync",
        instructions=_MCP_INSTRUCTIONS,
    )

    register_ctxsync_tools(
        mcp, store, config,
        gate=gate,
        session_tracker=session_tracker,
        audit=audit,
    )

    logger.info(
        "ctxsync MCP server ready: db=%s, schema=%s, duplicates=%s",
        config.store.db_path,
        report.schema_state.value,
        report.duplicates.total_duplicates if report.duplicates else "unknown",
    )

    return mcp, store


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _store = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
