"""
ctxsync CLI — Store Migration and Project Consolidation Commands

Commands:
    ctxsync init   [PATH]              — create an empty store (idempotent)
    ctxsync status                     — schema state + duplicate summary
    ctxsync stats                      — per-table row counts
    ctxsync migrate [--force]          — check and migrate v1 -> v2 if needed
    ctxsync duplicates                 — duplicate project report (read-only)
    ctxsync dedupe [--dry-run]         — merge duplicate projects
    ctxsync serve                      — start MCP server (foreground)

Environment variables:
    CTXSYNC_DB      Path to SQLite database (default: ~/.ctxsync/data.db)
    CTXSYNC_CONFIG  Path to JSON config file (default: none)

Precedence (invariant):
    CLI --flag  >  CTXSYNC_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational failure (migration or consolidation rolled back, bad args)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: Optional[argparse.Namespace] = None):
    """Resolve config: CLI --config > CTXSYNC_CONFIG > compiled defaults."""
    from ctxsync.config import load_config
    path = getattr(args, "config", None) if args else None
    return load_config(path or _env_str("CTXSYNC_CONFIG", None))


def _resolve_db(args: Optional[argparse.Namespace] = None, config=None) -> str:
    """Resolve database path: CLI --db > CTXSYNC_DB > config > default."""
    if args and getattr(args, "db", None):
        return os.path.expanduser(args.db)
    env = _env_str("CTXSYNC_DB", None)
    if env:
        return os.path.expanduser(env)
    if config is None:
        config = _resolve_config(args)
    return os.path.expanduser(config.store.db_path)


def _open_store(args: argparse.Namespace):
    """Open a ProjectStore plus its config. Creates the DB if needed."""
    from ctxsync.store import ProjectStore
    config = _resolve_config(args)
    db_path = _resolve_db(args, config)
    config.store.db_path = db_path
    return ProjectStore(db_path=db_path, wal_mode=config.store.wal_mode), config


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


# ===========================================================================
# Command: init
# ===========================================================================


def cmd_init(args: argparse.Namespace) -> None:
    """Create an empty current-schema store."""
    from ctxsync.store import ProjectStore

    db_path = Path(os.path.expanduser(args.path or _resolve_db(args))).resolve()
    if db_path.exists():
        # Idempotent: print path, exit 0 (not error)
        _info(f"Store exists: {db_path}")
    else:
        store = ProjectStore(db_path=str(db_path))
        store.close()
        _info(f"Store initialized: {db_path}")
    # The export line goes to stdout (useful for eval)
    print(f'export CTXSYNC_DB="{db_path}"')


# ===========================================================================
# Command: status
# ===========================================================================


def cmd_status(args: argparse.Namespace) -> None:
    """Show schema migration state and duplicate summary (read-only)."""
    from ctxsync.consolidate import DuplicateConsolidator
    from ctxsync.migrate import SchemaMigrator

    store, config = _open_store(args)
    migrator = SchemaMigrator(store, config.migration)
    state = migrator.check()
    stats = DuplicateConsolidator(store, config.consolidate).get_stats()
    payload = {
        "db_path": store.db_path,
        "schema_state": state.value,
        "migration_completed": migrator.has_completed_migration(),
        "duplicates": stats.to_dict(),
    }
    store.close()

    if getattr(args, "json", False):
        payload["status"] = "ok"
        _print_json(payload)
        return

    print("ctxsync Store Status")
    print("=" * 40)
    print(f"  Database:        {payload['db_path']}")
    print(f"  Schema state:    {state.value}")
    print(f"  Migrated to v2:  {'yes' if payload['migration_completed'] else 'no'}")
    print(f"  Projects:        {stats.total_projects}")
    print(f"  Duplicates:      {stats.total_duplicates} in {stats.duplicate_groups} group(s)")
    if stats.duplicate_groups:
        from ctxsync.gate import lightweight_notice
        _info(lightweight_notice(stats.total_duplicates))


# ===========================================================================
# Command: stats
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show per-table row counts."""
    store, _config = _open_store(args)
    stats = store.stats()
    store.close()

    if getattr(args, "json", False):
        stats["status"] = "ok"
        _print_json(stats)
    else:
        print("ctxsync Store Statistics")
        print("=" * 40)
        print(f"  Schema version: {stats['schema_version']}")
        print(f"  Projects:       {stats['total_projects']}")
        print(f"  Tables:")
        for table, count in sorted(stats["tables"].items()):
            print(f"    {table:20s}: {count}")


# ===========================================================================
# Command: migrate
# ===========================================================================


def cmd_migrate(args: argparse.Namespace) -> None:
    """Check and migrate the schema from v1 to v2 if needed."""
    from ctxsync.migrate import SchemaMigrator

    store, config = _open_store(args)
    result = SchemaMigrator(store, config.migration).migrate(force=args.force)
    store.close()

    if getattr(args, "json", False):
        payload = result.to_dict()
        payload["status"] = "ok" if result.success else "failed"
        _print_json(payload)
    elif result.success and not result.migrated_tables:
        print(f"Nothing to migrate ({'; '.join(result.skipped)})")
    elif result.success:
        print("Migration complete:")
        print(f"  Records copied: {result.records_copied}")
        for table, count in result.table_counts.items():
            print(f"    {table:20s}: {count}")
        print(f"  Backup: {result.backup_path}")
    else:
        print("Migration failed; the store was not modified.")
        if result.backup_path:
            print(f"  Backup: {result.backup_path}")

    for err in result.errors:
        _warn(f"Error: {err}")
    if not result.success:
        sys.exit(1)


# ===========================================================================
# Command: duplicates
# ===========================================================================


def cmd_duplicates(args: argparse.Namespace) -> None:
    """Report duplicate projects without changing anything."""
    from ctxsync.consolidate import DuplicateConsolidator

    store, config = _open_store(args)
    stats = DuplicateConsolidator(store, config.consolidate).get_stats()
    store.close()

    if getattr(args, "json", False):
        payload = stats.to_dict()
        payload["status"] = "ok"
        _print_json(payload)
        return

    print(f"Projects: {stats.total_projects} ({stats.projects_with_paths} with paths)")
    print(f"Duplicate groups: {stats.duplicate_groups}")
    print(f"Duplicates: {stats.total_duplicates}")
    for group in stats.duplicate_details:
        print(f"  {group.path} ({group.count}): {', '.join(group.names)}")
    if stats.duplicate_groups:
        _info("Preview the merge with: ctxsync dedupe --dry-run")


# ===========================================================================
# Command: dedupe
# ===========================================================================


def cmd_dedupe(args: argparse.Namespace) -> None:
    """Merge duplicate projects sharing a normalized path."""
    from ctxsync.consolidate import DuplicateConsolidator

    store, config = _open_store(args)
    result = DuplicateConsolidator(store, config.consolidate).consolidate(
        dry_run=args.dry_run,
    )
    store.close()

    if getattr(args, "json", False):
        payload = result.to_dict()
        payload["status"] = "ok" if result.success else "failed"
        _print_json(payload)
    else:
        label = " (dry run)" if args.dry_run else ""
        if result.success:
            print(f"Consolidation complete{label}:")
        else:
            print(f"Consolidation failed{label}; the store was not modified.")
        print(f"  Duplicates found:   {result.duplicates_found}")
        print(f"  Duplicates removed: {result.duplicates_removed}")
        print(f"  Projects merged:    {result.projects_merged}")
        for line in result.details:
            print(f"  {line}")

    for err in result.errors:
        _warn(f"Error: {err}")
    if not result.success:
        sys.exit(1)


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the ctxsync MCP server in foreground."""
    try:
        from ctxsync.mcp.server import create_server, build_parser as mcp_parser
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install ctxsync[mcp]")
        sys.exit(1)

    server_argv = ["--db", _resolve_db(args)]
    config_path = getattr(args, "config", None) or _env_str("CTXSYNC_CONFIG", None)
    if config_path:
        server_argv.extend(["--config", config_path])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install ctxsync[mcp]")
        sys.exit(1)

    _info(f"ctxsync MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def main() -> None:
    """CLI entry point: ctxsync <command> [args]."""
    global _quiet

    # Shared parent with flags that work on all subcommands.
    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="Path to SQLite database (default: $CTXSYNC_DB or ~/.ctxsync/data.db)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $CTXSYNC_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="ctxsync",
        description="ctxsync — project memory store migration and consolidation",
        parents=[_common],
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- init --------------------------------------------------------------
    p_init = sub.add_parser("init", parents=[_common], help="Create an empty store")
    p_init.add_argument(
        "path", nargs="?", default=None,
        help="Database file (default: $CTXSYNC_DB or ~/.ctxsync/data.db)",
    )
    p_init.set_defaults(func=cmd_init)

    # -- status ------------------------------------------------------------
    p_status = sub.add_parser("status", parents=[_common], help="Schema and duplicate status")
    p_status.set_defaults(func=cmd_status)

    # -- stats -------------------------------------------------------------
    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- migrate -----------------------------------------------------------
    p_mig = sub.add_parser("migrate", parents=[_common], help="Migrate a v1 store to v2")
    p_mig.add_argument(
        "--force", action="store_true",
        help="Ignore the completion marker (v2 tables must still be empty)",
    )
    p_mig.set_defaults(func=cmd_migrate)

    # -- duplicates --------------------------------------------------------
    p_dup = sub.add_parser("duplicates", parents=[_common], help="Report duplicate projects")
    p_dup.set_defaults(func=cmd_duplicates)

    # -- dedupe ------------------------------------------------------------
    p_dedupe = sub.add_parser("dedupe", parents=[_common], help="Merge duplicate projects")
    p_dedupe.add_argument("--dry-run", action="store_true", help="Show the plan but don't write")
    p_dedupe.set_defaults(func=cmd_dedupe)

    # -- serve -------------------------------------------------------------
    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.set_defaults(func=cmd_serve)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
