"""
Schema Migration — v1 -> v2 Upgrade

Rewrites legacy (v1) record families into the current (v2) tables inside a
single transaction, after taking a verified file backup.

Migration contract:
  - Detection: legacy data present AND every v2-only table empty; a
    migration_history row for the target version always wins (never re-run)
  - Backup first: full copy of the store file, verified before any write;
    a failed backup aborts before any transaction is opened
  - All-or-nothing: every family is copied inside one transaction; any row
    failure rolls everything back (the backup stays on disk)
  - Fixed family order: decisions, conversations, learnings,
    problem_solutions, comparisons, anti_patterns, todos
  - Absent legacy tables contribute zero rows and zero errors
  - Completion marker written after commit in its own statement

Family mapping (one transform function per pair, see TRANSFORMS):
  decisions          -> decisions    (same table, carried in place)
  conversations      -> notes
  learnings          -> notes
  problem_solutions  -> problems     (status forced to 'resolved')
  comparisons        -> decisions    (type 'comparison', JSON reasoning)
  anti_patterns      -> constraints
  todos              -> active_work
"""

from __future__ import annotations

import json
import logging
import math
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from ctxsync.config import MigrationConfig
from ctxsync.store import V2_ONLY_TABLES, ProjectStore
from ctxsync.types import (
    ActiveWork,
    BackupError,
    Constraint,
    Decision,
    LegacyAntiPattern,
    LegacyComparison,
    LegacyConversation,
    LegacyDecision,
    LegacyLearning,
    LegacyProblemSolution,
    LegacyTodo,
    MigrationResult,
    Note,
    Problem,
    TransformError,
    _now_ms,
    to_epoch_ms,
)

logger = logging.getLogger(__name__)

LEGACY_TABLES = (
    "decisions", "conversations", "learnings", "problem_solutions",
    "comparisons", "anti_patterns", "todos",
)

_HISTORY_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS migration_history (
    id           TEXT PRIMARY KEY,
    version      TEXT NOT NULL,
    completed_at INTEGER NOT NULL
)"""

_HISTORY_INDEX_SQL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_migration_history_version "
    "ON migration_history(version)"
)


class MigrationState(str, Enum):
    NOT_NEEDED = "not_needed"
    NEEDS_MIGRATION = "needs_migration"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def confidence_band(value: Any) -> str:
    """Map a legacy confidence (label, 0-1 score, or percent) to a band label."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return "medium"
    try:
        score = float(value)
    except (TypeError, ValueError):
        return re.sub(r"\s+", "-", str(value).strip().lower())
    if not math.isfinite(score):
        return "medium"
    if score > 1.0:
        score = score / 100.0
    if score >= 0.7:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


def slug_key(description: str, prefix: str = "avoid-", width: int = 50) -> str:
    """Constraint key from the first *width* characters of a description."""
    slug = re.sub(r"[\W_]+", "-", description[:width].lower()).strip("-")
    return f"{prefix}{slug or 'pattern'}"


def backup_path_for(db_path: str, now: Optional[datetime] = None) -> str:
    """``data.db`` -> ``data.v1-backup-2026-10-18T120501.123456Z.db``."""
    moment = now or datetime.now(timezone.utc)
    stamp = moment.strftime("%Y-%m-%dT%H%M%S.%f") + "Z"
    base = str(db_path)
    if base.endswith(".db"):
        base = base[: -len(".db")]
    return f"{base}.v1-backup-{stamp}.db"


# ---------------------------------------------------------------------------
# Transforms (one per legacy -> current pair)
# ---------------------------------------------------------------------------


def decision_to_decision(rec: LegacyDecision) -> Decision:
    return Decision(
        id=rec.id,
        project_id=rec.project_id,
        type=rec.type,
        description=rec.description,
        reasoning=rec.reasoning,
        timestamp=rec.timestamp,
    )


def conversation_to_note(rec: LegacyConversation) -> Note:
    return Note(
        project_id=rec.project_id,
        content=f"[{rec.tool}] {rec.role}: {rec.content}",
        tags=["conversation", rec.tool, rec.role],
        timestamp=rec.timestamp,
    )


def learning_to_note(rec: LegacyLearning) -> Note:
    content = rec.insight
    if rec.context:
        content += f"\n\nContext: {rec.context}"
    return Note(
        project_id=rec.project_id,
        content=content,
        tags=["learning", "insight", f"confidence-{confidence_band(rec.confidence)}"],
        timestamp=rec.timestamp,
    )


def problem_solution_to_problem(rec: LegacyProblemSolution) -> Problem:
    confidence = rec.confidence if rec.confidence not in (None, "") else "medium"
    return Problem(
        project_id=rec.project_id,
        description=rec.problem,
        context=f"Confidence: {confidence}",
        status="resolved",
        resolution=rec.solution,
        timestamp=rec.timestamp,
    )


def comparison_to_decision(rec: LegacyComparison) -> Decision:
    """Reasoning keeps the legacy payload as JSON:
    ``{"comparison": {"optionA", "optionB", "winner", "reasoning", "confidence"}}``.
    """
    winner = rec.winner or rec.option_a
    loser = rec.option_b if rec.option_a == winner else rec.option_a
    reasoning = json.dumps({
        "comparison": {
            "optionA": rec.option_a,
            "optionB": rec.option_b,
            "winner": rec.winner,
            "reasoning": rec.reasoning,
            "confidence": rec.confidence,
        }
    })
    return Decision(
        project_id=rec.project_id,
        type="comparison",
        description=f"Chose {winner} over {loser}",
        reasoning=reasoning,
        timestamp=rec.timestamp,
    )


def anti_pattern_to_constraint(rec: LegacyAntiPattern) -> Constraint:
    return Constraint(
        project_id=rec.project_id,
        key=slug_key(rec.description),
        value=f"DON'T: {rec.description}",
        reasoning=rec.why,
        timestamp=rec.timestamp,
    )


_TODO_STATUS = {
    "completed": "completed",
    "done": "completed",
    "blocked": "paused",
    "on_hold": "paused",
}


def todo_to_active_work(rec: LegacyTodo) -> ActiveWork:
    if not rec.project_id:
        raise TransformError(f"todo {rec.id} has no project_id")
    parts = []
    if rec.description:
        parts.append(rec.description)
    if rec.priority:
        parts.append(f"Priority: {rec.priority}")
    if rec.due_date:
        parts.append(f"Due: {rec.due_date}")
    if rec.tags:
        parts.append(f"Tags: {', '.join(rec.tags)}")
    return ActiveWork(
        project_id=rec.project_id,
        task=rec.title,
        context="\n".join(parts) or None,
        status=_TODO_STATUS.get((rec.status or "").lower(), "active"),
        timestamp=to_epoch_ms(rec.created_at),
    )


@dataclass(frozen=True)
class LegacyFamily:
    """One v1 table and how its rows are read."""
    table: str
    label: str
    record: type
    order_by: str = "timestamp"
    in_place: bool = False


LEGACY_FAMILIES: Tuple[LegacyFamily, ...] = (
    LegacyFamily("decisions", "decisions", LegacyDecision, in_place=True),
    LegacyFamily("conversations", "conversations → notes", LegacyConversation),
    LegacyFamily("learnings", "learnings → notes", LegacyLearning),
    LegacyFamily("problem_solutions", "problem_solutions → problems", LegacyProblemSolution),
    LegacyFamily("comparisons", "comparisons → decisions", LegacyComparison),
    LegacyFamily("anti_patterns", "anti_patterns → constraints", LegacyAntiPattern),
    LegacyFamily("todos", "todos → active_work", LegacyTodo, order_by="created_at"),
)

TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "decisions": decision_to_decision,
    "conversations": conversation_to_note,
    "learnings": learning_to_note,
    "problem_solutions": problem_solution_to_problem,
    "comparisons": comparison_to_decision,
    "anti_patterns": anti_pattern_to_constraint,
    "todos": todo_to_active_work,
}


# ---------------------------------------------------------------------------
# SchemaMigrator
# ---------------------------------------------------------------------------


class SchemaMigrator:
    """
    Transactional v1 -> v2 upgrade with backup.

    ``state`` follows NOT_NEEDED -> NEEDS_MIGRATION -> IN_PROGRESS ->
    COMPLETED | FAILED.
    """

    def __init__(
        self,
        store: ProjectStore,
        config: Optional[MigrationConfig] = None,
    ):
        self._store = store
        self._config = config or MigrationConfig()
        self.state = MigrationState.NOT_NEEDED

    # -- Detection -----------------------------------------------------------

    def has_completed_migration(self) -> bool:
        """True when the history marker for the target version exists."""
        if not self._store.table_exists("migration_history"):
            return False
        row = self._store.query_one(
            "SELECT 1 FROM migration_history WHERE version=?",
            (self._config.target_version,),
        )
        return row is not None

    def has_legacy_data(self) -> bool:
        return any(self._store.count_rows(t) > 0 for t in LEGACY_TABLES)

    def is_current_empty(self) -> bool:
        """Absent v2 tables count as empty."""
        return all(self._store.count_rows(t) == 0 for t in V2_ONLY_TABLES)

    def needs_migration(self, ignore_history: bool = False) -> bool:
        if not ignore_history and self.has_completed_migration():
            return False
        return self.has_legacy_data() and self.is_current_empty()

    def check(self) -> MigrationState:
        """Refresh and return the detection state."""
        self.state = (
            MigrationState.NEEDS_MIGRATION if self.needs_migration()
            else MigrationState.NOT_NEEDED
        )
        return self.state

    # -- Migration -----------------------------------------------------------

    def migrate(self, force: bool = False) -> MigrationResult:
        """Back up, then copy every legacy family in one transaction.

        Args:
            force: Ignore the completion marker (legacy data must still be
                present and every v2-only table empty).

        Returns:
            MigrationResult; ``success=False`` leaves the store unchanged.
        """
        result = MigrationResult()

        needed = (
            self.needs_migration(ignore_history=True) if force
            else self.check() is MigrationState.NEEDS_MIGRATION
        )
        if not needed:
            self.state = MigrationState.NOT_NEEDED
            if not force and self.has_completed_migration():
                reason = "already migrated"
            elif not self.has_legacy_data():
                reason = "no legacy data"
            else:
                reason = "v2 tables already populated"
            result.success = True
            result.skipped.append(reason)
            logger.info(f"Schema migration not needed: {reason}")
            return result

        self.state = MigrationState.IN_PROGRESS
        logger.info(f"Starting v1 -> v2 migration: {self._store.db_path}")

        # Step 1: backup (outside any transaction, fatal on failure)
        try:
            result.backup_path = self.create_backup()
        except BackupError as exc:
            self.state = MigrationState.FAILED
            result.errors.append(f"Backup failed: {exc}")
            logger.error(f"Migration aborted, backup failed: {exc}")
            return result
        logger.info(f"Backup created: {result.backup_path}")

        # Steps 2-4: one transaction over every family
        try:
            with self._store.transaction():
                for family in LEGACY_FAMILIES:
                    self._copy_family(family, result)
        except Exception as exc:
            self.state = MigrationState.FAILED
            result.success = False
            result.migrated_tables = []
            result.table_counts = {}
            result.records_copied = 0
            result.errors.append(str(exc))
            logger.error(
                f"Migration failed and was rolled back: {exc} "
                f"(backup: {result.backup_path})"
            )
            return result

        result.success = True
        self.state = MigrationState.COMPLETED
        try:
            self._mark_complete()
        except sqlite3.Error as exc:
            # Next startup re-checks; v2 tables are no longer empty
            logger.warning(f"Could not record migration history: {exc}")

        logger.info(
            f"Migration complete: {result.records_copied} records "
            f"({', '.join(f'{t}={n}' for t, n in result.table_counts.items())})"
        )
        return result

    def create_backup(self) -> str:
        """Copy the store next to itself and verify the copy.

        Raises:
            BackupError: If the copy cannot be created or verified.
        """
        target = backup_path_for(self._store.db_path)
        self._store.backup_to(target)
        self._verify_backup(target)
        return target

    def _verify_backup(self, target: str) -> None:
        path = Path(target)
        if not path.is_file() or path.stat().st_size == 0:
            raise BackupError(f"Backup file missing or empty: {target}")
        try:
            conn = sqlite3.connect(target)
            try:
                check = conn.execute("PRAGMA integrity_check").fetchone()[0]
                tables = {
                    r[0] for r in conn.execute(
                        "SELECT name FROM sqlite_master WHERE type='table' "
                        "AND name NOT LIKE 'sqlite_%'"
                    ).fetchall()
                }
                counts = {
                    t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0]
                    for t in LEGACY_TABLES if t in tables
                }
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise BackupError(f"Backup unreadable: {exc}") from exc

        if check != "ok":
            raise BackupError(f"Backup integrity check failed: {check}")
        if tables != set(self._store.list_tables()):
            raise BackupError("Backup table inventory differs from the live store")
        for table, count in counts.items():
            if count != self._store.count_rows(table):
                raise BackupError(f"Backup row count mismatch for {table}")

    def _copy_family(self, family: LegacyFamily, result: MigrationResult) -> int:
        """Copy one legacy table. Must run inside the migration transaction."""
        if not self._store.table_exists(family.table):
            result.skipped.append(f"{family.table} (table absent)")
            return 0

        transform = TRANSFORMS[family.table]
        rows = self._store.query(
            f"SELECT * FROM {family.table} ORDER BY {family.order_by} DESC"
        )
        count = 0
        for row in rows:
            try:
                record = transform(family.record.from_row(row))
            except TransformError:
                raise
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise TransformError(
                    f"{family.table} row {row['id']!r}: {exc}"
                ) from exc
            if not family.in_place:
                self._store.add_record(record)
            count += 1

        result.table_counts[family.table] = count
        result.records_copied += count
        result.migrated_tables.append(family.label)
        logger.debug(f"Migrated {count} {family.label}")
        return count

    def _mark_complete(self) -> None:
        self._store.execute(_HISTORY_TABLE_SQL)
        self._store.execute(_HISTORY_INDEX_SQL)
        self._store.execute(
            "INSERT OR IGNORE INTO migration_history (id, version, completed_at) "
            "VALUES (?,?,?)",
            (self._config.history_id, self._config.target_version, _now_ms()),
        )

