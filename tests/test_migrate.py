"""
Tests for ctxsync.migrate — v1 -> v2 schema migration.

Invariants tested:
- M1: Detection: legacy data + empty v2 tables; history marker always wins
- M2: Conservation: per-family counts equal the legacy row counts
- M3: Idempotency: a second run is a no-op, one history row
- M4: Atomicity: an injected failure leaves every table unchanged
- M5: Backup: taken and verified before any write; failure aborts
"""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest

import ctxsync.migrate as migrate_mod
from ctxsync.migrate import (
    LEGACY_FAMILIES,
    LEGACY_TABLES,
    MigrationState,
    SchemaMigrator,
    anti_pattern_to_constraint,
    backup_path_for,
    comparison_to_decision,
    confidence_band,
    conversation_to_note,
    learning_to_note,
    problem_solution_to_problem,
    slug_key,
    todo_to_active_work,
)
from ctxsync.store import V2_ONLY_TABLES
from ctxsync.types import (
    LegacyAntiPattern,
    LegacyComparison,
    LegacyConversation,
    LegacyLearning,
    LegacyProblemSolution,
    LegacyTodo,
    Note,
    TransformError,
    _now_ms,
    to_epoch_ms,
)


def _snapshot(store):
    """All rows of every table, ordered by id."""
    snap = {}
    for table in store.list_tables():
        rows = store.query(f"SELECT * FROM {table} ORDER BY id")
        snap[table] = [tuple(r) for r in rows]
    return snap


def _ms(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


class TestConfidenceBand:
    @pytest.mark.parametrize("value,band", [
        (0.9, "high"), ("0.7", "high"), (0.5, "medium"), (0.1, "low"),
        (85, "high"), ("High", "high"), ("very sure", "very-sure"),
        (None, "medium"), ("", "medium"),
    ])
    def test_bands(self, value, band):
        assert confidence_band(value) == band


class TestSlugKey:
    def test_basic(self):
        assert slug_key("Opening a connection per query") == "avoid-opening-a-connection-per-query"

    def test_truncates_to_fifty_chars(self):
        key = slug_key("x" * 80)
        assert key == "avoid-" + "x" * 50

    def test_punctuation_collapses(self):
        assert slug_key("Don't  use eval()!") == "avoid-don-t-use-eval"

    def test_empty_description(self):
        assert slug_key("!!!") == "avoid-pattern"


class TestToEpochMs:
    def test_iso_with_z(self):
        assert to_epoch_ms("2024-01-15T10:30:00Z") == _ms(2024, 1, 15, 10, 30)

    def test_iso_with_offset(self):
        assert to_epoch_ms("2024-01-15T12:30:00+02:00") == _ms(2024, 1, 15, 10, 30)

    def test_naive_iso_is_utc(self):
        assert to_epoch_ms("2024-01-15T10:30:00") == _ms(2024, 1, 15, 10, 30)

    def test_epoch_seconds(self):
        assert to_epoch_ms(1705314600) == 1705314600000

    def test_epoch_millis(self):
        assert to_epoch_ms(1705314600000) == 1705314600000

    def test_numeric_string(self):
        assert to_epoch_ms("1705314600") == 1705314600000

    @pytest.mark.parametrize("value", [None, "", "not a date", float("nan")])
    def test_unparseable_is_now(self, value):
        before = _now_ms()
        assert before <= to_epoch_ms(value) <= _now_ms()

    def test_legacy_row_without_timestamp_is_now(self):
        before = _now_ms()
        rec = LegacyConversation.from_row({
            "id": "c1", "project_id": "p", "tool": "claude", "role": "user",
            "content": "x", "timestamp": None,
        })
        assert before <= rec.timestamp <= _now_ms()

    def test_legacy_row_iso_timestamp(self):
        rec = LegacyLearning.from_row({
            "id": "l1", "project_id": "p", "insight": "x",
            "timestamp": "2024-01-15T10:30:00Z",
        })
        assert rec.timestamp == _ms(2024, 1, 15, 10, 30)


class TestBackupPath:
    def test_replaces_db_suffix(self):
        now = datetime(2026, 10, 18, 12, 5, 1, 123456, tzinfo=timezone.utc)
        path = backup_path_for("/data/ctx.db", now)
        assert path == "/data/ctx.v1-backup-2026-10-18T120501.123456Z.db"

    def test_no_colons(self):
        assert ":" not in Path(backup_path_for("/data/ctx.db")).name

    def test_other_suffix_appended(self):
        assert backup_path_for("/data/store.sqlite").startswith("/data/store.sqlite.v1-backup-")


# ---------------------------------------------------------------------------
# Transforms
# ---------------------------------------------------------------------------


class TestTransforms:
    def test_conversation_to_note(self):
        note = conversation_to_note(LegacyConversation(
            id="c", project_id="p", tool="cursor", role="user", content="hi", timestamp=5,
        ))
        assert note.content == "[cursor] user: hi"
        assert note.tags == ["conversation", "cursor", "user"]
        assert note.timestamp == 5
        assert note.id != "c"

    def test_learning_with_context(self):
        note = learning_to_note(LegacyLearning(
            id="l", project_id="p", insight="Cache it", context="Slow API",
            confidence=0.2, timestamp=5,
        ))
        assert note.content == "Cache it\n\nContext: Slow API"
        assert note.tags == ["learning", "insight", "confidence-low"]

    def test_learning_without_context(self):
        note = learning_to_note(LegacyLearning(
            id="l", project_id="p", insight="Cache it", context=None,
            confidence=None, timestamp=5,
        ))
        assert note.content == "Cache it"
        assert note.tags[-1] == "confidence-medium"

    def test_problem_solution_is_resolved(self):
        problem = problem_solution_to_problem(LegacyProblemSolution(
            id="ps", project_id="p", problem="Locked", solution="busy_timeout",
            confidence="high", timestamp=5,
        ))
        assert problem.status == "resolved"
        assert problem.description == "Locked"
        assert problem.resolution == "busy_timeout"
        assert problem.context == "Confidence: high"

    def test_problem_solution_default_confidence(self):
        problem = problem_solution_to_problem(LegacyProblemSolution(
            id="ps", project_id="p", problem="x", solution=None,
            confidence=None, timestamp=5,
        ))
        assert problem.context == "Confidence: medium"

    def test_comparison_winner_b(self):
        decision = comparison_to_decision(LegacyComparison(
            id="c", project_id="p", option_a="SQLite", option_b="Postgres",
            winner="Postgres", reasoning="Concurrency", confidence="0.6", timestamp=5,
        ))
        assert decision.type == "comparison"
        assert decision.description == "Chose Postgres over SQLite"
        payload = json.loads(decision.reasoning)
        assert payload == {"comparison": {
            "optionA": "SQLite", "optionB": "Postgres", "winner": "Postgres",
            "reasoning": "Concurrency", "confidence": "0.6",
        }}

    def test_comparison_without_winner_defaults_to_a(self):
        decision = comparison_to_decision(LegacyComparison(
            id="c", project_id="p", option_a="A", option_b="B",
            winner=None, reasoning=None, confidence=None, timestamp=5,
        ))
        assert decision.description == "Chose A over B"
        assert json.loads(decision.reasoning)["comparison"]["winner"] is None

    def test_anti_pattern_to_constraint(self):
        constraint = anti_pattern_to_constraint(LegacyAntiPattern(
            id="a", project_id="p", description="Global state", why="Hard to test",
            timestamp=5,
        ))
        assert constraint.key == "avoid-global-state"
        assert constraint.value == "DON'T: Global state"
        assert constraint.reasoning == "Hard to test"

    @pytest.mark.parametrize("status,expected", [
        ("completed", "completed"), ("done", "completed"), ("DONE", "completed"),
        ("blocked", "paused"), ("on_hold", "paused"),
        ("pending", "active"), ("in_progress", "active"), ("", "active"),
    ])
    def test_todo_status_mapping(self, status, expected):
        work = todo_to_active_work(LegacyTodo(
            id="t", project_id="p", title="x", description=None, status=status,
            priority=None, tags=[], due_date=None, created_at=None,
        ))
        assert work.status == expected

    def test_todo_context_lines(self):
        work = todo_to_active_work(LegacyTodo(
            id="t", project_id="p", title="Ship", description="Release 2.0",
            status="pending", priority="high", tags=["release", "q1"],
            due_date="2024-02-01", created_at="2024-01-15T10:30:00Z",
        ))
        assert work.task == "Ship"
        assert work.context == "Release 2.0\nPriority: high\nDue: 2024-02-01\nTags: release, q1"
        assert work.timestamp == _ms(2024, 1, 15, 10, 30)
        assert work.files is None
        assert work.branch is None

    def test_todo_without_details_has_no_context(self):
        work = todo_to_active_work(LegacyTodo(
            id="t", project_id="p", title="x", description=None, status="pending",
            priority=None, tags=[], due_date=None, created_at="garbage",
        ))
        assert work.context is None

    def test_todo_without_project_fails(self):
        with pytest.raises(TransformError):
            todo_to_active_work(LegacyTodo(
                id="t", project_id=None, title="x", description=None, status="pending",
                priority=None, tags=[], due_date=None, created_at=None,
            ))

    def test_family_order_is_fixed(self):
        assert [f.table for f in LEGACY_FAMILIES] == list(LEGACY_TABLES)
        assert [f.table for f in LEGACY_FAMILIES if f.in_place] == ["decisions"]


# ---------------------------------------------------------------------------
# M1: Detection
# ---------------------------------------------------------------------------


class TestDetection:
    def test_empty_store_not_needed(self, store):
        migrator = SchemaMigrator(store)
        assert not migrator.needs_migration()
        assert migrator.check() is MigrationState.NOT_NEEDED

    def test_legacy_store_needs_migration(self, legacy_store):
        store, _ = legacy_store
        migrator = SchemaMigrator(store)
        assert migrator.needs_migration()
        assert migrator.check() is MigrationState.NEEDS_MIGRATION

    def test_v2_row_means_not_needed(self, legacy_store):
        store, project = legacy_store
        store.add_record(Note(project_id=project.id, content="already v2"))
        assert not SchemaMigrator(store).needs_migration()

    def test_history_marker_wins_after_tables_emptied(self, legacy_store):
        store, _ = legacy_store
        assert SchemaMigrator(store).migrate().success
        for table in V2_ONLY_TABLES:
            store.execute(f"DELETE FROM {table}")
        migrator = SchemaMigrator(store)
        assert migrator.has_completed_migration()
        assert migrator.check() is MigrationState.NOT_NEEDED

    def test_missing_history_table_tolerated(self, store):
        assert not store.table_exists("migration_history")
        assert not SchemaMigrator(store).has_completed_migration()


# ---------------------------------------------------------------------------
# M2: Conservation and mapping
# ---------------------------------------------------------------------------


class TestMigrate:
    def test_success_result(self, legacy_store, legacy_counts):
        store, _ = legacy_store
        migrator = SchemaMigrator(store)
        result = migrator.migrate()
        assert result.success, result.errors
        assert result.errors == []
        assert result.table_counts == legacy_counts
        assert result.records_copied == sum(legacy_counts.values())
        assert result.migrated_tables[0] == "decisions"
        assert result.migrated_tables[-1] == "todos → active_work"
        assert migrator.state is MigrationState.COMPLETED

    def test_destination_counts(self, legacy_store, legacy_counts):
        store, _ = legacy_store
        decisions_before = store.count_rows("decisions")
        SchemaMigrator(store).migrate()
        assert store.count_rows("notes") == (
            legacy_counts["conversations"] + legacy_counts["learnings"]
        )
        assert store.count_rows("problems") == legacy_counts["problem_solutions"]
        assert store.count_rows("constraints") == legacy_counts["anti_patterns"]
        assert store.count_rows("active_work") == legacy_counts["todos"]
        # Decisions stay in place; comparisons are added to them
        assert store.count_rows("decisions") == decisions_before + legacy_counts["comparisons"]

    def test_total_destination_growth(self, legacy_store, legacy_counts):
        store, _ = legacy_store
        dest = ("decisions",) + V2_ONLY_TABLES
        before = sum(store.count_rows(t) for t in dest)
        result = SchemaMigrator(store).migrate()
        after = sum(store.count_rows(t) for t in dest)
        assert after - before == result.records_copied - result.table_counts["decisions"]

    def test_legacy_tables_untouched(self, legacy_store):
        store, _ = legacy_store
        before = {t: store.count_rows(t) for t in LEGACY_TABLES}
        SchemaMigrator(store).migrate()
        assert {t: store.count_rows(t) for t in LEGACY_TABLES} == before

    def test_mapped_content(self, legacy_store):
        store, project = legacy_store
        SchemaMigrator(store).migrate()
        contents = {r["content"] for r in store.list_records("notes", project.id)}
        assert "[claude] user: How do we store data?" in contents
        assert "WAL avoids reader blocking\n\nContext: Load testing" in contents
        constraint = store.list_records("constraints")[0]
        assert constraint["key"] == "avoid-opening-a-connection-per-query"
        comparison = store.query_one("SELECT * FROM decisions WHERE type='comparison'")
        assert comparison["description"] == "Chose SQLite over Postgres"

    def test_backup_taken_and_kept(self, legacy_store):
        store, _ = legacy_store
        result = SchemaMigrator(store).migrate()
        backup = Path(result.backup_path)
        assert backup.is_file()
        assert ".v1-backup-" in backup.name
        conn = sqlite3.connect(str(backup))
        try:
            assert conn.execute("SELECT COUNT(*) FROM learnings").fetchone()[0] == 1
            assert conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0] == 0
        finally:
            conn.close()

    def test_absent_legacy_tables_contribute_zero(self, disk_store):
        project = disk_store.create_project("solo", path="/p/solo")
        disk_store.add_conversation(project.id, "claude", "user", "hello")
        result = SchemaMigrator(disk_store).migrate()
        assert result.success
        assert result.records_copied == 1
        assert "learnings (table absent)" in result.skipped
        assert result.errors == []

    def test_text_timestamps_are_converted(self, legacy_store):
        """Text in an INTEGER timestamp column is decoded, not fatal."""
        store, project = legacy_store
        store.execute(
            "INSERT INTO conversations (id, project_id, tool, role, content, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            ("c-iso", project.id, "claude", "user", "iso dated", "2024-01-01T00:00:00Z"),
        )
        store.execute(
            "UPDATE learnings SET timestamp='not a date' WHERE id='l1'"
        )
        before = _now_ms()
        result = SchemaMigrator(store).migrate()
        assert result.success, result.errors
        assert result.table_counts["conversations"] == 3
        note = store.query_one("SELECT timestamp FROM notes WHERE content LIKE '%iso dated'")
        assert note["timestamp"] == _ms(2024, 1, 1, 0, 0)
        learning = store.query_one("SELECT timestamp FROM notes WHERE tags LIKE '%learning%'")
        assert learning["timestamp"] >= before


# ---------------------------------------------------------------------------
# End-to-end todo scenario
# ---------------------------------------------------------------------------


class TestTodoScenario:
    def test_three_todos(self, disk_store):
        project = disk_store.create_project("app", path="/p/app")
        for title, status in (("a", "done"), ("b", "blocked"), ("c", "pending")):
            disk_store.add_todo(title, project.id, status=status)

        result = SchemaMigrator(disk_store).migrate()

        assert result.success
        rows = disk_store.query("SELECT task, status FROM active_work")
        assert {r["task"]: r["status"] for r in rows} == {
            "a": "completed", "b": "paused", "c": "active",
        }
        history = disk_store.query("SELECT * FROM migration_history")
        assert len(history) == 1
        assert history[0]["version"] == "2.0.0"
        assert history[0]["id"] == "v1-to-v2"


# ---------------------------------------------------------------------------
# M3: Idempotency
# ---------------------------------------------------------------------------


class TestIdempotency:
    def test_second_run_is_noop(self, legacy_store):
        store, _ = legacy_store
        assert SchemaMigrator(store).migrate().success
        after_first = _snapshot(store)

        second = SchemaMigrator(store).migrate()

        assert second.success
        assert second.records_copied == 0
        assert second.backup_path is None
        assert second.skipped == ["already migrated"]
        assert _snapshot(store) == after_first
        assert store.count_rows("migration_history") == 1

    def test_force_refuses_populated_v2_tables(self, legacy_store):
        store, _ = legacy_store
        SchemaMigrator(store).migrate()
        notes = store.count_rows("notes")
        result = SchemaMigrator(store).migrate(force=True)
        assert result.success
        assert result.skipped == ["v2 tables already populated"]
        assert store.count_rows("notes") == notes

    def test_force_ignores_marker(self, legacy_store):
        store, _ = legacy_store
        SchemaMigrator(store).migrate()
        for table in V2_ONLY_TABLES:
            store.execute(f"DELETE FROM {table}")
        result = SchemaMigrator(store).migrate(force=True)
        assert result.success
        assert store.count_rows("active_work") == 3
        assert store.count_rows("migration_history") == 1


# ---------------------------------------------------------------------------
# M4: Atomicity under injected failure
# ---------------------------------------------------------------------------


class TestAtomicity:
    def test_transform_failure_rolls_back(self, legacy_store, monkeypatch):
        store, _ = legacy_store
        before = _snapshot(store)

        def boom(rec):
            raise RuntimeError("injected failure")

        # todos is the last family: every earlier insert must be undone
        monkeypatch.setitem(migrate_mod.TRANSFORMS, "todos", boom)
        migrator = SchemaMigrator(store)
        result = migrator.migrate()

        assert not result.success
        assert "injected failure" in result.errors[0]
        assert result.records_copied == 0
        assert result.migrated_tables == []
        assert migrator.state is MigrationState.FAILED
        assert _snapshot(store) == before
        assert Path(result.backup_path).is_file()
        assert not migrator.has_completed_migration()

    def test_malformed_row_rolls_back(self, legacy_store):
        store, _ = legacy_store
        store.add_todo("orphan", project_id=None)
        before = _snapshot(store)
        result = SchemaMigrator(store).migrate()
        assert not result.success
        assert "no project_id" in result.errors[0]
        assert _snapshot(store) == before

    def test_store_usable_after_failure(self, legacy_store, monkeypatch):
        store, _ = legacy_store
        monkeypatch.setitem(migrate_mod.TRANSFORMS, "anti_patterns", lambda rec: 1 / 0)
        assert not SchemaMigrator(store).migrate().success
        assert not store.in_transaction
        monkeypatch.undo()
        assert SchemaMigrator(store).migrate().success


# ---------------------------------------------------------------------------
# M5: Backup
# ---------------------------------------------------------------------------


class TestBackup:
    def test_in_memory_store_cannot_migrate(self, legacy_memory_store):
        store = legacy_memory_store
        migrator = SchemaMigrator(store)
        result = migrator.migrate()
        assert not result.success
        assert result.errors[0].startswith("Backup failed")
        assert result.backup_path is None
        assert migrator.state is MigrationState.FAILED
        assert store.count_rows("notes") == 0

    def test_existing_target_is_not_overwritten(self, legacy_store, tmp_path, monkeypatch):
        store, _ = legacy_store
        target = tmp_path / "taken.db"
        target.write_bytes(b"keep me")
        monkeypatch.setattr(migrate_mod, "backup_path_for", lambda path: str(target))
        result = SchemaMigrator(store).migrate()
        assert not result.success
        assert "already exists" in result.errors[0]
        assert target.read_bytes() == b"keep me"
        assert store.count_rows("active_work") == 0

    def test_create_backup_verifies(self, legacy_store):
        store, _ = legacy_store
        path = SchemaMigrator(store).create_backup()
        conn = sqlite3.connect(path)
        try:
            assert conn.execute("PRAGMA integrity_check").fetchone()[0] == "ok"
        finally:
            conn.close()


# ---------------------------------------------------------------------------
# History marker
# ---------------------------------------------------------------------------


class TestHistoryMarker:
    def test_marker_failure_is_not_fatal(self, legacy_store, monkeypatch, caplog):
        store, _ = legacy_store

        def fail(self):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(SchemaMigrator, "_mark_complete", fail)
        with caplog.at_level("WARNING", logger="ctxsync.migrate"):
            result = SchemaMigrator(store).migrate()
        assert result.success
        assert store.count_rows("active_work") == 3
        assert "Could not record migration history" in caplog.text

    def test_unique_version(self, legacy_store):
        store, _ = legacy_store
        migrator = SchemaMigrator(store)
        migrator.migrate()
        migrator._mark_complete()
        assert store.count_rows("migration_history") == 1
