"""
Tests for ctxsync.store — ProjectStore schema, transactions, backup.
"""

import json
import sqlite3

import pytest

from ctxsync.store import CURRENT_TABLES, SCHEMA_VERSION, ProjectStore
from ctxsync.types import ActiveWork, BackupError, Constraint, Goal, Note, Problem


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_all_tables_exist(self, store):
        tables = set(store.list_tables())
        expected = {"projects", "conversations", "todos"} | set(CURRENT_TABLES)
        assert expected <= tables

    def test_v1_only_tables_absent(self, store):
        for table in ("learnings", "problem_solutions", "comparisons", "anti_patterns"):
            assert not store.table_exists(table)

    def test_reopen_is_idempotent(self, tmp_path):
        path = str(tmp_path / "data.db")
        s1 = ProjectStore(db_path=path)
        s1.create_project("p", path="/p")
        s1.close()
        s2 = ProjectStore(db_path=path)
        assert len(s2.list_projects()) == 1
        s2.close()

    def test_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "data.db"
        s = ProjectStore(db_path=str(path))
        s.close()
        assert path.exists()

    def test_wal_mode(self, disk_store):
        mode = disk_store.query_one("PRAGMA journal_mode")[0]
        assert mode == "wal"

    def test_status_check_constraint(self, store):
        p = store.create_project("p")
        with pytest.raises(sqlite3.IntegrityError):
            store.execute(
                "INSERT INTO active_work (id, project_id, task, timestamp, status) "
                "VALUES ('w', ?, 't', 1, 'bogus')",
                (p.id,),
            )


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


class TestIntrospection:
    def test_count_rows_absent_table(self, store):
        assert store.count_rows("learnings") == 0

    def test_count_rows_by_project(self, store):
        a = store.create_project("a")
        b = store.create_project("b")
        store.add_conversation(a.id, "claude", "user", "x")
        store.add_conversation(a.id, "claude", "user", "y")
        store.add_conversation(b.id, "claude", "user", "z")
        assert store.count_rows("conversations") == 3
        assert store.count_rows("conversations", project_id=a.id) == 2

    def test_table_columns(self, store):
        assert "project_id" in store.table_columns("notes")

    def test_unsafe_identifier_rejected(self, store):
        with pytest.raises(ValueError):
            store.table_columns("notes; DROP TABLE projects")

    def test_stats(self, store):
        store.create_project("a")
        stats = store.stats()
        assert stats["schema_version"] == SCHEMA_VERSION
        assert stats["total_projects"] == 1
        assert stats["tables"]["notes"] == 0


# ---------------------------------------------------------------------------
# Projects and records
# ---------------------------------------------------------------------------


class TestRecords:
    def test_project_roundtrip(self, store):
        p = store.create_project("app", path="/a/app", tech_stack=["py"], architecture="MVC")
        got = store.get_project(p.id)
        assert got == p

    def test_invalid_tech_stack_json_tolerated(self, store):
        p = store.create_project("app")
        store.execute("UPDATE projects SET tech_stack='not json' WHERE id=?", (p.id,))
        assert store.get_project(p.id).tech_stack == []

    def test_get_missing_project(self, store):
        assert store.get_project("nope") is None

    def test_add_current_records(self, store):
        p = store.create_project("app")
        store.add_record(Note(project_id=p.id, content="n", tags=["a"]))
        store.add_record(Problem(project_id=p.id, description="d"))
        store.add_record(Constraint(project_id=p.id, key="k", value="v"))
        store.add_record(ActiveWork(project_id=p.id, task="t", files=["a.py"]))
        store.add_record(Goal(project_id=p.id, description="g"))
        assert json.loads(store.list_records("notes")[0]["tags"]) == ["a"]
        assert json.loads(store.list_records("active_work")[0]["files"]) == ["a.py"]
        assert store.list_records("goals", p.id)[0]["status"] == "planned"

    def test_invalid_status_rejected(self):
        with pytest.raises(ValueError):
            ActiveWork(project_id="p", task="t", status="done")

    def test_todo_defaults(self, store):
        store.add_todo("t")
        row = store.list_records("todos")[0]
        assert row["status"] == "pending"
        assert row["project_id"] is None
        assert row["created_at"]


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    def test_commit(self, store):
        with store.transaction():
            store.create_project("a")
        assert not store.in_transaction
        assert len(store.list_projects()) == 1

    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.create_project("a")
                raise RuntimeError("boom")
        assert not store.in_transaction
        assert store.list_projects() == []

    def test_explicit_begin_rollback(self, store):
        store.begin()
        store.create_project("a")
        assert store.in_transaction
        store.rollback()
        assert store.list_projects() == []

    def test_rollback_without_transaction_is_noop(self, store):
        store.rollback()
        assert not store.in_transaction


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------


class TestBackup:
    def test_backup_copies_rows(self, disk_store, tmp_path):
        disk_store.create_project("a", path="/a")
        target = tmp_path / "copy.db"
        disk_store.backup_to(str(target))
        copy = ProjectStore(db_path=str(target))
        assert [p.name for p in copy.list_projects()] == ["a"]
        copy.close()

    def test_memory_store_refused(self, store, tmp_path):
        with pytest.raises(BackupError):
            store.backup_to(str(tmp_path / "x.db"))

    def test_existing_target_refused(self, disk_store, tmp_path):
        target = tmp_path / "x.db"
        target.write_text("keep")
        with pytest.raises(BackupError):
            disk_store.backup_to(str(target))
        assert target.read_text() == "keep"

    def test_open_transaction_refused(self, disk_store, tmp_path):
        disk_store.begin()
        try:
            with pytest.raises(BackupError):
                disk_store.backup_to(str(tmp_path / "x.db"))
        finally:
            disk_store.rollback()

    def test_unwritable_target(self, disk_store, tmp_path):
        with pytest.raises(BackupError):
            disk_store.backup_to(str(tmp_path / "missing-dir" / "x.db"))
