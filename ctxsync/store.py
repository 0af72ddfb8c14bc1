"""
Project Store — SQLite Persistent Backend

Tables:
    projects       - Project identity rows
    conversations  - Chat excerpts (v1 family, kept for compatibility)
    decisions      - Architectural decisions (shared by v1 and v2)
    todos          - Task list (v1 family, kept for compatibility)
    active_work    - Work in progress (v2)
    constraints    - Architectural rules (v2)
    problems       - Blockers and resolved issues (v2)
    goals          - Milestones (v2)
    notes          - General project notes (v2)

The v1-only families (learnings, problem_solutions, comparisons,
anti_patterns) are never created here; they exist only in stores written by
older releases and are read by ``ctxsync.migrate``.

Thread safety: one connection in autocommit mode, serialized by a re-entrant
lock.  ``transaction()`` holds the lock for the whole unit of work, so the
migration and consolidation engines own the store exclusively while they run.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from ctxsync.types import (
    BackupError,
    Project,
    _generate_id,
    _now_iso,
    _now_ms,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

CURRENT_TABLES = ("decisions", "notes", "problems", "constraints", "active_work", "goals")

# Tables created only by v2; used to decide whether a store was already upgraded
V2_ONLY_TABLES = ("active_work", "constraints", "problems", "goals", "notes")

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id           TEXT PRIMARY KEY,
    name         TEXT NOT NULL,
    path         TEXT,
    architecture TEXT,
    tech_stack   TEXT,                 -- JSON array
    created_at   INTEGER NOT NULL,     -- epoch ms
    updated_at   INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    tool       TEXT NOT NULL,
    role       TEXT NOT NULL,
    content    TEXT NOT NULL,
    timestamp  INTEGER NOT NULL,
    metadata   TEXT,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS decisions (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    type        TEXT NOT NULL,
    description TEXT NOT NULL,
    reasoning   TEXT,
    timestamp   INTEGER NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS todos (
    id           TEXT PRIMARY KEY,
    title        TEXT NOT NULL,
    description  TEXT,
    status       TEXT NOT NULL DEFAULT 'pending',
    priority     TEXT NOT NULL DEFAULT 'medium',
    tags         TEXT,                 -- JSON array
    due_date     TEXT,                 -- ISO 8601
    created_at   TEXT NOT NULL,        -- ISO 8601
    updated_at   TEXT NOT NULL,
    completed_at TEXT,
    project_id   TEXT,
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS active_work (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    task       TEXT NOT NULL,
    context    TEXT,
    files      TEXT,                   -- JSON array of file paths
    branch     TEXT,
    timestamp  INTEGER NOT NULL,
    status     TEXT CHECK(status IN ('active', 'paused', 'completed')) DEFAULT 'active',
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS constraints (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    key        TEXT NOT NULL,
    value      TEXT NOT NULL,
    reasoning  TEXT,
    timestamp  INTEGER NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS problems (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    description TEXT NOT NULL,
    context     TEXT,
    status      TEXT CHECK(status IN ('open', 'investigating', 'resolved')) DEFAULT 'open',
    resolution  TEXT,
    timestamp   INTEGER NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS goals (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    description TEXT NOT NULL,
    target_date TEXT,
    status      TEXT CHECK(status IN ('planned', 'in-progress', 'blocked', 'completed')) DEFAULT 'planned',
    timestamp   INTEGER NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

CREATE TABLE IF NOT EXISTS notes (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    content    TEXT NOT NULL,
    tags       TEXT,                   -- JSON array
    timestamp  INTEGER NOT NULL,
    FOREIGN KEY (project_id) REFERENCES projects(id)
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_projects_path ON projects(path);
CREATE INDEX IF NOT EXISTS idx_conversations_project ON conversations(project_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_decisions_project ON decisions(project_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_todos_project_id ON todos(project_id);
CREATE INDEX IF NOT EXISTS idx_todos_status ON todos(status);
CREATE INDEX IF NOT EXISTS idx_active_work_project ON active_work(project_id, status, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_constraints_project ON constraints(project_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_problems_project ON problems(project_id, status, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_goals_project ON goals(project_id, status, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_notes_project ON notes(project_id, timestamp DESC);
"""

_IDENTIFIER_OK = set("abcdefghijklmnopqrstuvwxyz0123456789_")


def _check_identifier(name: str) -> str:
    """Table names are interpolated into SQL; only [a-z0-9_] is accepted."""
    if not name or not set(name.lower()) <= _IDENTIFIER_OK:
        raise ValueError(f"Unsafe table name: {name!r}")
    return name


# ---------------------------------------------------------------------------
# ProjectStore
# ---------------------------------------------------------------------------


class ProjectStore:
    """
    SQLite-backed persistent store for project memory.

    Exposes the narrow contract the migration engines consume:
    ``execute``, ``query``, ``begin``/``commit``/``rollback``,
    ``transaction()`` and ``backup_to``.
    """

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """Open (and create if needed) a store.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for disk-backed stores.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly by begin()
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA_SQL)
        logger.info(f"ProjectStore initialized: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def in_transaction(self) -> bool:
        return self._conn.in_transaction

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Statement execution -----------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one statement. Returns the number of rows affected."""
        with self._lock:
            cur = self._conn.execute(sql, tuple(params))
            return cur.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a SELECT and return all rows."""
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchone()

    # -- Transactions --------------------------------------------------------

    def begin(self) -> None:
        """Open a write transaction (takes the database write lock now)."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        with self._lock:
            self._conn.execute("COMMIT")

    def rollback(self) -> None:
        with self._lock:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")

    @contextmanager
    def transaction(self) -> Iterator[ProjectStore]:
        """Scoped unit of work: commit on success, full rollback on any error."""
        with self._lock:
            self.begin()
            try:
                yield self
                self.commit()
            except BaseException:
                self.rollback()
                raise

    # -- Backup --------------------------------------------------------------

    def backup_to(self, target: str) -> None:
        """Copy the whole database to *target* with the SQLite backup API.

        Refuses in-memory stores, open transactions, and existing targets.

        Raises:
            BackupError: If the copy cannot be made.
        """
        if self._db_path == ":memory:":
            raise BackupError("In-memory stores cannot be backed up to a file")
        target_path = Path(target)
        if target_path.exists():
            raise BackupError(f"Backup target already exists: {target_path}")
        with self._lock:
            if self._conn.in_transaction:
                raise BackupError("Cannot back up while a transaction is open")
            try:
                dest = sqlite3.connect(str(target_path))
                try:
                    self._conn.backup(dest)
                finally:
                    dest.close()
            except (sqlite3.Error, OSError) as exc:
                raise BackupError(f"Backup to {target_path} failed: {exc}") from exc

    # -- Introspection -------------------------------------------------------

    def table_exists(self, table: str) -> bool:
        row = self.query_one(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (table,),
        )
        return row is not None

    def list_tables(self) -> List[str]:
        rows = self.query(
            "SELECT name FROM sqlite_master WHERE type='table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [r["name"] for r in rows]

    def table_columns(self, table: str) -> List[str]:
        rows = self.query(f"PRAGMA table_info({_check_identifier(table)})")
        return [r["name"] for r in rows]

    def count_rows(self, table: str, project_id: Optional[str] = None) -> int:
        """Row count of *table*; 0 when the table does not exist."""
        if not self.table_exists(table):
            return 0
        table = _check_identifier(table)
        if project_id is None:
            row = self.query_one(f"SELECT COUNT(*) AS cnt FROM {table}")
        else:
            row = self.query_one(
                f"SELECT COUNT(*) AS cnt FROM {table} WHERE project_id=?", (project_id,),
            )
        return row["cnt"]

    def stats(self) -> Dict[str, Any]:
        """Per-table row counts for every user table."""
        counts = {t: self.count_rows(t) for t in self.list_tables()}
        return {
            "db_path": self._db_path,
            "schema_version": SCHEMA_VERSION,
            "total_projects": counts.get("projects", 0),
            "tables": counts,
        }

    # -- Projects ------------------------------------------------------------

    def create_project(
        self,
        name: str,
        path: Optional[str] = None,
        tech_stack: Optional[List[str]] = None,
        architecture: Optional[str] = None,
        created_at: Optional[int] = None,
        updated_at: Optional[int] = None,
    ) -> Project:
        """Insert a project row (used by the detection layer and by tests)."""
        now = _now_ms()
        project = Project(
            id=_generate_id(),
            name=name,
            path=path,
            tech_stack=list(tech_stack or []),
            architecture=architecture,
            created_at=created_at if created_at is not None else now,
            updated_at=updated_at if updated_at is not None else now,
        )
        self.execute(
            "INSERT INTO projects (id, name, path, architecture, tech_stack, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (project.id, project.name, project.path, project.architecture,
             json.dumps(project.tech_stack), project.created_at, project.updated_at),
        )
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self.query_one("SELECT * FROM projects WHERE id=?", (project_id,))
        return Project.from_row(row) if row is not None else None

    def list_projects(self) -> List[Project]:
        rows = self.query("SELECT * FROM projects ORDER BY created_at, id")
        return [Project.from_row(r) for r in rows]

    # -- Records -------------------------------------------------------------

    def add_conversation(
        self,
        project_id: str,
        tool: str,
        role: str,
        content: str,
        timestamp: Optional[int] = None,
    ) -> str:
        rid = _generate_id()
        self.execute(
            "INSERT INTO conversations (id, project_id, tool, role, content, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (rid, project_id, tool, role, content,
             timestamp if timestamp is not None else _now_ms()),
        )
        return rid

    def add_todo(
        self,
        title: str,
        project_id: Optional[str] = None,
        description: Optional[str] = None,
        status: str = "pending",
        priority: str = "medium",
        tags: Optional[List[str]] = None,
        due_date: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> str:
        rid = _generate_id()
        created = created_at if created_at is not None else _now_iso()
        self.execute(
            "INSERT INTO todos (id, title, description, status, priority, tags, due_date, "
            "created_at, updated_at, project_id) VALUES (?,?,?,?,?,?,?,?,?,?)",
            (rid, title, description, status, priority,
             json.dumps(tags) if tags is not None else None,
             due_date, created, created, project_id),
        )
        return rid

    def add_record(self, record) -> str:
        """Insert a current-schema record (Decision, Note, Problem, ...)."""
        sql, params = record.insert_statement()
        self.execute(sql, params)
        return record.id

    def list_records(self, table: str, project_id: Optional[str] = None) -> List[sqlite3.Row]:
        """Rows of a record table, newest first."""
        table = _check_identifier(table)
        order = "created_at" if table == "todos" else "timestamp"
        if project_id is None:
            return self.query(f"SELECT * FROM {table} ORDER BY {order} DESC")
        return self.query(
            f"SELECT * FROM {table} WHERE project_id=? ORDER BY {order} DESC", (project_id,),
        )
