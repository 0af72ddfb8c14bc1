"""
Shared fixtures: empty stores and a v1 store carrying every legacy family.
"""

import pytest

from ctxsync.store import ProjectStore

# v1-only tables as written by pre-2.0 releases
LEGACY_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS learnings (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    insight    TEXT NOT NULL,
    context    TEXT,
    confidence TEXT,
    timestamp  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS problem_solutions (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    problem    TEXT NOT NULL,
    solution   TEXT NOT NULL,
    confidence TEXT,
    timestamp  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS comparisons (
    id         TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    option_a   TEXT NOT NULL,
    option_b   TEXT NOT NULL,
    winner     TEXT,
    reasoning  TEXT,
    confidence TEXT,
    timestamp  INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS anti_patterns (
    id          TEXT PRIMARY KEY,
    project_id  TEXT NOT NULL,
    description TEXT NOT NULL,
    why         TEXT,
    timestamp   INTEGER NOT NULL
);
"""

# Row counts seeded by the legacy_store fixture
LEGACY_COUNTS = {
    "decisions": 2,
    "conversations": 2,
    "learnings": 1,
    "problem_solutions": 1,
    "comparisons": 1,
    "anti_patterns": 1,
    "todos": 3,
}


def seed_legacy(store: ProjectStore):
    """Create the v1-only tables and one project with every legacy family."""
    store._conn.executescript(LEGACY_SCHEMA_SQL)
    project = store.create_project(
        "webapp", path="/home/dev/webapp", tech_stack=["python"],
    )
    pid = project.id

    for rid, desc, ts in (("d1", "Use SQLite", 1000), ("d2", "Use WAL mode", 1001)):
        store.execute(
            "INSERT INTO decisions (id, project_id, type, description, reasoning, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (rid, pid, "architecture", desc, "Single-file deployment", ts),
        )
    store.add_conversation(pid, "claude", "user", "How do we store data?", timestamp=2000)
    store.add_conversation(pid, "claude", "assistant", "SQLite in WAL mode.", timestamp=2001)
    store.execute(
        "INSERT INTO learnings (id, project_id, insight, context, confidence, timestamp) "
        "VALUES (?,?,?,?,?,?)",
        ("l1", pid, "WAL avoids reader blocking", "Load testing", "0.9", 3000),
    )
    store.execute(
        "INSERT INTO problem_solutions (id, project_id, problem, solution, confidence, timestamp) "
        "VALUES (?,?,?,?,?,?)",
        ("ps1", pid, "Database is locked", "Set busy_timeout", "high", 4000),
    )
    store.execute(
        "INSERT INTO comparisons (id, project_id, option_a, option_b, winner, reasoning, "
        "confidence, timestamp) VALUES (?,?,?,?,?,?,?,?)",
        ("c1", pid, "SQLite", "Postgres", "SQLite", "No server needed", "0.8", 5000),
    )
    store.execute(
        "INSERT INTO anti_patterns (id, project_id, description, why, timestamp) "
        "VALUES (?,?,?,?,?)",
        ("a1", pid, "Opening a connection per query", "Connection churn", 6000),
    )
    store.add_todo("Ship release", pid, status="done", priority="high",
                   tags=["release"], created_at="2024-01-15T10:30:00Z")
    store.add_todo("Fix flaky test", pid, status="blocked",
                   created_at="2024-01-16T09:00:00+00:00")
    store.add_todo("Write docs", pid, status="pending", description="User guide",
                   due_date="2024-02-01", created_at="2024-01-17T08:00:00")
    return project


@pytest.fixture
def store():
    """In-memory current-schema store."""
    s = ProjectStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def disk_store(tmp_path):
    """Disk-backed current-schema store (backups need a file)."""
    s = ProjectStore(db_path=str(tmp_path / "data.db"))
    yield s
    s.close()


@pytest.fixture
def legacy_store(disk_store):
    """Disk store holding v1 data only; returns (store, project)."""
    project = seed_legacy(disk_store)
    return disk_store, project


@pytest.fixture
def legacy_counts():
    """Per-family row counts seeded by legacy_store."""
    return dict(LEGACY_COUNTS)


@pytest.fixture
def legacy_memory_store(store):
    """In-memory store holding v1 data (cannot be backed up)."""
    seed_legacy(store)
    return store
