"""
Project Memory Data Model — Typed Records

Defines the project identity entity, the legacy (v1) record families, the
current (v2) record families, and the structured results returned by the
migration and consolidation engines.

Legacy records are decoded from SQLite rows with ``from_row``; current
records know their own INSERT statement.  The v1 → v2 mapping itself lives
in ``ctxsync.migrate``.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

WorkStatus = Literal["active", "paused", "completed"]
ProblemStatus = Literal["open", "investigating", "resolved"]
GoalStatus = Literal["planned", "in-progress", "blocked", "completed"]

VALID_WORK_STATUSES: set = {"active", "paused", "completed"}
VALID_PROBLEM_STATUSES: set = {"open", "investigating", "resolved"}
VALID_GOAL_STATUSES: set = {"planned", "in-progress", "blocked", "completed"}


def _now_ms() -> int:
    """Current time as integer epoch milliseconds."""
    return int(time.time() * 1000)


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    """Fresh opaque record id."""
    return str(uuid.uuid4())


def _loads_list(raw: Any) -> List[str]:
    """Decode a JSON array column. Invalid or non-list JSON gives []."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def to_epoch_ms(value: Any) -> int:
    """Convert a legacy date (ISO string, epoch s/ms, numeric string) to epoch ms.

    Unparseable or missing values become the current time.
    """
    if value is None or isinstance(value, bool):
        return _now_ms()
    number: Optional[float] = None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return _now_ms()
        try:
            number = float(text)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Unparseable legacy date %r, using current time", value)
                return _now_ms()
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
    if not math.isfinite(number):
        return _now_ms()
    # Values below 1e11 are epoch seconds (1e11 ms is early 1973)
    return int(number if abs(number) >= 1e11 else number * 1000)


def _get(row: sqlite3.Row, key: str, default: Any = None) -> Any:
    """Column lookup tolerant of older layouts missing the column."""
    try:
        value = row[key]
    except (IndexError, KeyError):
        return default
    return default if value is None else value


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CtxSyncError(Exception):
    """Base class for ctxsync errors."""


class BackupError(CtxSyncError):
    """The pre-migration backup could not be created or verified."""


class TransformError(CtxSyncError):
    """A legacy row cannot be mapped onto the current schema."""


# ---------------------------------------------------------------------------
# Project (identity entity)
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """A project row. ``id`` never changes once assigned."""

    id: str
    name: str
    path: Optional[str] = None
    tech_stack: List[str] = field(default_factory=list)
    architecture: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Project:
        return cls(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            tech_stack=_loads_list(_get(row, "tech_stack")),
            architecture=_get(row, "architecture"),
            created_at=int(_get(row, "created_at", 0)),
            updated_at=int(_get(row, "updated_at", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Legacy (v1) record families
# ---------------------------------------------------------------------------


@dataclass
class LegacyDecision:
    id: str
    project_id: str
    type: str
    description: str
    reasoning: Optional[str]
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyDecision:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            type=_get(row, "type", ""),
            description=_get(row, "description", ""),
            reasoning=_get(row, "reasoning"),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyConversation:
    id: str
    project_id: str
    tool: str
    role: str
    content: str
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyConversation:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            tool=_get(row, "tool", "unknown"),
            role=_get(row, "role", "unknown"),
            content=_get(row, "content", ""),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyLearning:
    id: str
    project_id: str
    insight: str
    context: Optional[str]
    confidence: Any
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyLearning:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            insight=_get(row, "insight", ""),
            context=_get(row, "context"),
            confidence=_get(row, "confidence"),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyProblemSolution:
    id: str
    project_id: str
    problem: str
    solution: Optional[str]
    confidence: Any
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyProblemSolution:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            problem=_get(row, "problem", ""),
            solution=_get(row, "solution"),
            confidence=_get(row, "confidence"),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyComparison:
    id: str
    project_id: str
    option_a: str
    option_b: str
    winner: Optional[str]
    reasoning: Optional[str]
    confidence: Any
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyComparison:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            option_a=_get(row, "option_a", ""),
            option_b=_get(row, "option_b", ""),
            winner=_get(row, "winner"),
            reasoning=_get(row, "reasoning"),
            confidence=_get(row, "confidence"),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyAntiPattern:
    id: str
    project_id: str
    description: str
    why: Optional[str]
    timestamp: int

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyAntiPattern:
        return cls(
            id=row["id"],
            project_id=row["project_id"],
            description=_get(row, "description", ""),
            why=_get(row, "why"),
            timestamp=to_epoch_ms(_get(row, "timestamp")),
        )


@dataclass
class LegacyTodo:
    """Todo rows use ISO date strings, not epoch integers."""

    id: str
    project_id: Optional[str]
    title: str
    description: Optional[str]
    status: str
    priority: Optional[str]
    tags: List[str]
    due_date: Optional[str]
    created_at: Any

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> LegacyTodo:
        return cls(
            id=row["id"],
            project_id=_get(row, "project_id"),
            title=_get(row, "title", ""),
            description=_get(row, "description"),
            status=_get(row, "status", "pending"),
            priority=_get(row, "priority"),
            tags=_loads_list(_get(row, "tags")),
            due_date=_get(row, "due_date"),
            created_at=_get(row, "created_at"),
        )


# ---------------------------------------------------------------------------
# Current (v2) record families
# ---------------------------------------------------------------------------


@dataclass
class Decision:
    project_id: str
    type: str
    description: str
    reasoning: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "decisions"

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO decisions (id, project_id, type, description, reasoning, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (self.id, self.project_id, self.type, self.description,
             self.reasoning, self.timestamp),
        )


@dataclass
class Note:
    project_id: str
    content: str
    tags: List[str] = field(default_factory=list)
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "notes"

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO notes (id, project_id, content, tags, timestamp) VALUES (?,?,?,?,?)",
            (self.id, self.project_id, self.content, json.dumps(self.tags), self.timestamp),
        )


@dataclass
class Problem:
    project_id: str
    description: str
    context: Optional[str] = None
    status: ProblemStatus = "open"
    resolution: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "problems"

    def __post_init__(self):
        if self.status not in VALID_PROBLEM_STATUSES:
            raise ValueError(f"Invalid problem status: {self.status!r}")

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO problems (id, project_id, description, context, status, resolution, timestamp) "
            "VALUES (?,?,?,?,?,?,?)",
            (self.id, self.project_id, self.description, self.context,
             self.status, self.resolution, self.timestamp),
        )


@dataclass
class Constraint:
    project_id: str
    key: str
    value: str
    reasoning: Optional[str] = None
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "constraints"

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO constraints (id, project_id, key, value, reasoning, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (self.id, self.project_id, self.key, self.value,
             self.reasoning, self.timestamp),
        )


@dataclass
class ActiveWork:
    project_id: str
    task: str
    context: Optional[str] = None
    files: Optional[List[str]] = None
    branch: Optional[str] = None
    status: WorkStatus = "active"
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "active_work"

    def __post_init__(self):
        if self.status not in VALID_WORK_STATUSES:
            raise ValueError(f"Invalid work status: {self.status!r}")

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO active_work (id, project_id, task, context, files, branch, timestamp, status) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (self.id, self.project_id, self.task, self.context,
             json.dumps(self.files) if self.files is not None else None,
             self.branch, self.timestamp, self.status),
        )


@dataclass
class Goal:
    project_id: str
    description: str
    target_date: Optional[str] = None
    status: GoalStatus = "planned"
    timestamp: int = field(default_factory=_now_ms)
    id: str = field(default_factory=_generate_id)

    table: ClassVar[str] = "goals"

    def __post_init__(self):
        if self.status not in VALID_GOAL_STATUSES:
            raise ValueError(f"Invalid goal status: {self.status!r}")

    def insert_statement(self) -> Tuple[str, tuple]:
        return (
            "INSERT INTO goals (id, project_id, description, target_date, status, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (self.id, self.project_id, self.description, self.target_date,
             self.status, self.timestamp),
        )


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass
class MigrationResult:
    """Outcome of a v1 → v2 schema migration."""

    success: bool = False
    migrated_tables: List[str] = field(default_factory=list)
    records_copied: int = 0
    table_counts: Dict[str, int] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    backup_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DuplicateGroup:
    path: str
    count: int
    names: List[str]


@dataclass
class DuplicateStats:
    """Read-only duplicate report."""

    total_projects: int = 0
    projects_with_paths: int = 0
    duplicate_groups: int = 0
    total_duplicates: int = 0
    duplicate_details: List[DuplicateGroup] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConsolidationResult:
    """Outcome of a duplicate-project consolidation."""

    success: bool = False
    duplicates_found: int = 0
    duplicates_removed: int = 0
    projects_merged: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
