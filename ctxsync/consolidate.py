"""
Duplicate Consolidation — Merge Projects Sharing a Path Identity

Groups project rows whose paths normalize to the same identity key
(``ctxsync.paths.normalize``) and merges each group into one canonical row.

Consolidation contract:
  - Operator-triggered only; never run automatically
  - One transaction for the whole run; any error rolls everything back
  - Canonical row: newest updated_at; ties keep load order
    (ORDER BY path, created_at, id, then a stable sort)
  - Merged name: folder-name match > name without namespace marker > canonical
  - Merged tech stack: ordered union, first appearance wins
  - Merged architecture: first non-placeholder label, else NULL
  - Every table carrying a project_id column is re-pointed to the canonical
    id before the duplicate row is deleted
  - get_stats() and dry runs never write
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from ctxsync.config import ConsolidateConfig
from ctxsync.paths import folder_name, is_valid_identity, normalize
from ctxsync.store import ProjectStore
from ctxsync.types import (
    ConsolidationResult,
    DuplicateGroup,
    DuplicateStats,
    Project,
    _now_ms,
)

logger = logging.getLogger(__name__)

# Re-pointed first, in this order; other project_id tables follow by name
_KNOWN_CHILD_TABLES = (
    "conversations", "decisions", "todos", "active_work",
    "constraints", "problems", "goals", "notes",
)


def _choose_name(members: List[Project], namespace_marker: str = "@") -> str:
    """Folder-name match, else first name without the namespace marker."""
    for member in members:
        if member.path and member.name == folder_name(member.path):
            return member.name
    for member in members:
        if not member.name.startswith(namespace_marker):
            return member.name
    return members[0].name


def _merge_tech_stacks(members: List[Project]) -> List[str]:
    merged: List[str] = []
    seen = set()
    for member in members:
        for tech in member.tech_stack:
            if tech not in seen:
                seen.add(tech)
                merged.append(tech)
    return merged


def _choose_architecture(
    members: List[Project], config: ConsolidateConfig,
) -> Optional[str]:
    for member in members:
        if not config.is_placeholder_architecture(member.architecture):
            return member.architecture
    return None


class DuplicateConsolidator:
    """
    Detects and merges duplicate project rows.

    Duplicates arise when one directory was registered under several string
    forms (case, trailing separator, separator style).
    """

    def __init__(
        self,
        store: ProjectStore,
        config: Optional[ConsolidateConfig] = None,
    ):
        self._store = store
        self._config = config or ConsolidateConfig()

    # -- Grouping ------------------------------------------------------------

    def _load_projects(self) -> List[Project]:
        rows = self._store.query(
            "SELECT * FROM projects WHERE path IS NOT NULL "
            "ORDER BY path, created_at, id"
        )
        return [Project.from_row(r) for r in rows]

    def find_duplicates(self) -> Dict[str, List[Project]]:
        """Identity key -> members, for groups with more than one member.

        Members keep load order; blank paths never group.
        """
        groups: Dict[str, List[Project]] = {}
        for project in self._load_projects():
            key = normalize(project.path)
            if not is_valid_identity(key):
                continue
            groups.setdefault(key, []).append(project)
        return {k: v for k, v in groups.items() if len(v) > 1}

    def get_stats(self) -> DuplicateStats:
        """Read-only duplicate report."""
        groups = self.find_duplicates()
        with_paths = self._store.query_one(
            "SELECT COUNT(*) AS cnt FROM projects WHERE path IS NOT NULL"
        )["cnt"]
        return DuplicateStats(
            total_projects=self._store.count_rows("projects"),
            projects_with_paths=with_paths,
            duplicate_groups=len(groups),
            total_duplicates=sum(len(m) - 1 for m in groups.values()),
            duplicate_details=[
                DuplicateGroup(path=key, count=len(members), names=[m.name for m in members])
                for key, members in groups.items()
            ],
        )

    def child_tables(self) -> List[str]:
        """Every table with a project_id column, known tables first."""
        found = [
            t for t in self._store.list_tables()
            if t != "projects" and "project_id" in self._store.table_columns(t)
        ]
        known = [t for t in _KNOWN_CHILD_TABLES if t in found]
        return known + sorted(t for t in found if t not in known)

    # -- Consolidation -------------------------------------------------------

    def consolidate(self, dry_run: bool = False) -> ConsolidationResult:
        """
        Merge every duplicate group into its canonical project.

        Args:
            dry_run: If True, compute the plan and details but don't write.

        Returns:
            ConsolidationResult with counts and one detail line per step.
        """
        result = ConsolidationResult(dry_run=dry_run)

        if dry_run:
            for key, members in self.find_duplicates().items():
                self._merge_group(key, members, result, dry_run=True)
            result.success = True
            return result

        try:
            with self._store.transaction():
                for key, members in self.find_duplicates().items():
                    self._merge_group(key, members, result, dry_run=False)
        except Exception as exc:
            result.success = False
            result.duplicates_removed = 0
            result.projects_merged = 0
            result.details = []
            result.errors.append(f"Consolidation failed: {exc}")
            logger.error(f"Consolidation rolled back: {exc}")
            return result

        result.success = True
        result.details.append(
            f"Summary: {result.duplicates_removed} duplicates removed, "
            f"{result.projects_merged} projects merged"
        )
        logger.info(
            f"Consolidation complete: {result.duplicates_removed} duplicates removed, "
            f"{result.projects_merged} projects merged"
        )
        return result

    def _merge_group(
        self,
        key: str,
        members: List[Project],
        result: ConsolidationResult,
        dry_run: bool,
    ) -> None:
        result.duplicates_found += len(members) - 1
        result.details.append(f"Found {len(members)} duplicates for path: {key}")

        # Stable: equal updated_at keeps load order
        ranked = sorted(members, key=lambda p: p.updated_at, reverse=True)
        keep, duplicates = ranked[0], ranked[1:]

        name = _choose_name(ranked, self._config.namespace_marker)
        tech_stack = _merge_tech_stacks(ranked)
        architecture = _choose_architecture(ranked, self._config)

        if not dry_run:
            self._store.execute(
                "UPDATE projects SET name=?, architecture=?, tech_stack=?, updated_at=? "
                "WHERE id=?",
                (name, architecture, json.dumps(tech_stack) if tech_stack else None,
                 _now_ms(), keep.id),
            )

        tables = self.child_tables()
        for dup in duplicates:
            counts: Dict[str, int] = {}
            for table in tables:
                if dry_run:
                    counts[table] = self._store.count_rows(table, project_id=dup.id)
                else:
                    counts[table] = self._store.execute(
                        f"UPDATE {table} SET project_id=? WHERE project_id=?",
                        (keep.id, dup.id),
                    )
            moved = ", ".join(f"{n} {t}" for t, n in counts.items())
            result.details.append(f"Merged project {dup.name} ({dup.id[:8]}): {moved}")
            if not dry_run:
                self._store.execute("DELETE FROM projects WHERE id=?", (dup.id,))
            result.duplicates_removed += 1

        result.projects_merged += 1
        result.details.append(f"Kept project: {name} ({keep.id[:8]})")
