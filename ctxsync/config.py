"""
ctxsync Configuration

Configuration dataclasses for the store, the schema migrator and the
duplicate consolidator.  Includes load_config() for reading a JSON config
file with silent fallback to compiled defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_DB_PATH = os.path.join("~", ".ctxsync", "data.db")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = DEFAULT_DB_PATH
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not isinstance(self.db_path, str) or not self.db_path.strip():
            errors.append("store.db_path: must be a non-empty string")
        return errors


@dataclass
class MigrationConfig:
    """v1 -> v2 schema migration configuration."""
    target_version: str = "2.0.0"
    history_id: str = "v1-to-v2"
    auto_migrate: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.target_version:
            errors.append("migration.target_version: must not be empty")
        if not self.history_id:
            errors.append("migration.history_id: must not be empty")
        return errors


@dataclass
class ConsolidateConfig:
    """Duplicate-project consolidation configuration."""
    namespace_marker: str = "@"
    placeholder_architectures: List[str] = field(
        default_factory=lambda: ["Not specified", "unspecified", ""]
    )
    notify_on_startup: bool = True
    notice_max_groups: int = 3

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not isinstance(self.namespace_marker, str) or len(self.namespace_marker) != 1:
            errors.append("consolidate.namespace_marker: must be a single character")
        _check_range(errors, "consolidate.notice_max_groups",
                      self.notice_max_groups, 1, 100, int)
        return errors

    def is_placeholder_architecture(self, value: Optional[str]) -> bool:
        if value is None:
            return True
        folded = value.strip().casefold()
        return any(folded == p.strip().casefold() for p in self.placeholder_architectures)


@dataclass
class CtxSyncConfig:
    """Top-level ctxsync configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    consolidate: ConsolidateConfig = field(default_factory=ConsolidateConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> CtxSyncConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "migration" in d:
            kwargs["migration"] = MigrationConfig(**d["migration"])
        if "consolidate" in d:
            kwargs["consolidate"] = ConsolidateConfig(**d["consolidate"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.migration.validate())
        errors.extend(self.consolidate.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> CtxSyncConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        CtxSyncConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = CtxSyncConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = CtxSyncConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = CtxSyncConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
