"""
MCP Audit Logger — Structured JSONL logging for MCP tool calls.

One schema-versioned record per tool call: request id, session, store
path, outcome, latency, and a small tool-specific detail dict (counts
only, never record content).

The log() method is fire-and-forget: catches all exceptions internally
and never disrupts tool execution.
"""

from __future__ import annotations

import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1

# Result fields copied into audit details (all integers or booleans)
_DETAIL_FIELDS = (
    "success", "dry_run", "records_copied", "duplicates_found",
    "duplicates_removed", "projects_merged", "duplicate_groups",
    "total_duplicates", "total_projects",
)


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        session_id: str,
        db_path: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record. Fire-and-forget — never raises.

        Args:
            tool: MCP tool name (e.g. "migrate_database").
            rid: Request ID (from new_rid()).
            session_id: Session/connection ID or "default".
            db_path: Store path.
            outcome: "ok", "failed" or "error".
            detail: Tool-specific counters (see make_result_detail).
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "sid": session_id,
                "db": db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)

            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception:
            # Fire-and-forget: audit failures must never disrupt tool execution
            pass

    @staticmethod
    def make_result_detail(result: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only the scalar counters of a tool result.

        Error messages are reduced to their count.
        """
        detail = {k: result[k] for k in _DETAIL_FIELDS if k in result}
        if result.get("errors"):
            detail["errors"] = len(result["errors"])
        return detail
