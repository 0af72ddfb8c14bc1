"""
MCP Session Tracker — Minimal in-memory session state.

Tracks per-session state keyed by MCP connection/session ID: tool calls
served and whether the startup duplicate notice was already delivered.
No persistence — resets on server restart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

# Default session ID when no MCP context is available
DEFAULT_SESSION_ID = "default"


@dataclass
class SessionState:
    """In-memory session state."""
    session_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    call_count: int = 0
    notice_shown: bool = False

    def record_call(self) -> int:
        """Count one tool call. Returns the new count."""
        self.call_count += 1
        return self.call_count


class SessionTracker:
    """In-memory session tracking keyed by session ID."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionState] = {}

    def get_or_create(self, session_id: str) -> SessionState:
        """Get existing session or create a new one."""
        if session_id not in self._sessions:
            self._sessions[session_id] = SessionState(session_id=session_id)
        return self._sessions[session_id]

    def resolve_session_id(self, mcp_context_id: Optional[str] = None) -> str:
        """MCP-provided session ID, else DEFAULT_SESSION_ID."""
        return mcp_context_id if mcp_context_id else DEFAULT_SESSION_ID

    def reset(self, session_id: str) -> None:
        """Remove session state entirely."""
        self._sessions.pop(session_id, None)
