"""
Path Identity — canonical grouping keys for project paths.

Two project rows describe the same project when their paths normalize to the
same key.  Normalization is purely lexical (no filesystem access):

  - backslashes become forward slashes, repeated separators collapse
    (except the leading pair of a UNC share such as ``\\\\server\\share``)
  - ``.`` and ``..`` segments are resolved lexically
  - a trailing separator is dropped
  - case is folded (case-insensitive filesystems)

Blank input never fails: it maps to a NUL-prefixed ``invalid:`` key that
cannot collide with the key of any real path.
"""

from __future__ import annotations

import posixpath
import re

# NUL cannot occur in a real filesystem path
INVALID_PREFIX = "\x00invalid:"

_MULTI_SEP = re.compile(r"/{2,}")
_UNC_ROOT = re.compile(r"//[^/]")


def normalize(raw: str) -> str:
    """Return the identity key of a filesystem path string."""
    if raw is None or not raw.strip():
        return f"{INVALID_PREFIX}{raw or ''}"

    path = raw.strip().replace("\\", "/")
    # UNC share (\\server\share) is a different root from /server/share
    unc = _UNC_ROOT.match(path) is not None
    path = _MULTI_SEP.sub("/", path)
    path = posixpath.normpath(path)
    # normpath keeps a leading '//' (POSIX implementation-defined root)
    if path.startswith("//"):
        path = "/" + path.lstrip("/")
    if len(path) > 1:
        path = path.rstrip("/")
    if unc:
        path = "/" + path
    return path.casefold()


def is_valid_identity(key: str) -> bool:
    """False for keys produced from blank input."""
    return not key.startswith(INVALID_PREFIX)


def folder_name(raw: str) -> str:
    """Final segment of a raw path, original case preserved."""
    if not raw:
        return ""
    trimmed = raw.strip().replace("\\", "/").rstrip("/")
    return trimmed.rsplit("/", 1)[-1]
