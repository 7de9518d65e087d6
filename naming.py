"""
Filesystem naming convention for enabled/disabled mod folders.

A mod is disabled when the final segment of its folder path carries the
``DISABLED_`` prefix.  This module is the only place that knows about the
marker; everything else works with a clean path plus an ``is_enabled`` flag.

    Chars/RedHat            -> enabled
    Chars/DISABLED_RedHat   -> disabled

Paths are treated as ``/``-separated relative strings.  Backslashes are
normalised so that paths coming from Windows archives or the OS behave the
same.  Only the final segment is ever examined or rewritten.
"""

from __future__ import annotations

import re

DISABLED_PREFIX = "DISABLED_"

# Upper-case "DISABLED" not followed by the canonical underscore,
# e.g. "DISABLEDHat".  Names like "DisabledVeteranOutfit" are real mod names.
_LEGACY_MARKER_RE = re.compile(r"^DISABLED(?!_)")


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


def _split_last(path: str) -> tuple[str, str]:
    path = _normalize(path).rstrip("/")
    head, sep, last = path.rpartition("/")
    return head + sep, last


def is_disabled(path: str) -> bool:
    _, last = _split_last(path)
    return last.startswith(DISABLED_PREFIX)


def to_disabled(path: str) -> str:
    """Return *path* with the disabled marker on its final segment (idempotent)."""
    head, last = _split_last(path)
    if not last:
        raise ValueError(f"Cannot disable an empty path segment: {path!r}")
    if last.startswith(DISABLED_PREFIX):
        return head + last
    return head + DISABLED_PREFIX + last


def to_enabled(path: str) -> str:
    """Return *path* with the disabled marker removed (no-op if absent)."""
    head, last = _split_last(path)
    if last.startswith(DISABLED_PREFIX):
        last = last[len(DISABLED_PREFIX):]
    return head + last


def split_state(path: str) -> tuple[str, bool]:
    """Split an on-disk path into ``(clean_path, is_enabled)``."""
    return to_enabled(path), not is_disabled(path)


def with_state(clean_path: str, enabled: bool) -> str:
    """Inverse of :func:`split_state`."""
    return to_enabled(clean_path) if enabled else to_disabled(clean_path)


def normalize_legacy_marker(name: str) -> str | None:
    """Map a non-canonical disabled folder name to the canonical form.

    Returns ``None`` when *name* is already canonical or not disabled at all.
    Only a single segment (a folder name) is accepted.
    """
    if name.startswith(DISABLED_PREFIX):
        return None
    match = _LEGACY_MARKER_RE.match(name)
    if not match:
        return None
    rest = name[match.end():]
    if not rest:
        return None
    return DISABLED_PREFIX + rest
