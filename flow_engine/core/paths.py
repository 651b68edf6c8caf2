"""
Path resolution over the semi-structured instance context.

All path-based access in the engine goes through walk_path so missing
segments behave the same everywhere: they resolve to None, never raise.

Two spellings are accepted:
- "$.user.id"  root-anchored paths (correlation keys, decision tables)
- "user.id"    unanchored paths (expression ``var`` operands)
"""

import re
from typing import Any, Optional, Union

ROOT_PREFIX = "$."

# Segments are plain keys; digit segments also index into lists. No wildcards.
SEGMENT_PATTERN = re.compile(r"^[^.\[\]*]+$")

PathSegment = Union[str, int]


def split_path(path: str) -> Optional[list[PathSegment]]:
    """
    Split a dot path into segments.

    Returns None when the path is malformed (empty segment, wildcard).
    """
    if path == "":
        return []

    segments: list[PathSegment] = []
    for part in path.split("."):
        if not SEGMENT_PATTERN.match(part):
            return None
        segments.append(part)
    return segments


def walk_path(value: Any, segments: list[PathSegment]) -> Any:
    """
    Navigate a path through nested data structures.

    Only dict-based navigation and list indexing are allowed; no attribute
    access is ever performed on the values.
    """
    current = value

    for key in segments:
        if current is None:
            return None

        if isinstance(current, list):
            index = _list_index(key)
            if index is None or index >= len(current):
                return None
            current = current[index]
        elif isinstance(current, dict):
            current = current.get(str(key))
        else:
            return None

    return current


def _list_index(key: PathSegment) -> Optional[int]:
    if isinstance(key, int):
        return key if key >= 0 else None
    return int(key) if key.isascii() and key.isdigit() else None


def is_rooted_path(path: str) -> bool:
    """Check that a path is anchored at the document root."""
    return isinstance(path, str) and path.startswith(ROOT_PREFIX) and len(path) > len(ROOT_PREFIX)


def resolve_path(document: Any, path: str) -> Any:
    """
    Resolve a root-anchored "$.a.b" path against a document.

    Paths that are not root-anchored resolve to None.
    """
    if not is_rooted_path(path):
        return None
    segments = split_path(path[len(ROOT_PREFIX):])
    if segments is None:
        return None
    return walk_path(document, segments)


def lookup(document: Any, path: Union[str, int, None]) -> Any:
    """
    Resolve an unanchored "a.b" path (expression variables).

    An empty path or None returns the whole document.
    """
    if path is None or path == "":
        return document
    if isinstance(path, int):
        return walk_path(document, [path])
    if path.startswith(ROOT_PREFIX):
        return resolve_path(document, path)
    segments = split_path(path)
    if segments is None:
        return None
    return walk_path(document, segments)
