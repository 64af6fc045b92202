"""
Small helpers shared by the database layer and the export pipeline.

This module provides helper functions for:
- Timezone-aware timestamps
- Ensuring directory creation
- Turning document display names into safe, unique archive entry names
- Truncating error messages before they are persisted
"""

from __future__ import annotations

import posixpath
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Set

# Control characters are never valid inside a zip entry name
CONTROL_CHARS_PATTERN = re.compile(r"[\x00-\x1f\x7f]+")


def utcnow() -> datetime:
    """Current time in UTC, timezone-aware."""
    return datetime.now(timezone.utc)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def truncate_error(message: str, max_length: int = 500) -> str:
    """Clip an error message to at most ``max_length`` characters."""
    return message[:max_length]


def safe_entry_name(name: str, fallback: str) -> str:
    """
    Reduce a document display name to a bare file name for a zip entry.

    Directory components (either separator) and control characters are
    dropped so an entry can never extract outside the target folder.

    Example:
        >>> safe_entry_name("../../etc/passwd", "document")
        "passwd"
        >>> safe_entry_name("Q3 return.pdf", "document")
        "Q3 return.pdf"
    """
    cleaned = CONTROL_CHARS_PATTERN.sub("", name).replace("\\", "/")
    cleaned = posixpath.basename(cleaned.rstrip("/")).strip()
    if cleaned in {"", ".", ".."}:
        return fallback
    return cleaned


def unique_entry_name(name: str, used: Set[str]) -> str:
    """
    Return ``name`` or the first free ``"stem (n).ext"`` variant, and record it.

    Example:
        >>> used = {"invoice.pdf"}
        >>> unique_entry_name("invoice.pdf", used)
        "invoice (2).pdf"
    """
    candidate = name
    stem, dot, suffix = name.rpartition(".")
    if not stem:
        stem, dot, suffix = name, "", ""
    counter = 2
    while candidate in used:
        candidate = f"{stem} ({counter}){dot}{suffix}"
        counter += 1
    used.add(candidate)
    return candidate
