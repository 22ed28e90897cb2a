"""Shared utility functions for upload services."""

import re
from pathlib import PurePath

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def format_file_size(size_bytes: int) -> str:
    """Format a file size in bytes to a human-readable string.

    Args:
        size_bytes: Size in bytes

    Returns:
        Human-readable size string (e.g., "1.5 GB")
    """
    size_float = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if abs(size_float) < 1024.0:
            return f"{size_float:.1f} {unit}"
        size_float = size_float / 1024.0
    return f"{size_float:.1f} PB"


def sanitize_filename(filename: str) -> str:
    """Replace every character that is unsafe in an object key with '_'."""
    return _UNSAFE_KEY_CHARS.sub("_", filename)


def title_from_filename(filename: str) -> str:
    """Derive a record title from a file name by dropping its extension."""
    stem = PurePath(filename).stem
    return stem or "Untitled"
