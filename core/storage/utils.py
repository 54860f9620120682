"""
Storage utilities shared by the store, the engine and the CLI.
"""

import fnmatch
from typing import Iterable

_UNITS = ["B", "KB", "MB", "GB"]


def format_size(num_bytes: int) -> str:
    """
    Format a byte count as a human-readable size.

    Example:
        >>> format_size(1536)
        '1.50 KB'
    """
    size = float(num_bytes)
    unit_index = 0

    while size >= 1024.0 and unit_index < len(_UNITS) - 1:
        size /= 1024.0
        unit_index += 1

    if unit_index == 0:
        return f"{int(size)} {_UNITS[0]}"
    return f"{size:.2f} {_UNITS[unit_index]}"


def blob_ref_for(content_hash: str, codec: str) -> str:
    """Content-addressed blob reference: `<hash[:2]>/<hash>.<codec>`."""
    return f"{content_hash[:2]}/{content_hash}.{codec}"


def is_ignored(name: str, patterns: Iterable[str]) -> bool:
    """True if a file name matches any ignore glob (editor swap files, temp files)."""
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)
