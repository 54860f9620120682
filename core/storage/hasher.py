"""
Content hashing for save payloads.

Fingerprints depend on bytes only, never on file metadata, so two identical
saves written at different moments hash identically.
"""

import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "sha256"
_CHUNK_SIZE = 8192


def compute_content_hash(data: bytes) -> str:
    """Return the hex SHA-256 digest of a payload."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    """
    Stream a file through SHA-256.

    Args:
        path: File to hash

    Returns:
        64-character hex digest

    Raises:
        OSError: if the file cannot be opened or read
    """
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)

    digest = hasher.hexdigest()
    logger.debug(f"Hashed file {path}: {digest[:8]}")
    return digest
