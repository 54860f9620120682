"""
Storage package for savevault.

Provides content hashing, zstd compression, content-addressed blobs and the
transactional SQLite version store.
"""

from .hasher import compute_content_hash, hash_file
from .compression import Compressor, CompressionResult, CODEC_ZSTD, CODEC_IDENTITY
from .blobs import BlobStore
from .snapshot import SnapshotReader
from .store import SqliteVersionStore, VersionStore
from .utils import format_size

__all__ = [
    "compute_content_hash",
    "hash_file",
    "Compressor",
    "CompressionResult",
    "CODEC_ZSTD",
    "CODEC_IDENTITY",
    "BlobStore",
    "SnapshotReader",
    "SqliteVersionStore",
    "VersionStore",
    "format_size",
]
