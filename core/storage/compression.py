"""
Reversible payload compression.

Payloads are compressed with zstd. The codec tag recorded next to every blob
selects the decoder; the compression level is never part of the format, so a
blob written at level 19 decodes with a compressor configured for level 1.
"""

import logging
import time
from dataclasses import dataclass

import zstandard as zstd

from ..errors import ConfigurationError
from .utils import format_size

logger = logging.getLogger(__name__)

CODEC_ZSTD = "zstd"
CODEC_IDENTITY = "identity"
SUPPORTED_CODECS = {CODEC_ZSTD, CODEC_IDENTITY}

MIN_LEVEL = 1
MAX_LEVEL = 22


@dataclass(frozen=True)
class CompressionResult:
    """Compressed bytes plus the statistics of one compression run"""
    data: bytes
    codec: str
    size_original: int
    size_compressed: int
    elapsed_ms: float = 0.0

    @property
    def compression_ratio(self) -> float:
        if self.size_original == 0:
            return 1.0
        return self.size_compressed / self.size_original

    @property
    def space_saved_percent(self) -> float:
        if self.size_original == 0:
            return 0.0
        return (self.size_original - self.size_compressed) / self.size_original * 100.0


class Compressor:
    """
    zstd compressor with an optional passthrough mode.

    Instances are safe to share between worker threads: a fresh zstd context
    is created per call.
    """

    def __init__(self, level: int = 3, enabled: bool = True):
        if not MIN_LEVEL <= level <= MAX_LEVEL:
            raise ConfigurationError(
                f"Compression level must be between {MIN_LEVEL} and {MAX_LEVEL}, got {level}"
            )
        self.level = level
        self.enabled = enabled

    @property
    def codec(self) -> str:
        """Codec tag written for new blobs"""
        return CODEC_ZSTD if self.enabled else CODEC_IDENTITY

    def compress(self, data: bytes) -> CompressionResult:
        """
        Compress a payload.

        Args:
            data: Uncompressed payload (may be empty)

        Returns:
            CompressionResult tagged with the codec used
        """
        start = time.perf_counter()

        if self.enabled:
            compressed = zstd.ZstdCompressor(level=self.level).compress(data)
        else:
            compressed = bytes(data)

        elapsed_ms = (time.perf_counter() - start) * 1000
        result = CompressionResult(
            data=compressed,
            codec=self.codec,
            size_original=len(data),
            size_compressed=len(compressed),
            elapsed_ms=elapsed_ms
        )

        logger.debug(
            f"Compressed {format_size(result.size_original)} -> {format_size(result.size_compressed)} "
            f"({result.space_saved_percent:.0f}% saved, {self.codec}) in {elapsed_ms:.1f}ms"
        )
        return result

    def decompress(self, data: bytes, codec: str = CODEC_ZSTD) -> bytes:
        """
        Decompress a blob written with `codec`.

        Raises:
            ValueError: unknown codec
            zstd.ZstdError: malformed zstd stream
        """
        if codec == CODEC_IDENTITY:
            return bytes(data)
        if codec != CODEC_ZSTD:
            raise ValueError(f"Unknown codec: {codec}")

        # decompressobj copes with frames that omit the content size
        return zstd.ZstdDecompressor().decompressobj().decompress(data)
