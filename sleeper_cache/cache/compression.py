"""
Conditional gzip compression for serialized cache values.

Values are serialized to JSON. Anything at or above the size threshold is
gzipped and base64-encoded so it can live in a text store.
"""
import base64
import gzip
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .core import CacheEntry
from .exceptions import CacheEntryCorruptError, CacheSerializationError

logger = logging.getLogger("cache.compression")

DEFAULT_THRESHOLD = 1024  # 1KB
DEFAULT_LEVEL = 6         # Balanced


@dataclass
class CompressionResult:
    """Output of CompressionCodec.compress."""
    payload: str
    compressed: bool
    original_size: int
    compressed_size: Optional[int] = None


class CompressionCodec:
    """
    Serializes values and compresses the large ones.

    Compression failures fall back to the uncompressed form and never raise.
    Decompression failures raise CacheEntryCorruptError.
    """

    def __init__(
        self,
        enabled: bool = True,
        threshold: int = DEFAULT_THRESHOLD,
        level: int = DEFAULT_LEVEL,
    ):
        self._lock = threading.Lock()
        self.enabled = enabled
        self.threshold = threshold
        self.level = level

    def update_options(
        self,
        enabled: Optional[bool] = None,
        threshold: Optional[int] = None,
        level: Optional[int] = None,
    ) -> None:
        """Update compression options. Unspecified options are unchanged."""
        with self._lock:
            if enabled is not None:
                self.enabled = enabled
            if threshold is not None:
                self.threshold = threshold
            if level is not None:
                if not 1 <= level <= 9:
                    raise ValueError(f"Compression level must be 1-9, got {level}")
                self.level = level
        logger.info(
            f"Updated compression options: enabled={self.enabled} "
            f"threshold={self.threshold} level={self.level}"
        )

    def _should_compress(self, size: int) -> bool:
        return self.enabled and size >= self.threshold

    def compress(self, value: Any) -> CompressionResult:
        """
        Serialize a value, compressing it if it meets the threshold.

        Raises:
            CacheSerializationError: If the value is not JSON serializable
        """
        try:
            json_string = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheSerializationError(f"Value is not serializable: {e}") from e

        raw = json_string.encode("utf-8")
        original_size = len(raw)

        if not self._should_compress(original_size):
            return CompressionResult(
                payload=json_string,
                compressed=False,
                original_size=original_size,
            )

        try:
            compressed = gzip.compress(raw, compresslevel=self.level)
            payload = base64.b64encode(compressed).decode("ascii")
        except Exception as e:
            logger.warning(f"Compression failed, storing uncompressed: {e}")
            return CompressionResult(
                payload=json_string,
                compressed=False,
                original_size=original_size,
            )

        compressed_size = len(payload)
        logger.debug(
            f"Data compressed {original_size} -> {compressed_size} bytes "
            f"({compressed_size / original_size * 100:.1f}%)"
        )
        return CompressionResult(
            payload=payload,
            compressed=True,
            original_size=original_size,
            compressed_size=compressed_size,
        )

    def decompress(self, payload: str, was_compressed: bool, key: str = "") -> Any:
        """
        Inverse of compress.

        Raises:
            CacheEntryCorruptError: If the payload cannot be decoded
        """
        try:
            if not was_compressed:
                return json.loads(payload)
            raw = gzip.decompress(base64.b64decode(payload, validate=True))
            return json.loads(raw.decode("utf-8"))
        except Exception as e:
            logger.error(f"Decompression failed for {key or '<unknown>'}: {e}")
            raise CacheEntryCorruptError(key, str(e)) from e

    def create_entry(self, result: CompressionResult) -> CacheEntry:
        """Wrap a compression result in a CacheEntry."""
        return CacheEntry(
            payload=result.payload,
            compressed=result.compressed,
            original_size=result.original_size,
            compressed_size=result.compressed_size,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get compression configuration."""
        return {
            "enabled": self.enabled,
            "threshold": self.threshold,
            "level": self.level,
        }
