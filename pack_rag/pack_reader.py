"""
Pack accessor adapters.

The core only ever reads the pack through PackFileReader; paths are relative
to the pack root. Retry/backoff, if any, belongs to the reader implementation.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from .errors import PackFileNotFound, PackLoadError

logger = logging.getLogger(__name__)


class PackFileReader(ABC):
    """Abstract read-only access to a versioned content pack."""

    @abstractmethod
    async def read_file(self, path: str) -> str:
        """Read a UTF-8 text file (manifest, JSON and JSONL sidecars)."""
        pass

    @abstractmethod
    async def read_binary(self, path: str) -> bytes:
        """Read a binary file (packed vector blobs)."""
        pass


class LocalPackReader(PackFileReader):
    """Read a pack from a directory on the local filesystem."""

    def __init__(self, root: str):
        """
        Initialize with pack root.

        Args:
            root: Directory containing manifest.json
        """
        self.root = Path(root).resolve()
        logger.debug(f"Pack reader rooted at {self.root}")

    def _resolve(self, path: str) -> Path:
        full = (self.root / path.lstrip("/")).resolve()
        if full != self.root and self.root not in full.parents:
            raise PackLoadError(f"Path escapes pack root: {path}", {"path": path})
        return full

    async def _read(self, path: str, read):
        try:
            return await asyncio.to_thread(read, self._resolve(path))
        except FileNotFoundError as e:
            raise PackFileNotFound(f"Missing pack file: {path}", {"path": path}) from e
        except (OSError, UnicodeDecodeError) as e:
            raise PackLoadError(f"Cannot read pack file {path}: {e}", {"path": path}) from e

    async def read_file(self, path: str) -> str:
        return await self._read(path, lambda full: full.read_text(encoding="utf-8"))

    async def read_binary(self, path: str) -> bytes:
        return await self._read(path, lambda full: full.read_bytes())


class ThrowingPackReader(PackFileReader):
    """Reader that fails every read; use when no pack is configured."""

    def __init__(self, message: str):
        self.message = message

    async def read_file(self, path: str) -> str:
        raise PackLoadError(self.message, {"path": path})

    async def read_binary(self, path: str) -> bytes:
        raise PackLoadError(self.message, {"path": path})
