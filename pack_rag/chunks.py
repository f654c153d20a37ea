"""
Chunk stores: random access to pack text by integer row id.

A missing or unreadable row is a recoverable gap: it is logged and left out
of the result, the rest of the batch still resolves.
"""
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .pack_reader import PackFileReader
from .schemas import Chunk

logger = logging.getLogger(__name__)


class ChunkStore(ABC):
    """Abstract random-access chunk lookup for one corpus."""

    @abstractmethod
    def resolve(self, row_id: int) -> Optional[Chunk]:
        """
        Look up the chunk stored at row_id.

        Args:
            row_id: Row id from the vector index

        Returns:
            Chunk, or None when the row is absent or unreadable
        """
        pass


class JsonlChunkStore(ChunkStore):
    """Chunks from chunks.jsonl: the n-th non-blank line is row n."""

    def __init__(self, lines: List[str], source: str = "<memory>"):
        self.lines = lines
        self.source = source

    @classmethod
    def from_text(cls, raw: str, source: str = "<memory>") -> "JsonlChunkStore":
        return cls([line for line in raw.split("\n") if line.strip()], source)

    def __len__(self) -> int:
        return len(self.lines)

    def resolve(self, row_id: int) -> Optional[Chunk]:
        if row_id < 0 or row_id >= len(self.lines):
            logger.warning(f"Chunk row {row_id} out of range in {self.source} ({len(self.lines)} rows)")
            return None
        try:
            raw = json.loads(self.lines[row_id])
            return Chunk(
                doc_id=raw.get("doc_id", ""),
                title=raw.get("title"),
                text=raw.get("text"),
            )
        except (json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning(f"Unreadable chunk row {row_id} in {self.source}: {e}")
            return None


class DictChunkStore(ChunkStore):
    """In-memory store keyed by row id."""

    def __init__(self, chunks: Dict[int, Chunk]):
        self.chunks = chunks

    def resolve(self, row_id: int) -> Optional[Chunk]:
        chunk = self.chunks.get(row_id)
        if chunk is None:
            logger.warning(f"Chunk row {row_id} missing")
        return chunk


async def load_chunk_store(reader: PackFileReader, chunks_path: str) -> JsonlChunkStore:
    """Read a corpus' chunks.jsonl into a JsonlChunkStore."""
    raw = await reader.read_file(chunks_path)
    store = JsonlChunkStore.from_text(raw, chunks_path)
    logger.debug(f"Loaded chunk store {chunks_path} ({len(store)} rows)")
    return store


def resolve_chunks(store: ChunkStore, row_ids: Iterable[int]) -> Dict[int, Chunk]:
    """
    Resolve row ids to chunks, skipping gaps.

    Args:
        store: Chunk store for one corpus
        row_ids: Requested row ids

    Returns:
        Map row_id -> Chunk for every row that resolved
    """
    out: Dict[int, Chunk] = {}
    for row_id in row_ids:
        if row_id in out:
            continue
        chunk = store.resolve(row_id)
        if chunk is not None:
            out[row_id] = chunk
    return out


async def resolve_chunks_from_pack(
    reader: PackFileReader,
    chunks_path: str,
    row_ids: List[int],
) -> Dict[int, Chunk]:
    """Load the corpus chunk store and resolve row_ids against it."""
    if not row_ids:
        return {}
    store = await load_chunk_store(reader, chunks_path)
    return resolve_chunks(store, row_ids)
