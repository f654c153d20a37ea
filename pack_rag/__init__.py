"""
Pack RAG Package

Retrieval-and-grounding core for question answering over a versioned
content pack (a rules corpus and a cards corpus):
1. Exact L2 search over both corpora, weighted rank fusion
2. Budget-trimmed context assembly and prompt rendering
3. Post-generation validation: rule ids, card names, alias canonicalization

Pack access and the embedding/completion backends are pluggable.
"""

__version__ = "1.0.0"

from .config import get_settings, Settings
from .errors import RagError, IndexCorrupt, EmbeddingDimMismatch, RetrievalEmpty
from .schemas import Hit, FusedHit, Chunk, ValidationSummary, AskResult
from .pack_reader import PackFileReader, LocalPackReader
from .pack import load_pack
from .pipeline import AskPipeline
from .validate import nudge

__all__ = [
    "get_settings",
    "Settings",
    "RagError",
    "IndexCorrupt",
    "EmbeddingDimMismatch",
    "RetrievalEmpty",
    "Hit",
    "FusedHit",
    "Chunk",
    "ValidationSummary",
    "AskResult",
    "PackFileReader",
    "LocalPackReader",
    "load_pack",
    "AskPipeline",
    "nudge",
]
