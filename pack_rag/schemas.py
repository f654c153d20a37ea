"""
Pydantic schemas for the pack RAG engine.

All per-question entities (hits, chunks, lookups, summaries) are created at
the start of a question/answer cycle and discarded at its end.
"""
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SourceType = Literal["rules", "cards"]


class Hit(BaseModel):
    """Nearest-neighbor hit: row id and squared L2 distance (lower = closer)."""

    model_config = ConfigDict(frozen=True)

    row_id: int
    score: float


class FusedHit(BaseModel):
    """Hit annotated with its corpus and weighted similarity."""

    model_config = ConfigDict(frozen=True)

    row_id: int
    score: float
    source_type: SourceType
    doc_id: str
    norm_score: float


class Chunk(BaseModel):
    """Retrievable unit of pack text, resolved by row id."""

    doc_id: str
    title: Optional[str] = None
    text: Optional[str] = None


class NameLookupRow(BaseModel):
    """One canonical card entity from name_lookup.jsonl."""

    doc_id: str
    name: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    norm: str
    aliases_norm: List[str] = Field(default_factory=list)

    @property
    def canonical(self) -> str:
        return self.name or self.norm


class CardMention(BaseModel):
    raw: str
    canonical: Optional[str] = None
    doc_id: Optional[str] = None
    status: Literal["in_pack", "unknown"]


class RuleMention(BaseModel):
    raw: str
    status: Literal["valid", "invalid"]


class ValidationStats(BaseModel):
    card_hit_rate: float
    rule_hit_rate: float
    unknown_card_count: int
    invalid_rule_count: int


class ValidationSummary(BaseModel):
    """Per-mention records plus hit-rate statistics for one answer."""

    cards: List[CardMention] = Field(default_factory=list)
    rules: List[RuleMention] = Field(default_factory=list)
    stats: ValidationStats


class NudgeResult(BaseModel):
    nudged_text: str
    summary: ValidationSummary


class IndexMeta(BaseModel):
    """index_meta.json: authoritative retrieval contract for one corpus."""

    model_config = ConfigDict(extra="allow")

    embed_model_id: str
    dim: int = Field(..., gt=0)
    metric: Literal["l2", "cosine"] = "l2"
    normalize: bool = False
    dtype: Literal["float32", "float16"] = "float32"
    max_rows: Optional[int] = None
    doc_count: Optional[int] = None


class CorpusPaths(BaseModel):
    """Resolved locations and dimensions of one corpus inside the pack."""

    model_config = ConfigDict(frozen=True)

    kind: SourceType
    index_meta: IndexMeta
    n_rows: int
    vectors_path: str
    chunks_path: str


class PackState(BaseModel):
    """Resolved pack after a successful load. Immutable for the cycle."""

    model_config = ConfigDict(frozen=True)

    manifest: Dict
    rules: CorpusPaths
    cards: CorpusPaths
    rule_ids_path: str
    name_lookup_path: str
    rag_config: Optional[Dict] = None

    def corpus(self, kind: SourceType) -> CorpusPaths:
        return self.rules if kind == "rules" else self.cards


class CompletionParams(BaseModel):
    """Generation parameters handed to the completion backend."""

    n_predict: int = 512
    temperature: float = 0.3
    top_p: float = 1.0
    top_k: int = 40
    penalty_repeat: float = 1.0

    @classmethod
    def from_settings(cls, settings) -> "CompletionParams":
        return cls(
            n_predict=settings.N_PREDICT,
            temperature=settings.TEMPERATURE,
            top_p=settings.TOP_P,
            top_k=settings.TOP_K,
            penalty_repeat=settings.PENALTY_REPEAT,
        )


class AssembledContext(BaseModel):
    """Prompt plus the context block it was built from."""

    prompt: str
    context_text: str
    doc_ids: List[str] = Field(default_factory=list)


class AskResult(BaseModel):
    """Complete question/answer cycle result."""

    question: str
    raw: str
    nudged: str
    summary: ValidationSummary
    hits: List[FusedHit] = Field(default_factory=list)
    context_text: str = ""
    prompt: str = ""

    # Timing info (milliseconds)
    timing_ms: dict = Field(default_factory=dict)
