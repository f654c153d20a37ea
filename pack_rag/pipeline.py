"""
Pipeline orchestrator for pack question answering.

embed -> (load vectors + search) per corpus -> fuse -> (resolve chunks) per
corpus -> assemble context -> complete -> validate and nudge.

The two corpora are independent until fusion and until prompt assembly, so
their loads run concurrently. Every call owns its own indices, hit lists and
lookup tables; nothing is shared across questions.
"""
import asyncio
import logging
import time
from typing import Dict, List, Tuple

import numpy as np
from pydantic import BaseModel

from .chunks import resolve_chunks_from_pack
from .context import assemble_context, char_estimator
from .embedders import ModelBackend
from .errors import EmbeddingDimMismatch
from .fusion import merge_hits
from .pack import load_pack
from .pack_reader import PackFileReader
from .schemas import (
    AskResult,
    AssembledContext,
    Chunk,
    CompletionParams,
    CorpusPaths,
    FusedHit,
    Hit,
    PackState,
)
from .validate import nudge_response
from .vectors import load_vectors, normalize_query, search_l2

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class Retrieval(BaseModel):
    """Everything retrieved for one question, before completion."""

    fused: List[FusedHit]
    rules_chunks: Dict[int, Chunk]
    cards_chunks: Dict[int, Chunk]
    context: AssembledContext
    timing_ms: dict = {}


class AskPipeline:
    """Main pipeline coordinating all stages."""

    def __init__(
        self,
        reader: PackFileReader,
        pack_state: PackState,
        backend: ModelBackend,
        settings,
    ):
        """
        Initialize pipeline.

        Args:
            reader: Pack reader
            pack_state: Loaded pack (see pack.load_pack)
            backend: Embedding/completion backend, owned by the caller
            settings: Configuration settings (with pack overrides applied)
        """
        self.reader = reader
        self.pack_state = pack_state
        self.backend = backend
        self.settings = settings

        rules_dim = pack_state.rules.index_meta.dim
        cards_dim = pack_state.cards.index_meta.dim
        if rules_dim != cards_dim:
            raise EmbeddingDimMismatch(rules_dim, cards_dim, where="cards index")

        logger.info(f"Pipeline initialized (backend={type(backend).__name__}, dim={rules_dim})")

    async def _embed_query(self, question: str) -> np.ndarray:
        vec = await asyncio.to_thread(self.backend.embed, question)
        vec = np.asarray(vec, dtype=np.float32).ravel()
        dim = self.pack_state.rules.index_meta.dim
        if vec.shape[0] != dim:
            raise EmbeddingDimMismatch(dim, int(vec.shape[0]))
        if self.pack_state.rules.index_meta.normalize:
            vec = normalize_query(vec)
        return vec

    async def _search_corpus(self, corpus: CorpusPaths, query: np.ndarray, top_k: int) -> List[Hit]:
        index = await load_vectors(
            self.reader,
            corpus.vectors_path,
            corpus.index_meta.dim,
            corpus.n_rows,
            corpus.kind,
            corpus.index_meta.dtype,
        )
        # CPU-bound full scan, one worker thread per corpus
        return await asyncio.to_thread(search_l2, index, query, top_k)

    async def retrieve(self, question: str) -> Retrieval:
        """
        Retrieve and assemble grounding context for a question.

        Args:
            question: User question

        Returns:
            Retrieval with fused hits, resolved chunks and the prompt

        Raises:
            EmbeddingDimMismatch: Query and index dimensions differ
            IndexCorrupt: A vector blob does not match the manifest
            RetrievalEmpty: Nothing to ground an answer on
        """
        timing: Dict[str, int] = {}
        settings = self.settings

        # Stage 0: Embed
        start = time.time()
        query = await self._embed_query(question)
        timing['embed_ms'] = _elapsed_ms(start)
        logger.info(f"[Stage 0] Embedded question ({timing['embed_ms']}ms)")

        # Stage 1: Vector search, both corpora in parallel
        start = time.time()
        rules_hits, cards_hits = await asyncio.gather(
            self._search_corpus(self.pack_state.rules, query, settings.TOP_K_RULES),
            self._search_corpus(self.pack_state.cards, query, settings.TOP_K_CARDS),
        )
        timing['search_ms'] = _elapsed_ms(start)
        logger.info(
            f"[Stage 1] Search: {len(rules_hits)} rules, {len(cards_hits)} cards ({timing['search_ms']}ms)"
        )

        # Stage 2: Fuse
        fused = merge_hits(rules_hits, cards_hits, settings.RULES_WEIGHT, settings.CARDS_WEIGHT)
        fused = fused[:settings.TOP_K_MERGE]
        logger.info(f"[Stage 2] Fused to {len(fused)} hits")

        # Stage 3: Resolve chunks, both corpora in parallel
        start = time.time()
        rules_rows = [h.row_id for h in fused if h.source_type == "rules"]
        cards_rows = [h.row_id for h in fused if h.source_type == "cards"]
        rules_chunks, cards_chunks = await asyncio.gather(
            resolve_chunks_from_pack(self.reader, self.pack_state.rules.chunks_path, rules_rows),
            resolve_chunks_from_pack(self.reader, self.pack_state.cards.chunks_path, cards_rows),
        )
        timing['chunks_ms'] = _elapsed_ms(start)

        # Stage 4: Assemble context
        context = assemble_context(
            fused,
            rules_chunks,
            cards_chunks,
            question,
            token_budget=settings.CONTEXT_TOKEN_BUDGET,
            estimate=char_estimator(settings.CHARS_PER_TOKEN_EST),
            system_instruction=settings.SYSTEM_INSTRUCTION,
        )
        logger.info(
            f"[Stage 3] Context: {len(context.doc_ids)} excerpts, {len(context.context_text)} chars "
            f"({timing['chunks_ms']}ms)"
        )

        return Retrieval(
            fused=fused,
            rules_chunks=rules_chunks,
            cards_chunks=cards_chunks,
            context=context,
            timing_ms=timing,
        )

    async def ask(self, question: str) -> AskResult:
        """
        Execute the full question/answer cycle.

        Args:
            question: User question

        Returns:
            AskResult with raw and nudged answer plus validation summary
        """
        start_total = time.time()
        retrieval = await self.retrieve(question)
        timing = dict(retrieval.timing_ms)

        # Stage 5: Completion
        start = time.time()
        params = CompletionParams.from_settings(self.settings)
        raw = await asyncio.to_thread(self.backend.complete, retrieval.context.prompt, params)
        timing['answer_ms'] = _elapsed_ms(start)
        logger.info(f"[Stage 4] Answer generated ({timing['answer_ms']}ms)")

        # Stage 6: Validate + nudge
        start = time.time()
        nudged = await nudge_response(
            raw,
            self.pack_state,
            self.reader,
            flag_unknown_words=self.settings.FLAG_UNKNOWN_WORDS,
        )
        timing['validate_ms'] = _elapsed_ms(start)
        timing['total_ms'] = _elapsed_ms(start_total)
        stats = nudged.summary.stats
        logger.info(
            f"[Stage 5] Validated: card_hit_rate={stats.card_hit_rate:.2f} "
            f"rule_hit_rate={stats.rule_hit_rate:.2f} ({timing['validate_ms']}ms)"
        )
        logger.info(f"Pipeline complete (total={timing['total_ms']}ms)")

        return AskResult(
            question=question,
            raw=raw,
            nudged=nudged.nudged_text,
            summary=nudged.summary,
            hits=retrieval.fused,
            context_text=retrieval.context.context_text,
            prompt=retrieval.context.prompt,
            timing_ms=timing,
        )

    def run(self, question: str) -> AskResult:
        """Synchronous wrapper around ask()."""
        return asyncio.run(self.ask(question))

    def run_retrieval(self, question: str) -> Retrieval:
        """Synchronous wrapper around retrieve()."""
        return asyncio.run(self.retrieve(question))


async def open_pipeline(
    reader: PackFileReader,
    settings,
    backend: ModelBackend,
) -> Tuple[AskPipeline, PackState]:
    """Load the pack and build a pipeline with the pack's config overrides applied."""
    pack_state, effective = await load_pack(reader, settings)
    return AskPipeline(reader, pack_state, backend, effective), pack_state
