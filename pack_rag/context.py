"""
Context assembly: budget-trimmed excerpt block and the prompt template.

Input hits are already ranked best-first, so trimming drops from the tail.
"""
import logging
import math
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import DEFAULT_SYSTEM_INSTRUCTION
from .errors import RetrievalEmpty
from .schemas import AssembledContext, Chunk, FusedHit, SourceType

logger = logging.getLogger(__name__)

TokenEstimator = Callable[[str], int]

DEFAULT_TOKEN_BUDGET = 800
DEFAULT_CHARS_PER_TOKEN = 4

SECTION_HEADERS = {
    "rules": "Rules excerpts (doc_id for citation):",
    "cards": "Cards excerpts (doc_id for citation):",
}


def estimate_tokens(text: str, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Approximate token count: ceil(chars / chars_per_token)."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def char_estimator(chars_per_token: int) -> TokenEstimator:
    return lambda text: estimate_tokens(text, chars_per_token)


def safe_truncate_text(text: str, max_chars: int) -> str:
    """
    Truncate text without cutting mid-word when a break is close by.

    Args:
        text: Text to truncate
        max_chars: Maximum characters

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    if max_chars <= 0:
        return ""

    truncated = text[:max_chars]

    # Prefer a newline, then a space, in the last 20%
    last_newline = truncated.rfind('\n')
    if last_newline > max_chars * 0.8:
        truncated = truncated[:last_newline]
    else:
        last_space = truncated.rfind(' ')
        if last_space > max_chars * 0.8:
            truncated = truncated[:last_space]

    return truncated.rstrip()


def render_chunk(chunk: Chunk) -> str:
    """Render one excerpt line: [doc_id] title: text."""
    text = chunk.text or ""
    if chunk.title:
        line = f"[{chunk.doc_id}] {chunk.title}: {text}"
    else:
        line = f"[{chunk.doc_id}] {text}"
    return line.strip()


def build_context_block(items: Sequence[Tuple[SourceType, Chunk]]) -> str:
    """
    Render selected chunks grouped by corpus, rank order kept within a group.

    Args:
        items: (source_type, chunk) pairs, best first

    Returns:
        Context block ("" when items is empty)
    """
    parts: List[str] = []
    for source_type in ("rules", "cards"):
        group = [chunk for kind, chunk in items if kind == source_type]
        if not group:
            continue
        parts.append(SECTION_HEADERS[source_type])
        parts.extend(render_chunk(c) for c in group)
    return "\n\n".join(parts)


def build_prompt(
    context_block: str,
    question: str,
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
) -> str:
    """Build the full prompt: instruction + context + verbatim question."""
    return f"{system_instruction}\n\n{context_block}\n\nQuestion: {question}\n\nAnswer:"


def _fit_single(
    source_type: SourceType,
    chunk: Chunk,
    token_budget: int,
    estimate: TokenEstimator,
) -> Optional[Tuple[SourceType, Chunk]]:
    """Longest word-aware prefix of the best chunk whose block fits the budget."""
    text = chunk.text or ""

    def _fits(candidate: str) -> bool:
        trimmed = chunk.model_copy(update={"text": candidate or None})
        return estimate(build_context_block([(source_type, trimmed)])) <= token_budget

    if not _fits(""):
        return None

    # Binary search on the character limit
    best = ""
    lo, hi = 1, len(text)
    while lo <= hi:
        mid = (lo + hi) // 2
        candidate = safe_truncate_text(text, mid)
        if _fits(candidate):
            best = candidate
            lo = mid + 1
        else:
            hi = mid - 1
    return (source_type, chunk.model_copy(update={"text": best or None}))


def trim_to_fit(
    ranked: Sequence[Tuple[SourceType, Chunk]],
    question: str,
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    estimate: Optional[TokenEstimator] = None,
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
) -> AssembledContext:
    """
    Keep ranked chunks while the context block stays within the token budget.

    Stops at the first chunk that would overflow. If even the best chunk
    overflows alone, its text is cut to fit.

    Args:
        ranked: (source_type, chunk) pairs, best first
        question: User question (rendered verbatim)
        token_budget: Max estimated tokens for the context block
        estimate: Token estimator (default chars/4)
        system_instruction: Instruction line for the prompt

    Returns:
        AssembledContext with prompt and context text
    """
    estimate = estimate or char_estimator(DEFAULT_CHARS_PER_TOKEN)
    selected: List[Tuple[SourceType, Chunk]] = []

    for item in ranked:
        candidate = selected + [item]
        if estimate(build_context_block(candidate)) <= token_budget:
            selected = candidate
            continue
        if not selected:
            fitted = _fit_single(item[0], item[1], token_budget, estimate)
            if fitted is not None:
                logger.info(f"Truncated top chunk {item[1].doc_id} to fit {token_budget} tokens")
                selected = [fitted]
        break

    dropped = len(ranked) - len(selected)
    if dropped:
        logger.debug(f"Dropped {dropped} low-rank chunks over the {token_budget}-token budget")

    context_text = build_context_block(selected)
    if not context_text.strip():
        raise RetrievalEmpty("Context block is empty after trimming", {"candidates": len(ranked)})

    return AssembledContext(
        prompt=build_prompt(context_text, question, system_instruction),
        context_text=context_text,
        doc_ids=[chunk.doc_id for _, chunk in selected],
    )


def assemble_context(
    fused: Sequence[FusedHit],
    rules_chunks: Dict[int, Chunk],
    cards_chunks: Dict[int, Chunk],
    question: str,
    token_budget: int = DEFAULT_TOKEN_BUDGET,
    estimate: Optional[TokenEstimator] = None,
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION,
) -> AssembledContext:
    """
    Resolve fused hits to chunks (skipping gaps) and trim to the budget.

    Raises:
        RetrievalEmpty: No fused hits, or nothing left after trimming
    """
    if not fused:
        raise RetrievalEmpty("No retrieval hits to ground an answer on")

    ranked: List[Tuple[SourceType, Chunk]] = []
    for hit in fused:
        chunks = rules_chunks if hit.source_type == "rules" else cards_chunks
        chunk = chunks.get(hit.row_id)
        if chunk is None:
            logger.warning(f"No chunk for {hit.doc_id}; skipping")
            continue
        if not chunk.doc_id:
            chunk = chunk.model_copy(update={"doc_id": hit.doc_id})
        ranked.append((hit.source_type, chunk))

    return trim_to_fit(ranked, question, token_budget, estimate, system_instruction)
