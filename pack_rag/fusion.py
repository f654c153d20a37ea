"""
Rank fusion: merge rules and cards nearest-neighbor hits into one ranking.
"""
import math
from typing import List, Sequence

from .schemas import FusedHit, Hit, SourceType

DEFAULT_RULES_WEIGHT = 0.6
DEFAULT_CARDS_WEIGHT = 0.4


def _annotate(hits: Sequence[Hit], source_type: SourceType, weight: float) -> List[FusedHit]:
    """
    Normalize one list by its max distance and turn it into weighted similarity.

    norm = score / max_score (0 when max_score == 0), sim = 1 - norm,
    norm_score = weight * sim. max_score is taken over finite scores only;
    a non-finite score gets norm 1 (similarity 0).
    """
    max_score = max((h.score for h in hits if math.isfinite(h.score)), default=0.0)
    out = []
    for h in hits:
        if not math.isfinite(h.score):
            norm = 1.0
        elif max_score > 0:
            norm = h.score / max_score
        else:
            norm = 0.0
        out.append(FusedHit(
            row_id=h.row_id,
            score=h.score,
            source_type=source_type,
            doc_id=f"{source_type}:{h.row_id}",
            norm_score=weight * (1.0 - norm),
        ))
    return out


def merge_hits(
    rules_hits: Sequence[Hit],
    cards_hits: Sequence[Hit],
    rules_weight: float = DEFAULT_RULES_WEIGHT,
    cards_weight: float = DEFAULT_CARDS_WEIGHT,
) -> List[FusedHit]:
    """
    Weighted fusion of two independently scored hit lists.

    Args:
        rules_hits: Hits from the rules corpus, best first
        cards_hits: Hits from the cards corpus, best first
        rules_weight: Weight applied to rules similarity
        cards_weight: Weight applied to cards similarity

    Returns:
        Fused hits sorted by descending norm_score. Equal scores keep
        within-list order with rules ahead of cards. Empty when both
        inputs are empty.
    """
    fused = _annotate(rules_hits, "rules", rules_weight) + _annotate(cards_hits, "cards", cards_weight)
    # sorted() is stable, so ties keep concatenation order
    return sorted(fused, key=lambda h: -h.norm_score)
