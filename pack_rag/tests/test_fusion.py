"""
Tests for weighted rank fusion.
"""
import numpy as np

from pack_rag.fusion import merge_hits
from pack_rag.schemas import Hit
from pack_rag.vectors import VectorIndex, search_l2


def test_merge_hits_tie_rules_first():
    """Equal weighted similarity keeps rules ahead of cards."""
    fused = merge_hits([Hit(row_id=1, score=0.5)], [Hit(row_id=2, score=0.5)], 0.5, 0.5)

    assert [h.doc_id for h in fused] == ["rules:1", "cards:2"]
    assert fused[0].norm_score == fused[1].norm_score


def test_merge_hits_default_weights():
    """Single-hit lists normalize to sim 0; rules still lead on ties."""
    fused = merge_hits([Hit(row_id=1, score=0.5)], [Hit(row_id=2, score=0.5)])

    assert [h.source_type for h in fused] == ["rules", "cards"]
    assert [h.row_id for h in fused] == [1, 2]


def test_merge_hits_range_invariant():
    rules = [Hit(row_id=i, score=s) for i, s in enumerate([0.1, 0.4, 2.0, 2.0])]
    cards = [Hit(row_id=i, score=s) for i, s in enumerate([0.0, 7.5, 30.0])]

    fused = merge_hits(rules, cards, 0.6, 0.4)

    assert len(fused) == 7
    for hit in fused:
        weight = 0.6 if hit.source_type == "rules" else 0.4
        assert 0.0 <= hit.norm_score <= weight
    scores = [h.norm_score for h in fused]
    assert scores == sorted(scores, reverse=True)


def test_merge_hits_normalization():
    rules = [Hit(row_id=3, score=1.0), Hit(row_id=9, score=4.0)]
    cards = [Hit(row_id=5, score=0.0), Hit(row_id=6, score=2.0)]

    fused = merge_hits(rules, cards)
    by_doc = {h.doc_id: h for h in fused}

    assert abs(by_doc["rules:3"].norm_score - 0.6 * 0.75) < 1e-9
    assert by_doc["rules:9"].norm_score == 0.0
    assert abs(by_doc["cards:5"].norm_score - 0.4) < 1e-9
    assert by_doc["cards:6"].norm_score == 0.0
    # Raw distance is carried through
    assert by_doc["rules:9"].score == 4.0
    assert fused[0].doc_id == "rules:3"


def test_merge_hits_zero_max_score():
    """All-zero distances are perfect matches (norm 0, sim 1)."""
    fused = merge_hits([Hit(row_id=0, score=0.0), Hit(row_id=1, score=0.0)], [])

    assert [h.norm_score for h in fused] == [0.6, 0.6]
    assert [h.row_id for h in fused] == [0, 1]


def test_merge_hits_empty():
    assert merge_hits([], []) == []

    fused = merge_hits([], [Hit(row_id=4, score=1.0)])
    assert [h.doc_id for h in fused] == ["cards:4"]


def test_merge_hits_custom_weights():
    rules = [Hit(row_id=0, score=0.0), Hit(row_id=1, score=1.0)]
    cards = [Hit(row_id=0, score=0.0), Hit(row_id=1, score=1.0)]

    fused = merge_hits(rules, cards, rules_weight=0.2, cards_weight=0.8)

    assert fused[0].doc_id == "cards:0"
    assert fused[1].doc_id == "rules:0"


def test_merge_hits_non_finite_distance():
    """An overflowed or NaN row scores as similarity 0 and stays in range."""
    data = np.array([[0, 0], [np.inf, 0], [1, 0], [np.nan, 0]], dtype=np.float32)
    index = VectorIndex(kind="rules", dim=2, n_rows=4, data=data)
    rules = search_l2(index, [0.0, 0.0], 4)
    cards = [Hit(row_id=0, score=float("inf")), Hit(row_id=1, score=2.0)]

    fused = merge_hits(rules, cards, 0.6, 0.4)

    assert [(h.doc_id, h.norm_score) for h in fused] == [
        ("rules:0", 0.6),
        ("rules:2", 0.0),
        ("rules:1", 0.0),
        ("rules:3", 0.0),
        ("cards:0", 0.0),
        ("cards:1", 0.0),
    ]
    for hit in fused:
        weight = 0.6 if hit.source_type == "rules" else 0.4
        assert 0.0 <= hit.norm_score <= weight
