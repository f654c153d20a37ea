"""
Tests for vector loading and exact L2 search.
"""
import asyncio

import numpy as np
import pytest

from pack_rag.errors import EmbeddingDimMismatch, IndexCorrupt, IndexMetaError
from pack_rag.vectors import VectorIndex, decode_vectors, load_vectors, normalize_query, search_l2


def make_index(rows, kind="rules"):
    data = np.asarray(rows, dtype=np.float32)
    return VectorIndex(kind=kind, dim=data.shape[1], n_rows=data.shape[0], data=data)


def test_decode_vectors():
    """Blob decodes into a read-only (n_rows, dim) float32 matrix."""
    blob = np.asarray([[1, 2, 3], [4, 5, 6]], dtype="<f4").tobytes()
    data = decode_vectors(blob, "rules/vectors.f32", dim=3, n_rows=2)

    assert data.shape == (2, 3)
    assert data.dtype == np.float32
    assert data[1, 2] == 6.0
    assert not data.flags.writeable


def test_decode_vectors_length_mismatch():
    """Wrong byte length fails with IndexCorrupt naming both sizes."""
    with pytest.raises(IndexCorrupt) as exc:
        decode_vectors(b"\x00" * 20, "cards/vectors.f32", dim=3, n_rows=2)

    err = exc.value
    assert err.code == "E_INDEX_CORRUPT"
    assert err.details == {"path": "cards/vectors.f32", "expected_bytes": 24, "actual_bytes": 20}
    assert "cards/vectors.f32" in str(err)


def test_decode_vectors_float16():
    blob = np.asarray([[0.5, -2.0]], dtype="<f2").tobytes()
    data = decode_vectors(blob, "rules/vectors.f16", dim=2, n_rows=1, dtype="float16")

    assert data.dtype == np.float32
    assert data.tolist() == [[0.5, -2.0]]


def test_decode_vectors_unknown_dtype():
    with pytest.raises(IndexMetaError):
        decode_vectors(b"", "rules/vectors.bin", dim=2, n_rows=0, dtype="int8")


def test_load_vectors(reader):
    index = asyncio.run(load_vectors(reader, "rules/vectors.f32", 3, 3, "rules"))

    assert index.kind == "rules"
    assert index.n_rows == 3
    assert index.data.shape == (3, 3)
    assert reader.reads == ["rules/vectors.f32"]


def test_load_vectors_corrupt(reader, pack_files):
    pack_files["rules/vectors.f32"] = b"\x00" * 7

    with pytest.raises(IndexCorrupt):
        asyncio.run(load_vectors(reader, "rules/vectors.f32", 3, 3, "rules"))


def test_search_l2_order_and_length():
    """Results ascend by squared distance; length is min(top_k, n_rows)."""
    index = make_index([[0, 0], [3, 0], [1, 0], [2, 0]])
    hits = search_l2(index, [0, 0], 3)

    assert [h.row_id for h in hits] == [0, 2, 3]
    assert [h.score for h in hits] == [0.0, 1.0, 4.0]

    assert len(search_l2(index, [0, 0], 10)) == 4


def test_search_l2_deterministic():
    rng = np.random.default_rng(7)
    index = make_index(rng.normal(size=(50, 8)))
    query = rng.normal(size=8)

    first = search_l2(index, query, 5)
    second = search_l2(index, query, 5)

    assert first == second
    scores = [h.score for h in first]
    assert scores == sorted(scores)


def test_search_l2_ties_break_by_row_id():
    """Equal distances order by ascending row id, also across the top_k boundary."""
    index = make_index([[1, 0], [0, 1], [-1, 0], [0, -1], [0.5, 0]])
    hits = search_l2(index, [0, 0], 3)

    assert [h.row_id for h in hits] == [4, 0, 1]

    hits = search_l2(index, [0, 0], 5)
    assert [h.row_id for h in hits] == [4, 0, 1, 2, 3]


def test_search_l2_dim_mismatch():
    index = make_index([[1, 0, 0]])

    with pytest.raises(EmbeddingDimMismatch) as exc:
        search_l2(index, [1, 0], 1)

    assert exc.value.details["expected"] == 3
    assert exc.value.details["actual"] == 2


def test_search_l2_empty_cases():
    index = make_index([[1, 0]])
    assert search_l2(index, [0, 0], 0) == []

    empty = VectorIndex(kind="cards", dim=2, n_rows=0, data=np.zeros((0, 2), dtype=np.float32))
    assert search_l2(empty, [0, 0], 4) == []


def test_normalize_query():
    vec = normalize_query([3.0, 4.0])
    assert np.allclose(vec, [0.6, 0.8])

    zero = normalize_query([0.0, 0.0])
    assert zero.tolist() == [0.0, 0.0]
