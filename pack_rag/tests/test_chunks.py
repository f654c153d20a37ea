"""
Tests for chunk stores and row-id resolution.
"""
import asyncio

from pack_rag.chunks import (
    DictChunkStore,
    JsonlChunkStore,
    load_chunk_store,
    resolve_chunks,
    resolve_chunks_from_pack,
)
from pack_rag.schemas import Chunk


def test_jsonl_chunk_store_resolve():
    raw = '{"doc_id": "a", "title": "A", "text": "first"}\n\n{"doc_id": "b", "text": "second"}\n'
    store = JsonlChunkStore.from_text(raw)

    assert len(store) == 2
    assert store.resolve(0) == Chunk(doc_id="a", title="A", text="first")
    # Blank lines do not take a row id
    assert store.resolve(1).doc_id == "b"
    assert store.resolve(1).title is None


def test_jsonl_chunk_store_gaps():
    store = JsonlChunkStore.from_text('not json\n["a", "list"]\n{"text": "no doc id"}\n')

    assert store.resolve(0) is None
    assert store.resolve(1) is None
    assert store.resolve(2).doc_id == ""
    assert store.resolve(3) is None
    assert store.resolve(-1) is None


def test_resolve_chunks_skips_missing_rows():
    """A missing row is absent from the result; the rest still resolve."""
    store = DictChunkStore({0: Chunk(doc_id="a"), 2: Chunk(doc_id="c")})

    chunks = resolve_chunks(store, [2, 1, 0, 2])

    assert list(chunks) == [2, 0]
    assert chunks[0].doc_id == "a"


def test_load_chunk_store(reader):
    store = asyncio.run(load_chunk_store(reader, "cards/chunks.jsonl"))

    assert len(store) == 2
    assert store.resolve(1).title == "Ornithopter"
    assert store.source == "cards/chunks.jsonl"


def test_resolve_chunks_from_pack(reader):
    chunks = asyncio.run(resolve_chunks_from_pack(reader, "rules/chunks.jsonl", [1, 5]))

    assert list(chunks) == [1]
    assert chunks[1].doc_id == "rule-613.1"


def test_resolve_chunks_from_pack_no_rows(reader):
    """Nothing requested means nothing read."""
    assert asyncio.run(resolve_chunks_from_pack(reader, "rules/chunks.jsonl", [])) == {}
    assert reader.reads == []
