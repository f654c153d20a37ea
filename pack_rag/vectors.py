"""
Vector index loading and exact L2 nearest-neighbor search.

Blobs are raw little-endian floats, row-major, no header; dimensions come
from the pack manifest, never from the file. Search is a full scan so
results are exact and reproducible across runs on the same index.
"""
import logging
from dataclasses import dataclass
from typing import List, Sequence, Union

import numpy as np

from .errors import EmbeddingDimMismatch, IndexCorrupt, IndexMetaError
from .pack_reader import PackFileReader
from .schemas import Hit

logger = logging.getLogger(__name__)

_DTYPES = {
    "float32": np.dtype("<f4"),
    "float16": np.dtype("<f2"),
}


@dataclass(frozen=True)
class VectorIndex:
    """Read-only (n_rows, dim) float32 matrix for one corpus."""

    kind: str
    dim: int
    n_rows: int
    data: np.ndarray


def decode_vectors(blob: bytes, path: str, dim: int, n_rows: int, dtype: str = "float32") -> np.ndarray:
    """
    Decode a packed vector blob into a read-only float32 matrix.

    Args:
        blob: Raw bytes
        path: Pack path (for error reporting)
        dim: Vector dimension from the manifest
        n_rows: Row count from the manifest
        dtype: Element type on disk ("float32" or "float16")

    Returns:
        Array of shape (n_rows, dim)
    """
    if dtype not in _DTYPES:
        raise IndexMetaError(f"Unsupported vector dtype: {dtype}", {"path": path, "dtype": dtype})
    disk_dtype = _DTYPES[dtype]

    expected = n_rows * dim * disk_dtype.itemsize
    if len(blob) != expected:
        raise IndexCorrupt(path, expected, len(blob))

    data = np.frombuffer(blob, dtype=disk_dtype).reshape(n_rows, dim)
    if data.dtype != np.float32:
        data = data.astype(np.float32)
    data.flags.writeable = False
    return data


async def load_vectors(
    reader: PackFileReader,
    path: str,
    dim: int,
    n_rows: int,
    kind: str,
    dtype: str = "float32",
) -> VectorIndex:
    """
    Load one corpus' vectors. Rebuilt per load, never mutated afterwards.

    Args:
        reader: Pack reader
        path: Blob path relative to the pack root
        dim: Vector dimension from the manifest
        n_rows: Row count from the manifest
        kind: "rules" or "cards"
        dtype: Element type on disk

    Returns:
        VectorIndex
    """
    blob = await reader.read_binary(path)
    data = decode_vectors(blob, path, dim, n_rows, dtype)
    logger.debug(f"Loaded {kind} vectors: {n_rows}x{dim} from {path}")
    return VectorIndex(kind=kind, dim=dim, n_rows=n_rows, data=data)


def search_l2(
    index: VectorIndex,
    query_vec: Union[np.ndarray, Sequence[float]],
    top_k: int,
) -> List[Hit]:
    """
    Return the top_k rows with the smallest squared L2 distance.

    Ties break by ascending row id, including ties at the top_k boundary.

    Args:
        index: Loaded vector index
        query_vec: Query embedding, length must equal index.dim
        top_k: Number of hits requested

    Returns:
        Hits ordered by ascending score, length min(top_k, n_rows)
    """
    query = np.asarray(query_vec, dtype=np.float64).ravel()
    if query.shape[0] != index.dim:
        raise EmbeddingDimMismatch(index.dim, int(query.shape[0]))

    k = min(top_k, index.n_rows)
    if k <= 0:
        return []

    diff = index.data.astype(np.float64) - query
    dists = np.einsum("ij,ij->i", diff, diff)
    dists = np.where(np.isnan(dists), np.inf, dists)

    if k < index.n_rows:
        # Everything at or under the k-th smallest distance; boundary ties resolved below
        kth = np.partition(dists, k - 1)[k - 1]
        candidates = np.flatnonzero(dists <= kth)
    else:
        candidates = np.arange(index.n_rows)

    order = np.lexsort((candidates, dists[candidates]))
    selected = candidates[order][:k]
    return [Hit(row_id=int(row), score=float(dists[row])) for row in selected]


def normalize_query(query_vec: Union[np.ndarray, Sequence[float]]) -> np.ndarray:
    """L2-normalize a query vector (zero vectors are returned unchanged)."""
    vec = np.asarray(query_vec, dtype=np.float32).ravel()
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm
