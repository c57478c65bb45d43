"""
Similarity Engine - all-pairs cosine similarity over live memory embeddings.

Small corpora are scanned sequentially. Once the number of pairs reaches
the parallel threshold, the upper-triangular pair set is split into even
chunks and scored on a bounded thread pool; numpy releases the GIL for
the dot products so the chunks genuinely overlap.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .vectors import normalize_rows

logger = logging.getLogger(__name__)

# Upper bound on pool size regardless of core count
MAX_POOL_WORKERS = 4


class SimilarityScanError(RuntimeError):
    """A worker chunk failed; the whole scan is aborted."""


@dataclass(frozen=True)
class SimilarPair:
    i: int
    j: int
    similarity: float


def available_workers(max_workers: Optional[int] = None) -> int:
    """Pool size: one core left for the event loop, capped at MAX_POOL_WORKERS."""
    count = max(1, (os.cpu_count() or 1) - 1)
    count = min(count, MAX_POOL_WORKERS)
    if max_workers is not None:
        count = min(count, max(1, int(max_workers)))
    return count


def _score_chunk(
    matrix: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    threshold: float
) -> List[SimilarPair]:
    """Score one slice of (row, col) pairs against the shared matrix."""
    sims = np.einsum("ij,ij->i", matrix[rows], matrix[cols])
    hits = np.nonzero(sims >= threshold)[0]
    return [SimilarPair(int(rows[k]), int(cols[k]), float(sims[k])) for k in hits]


def find_similar_pairs(
    vectors: Sequence[Sequence[float]],
    threshold: float = 0.92,
    max_pairs: Optional[int] = None,
    parallel_threshold: int = 1000,
    max_workers: Optional[int] = None
) -> List[SimilarPair]:
    """
    Find all index pairs (i < j) whose cosine similarity is >= threshold.

    Args:
        vectors: Embeddings, all of the same dimension
        threshold: Minimum similarity to report
        max_pairs: Truncate the (descending) result to this many pairs
        parallel_threshold: Pair count at which the thread pool is used
        max_workers: Optional further cap on the pool size

    Returns:
        Pairs sorted by similarity, highest first

    Raises:
        SimilarityScanError: if any chunk fails while scoring in parallel
    """
    n = len(vectors)
    if n < 2:
        return []

    matrix = normalize_rows(np.asarray(vectors, dtype=np.float32))
    rows, cols = np.triu_indices(n, k=1)
    total_pairs = len(rows)

    workers = available_workers(max_workers)
    if total_pairs >= parallel_threshold and workers > 1:
        pairs = _score_parallel(matrix, rows, cols, threshold, workers)
    else:
        pairs = _score_chunk(matrix, rows, cols, threshold)

    pairs.sort(key=lambda p: (-p.similarity, p.i, p.j))
    if max_pairs is not None:
        pairs = pairs[:max_pairs]

    logger.debug(f"Similarity scan: {n} vectors, {total_pairs} pairs, {len(pairs)} above {threshold}")
    return pairs


def _score_parallel(
    matrix: np.ndarray,
    rows: np.ndarray,
    cols: np.ndarray,
    threshold: float,
    workers: int
) -> List[SimilarPair]:
    row_chunks = np.array_split(rows, workers)
    col_chunks = np.array_split(cols, workers)

    pairs: List[SimilarPair] = []
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="recollect-sim") as pool:
        futures = [
            pool.submit(_score_chunk, matrix, r, c, threshold)
            for r, c in zip(row_chunks, col_chunks)
        ]
        for future in as_completed(futures):
            try:
                pairs.extend(future.result())
            except Exception as e:
                for pending in futures:
                    pending.cancel()
                raise SimilarityScanError(f"Similarity worker failed: {e}") from e

    logger.debug(f"Scored {len(rows)} pairs across {workers} workers")
    return pairs
