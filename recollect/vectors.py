"""
Vector Embeddings - Semantic understanding with sentence-transformers.

This module provides:
- Embedding provider (text -> vector) backed by a lazily loaded model
- Compact storage of vectors in SQLite as packed float32
- Cosine similarity
"""

import logging
import struct
from typing import List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


def encode(vector: Sequence[float]) -> bytes:
    """Pack a vector as float32 bytes for SQLite storage."""
    return struct.pack(f'{len(vector)}f', *vector)


def decode(data: Optional[bytes]) -> Optional[List[float]]:
    """Decode vector bytes back to a list of floats."""
    if not data:
        return None

    num_floats = len(data) // 4  # 4 bytes per float
    return list(struct.unpack(f'{num_floats}f', data))


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors."""
    a = np.asarray(vec1, dtype=np.float64)
    b = np.asarray(vec2, dtype=np.float64)

    dot_product = np.dot(a, b)
    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(dot_product / (norm_a * norm_b))


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize each row; zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class EmbeddingProvider:
    """
    Embedding provider backed by sentence-transformers.

    The model is loaded on first use so that importing the package (and
    running graph maintenance that never embeds) stays cheap.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model ({self.model_name})...")
            self._model = SentenceTransformer(self.model_name)
            logger.info("Embedding model loaded.")
        return self._model

    def embed(self, text: str) -> List[float]:
        embedding = self._get_model().encode(text, convert_to_numpy=True)
        return embedding.tolist()
