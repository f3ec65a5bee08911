"""
FAISS inner-product scoring over catalog vectors.

Rows and query are scaled to unit length before indexing, which turns
the inner product into cosine similarity. A zero vector is left as is
(its norm is treated as 1), so it scores 0 against everything instead
of producing NaN.
"""

import logging

import faiss
import numpy as np

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)


def scale_rows(matrix: np.ndarray) -> np.ndarray:
    """Divide each row by its L2 norm, treating a zero norm as 1."""
    matrix = np.atleast_2d(np.asarray(matrix, dtype=np.float32))
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return np.ascontiguousarray(matrix / norms, dtype=np.float32)


def build_inner_product_index(matrix: np.ndarray) -> faiss.Index:
    """
    Build an exact inner-product index over norm-scaled rows.

    Args:
        matrix: Vectors, shape (n, d).

    Returns:
        faiss.IndexFlatIP holding the n scaled rows in input order.
    """
    scaled = scale_rows(matrix)
    index = faiss.IndexFlatIP(scaled.shape[1])
    index.add(scaled)
    return index


def score_all(index: faiss.Index, query: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of the query against every indexed row.

    Returns:
        float32 array of length index.ntotal, aligned with insertion
        order (not sorted).

    Raises:
        DimensionMismatchError: If the query length differs from the
            index dimension.
    """
    query = scale_rows(np.asarray(query, dtype=np.float32).ravel())
    if query.shape[1] != index.d:
        raise DimensionMismatchError(index.d, query.shape[1])

    scores = np.zeros(index.ntotal, dtype=np.float32)
    if index.ntotal == 0:
        return scores
    distances, indices = index.search(query, index.ntotal)
    valid = indices[0] >= 0
    scores[indices[0][valid]] = distances[0][valid]
    return scores
