"""
Similarity ranking of catalog items against a query vector.

rank() is a pure function: same inputs, same ordered output, no I/O.

Pipeline:
    1. Cosine similarity of the query against every item with a vector
    2. Same-class check (query and item share a predicted label)
    3. Drop items of another class when only_same_class is set
    4. Add the same-class boost, then clamp to [0, 1]
    5. Category filter
    6. Stable sort by score, descending (ties keep catalog order)
    7. Minimum similarity cut
    8. Top-k truncation

The boost is an additive re-ranking nudge, not a probability. It is
applied before the clamp, so an item already near 1.0 gains little.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from .errors import DimensionMismatchError
from .models import ALL_CATEGORIES, CatalogItem, FilterConfig, ScoredResult, normalize_labels
from .vector_index import build_inner_product_index, score_all

logger = logging.getLogger(__name__)

SAME_CLASS_BOOST = float(os.environ.get("VPM_SAME_CLASS_BOOST", "0.15"))


def cosine_similarity(a, b) -> float:
    """
    dot(a, b) / (|a| * |b|), with a zero denominator treated as 1.

    Raises:
        DimensionMismatchError: If the vectors differ in length.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape != b.shape:
        raise DimensionMismatchError(a.shape[0], b.shape[0])
    denom = float(np.linalg.norm(a) * np.linalg.norm(b)) or 1.0
    return float(np.dot(a, b)) / denom


def shares_label(item_labels: Iterable[str], query_labels: Iterable[str]) -> bool:
    """True if the two label sets have a label in common, ignoring case."""
    return bool(set(normalize_labels(item_labels)) & set(normalize_labels(query_labels)))


def rank(query_vector: Optional[np.ndarray],
         query_labels: Sequence[str],
         catalog: Sequence[CatalogItem],
         vectors: Dict[str, np.ndarray],
         labels: Dict[str, List[str]],
         filters: FilterConfig,
         boost: float = SAME_CLASS_BOOST) -> List[ScoredResult]:
    """
    Rank catalog items by similarity to the query.

    Args:
        query_vector: Query feature vector, or None when there is none yet.
        query_labels: Labels predicted for the query image.
        catalog: Catalog in its canonical order (used for tie-breaking).
        vectors: Item vectors by id; items without one are skipped.
        labels: Item labels by id.
        filters: Filter configuration.
        boost: Score added to items sharing a label with the query.

    Returns:
        ScoredResult list, best first, at most filters.top_k long.

    Raises:
        DimensionMismatchError: If the query length differs from the
            catalog vectors.
    """
    if query_vector is None:
        return []

    candidates = [item for item in catalog if item.id in vectors]
    if not candidates:
        return []

    matrix = np.vstack([np.asarray(vectors[item.id], dtype=np.float32) for item in candidates])
    base_scores = score_all(build_inner_product_index(matrix), query_vector)

    query_labels = normalize_labels(query_labels)
    rows = []
    for item, base in zip(candidates, base_scores):
        same_class = shares_label(labels.get(item.id, []), query_labels)
        if filters.only_same_class and not same_class:
            continue

        score = float(base)
        if filters.prefer_same_class_boost and same_class:
            score += boost
        score = min(1.0, max(0.0, score))

        if filters.category != ALL_CATEGORIES and item.category != filters.category:
            continue
        rows.append(ScoredResult(item=item, score=score))

    # list.sort is stable: equal scores stay in catalog order
    rows.sort(key=lambda r: -r.score)
    rows = [r for r in rows if r.score >= filters.min_similarity]
    logger.debug(f"Ranked {len(candidates)} candidates, {len(rows)} above threshold")
    return rows[:filters.top_k]
