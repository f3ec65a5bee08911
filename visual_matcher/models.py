"""
Value objects shared by the matcher components.

Catalog items and filter settings are immutable. The only mutable
structure is CatalogTables, which holds one vector slot and one label
slot per catalog item and is written by the embedding coordinator.
"""

import enum
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import numpy as np

from .errors import DimensionMismatchError

logger = logging.getLogger(__name__)

ALL_CATEGORIES = "All"


@dataclass(frozen=True)
class CatalogItem:
    """One product in the fixed catalog."""

    id: str
    title: str
    category: str
    image_ref: str


def load_catalog(path: str) -> List[CatalogItem]:
    """
    Read a catalog JSON file.

    The file holds an array of objects with 'id', 'title' (or 'name'),
    'category' and 'image' fields. Numeric ids are stringified so that
    they can key the vector tables.

    Args:
        path: Path to the catalog JSON file.

    Returns:
        Catalog items in file order.

    Raises:
        ValueError: If an entry lacks an id or image, or ids repeat.
    """
    with open(path, 'r', encoding='utf-8') as f:
        entries = json.load(f)

    items = []
    seen = set()
    for entry in entries:
        item_id = entry.get('id')
        image = entry.get('image')
        if item_id is None or not image:
            raise ValueError(f"Catalog entry missing id or image: {entry!r}")
        item_id = str(item_id)
        if item_id in seen:
            raise ValueError(f"Duplicate catalog id: {item_id}")
        seen.add(item_id)
        items.append(CatalogItem(
            id=item_id,
            title=entry.get('title') or entry.get('name') or item_id,
            category=entry.get('category') or "",
            image_ref=image,
        ))

    logger.info(f"Loaded catalog: {len(items)} items from {path}")
    return items


def normalize_labels(labels: Iterable[str]) -> List[str]:
    """Lowercase and strip labels, dropping blanks and repeats (order kept)."""
    out = []
    for label in labels:
        if not isinstance(label, str):
            continue
        label = label.strip().lower()
        if label and label not in out:
            out.append(label)
    return out


@dataclass(frozen=True)
class FilterConfig:
    """Ranking filters. Affects ranking output only, never stored vectors."""

    min_similarity: float = 0.25
    top_k: int = 12
    category: str = ALL_CATEGORIES
    prefer_same_class_boost: bool = True
    only_same_class: bool = False

    def __post_init__(self):
        if not 0.0 <= self.min_similarity <= 1.0:
            raise ValueError(f"min_similarity must be in [0, 1], got {self.min_similarity}")
        if self.top_k <= 0:
            raise ValueError(f"top_k must be positive, got {self.top_k}")

    def relaxed(self) -> "FilterConfig":
        """The 'show more results' preset."""
        return replace(
            self,
            min_similarity=0.25,
            top_k=16,
            category=ALL_CATEGORIES,
            prefer_same_class_boost=True,
            only_same_class=False,
        )


@dataclass(frozen=True)
class ScoredResult:
    item: CatalogItem
    score: float


class QueryStatus(str, enum.Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class QueryState:
    """
    The single live query.

    A new QueryState replaces the old one whenever the user supplies a
    new image; `token` identifies it so late results from a superseded
    query can be recognised and dropped.
    """

    source: object
    token: int
    status: QueryStatus = QueryStatus.PROCESSING
    loaded: bool = False
    vector: Optional[np.ndarray] = None
    labels: Tuple[str, ...] = ()
    error: Optional[str] = None


class CatalogStatus(str, enum.Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    READY = "ready"


@dataclass
class CatalogTables:
    """
    Vector and label slots for every catalog item.

    A slot is either absent or holds a complete float32 vector; all
    vectors share one dimensionality, fixed by the first vector stored.
    Stored arrays are made read-only so cached vectors cannot be edited
    in place.
    """

    vectors: Dict[str, np.ndarray] = field(default_factory=dict)
    labels: Dict[str, List[str]] = field(default_factory=dict)
    failed: Set[str] = field(default_factory=set)

    @property
    def dimension(self) -> Optional[int]:
        for vector in self.vectors.values():
            return int(vector.shape[0])
        return None

    def _prepare(self, vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.size == 0:
            raise ValueError(f"Feature vector must be 1-D and non-empty, got shape {arr.shape}")
        expected = self.dimension
        if expected is not None and arr.shape[0] != expected:
            raise DimensionMismatchError(expected, arr.shape[0])
        return arr

    def put(self, item_id: str, vector, labels: Optional[Sequence[str]] = None) -> None:
        """Store a freshly computed vector (copied) and its labels."""
        arr = self._prepare(vector).copy()
        arr.setflags(write=False)
        self.vectors[item_id] = arr
        self.labels[item_id] = normalize_labels(labels or [])
        self.failed.discard(item_id)

    def mark_failed(self, item_id: str) -> None:
        self.vectors.pop(item_id, None)
        self.labels[item_id] = []
        self.failed.add(item_id)

    def merge(self,
              vectors: Dict[str, np.ndarray],
              labels: Optional[Dict[str, List[str]]] = None,
              catalog: Optional[Sequence[CatalogItem]] = None) -> int:
        """
        Fill absent slots from another table; present slots are kept.

        Vectors whose dimensionality disagrees with this table are
        skipped. Labels are only taken for items whose vector came from
        the same source, or when no labels are held yet.

        Returns:
            Number of vector slots filled.
        """
        labels = labels or {}
        known = {item.id for item in catalog} if catalog is not None else None
        filled = 0
        for item_id, vector in vectors.items():
            if known is not None and item_id not in known:
                continue
            if item_id in self.vectors:
                continue
            try:
                arr = self._prepare(vector)
            except ValueError as e:
                logger.warning(f"Skipping vector for {item_id}: {e}")
                continue
            if arr.flags.writeable:
                arr.setflags(write=False)
            self.vectors[item_id] = arr
            self.failed.discard(item_id)
            filled += 1
            if item_id in labels:
                self.labels[item_id] = normalize_labels(labels[item_id])

        for item_id, item_labels in labels.items():
            if known is not None and item_id not in known:
                continue
            if not self.labels.get(item_id):
                self.labels[item_id] = normalize_labels(item_labels)
        return filled

    def missing(self, catalog: Sequence[CatalogItem]) -> List[CatalogItem]:
        """Items with no vector that have not already failed this generation."""
        return [
            item for item in catalog
            if item.id not in self.vectors and item.id not in self.failed
        ]

    def present_count(self, catalog: Sequence[CatalogItem]) -> int:
        return sum(1 for item in catalog if item.id in self.vectors)

    def is_complete(self, catalog: Sequence[CatalogItem]) -> bool:
        return self.present_count(catalog) == len(catalog)

    def snapshot(self) -> Tuple[Dict[str, np.ndarray], Dict[str, List[str]]]:
        """Copy of both tables, safe to persist while tasks keep writing."""
        return dict(self.vectors), {k: list(v) for k, v in self.labels.items()}

    def clear(self) -> None:
        self.vectors.clear()
        self.labels.clear()
        self.failed.clear()
