"""
Ordered catalog vector sources.

Each source either yields a table of vectors (and labels) or nothing.
resolve_sources() walks them in order and fills every still-absent slot
from the first source that has it, stopping as soon as the catalog is
complete. Whatever is left missing gets computed by the coordinator.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from .cache_store import CacheStore
from .models import CatalogItem, CatalogTables
from .remote_loader import RemoteCatalogLoader

logger = logging.getLogger(__name__)


@dataclass
class SourceResult:
    vectors: Dict[str, np.ndarray]
    labels: Dict[str, List[str]] = field(default_factory=dict)


class CatalogSource:
    """A provider of precomputed catalog vectors."""

    name = "source"
    # Whether vectors from this source still need writing to the local cache
    persist = True

    async def provide(self) -> Optional[SourceResult]:
        raise NotImplementedError


class CacheSource(CatalogSource):
    name = "cache"
    persist = False

    def __init__(self, store: CacheStore, version: str):
        self.store = store
        self.version = version

    async def provide(self) -> Optional[SourceResult]:
        vectors, labels = self.store.load(self.version)
        if not vectors:
            return None
        return SourceResult(vectors, labels)


class RemoteSource(CatalogSource):
    name = "remote"

    def __init__(self, loader: RemoteCatalogLoader):
        self.loader = loader

    async def provide(self) -> Optional[SourceResult]:
        bundle = await self.loader.fetch_bundle()
        if bundle is None:
            return None
        return SourceResult(bundle.vectors, bundle.labels)


class StaticSource(CatalogSource):
    """Vectors already in memory, e.g. handed over by an embedding application."""

    name = "static"

    def __init__(self, vectors: Dict[str, np.ndarray],
                 labels: Optional[Dict[str, List[str]]] = None):
        self.vectors = vectors
        self.labels = labels or {}

    async def provide(self) -> Optional[SourceResult]:
        if not self.vectors:
            return None
        return SourceResult(dict(self.vectors), dict(self.labels))


async def resolve_sources(sources: Sequence[CatalogSource],
                          tables: CatalogTables,
                          catalog: Sequence[CatalogItem]) -> List[CatalogSource]:
    """
    Fill absent table slots from the sources, first present wins.

    Returns:
        The sources that contributed at least one vector, in order.
    """
    contributed = []
    for source in sources:
        if tables.is_complete(catalog):
            break
        result = await source.provide()
        if result is None:
            logger.info(f"Source '{source.name}' had nothing to offer")
            continue
        filled = tables.merge(result.vectors, result.labels, catalog=catalog)
        logger.info(
            f"Source '{source.name}' filled {filled} slots "
            f"({tables.present_count(catalog)}/{len(catalog)} present)"
        )
        if filled:
            contributed.append(source)
    return contributed
