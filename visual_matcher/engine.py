"""
Visual product match engine.

Wires the pieces together around one catalog:

    1. warm_start(): local cache, then remote bundle, fill the tables
    2. fill(): embed whatever is still missing, persist to the cache
    3. submit_query(): embed and classify the user's image
    4. search(): rank the catalog for the live query under filters

search() always answers with a view state next to the results, so the
caller can tell "no query yet", "catalog not ready" and "no matches"
apart without guessing from an empty list.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .cache_store import CacheStore
from .coordinator import EmbeddingCoordinator, FillReport, ProgressCallback
from .embedders import Classifier, Embedder
from .errors import DimensionMismatchError
from .image_loader import ImageLoader, ImageSource
from .models import (
    CatalogItem, CatalogStatus, CatalogTables, FilterConfig, QueryState, QueryStatus,
    ScoredResult,
)
from .query import QuerySession
from .ranking import rank
from .remote_loader import RemoteCatalogLoader
from .sources import CacheSource, CatalogSource, RemoteSource, resolve_sources

logger = logging.getLogger(__name__)

# Bump to invalidate every cache written by older releases
BASE_CACHE_VERSION = os.environ.get("VPM_CACHE_VERSION", "v1")


class ViewState(str, enum.Enum):
    NO_QUERY = "no_query"
    QUERY_PENDING = "query_pending"
    QUERY_FAILED = "query_failed"
    CATALOG_NOT_READY = "catalog_not_ready"
    NO_MATCHES = "no_matches"
    OK = "ok"


@dataclass
class SearchOutcome:
    state: ViewState
    results: List[ScoredResult] = field(default_factory=list)


class MatchEngine:
    """
    Matches query images against a fixed product catalog.

    Holds the catalog tables, the embedding coordinator and the query
    session. Ranking itself is stateless and happens on every search().
    """

    def __init__(self,
                 catalog: Sequence[CatalogItem],
                 embedder: Embedder,
                 image_loader: Optional[ImageLoader] = None,
                 classifier: Optional[Classifier] = None,
                 store: Optional[CacheStore] = None,
                 remote_loader: Optional[RemoteCatalogLoader] = None,
                 cache_version: Optional[str] = None,
                 concurrency: Optional[int] = None,
                 on_progress: Optional[ProgressCallback] = None):
        """
        Args:
            catalog: The fixed catalog.
            embedder: Embedding collaborator for catalog and queries.
            image_loader: Image loader (a default httpx/OpenCV loader
                when omitted).
            classifier: Label collaborator (no labels when omitted).
            store: Local cache; None runs without persistence.
            remote_loader: Precomputed bundle loader, optional.
            cache_version: Base cache-version tag. The embedder's
                model_tag is appended so a model change never reuses
                incompatible vectors.
            concurrency: Max in-flight catalog embeddings.
            on_progress: Called with (done, total) during fill().
        """
        self.catalog = list(catalog)
        self.embedder = embedder
        self.image_loader = image_loader or ImageLoader()
        self.store = store
        self.cache_version = f"{cache_version or BASE_CACHE_VERSION}:{embedder.model_tag}"

        self.tables = CatalogTables()
        self.coordinator = EmbeddingCoordinator(
            self.catalog,
            self.tables,
            embedder,
            self.image_loader,
            store=store,
            cache_version=self.cache_version,
            classifier=classifier,
            concurrency=concurrency,
            on_progress=on_progress,
        )
        self.query_session = QuerySession(embedder, self.image_loader, classifier)

        self.sources: List[CatalogSource] = []
        if store is not None:
            self.sources.append(CacheSource(store, self.cache_version))
        if remote_loader is not None:
            self.sources.append(RemoteSource(remote_loader))

        logger.info(
            f"Match engine ready: {len(self.catalog)} catalog items, "
            f"cache version {self.cache_version}"
        )

    @property
    def status(self) -> CatalogStatus:
        return self.coordinator.status

    @property
    def progress(self) -> float:
        return self.coordinator.progress

    @property
    def query(self) -> Optional[QueryState]:
        return self.query_session.state

    def categories(self) -> List[str]:
        """Distinct catalog categories in first-seen order."""
        seen = []
        for item in self.catalog:
            if item.category and item.category not in seen:
                seen.append(item.category)
        return seen

    async def warm_start(self) -> List[str]:
        """
        Fill the tables from the configured sources.

        Vectors that came from somewhere other than the local cache are
        written back to it.

        Returns:
            Names of the sources that contributed vectors.
        """
        contributed = await resolve_sources(self.sources, self.tables, self.catalog)
        if self.store is not None and any(source.persist for source in contributed):
            vectors, labels = self.tables.snapshot()
            self.store.save(self.cache_version, vectors, labels)
        self.coordinator.mark_ready_if_complete()
        return [source.name for source in contributed]

    async def fill(self, retry_failed: bool = False) -> FillReport:
        return await self.coordinator.fill(retry_failed=retry_failed)

    async def submit_query(self, source: ImageSource) -> QueryState:
        return await self.query_session.submit(source)

    async def match(self, source: ImageSource,
                    filters: Optional[FilterConfig] = None) -> SearchOutcome:
        """Submit a query, complete the catalog if needed, and search."""
        state = await self.submit_query(source)
        if state.status is QueryStatus.READY and self.tables.missing(self.catalog):
            await self.fill()
        return self.search(filters)

    def search(self, filters: Optional[FilterConfig] = None) -> SearchOutcome:
        """Rank the catalog for the live query."""
        filters = filters or FilterConfig()
        state = self.query_session.state

        if state is None:
            return SearchOutcome(ViewState.NO_QUERY)
        if state.status is QueryStatus.FAILED:
            return SearchOutcome(ViewState.QUERY_FAILED)
        if state.status is QueryStatus.PROCESSING:
            return SearchOutcome(ViewState.QUERY_PENDING)
        if not self.tables.vectors:
            return SearchOutcome(ViewState.CATALOG_NOT_READY)

        vectors, labels = self.tables.snapshot()
        try:
            results = rank(state.vector, state.labels, self.catalog, vectors, labels, filters)
        except DimensionMismatchError as e:
            logger.error(f"Query {state.token} cannot be ranked: {e}")
            return SearchOutcome(ViewState.QUERY_FAILED)

        if not results:
            return SearchOutcome(ViewState.NO_MATCHES)
        return SearchOutcome(ViewState.OK, results)

    async def clear_cache(self) -> bool:
        """
        Forget every catalog vector, in memory and on disk.

        Returns:
            False, with nothing cleared, while embeddings are processing.
        """
        try:
            self.coordinator.reset()
        except RuntimeError as e:
            logger.warning(f"Cache not cleared: {e}")
            return False
        return True
