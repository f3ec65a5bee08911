"""
Embedding coordinator: drives the catalog tables to completeness.

State machine:

    IDLE --fill()--> PROCESSING --all items settled--> READY

fill() finds the catalog items with no vector, computes them with at
most `concurrency` in flight, writes every result into the tables as
soon as it lands, publishes progress after each settled item, and
persists a snapshot of the tables when the batch is over. A fill()
call made while another is processing returns immediately.

An item that fails (image unreachable, embedder error, wrong vector
length) is marked failed for this generation and left out of ranking;
it is not retried unless fill(retry_failed=True) is called.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .cache_store import CacheStore
from .embedders import Classifier, Embedder, NullClassifier, predict_labels
from .errors import ClassificationError
from .image_loader import ImageLoader
from .models import CatalogItem, CatalogStatus, CatalogTables

logger = logging.getLogger(__name__)

# Ceiling on simultaneous embedding calls, whatever the core count
MAX_CONCURRENCY = int(os.environ.get("VPM_MAX_CONCURRENCY", "6"))
LABELS_PER_ITEM = 3

ProgressCallback = Callable[[int, int], None]


def default_concurrency(cpu_count: Optional[int] = None,
                        ceiling: int = MAX_CONCURRENCY) -> int:
    """
    In-flight embedding bound: half the cores, between 1 and the ceiling.

    VPM_EMBED_CONCURRENCY overrides the derived value.
    """
    override = os.environ.get("VPM_EMBED_CONCURRENCY")
    if override:
        return max(1, int(override))
    cpu_count = cpu_count or os.cpu_count() or 1
    return max(1, min(max(ceiling, 1), cpu_count // 2))


@dataclass
class FillReport:
    """What one fill() call did."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    saved: bool = False
    skipped: bool = False


class EmbeddingCoordinator:
    """Computes, stores and persists missing catalog vectors."""

    def __init__(self,
                 catalog: Sequence[CatalogItem],
                 tables: CatalogTables,
                 embedder: Embedder,
                 image_loader: ImageLoader,
                 store: Optional[CacheStore] = None,
                 cache_version: str = "v1",
                 classifier: Optional[Classifier] = None,
                 concurrency: Optional[int] = None,
                 on_progress: Optional[ProgressCallback] = None):
        """
        Args:
            catalog: The fixed catalog.
            tables: Shared vector/label tables to fill.
            embedder: Embedding collaborator.
            image_loader: Loader for catalog images.
            store: Cache to persist into; None disables persistence.
            cache_version: Cache-version tag for the store.
            classifier: Label collaborator (no labels when omitted).
            concurrency: Max in-flight items (derived from CPU count
                when omitted).
            on_progress: Called with (done, missing_count) after every
                settled item.
        """
        self.catalog = list(catalog)
        self.tables = tables
        self.embedder = embedder
        self.image_loader = image_loader
        self.store = store
        self.cache_version = cache_version
        self.classifier = classifier or NullClassifier()
        self.concurrency = concurrency if concurrency is not None else default_concurrency()
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        self.on_progress = on_progress

        self._status = CatalogStatus.IDLE
        self._progress = 0.0

    @property
    def status(self) -> CatalogStatus:
        return self._status

    @property
    def progress(self) -> float:
        """Fraction of the current (or last) batch that has settled."""
        return self._progress

    def mark_ready_if_complete(self) -> None:
        """Move IDLE to READY when sources already filled every slot."""
        if self._status is CatalogStatus.IDLE and not self.tables.missing(self.catalog):
            self._status = CatalogStatus.READY
            self._progress = 1.0

    async def fill(self, retry_failed: bool = False) -> FillReport:
        """Compute every missing vector. See the module docstring."""
        if self._status is CatalogStatus.PROCESSING:
            logger.debug("fill() called while processing, ignoring")
            return FillReport(skipped=True)

        if retry_failed:
            self.tables.failed.clear()

        missing = self.tables.missing(self.catalog)
        if not missing:
            self._status = CatalogStatus.READY
            self._progress = 1.0
            return FillReport()

        self._status = CatalogStatus.PROCESSING
        self._progress = 0.0
        total = len(missing)
        logger.info(
            f"Embedding {total} missing catalog items "
            f"(concurrency {self.concurrency}, model {self.embedder.model_tag})"
        )
        start = time.monotonic()

        semaphore = asyncio.Semaphore(self.concurrency)
        done = 0

        async def run(item: CatalogItem) -> bool:
            nonlocal done
            async with semaphore:
                ok = await self._process_item(item)
            done += 1
            self._publish(done, total)
            return ok

        try:
            outcomes = await asyncio.gather(*(run(item) for item in missing))
            saved = self._persist()
        except BaseException:
            self._status = CatalogStatus.IDLE
            raise

        succeeded = sum(1 for ok in outcomes if ok)
        report = FillReport(
            attempted=total,
            succeeded=succeeded,
            failed=total - succeeded,
            saved=saved,
        )
        self._status = CatalogStatus.READY
        logger.info(
            f"Embedding batch done in {time.monotonic() - start:.1f}s: "
            f"{report.succeeded} ok, {report.failed} failed, "
            f"{self.tables.present_count(self.catalog)}/{len(self.catalog)} present"
        )
        return report

    async def _process_item(self, item: CatalogItem) -> bool:
        try:
            image = await self.image_loader.load(item.image_ref)
            vector = await self.embedder.embed(image)
        except Exception as e:
            logger.warning(f"Failed to embed {item.id}: {e}")
            self.tables.mark_failed(item.id)
            return False

        try:
            labels = await predict_labels(self.classifier, image, LABELS_PER_ITEM)
        except ClassificationError as e:
            logger.debug(f"Classification failed for {item.id}: {e}")
            labels = []

        try:
            self.tables.put(item.id, vector, labels)
        except ValueError as e:
            logger.warning(f"Rejected vector for {item.id}: {e}")
            self.tables.mark_failed(item.id)
            return False

        logger.debug(f"Embedded {item.id} ({len(labels)} labels)")
        return True

    def _publish(self, done: int, total: int) -> None:
        self._progress = done / total
        if self.on_progress is not None:
            try:
                self.on_progress(done, total)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _persist(self) -> bool:
        if self.store is None:
            return False
        vectors, labels = self.tables.snapshot()
        return self.store.save(self.cache_version, vectors, labels)

    def reset(self) -> None:
        """
        Drop all vectors and labels, in memory and in the cache.

        Raises:
            RuntimeError: If a batch is processing.
        """
        if self._status is CatalogStatus.PROCESSING:
            raise RuntimeError("Cannot reset the catalog while embeddings are processing")
        self.tables.clear()
        if self.store is not None:
            self.store.clear(self.cache_version)
        self._status = CatalogStatus.IDLE
        self._progress = 0.0
