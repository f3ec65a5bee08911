"""
Precomputed bundle construction.

Writes the files RemoteCatalogLoader consumes, so a deployment can ship
catalog vectors instead of having every install compute them:

    embeds.<version>.json   {item_id: [floats]}
    labels.<version>.json   {item_id: [labels]}
    embeds.<version>.f16    packed float16 rows in catalog order (optional)

build_bundle() computes the vectors from scratch with an embedding
coordinator; export_bundle() dumps tables that already exist, such as a
filled local cache.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Sequence

import numpy as np

from .coordinator import EmbeddingCoordinator
from .embedders import Classifier, Embedder
from .image_loader import ImageLoader
from .models import CatalogItem, CatalogTables

logger = logging.getLogger(__name__)


def export_bundle(catalog: Sequence[CatalogItem],
                  vectors: Dict[str, np.ndarray],
                  labels: Dict[str, List[str]],
                  output_dir: str,
                  version: str = "v1") -> dict:
    """
    Write the keyed JSON vector and label bundles.

    Items without a vector are left out; the loader treats them as
    absent and they get computed on the client.

    Returns:
        Dict with 'embeds_path', 'labels_path', 'vectors', 'missing'.
    """
    os.makedirs(output_dir, exist_ok=True)

    embeds = {}
    bundle_labels = {}
    for item in catalog:
        vector = vectors.get(item.id)
        if vector is None:
            continue
        embeds[item.id] = [float(x) for x in np.asarray(vector, dtype=np.float32)]
        if labels.get(item.id):
            bundle_labels[item.id] = list(labels[item.id])

    embeds_path = os.path.join(output_dir, f"embeds.{version}.json")
    labels_path = os.path.join(output_dir, f"labels.{version}.json")
    with open(embeds_path, 'w', encoding='utf-8') as f:
        json.dump(embeds, f)
    with open(labels_path, 'w', encoding='utf-8') as f:
        json.dump(bundle_labels, f)

    missing = len(catalog) - len(embeds)
    logger.info(
        f"Exported bundle {version}: {len(embeds)} vectors, "
        f"{len(bundle_labels)} label sets, {missing} missing"
    )
    return {
        "embeds_path": embeds_path,
        "labels_path": labels_path,
        "vectors": len(embeds),
        "missing": missing,
    }


def export_packed_f16(catalog: Sequence[CatalogItem],
                      vectors: Dict[str, np.ndarray],
                      path: str) -> int:
    """
    Write every catalog vector as packed little-endian float16 rows.

    The format has no ids, so every item must have a vector.

    Returns:
        Number of bytes written.

    Raises:
        ValueError: If an item has no vector or dimensions differ.
    """
    missing = [item.id for item in catalog if item.id not in vectors]
    if missing:
        raise ValueError(f"Packed bundle needs every vector, missing {len(missing)}: {missing[:5]}")

    matrix = np.vstack([np.asarray(vectors[item.id], dtype=np.float32) for item in catalog])
    data = matrix.astype('<f2').tobytes()

    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)

    logger.info(f"Wrote {path}: {matrix.shape[0]} x {matrix.shape[1]} float16 "
                f"({len(data) / 1024 / 1024:.1f} MB)")
    return len(data)


async def build_bundle(catalog: Sequence[CatalogItem],
                       embedder: Embedder,
                       output_dir: str,
                       image_loader: Optional[ImageLoader] = None,
                       classifier: Optional[Classifier] = None,
                       version: str = "v1",
                       concurrency: Optional[int] = None,
                       packed: bool = False) -> dict:
    """
    Embed the whole catalog and export it as a bundle.

    Args:
        catalog: Catalog to embed.
        embedder: Embedding collaborator.
        output_dir: Directory for the bundle files.
        image_loader: Loader for catalog images.
        classifier: Label collaborator.
        version: Bundle version used in the file names.
        concurrency: Max in-flight embeddings.
        packed: Also write the packed float16 file (needs every item).

    Returns:
        export_bundle() summary plus 'failed' and, if written,
        'packed_path'.
    """
    tables = CatalogTables()
    coordinator = EmbeddingCoordinator(
        catalog,
        tables,
        embedder,
        image_loader or ImageLoader(),
        store=None,
        classifier=classifier,
        concurrency=concurrency,
        on_progress=_log_progress,
    )
    report = await coordinator.fill()

    summary = export_bundle(catalog, tables.vectors, tables.labels, output_dir, version)
    summary["failed"] = report.failed

    if packed:
        if report.failed:
            logger.warning(f"Skipping packed bundle: {report.failed} items failed")
        else:
            packed_path = os.path.join(output_dir, f"embeds.{version}.f16")
            export_packed_f16(catalog, tables.vectors, packed_path)
            summary["packed_path"] = packed_path
    return summary


def _log_progress(done: int, total: int) -> None:
    if done % 50 == 0 or done == total:
        logger.info(f"Embedded {done}/{total} items")
