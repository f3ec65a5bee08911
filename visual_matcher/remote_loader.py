"""
Loader for the precomputed catalog bundle.

A bundle lets a fresh install skip computing every catalog embedding.
It comes in one of three shapes, told apart at this boundary so nothing
downstream ever sees anything but {item_id: vector}:

    positional   JSON array aligned with catalog order
    keyed        JSON object {item_id: vector}
    packed_f16   raw little-endian float16 rows aligned with catalog order

A JSON row may also be an entry object, {"id", "title", "embedding",
"labels", ...}, as written by catalog build scripts; it is keyed by its
own id. Labels use the same positional/keyed JSON shapes. Every failure
(network error, non-2xx status, malformed body) collapses to "no
bundle", and the caller falls back to the next source.
"""

import asyncio
import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import httpx
import numpy as np

from .errors import CorruptDataError, NetworkError
from .models import CatalogItem, normalize_labels

logger = logging.getLogger(__name__)

DEFAULT_EMBEDS_URL = os.environ.get("VPM_REMOTE_EMBEDS_URL")
DEFAULT_LABELS_URL = os.environ.get("VPM_REMOTE_LABELS_URL")
DEFAULT_TIMEOUT = float(os.environ.get("VPM_HTTP_TIMEOUT", "30"))


class BundleShape(enum.Enum):
    POSITIONAL = "positional"
    KEYED = "keyed"
    PACKED_F16 = "packed_f16"


@dataclass
class RemoteBundle:
    vectors: Dict[str, np.ndarray]
    labels: Dict[str, List[str]] = field(default_factory=dict)


def detect_shape(payload) -> BundleShape:
    """Tag a decoded bundle body with its shape."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return BundleShape.PACKED_F16
    if isinstance(payload, list):
        return BundleShape.POSITIONAL
    if isinstance(payload, dict):
        return BundleShape.KEYED
    raise CorruptDataError(f"Unrecognised bundle body of type {type(payload).__name__}")


def _entries(payload, catalog: Sequence[CatalogItem], key: str):
    """
    (item_id, row) pairs for a JSON bundle.

    Positional rows may be entry objects such as
    {"id": ..., "title": ..., "embedding": [...], "labels": [...]}; those
    are keyed by their own id (catalog position when it is missing) and
    contribute their `key` field.
    """
    shape = detect_shape(payload)
    if shape is BundleShape.KEYED:
        return shape, [
            (str(k), v.get(key) if isinstance(v, dict) else v) for k, v in payload.items()
        ]
    if shape is BundleShape.PACKED_F16:
        return shape, None

    entries = []
    dropped = 0
    for index, row in enumerate(payload):
        if isinstance(row, dict):
            item_id = row.get("id")
            if item_id is None and index < len(catalog):
                item_id = catalog[index].id
            if item_id is not None:
                entries.append((str(item_id), row.get(key)))
        elif index < len(catalog):
            entries.append((catalog[index].id, row))
        else:
            dropped += 1
    if dropped:
        logger.warning(
            f"Positional bundle has {len(payload)} rows for "
            f"{len(catalog)} catalog items, ignoring the extra rows"
        )
    return shape, entries


def decode_vector_bundle(payload, catalog: Sequence[CatalogItem]) -> Dict[str, np.ndarray]:
    """
    Normalize any vector bundle shape to {item_id: float32 vector}.

    Null rows, rows for unknown ids, and non-numeric rows are skipped.

    Raises:
        CorruptDataError: If the shape is unknown or the bundle mixes
            vector dimensionalities.
    """
    shape, entries = _entries(payload, catalog, "embedding")
    if shape is BundleShape.PACKED_F16:
        return _unpack_f16(bytes(payload), catalog)

    known = {item.id for item in catalog}
    vectors: Dict[str, np.ndarray] = {}
    dimension = None
    for item_id, row in entries:
        if row is None or item_id not in known:
            continue
        try:
            vector = np.asarray(row, dtype=np.float32)
        except (TypeError, ValueError):
            logger.debug(f"Skipping non-numeric bundle row for {item_id}")
            continue
        if vector.ndim != 1 or vector.size == 0 or not np.all(np.isfinite(vector)):
            logger.debug(f"Skipping malformed bundle row for {item_id}")
            continue
        if dimension is None:
            dimension = vector.shape[0]
        elif vector.shape[0] != dimension:
            raise CorruptDataError(
                f"Bundle mixes dimensions {dimension} and {vector.shape[0]}"
            )
        vectors[item_id] = vector
    return vectors


def _unpack_f16(raw: bytes, catalog: Sequence[CatalogItem]) -> Dict[str, np.ndarray]:
    row_bytes, remainder = divmod(len(raw), max(len(catalog), 1))
    if not catalog or remainder or row_bytes == 0 or row_bytes % 2:
        raise CorruptDataError(
            f"Packed bundle of {len(raw)} bytes does not split into "
            f"{len(catalog)} float16 rows"
        )
    matrix = np.frombuffer(raw, dtype='<f2').astype(np.float32)
    matrix = matrix.reshape(len(catalog), row_bytes // 2)
    return {item.id: matrix[i].copy() for i, item in enumerate(catalog)}


def decode_label_bundle(payload, catalog: Sequence[CatalogItem]) -> Dict[str, List[str]]:
    """Normalize a positional or keyed label bundle to {item_id: labels}."""
    shape, entries = _entries(payload, catalog, "labels")
    if shape is BundleShape.PACKED_F16:
        raise CorruptDataError("Label bundles must be JSON")

    known = {item.id for item in catalog}
    labels = {}
    for item_id, row in entries:
        if item_id not in known or not isinstance(row, list):
            continue
        labels[item_id] = normalize_labels(row)
    return labels


def inline_labels(payload, catalog: Sequence[CatalogItem]) -> Dict[str, List[str]]:
    """Non-empty labels carried by the entry objects of a vector bundle."""
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        rows = list(payload.values())
    else:
        return {}
    if not any(isinstance(row, dict) for row in rows):
        return {}
    return {k: v for k, v in decode_label_bundle(payload, catalog).items() if v}


class RemoteCatalogLoader:
    """Fetches the shared precomputed vector bundle and optional labels."""

    def __init__(self,
                 catalog: Sequence[CatalogItem],
                 embeds_url: Optional[str] = None,
                 labels_url: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Args:
            catalog: Catalog the bundle is aligned with.
            embeds_url: Location of the vector bundle.
            labels_url: Location of the label bundle (optional).
            client: Shared HTTP client. A private one is opened per
                fetch when omitted.
            timeout: Request timeout in seconds for a private client.
        """
        self.catalog = list(catalog)
        self.embeds_url = embeds_url or DEFAULT_EMBEDS_URL
        self.labels_url = labels_url or DEFAULT_LABELS_URL
        self.client = client
        self.timeout = timeout

    async def fetch(self) -> Optional[Dict[str, np.ndarray]]:
        """Vectors from the remote bundle, or None if unavailable."""
        bundle = await self.fetch_bundle()
        return bundle.vectors if bundle else None

    async def fetch_bundle(self) -> Optional[RemoteBundle]:
        """
        Fetch vectors and labels concurrently.

        A labels failure leaves the labels empty; a vectors failure
        means no bundle at all. Never raises.
        """
        if not self.embeds_url:
            return None

        client = self.client or httpx.AsyncClient(timeout=self.timeout)
        try:
            tasks = [self._get_payload(client, self.embeds_url)]
            if self.labels_url:
                tasks.append(self._get_payload(client, self.labels_url))
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if self.client is None:
                await client.aclose()

        embeds_result = results[0]
        if isinstance(embeds_result, BaseException):
            logger.warning(f"Remote bundle unavailable: {embeds_result}")
            return None
        try:
            vectors = decode_vector_bundle(embeds_result, self.catalog)
        except CorruptDataError as e:
            logger.warning(f"Remote bundle malformed: {e}")
            return None
        if not vectors:
            logger.warning("Remote bundle held no usable vectors")
            return None

        # Entry-object bundles may carry labels; a separate label bundle wins
        labels = inline_labels(embeds_result, self.catalog)
        if len(results) > 1:
            labels_result = results[1]
            if isinstance(labels_result, BaseException):
                logger.warning(f"Remote labels unavailable: {labels_result}")
            else:
                try:
                    labels.update(decode_label_bundle(labels_result, self.catalog))
                except CorruptDataError as e:
                    logger.warning(f"Remote labels malformed: {e}")

        logger.info(
            f"Fetched remote bundle: {len(vectors)}/{len(self.catalog)} vectors, "
            f"{len(labels)} label sets"
        )
        return RemoteBundle(vectors=vectors, labels=labels)

    async def _get_payload(self, client: httpx.AsyncClient, url: str):
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        if not response.is_success:
            raise NetworkError(f"GET {url} returned HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "")
        if "octet-stream" in content_type or url.endswith(".f16"):
            return response.content
        try:
            return response.json()
        except ValueError as e:
            raise CorruptDataError(f"GET {url} returned invalid JSON: {e}") from e
