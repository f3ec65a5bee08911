"""
Local persistence of catalog vectors and labels.

Each cache version owns two JSON files in the cache directory:

    catalog_embeds.<version>.json   {item_id: base64 vector}
    catalog_labels.<version>.json   {item_id: [label, ...]}

The cache is an accelerator, never a source of truth. Loading a missing
or corrupt cache yields empty tables, and a rejected write (disk full,
quota exceeded) is logged and dropped so computation carries on.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

import numpy as np

from .codec import VectorCodec
from .errors import CorruptDataError, StorageQuotaError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = os.environ.get(
    "VPM_CACHE_DIR", os.path.join(os.path.expanduser("~"), ".cache", "visual-matcher")
)
# 0 disables the quota check
DEFAULT_MAX_BYTES = int(os.environ.get("VPM_CACHE_MAX_BYTES", "0"))

EMBEDS_PREFIX = "catalog_embeds"
LABELS_PREFIX = "catalog_labels"


# Longest encoded tag kept verbatim in a file name; longer ones are digested
MAX_TAG_CHARS = 120


def version_to_filename(version: str) -> str:
    """
    Percent-encode a cache-version tag into one portable file-name part.

    Every character outside [A-Za-z0-9_-] is escaped, so tags such as
    'v1:Xenova/clip-vit-base-patch32' stay inside the cache directory
    and distinct tags never share files. Encodings longer than
    MAX_TAG_CHARS are cut and suffixed with a SHA-1 of the full tag.
    """
    encoded = quote(str(version), safe='').replace('.', '%2E').replace('~', '%7E')
    if len(encoded) > MAX_TAG_CHARS:
        digest = hashlib.sha1(str(version).encode('utf-8')).hexdigest()
        encoded = f"{encoded[:MAX_TAG_CHARS - 41]}-{digest}"
    return encoded


def filename_to_version(name: str) -> str:
    """Inverse of version_to_filename (digested tags come back truncated)."""
    return unquote(name)


class CacheStore:
    """Version-scoped key-value store for catalog vectors and labels."""

    def __init__(self,
                 cache_dir: Optional[str] = None,
                 max_bytes: Optional[int] = None,
                 codec: Optional[VectorCodec] = None):
        """
        Args:
            cache_dir: Directory holding the cache files.
            max_bytes: Upper bound on the combined size of one version's
                files. Writes that would exceed it are refused.
            codec: Vector codec (float32 by default).
        """
        self.cache_dir = Path(cache_dir or DEFAULT_CACHE_DIR)
        self.max_bytes = DEFAULT_MAX_BYTES if max_bytes is None else max_bytes
        self.codec = codec or VectorCodec()

    def _paths(self, version: str) -> Tuple[Path, Path]:
        safe = version_to_filename(version)
        return (self.cache_dir / f"{EMBEDS_PREFIX}.{safe}.json",
                self.cache_dir / f"{LABELS_PREFIX}.{safe}.json")

    def load(self, version: str) -> Tuple[Dict[str, np.ndarray], Dict[str, List[str]]]:
        """
        Load the tables stored under a version.

        Never raises: a missing or unparsable file gives an empty table,
        and individual undecodable entries are dropped.
        """
        embeds_path, labels_path = self._paths(version)
        vectors: Dict[str, np.ndarray] = {}
        labels: Dict[str, List[str]] = {}

        raw_vectors = self._read_json(embeds_path)
        dimension = None
        for item_id, encoded in raw_vectors.items():
            try:
                vector = self.codec.decode(encoded)
                if vector.size == 0:
                    raise CorruptDataError("empty vector")
                if dimension is not None and vector.shape[0] != dimension:
                    raise CorruptDataError(
                        f"dimension {vector.shape[0]} differs from {dimension}"
                    )
            except CorruptDataError as e:
                logger.warning(f"Dropping cached vector for {item_id}: {e}")
                continue
            dimension = vector.shape[0]
            vectors[str(item_id)] = vector

        raw_labels = self._read_json(labels_path)
        for item_id, item_labels in raw_labels.items():
            if isinstance(item_labels, list) and all(isinstance(l, str) for l in item_labels):
                labels[str(item_id)] = list(item_labels)
            else:
                logger.warning(f"Dropping cached labels for {item_id}: not a string list")

        if vectors or labels:
            logger.info(
                f"Loaded cache {version}: {len(vectors)} vectors, "
                f"{len(labels)} label sets"
            )
        return vectors, labels

    def _read_json(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read cache {path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring cache {path}: expected an object")
            return {}
        return data

    def save(self,
             version: str,
             vectors: Dict[str, np.ndarray],
             labels: Dict[str, List[str]]) -> bool:
        """
        Persist both tables for a version, best effort.

        Returns:
            True if the cache was written, False if storage refused it.
        """
        embeds_path, labels_path = self._paths(version)
        embeds_doc = json.dumps(
            {item_id: self.codec.encode(vector) for item_id, vector in vectors.items()}
        )
        labels_doc = json.dumps({item_id: list(l) for item_id, l in labels.items()})

        try:
            size = len(embeds_doc.encode('utf-8')) + len(labels_doc.encode('utf-8'))
            if self.max_bytes and size > self.max_bytes:
                raise StorageQuotaError(
                    f"cache of {size} bytes exceeds quota of {self.max_bytes} bytes"
                )
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            _write_atomic(embeds_path, embeds_doc)
            _write_atomic(labels_path, labels_doc)
        except StorageQuotaError as e:
            logger.warning(f"Cache {version} not saved: {e}")
            return False
        except OSError as e:
            logger.warning(f"Cache {version} not saved: {e}")
            return False

        logger.info(f"Saved cache {version}: {len(vectors)} vectors to {self.cache_dir}")
        return True

    def clear(self, version: str) -> None:
        """Remove everything stored under a version."""
        for path in self._paths(version):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        logger.info(f"Cleared cache {version}")

    def versions(self) -> List[str]:
        """Version tags that have a stored vector table."""
        if not self.cache_dir.is_dir():
            return []
        prefix = EMBEDS_PREFIX + "."
        tags = []
        for path in sorted(self.cache_dir.glob(f"{EMBEDS_PREFIX}.*.json")):
            tags.append(filename_to_version(path.name[len(prefix):-len(".json")]))
        return tags


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=path.name, suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
