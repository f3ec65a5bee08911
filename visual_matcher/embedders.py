"""
Embedding and classification collaborators.

The matcher only needs two things from a model: a fixed-length vector
per image, and optionally a short list of class labels. Anything that
provides `model_tag` plus an async `embed(image)` works as an embedder;
`model_tag` becomes part of the cache-version tag, so embedders with
different output spaces never share cached vectors.

Shipped implementations:
    HistogramEmbedder   HSV color histogram computed locally with OpenCV
    RemoteEmbedder      HTTP call to an embedding endpoint
    FallbackEmbedder    primary embedder with a secondary on failure
    NullClassifier      classifier that never predicts anything
"""

import logging
import os
from typing import List, Optional, Sequence, Tuple

import cv2
import httpx
import numpy as np

from .errors import ClassificationError, EmbeddingError
from .models import normalize_labels
from .preprocessing import extract_center_patch, normalize_image, resize_for_embedding

logger = logging.getLogger(__name__)

# Bin counts trade discriminative power against vector length
H_BINS = int(os.environ.get("HSV_H_BINS", "8"))
S_BINS = int(os.environ.get("HSV_S_BINS", "8"))

DEFAULT_EMBED_URL = os.environ.get("VPM_REMOTE_EMBED_URL")
DEFAULT_TIMEOUT = float(os.environ.get("VPM_HTTP_TIMEOUT", "30"))

Prediction = Tuple[str, float]


class Embedder:
    """Turns an RGB image into a feature vector."""

    model_tag = "embedder"

    async def embed(self, image: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class Classifier:
    """Predicts ordered (label, confidence) pairs for an RGB image."""

    async def classify(self, image: np.ndarray, top_k: int = 3) -> List[Prediction]:
        raise NotImplementedError


class NullClassifier(Classifier):
    async def classify(self, image: np.ndarray, top_k: int = 3) -> List[Prediction]:
        return []


def labels_from_predictions(predictions: Sequence[Prediction], top_k: int = 3) -> List[str]:
    """LabelSet from classifier output, keeping the classifier's order."""
    return normalize_labels(label for label, _ in list(predictions)[:top_k])


async def predict_labels(classifier: Classifier, image: np.ndarray, top_k: int = 3) -> List[str]:
    """
    Run a classifier and reduce its output to a LabelSet.

    Raises:
        ClassificationError: If the classifier fails or its output is
            not (label, confidence) pairs.
    """
    try:
        predictions = await classifier.classify(image, top_k)
        return labels_from_predictions(predictions, top_k)
    except ClassificationError:
        raise
    except Exception as e:
        raise ClassificationError(f"{type(classifier).__name__} failed: {e}") from e


class HistogramEmbedder(Embedder):
    """
    Color-distribution embedding from an H x S histogram.

    Process:
        1. Normalize to uint8 RGB and resize to the embedding size
        2. Crop a centered patch to drop edge background
        3. Convert to HSV and apply CLAHE to the V channel
        4. Compute the H x S histogram
        5. L2-normalize

    Deterministic; used as the secondary behind a learned model, or on
    its own when no model endpoint is set.
    """

    def __init__(self, h_bins: int = H_BINS, s_bins: int = S_BINS):
        self.h_bins = h_bins
        self.s_bins = s_bins
        self.model_tag = f"hsv{h_bins}x{s_bins}"

    @property
    def dimension(self) -> int:
        return self.h_bins * self.s_bins

    async def embed(self, image: np.ndarray) -> np.ndarray:
        return self.compute(image)

    def compute(self, image: np.ndarray) -> np.ndarray:
        try:
            image = resize_for_embedding(normalize_image(np.asarray(image)))
            patch = extract_center_patch(image)

            hsv = cv2.cvtColor(patch, cv2.COLOR_RGB2HSV)
            h_ch, s_ch, v_ch = cv2.split(hsv)
            clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
            hsv = cv2.merge((h_ch, s_ch, clahe.apply(v_ch)))

            hist = cv2.calcHist([hsv], [0, 1], None,
                                [self.h_bins, self.s_bins], [0, 180, 0, 256])
        except (cv2.error, ValueError, IndexError) as e:
            raise EmbeddingError(f"Histogram embedding failed: {e}") from e

        vector = hist.flatten().astype(np.float32)
        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector


class RemoteEmbedder(Embedder):
    """
    Client for an HTTP embedding endpoint.

    The image is POSTed as JPEG bytes. The endpoint may answer with
    {"embedding": [...]}, a flat array, or a nested [[...]] array.
    """

    def __init__(self,
                 url: Optional[str] = None,
                 model_tag: str = "remote",
                 client: Optional[httpx.AsyncClient] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 jpeg_quality: int = 92):
        self.url = url or DEFAULT_EMBED_URL
        if not self.url:
            raise ValueError("RemoteEmbedder needs a url (or VPM_REMOTE_EMBED_URL)")
        self.model_tag = model_tag
        self.client = client
        self.timeout = timeout
        self.jpeg_quality = jpeg_quality

    async def embed(self, image: np.ndarray) -> np.ndarray:
        body = self._encode(image)
        client = self.client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(
                self.url, content=body, headers={"content-type": "image/jpeg"}
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e
        finally:
            if self.client is None:
                await client.aclose()

        if not response.is_success:
            raise EmbeddingError(f"Embedding endpoint returned HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as e:
            raise EmbeddingError(f"Embedding endpoint returned invalid JSON: {e}") from e
        return parse_embedding_response(data)

    def _encode(self, image: np.ndarray) -> bytes:
        bgr = cv2.cvtColor(normalize_image(np.asarray(image)), cv2.COLOR_RGB2BGR)
        ok, buf = cv2.imencode(".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if not ok:
            raise EmbeddingError("Could not JPEG-encode image for embedding")
        return buf.tobytes()


def parse_embedding_response(data) -> np.ndarray:
    """Pull the vector out of an embedding endpoint response."""
    if isinstance(data, dict):
        data = data.get("embedding")
    if isinstance(data, list) and data and isinstance(data[0], list):
        data = data[0]
    if not isinstance(data, list) or not data:
        raise EmbeddingError("Embedding response held no vector")
    try:
        vector = np.asarray(data, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise EmbeddingError(f"Embedding response is not numeric: {e}") from e
    if vector.ndim != 1 or not np.all(np.isfinite(vector)):
        raise EmbeddingError(f"Embedding response has bad shape {vector.shape}")
    return vector


class FallbackEmbedder(Embedder):
    """
    Use the primary embedder, the secondary when the primary fails.

    The two usually differ in dimensionality. The catalog tables accept
    only one dimensionality, so once one embedder has filled a slot,
    vectors from the other are rejected instead of mixed in.
    """

    def __init__(self, primary: Embedder, secondary: Embedder):
        self.primary = primary
        self.secondary = secondary
        self.model_tag = f"{primary.model_tag}+{secondary.model_tag}"

    async def embed(self, image: np.ndarray) -> np.ndarray:
        try:
            return await self.primary.embed(image)
        except EmbeddingError as e:
            logger.debug(f"Primary embedder {self.primary.model_tag} failed ({e}), "
                         f"using {self.secondary.model_tag}")
            return await self.secondary.embed(image)
