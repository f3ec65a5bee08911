"""
Image preparation ahead of embedding.

Decoded images arrive in whatever form the source had: grayscale,
RGBA, float in [0, 1], huge or tiny. Embedders expect uint8 RGB at a
bounded size, so everything passes through here first.
"""

import logging

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Catalog thumbnails are embedded at this edge length
EMBED_SIZE = 256


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """Coerce an image to uint8 RGB with three channels."""
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    if image_np.ndim == 3 and image_np.shape[2] == 4:
        return cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)
    if image_np.ndim == 3 and image_np.shape[2] == 1:
        return cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    return image_np


def resize_for_embedding(image_np: np.ndarray, size: int = EMBED_SIZE) -> np.ndarray:
    """
    Scale an image to a size x size square.

    Shrinking uses area interpolation to avoid aliasing; enlarging
    small images uses linear interpolation.
    """
    h, w = image_np.shape[:2]
    if (h, w) == (size, size):
        return image_np
    interpolation = cv2.INTER_AREA if max(h, w) > size else cv2.INTER_LINEAR
    return cv2.resize(image_np, (size, size), interpolation=interpolation)


def extract_center_patch(image_np: np.ndarray, patch_size: int = None) -> np.ndarray:
    """
    Crop a centered square patch, clamped to the image bounds.

    Product shots usually put the item in the middle; the patch drops
    background at the edges before color statistics are taken.

    Args:
        image_np: RGB uint8 image.
        patch_size: Edge length (defaults to 80% of the shorter side).

    Returns:
        Cropped image patch.
    """
    h, w = image_np.shape[:2]
    if patch_size is None:
        patch_size = max(1, int(min(h, w) * 0.8))
    patch_size = min(patch_size, h, w)

    half = patch_size // 2
    cy, cx = h // 2, w // 2
    y1 = max(0, cy - half)
    x1 = max(0, cx - half)
    return image_np[y1:y1 + patch_size, x1:x1 + patch_size]
