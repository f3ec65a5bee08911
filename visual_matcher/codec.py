"""
Compact text encoding for feature vectors.

Vectors are stored as base64 over their little-endian element bytes.
The result is plain ASCII, so it can sit inside a JSON document or any
other text key-value store without escaping. float32 is the default
width; float16 halves the size for precomputed bundles at the cost of
precision.
"""

import base64
import binascii
import logging

import numpy as np

from .errors import CorruptDataError

logger = logging.getLogger(__name__)

SUPPORTED_DTYPES = {
    "float32": np.dtype('<f4'),
    "float16": np.dtype('<f2'),
}


class VectorCodec:
    """Encode and decode fixed-width float vectors to strings."""

    def __init__(self, dtype: str = "float32"):
        if dtype not in SUPPORTED_DTYPES:
            raise ValueError(
                f"Unsupported vector dtype {dtype!r}, "
                f"expected one of {sorted(SUPPORTED_DTYPES)}"
            )
        self.dtype = SUPPORTED_DTYPES[dtype]

    @property
    def width(self) -> int:
        """Bytes per element."""
        return self.dtype.itemsize

    def encode(self, vector) -> str:
        arr = np.asarray(vector).astype(self.dtype, copy=False).ravel()
        return base64.b64encode(arr.tobytes()).decode('ascii')

    def decode(self, text: str) -> np.ndarray:
        """
        Decode a string produced by encode().

        Returns:
            float32 vector (float16 payloads are widened).

        Raises:
            CorruptDataError: If the text is not base64 or its payload
                length is not a whole number of elements.
        """
        try:
            raw = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise CorruptDataError(f"Vector payload is not valid base64: {e}") from e

        if len(raw) % self.width != 0:
            raise CorruptDataError(
                f"Vector payload of {len(raw)} bytes is not a multiple "
                f"of the {self.width}-byte element width"
            )

        return np.frombuffer(raw, dtype=self.dtype).astype(np.float32)
