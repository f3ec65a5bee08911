"""
Image loading for catalog items and queries.

Sources can be an http(s) URL, a local file path, or raw encoded bytes
(an upload). Everything is decoded with OpenCV into an RGB uint8 array.
A failed fetch may be retried once through an alternate URL supplied by
the caller (for example a relaying proxy); choosing that URL is the
caller's business.
"""

import logging
import os
from typing import Callable, Optional, Union

import cv2
import httpx
import numpy as np

from .errors import ImageLoadError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = float(os.environ.get("VPM_HTTP_TIMEOUT", "30"))

ImageSource = Union[str, bytes, bytearray, os.PathLike]


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes (JPEG, PNG, WebP...) to RGB uint8."""
    buf = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
    if image is None:
        raise ImageLoadError(f"Could not decode {len(data)} bytes as an image")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


class ImageLoader:
    """All-or-nothing image loader: returns a usable image or raises."""

    def __init__(self,
                 client: Optional[httpx.AsyncClient] = None,
                 alternate_url: Optional[Callable[[str], Optional[str]]] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        """
        Args:
            client: Shared HTTP client. A private one is opened per load
                when omitted.
            alternate_url: Maps a URL that failed to a second URL to try,
                or None to give up.
            timeout: Request timeout in seconds for a private client.
        """
        self.client = client
        self.alternate_url = alternate_url
        self.timeout = timeout

    async def load(self, source: ImageSource) -> np.ndarray:
        """
        Load and decode an image.

        Raises:
            NetworkError: If the image could not be fetched.
            ImageLoadError: If the bytes are not a decodable image, or
                a local file is missing.
        """
        if isinstance(source, (bytes, bytearray)):
            return decode_image(bytes(source))

        source = os.fspath(source)
        if source.startswith(("http://", "https://")):
            return decode_image(await self._fetch_with_retry(source))

        try:
            with open(source, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise ImageLoadError(f"Could not read image file {source}: {e}") from e
        return decode_image(data)

    async def _fetch_with_retry(self, url: str) -> bytes:
        try:
            return await self._fetch(url)
        except NetworkError as e:
            alternate = self.alternate_url(url) if self.alternate_url else None
            if not alternate or alternate == url:
                raise
            logger.debug(f"Fetch of {url} failed ({e}), retrying via {alternate}")
            return await self._fetch(alternate)

    async def _fetch(self, url: str) -> bytes:
        client = self.client or httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        finally:
            if self.client is None:
                await client.aclose()
        if not response.is_success:
            raise NetworkError(f"GET {url} returned HTTP {response.status_code}")
        return response.content
