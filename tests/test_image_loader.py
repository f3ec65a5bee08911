"""Tests for image loading."""

import asyncio

import httpx
import numpy as np
import pytest

from visual_matcher.errors import ImageLoadError, NetworkError
from visual_matcher.image_loader import ImageLoader, decode_image

IMAGE_URL = "https://shop.example.com/images/1.png"
MIRROR_URL = "https://mirror.example.com/images/1.png"


def load(loader, source):
    async def run():
        try:
            return await loader.load(source)
        finally:
            if loader.client is not None:
                await loader.client.aclose()
    return asyncio.run(run())


def client_for(routes, seen=None):
    def handler(request):
        url = str(request.url)
        if seen is not None:
            seen.append(url)
        body = routes.get(url)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestDecodeImage:
    """Tests for decode_image()."""

    def test_png_decodes_to_rgb(self, red_square_png, red_square_image):
        image = decode_image(red_square_png)
        assert image.shape == (200, 200, 3)
        assert np.array_equal(image, red_square_image)

    def test_garbage_raises(self):
        with pytest.raises(ImageLoadError):
            decode_image(b"definitely not an image")

    def test_empty_raises(self):
        with pytest.raises(ImageLoadError):
            decode_image(b"")


class TestImageLoader:
    """Tests for ImageLoader.load()."""

    def test_bytes_source(self, red_square_png):
        image = load(ImageLoader(), red_square_png)
        assert image.shape == (200, 200, 3)

    def test_file_source(self, red_square_png, tmp_path):
        path = tmp_path / "item.png"
        path.write_bytes(red_square_png)
        assert load(ImageLoader(), path).shape == (200, 200, 3)
        assert load(ImageLoader(), str(path)).shape == (200, 200, 3)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageLoadError):
            load(ImageLoader(), str(tmp_path / "missing.png"))

    def test_url_source(self, red_square_png):
        loader = ImageLoader(client=client_for({IMAGE_URL: red_square_png}))
        assert load(loader, IMAGE_URL).shape == (200, 200, 3)

    def test_not_found_raises_network_error(self):
        loader = ImageLoader(client=client_for({}))
        with pytest.raises(NetworkError, match="404"):
            load(loader, IMAGE_URL)

    def test_retries_through_alternate_url(self, red_square_png):
        seen = []
        loader = ImageLoader(
            client=client_for({MIRROR_URL: red_square_png}, seen),
            alternate_url=lambda url: url.replace("shop.", "mirror."),
        )
        assert load(loader, IMAGE_URL).shape == (200, 200, 3)
        assert seen == [IMAGE_URL, MIRROR_URL]

    def test_alternate_failure_propagates(self):
        seen = []
        loader = ImageLoader(
            client=client_for({}, seen),
            alternate_url=lambda url: url.replace("shop.", "mirror."),
        )
        with pytest.raises(NetworkError):
            load(loader, IMAGE_URL)
        assert len(seen) == 2

    def test_no_alternate_means_one_attempt(self):
        seen = []
        loader = ImageLoader(client=client_for({}, seen), alternate_url=lambda url: None)
        with pytest.raises(NetworkError):
            load(loader, IMAGE_URL)
        assert seen == [IMAGE_URL]

    def test_undecodable_download(self):
        loader = ImageLoader(client=client_for({IMAGE_URL: b"<html>oops</html>"}))
        with pytest.raises(ImageLoadError):
            load(loader, IMAGE_URL)
