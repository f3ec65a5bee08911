"""Shared test fixtures for visual matcher tests."""

import asyncio

import cv2
import numpy as np
import pytest

from visual_matcher.embedders import Classifier, Embedder
from visual_matcher.errors import EmbeddingError, NetworkError
from visual_matcher.models import CatalogItem


@pytest.fixture
def red_square_image():
    """Generate a 200x200 red square on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    img[40:160, 40:160] = [200, 30, 30]
    return img


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


def encode_png(image_rgb: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buf.tobytes()


@pytest.fixture
def red_square_png(red_square_image):
    return encode_png(red_square_image)


def make_catalog(n, category="Bags"):
    return [
        CatalogItem(id=str(i), title=f"Item {i}", category=category,
                    image_ref=f"img://{i}")
        for i in range(1, n + 1)
    ]


@pytest.fixture
def three_items():
    return [
        CatalogItem(id="1", title="Item 1", category="Bags", image_ref="img://1"),
        CatalogItem(id="2", title="Item 2", category="Shoes", image_ref="img://2"),
        CatalogItem(id="3", title="Item 3", category="Bags", image_ref="img://3"),
    ]


class FakeImageLoader:
    """Returns the source reference itself as the 'image'."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    async def load(self, source):
        self.calls.append(source)
        await asyncio.sleep(0)
        if source in self.failing:
            raise NetworkError(f"cannot fetch {source}")
        return source


class FakeEmbedder(Embedder):
    """Looks vectors up by image reference and tracks concurrency."""

    model_tag = "fake"

    def __init__(self, table, gate=None):
        self.table = table
        self.gate = gate
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, image):
        self.calls.append(image)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for _ in range(3):
                await asyncio.sleep(0)
            if image not in self.table:
                raise EmbeddingError(f"no vector for {image}")
            return np.asarray(self.table[image], dtype=np.float32)
        finally:
            self.in_flight -= 1


class FakeClassifier(Classifier):
    def __init__(self, table, failing=()):
        self.table = table
        self.failing = set(failing)

    async def classify(self, image, top_k=3):
        if image in self.failing:
            raise RuntimeError("classifier crashed")
        return [(label, 0.9 - 0.1 * i) for i, label in enumerate(self.table.get(image, []))][:top_k]


@pytest.fixture
def fake_vectors():
    return {
        "img://1": [1.0, 0.0],
        "img://2": [0.0, 1.0],
        "img://3": [0.7, 0.7],
    }
