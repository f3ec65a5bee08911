"""Tests for query supersession."""

import asyncio

import numpy as np

from visual_matcher.embedders import Embedder
from visual_matcher.models import QueryStatus
from visual_matcher.query import QuerySession

from conftest import FakeClassifier, FakeEmbedder, FakeImageLoader


class GatedEmbedder(Embedder):
    """Holds embedding of 'img://slow' until released."""

    model_tag = "gated"

    def __init__(self):
        self.release = asyncio.Event()

    async def embed(self, image):
        if image == "img://slow":
            await self.release.wait()
            return np.array([0.0, 1.0], dtype=np.float32)
        return np.array([1.0, 0.0], dtype=np.float32)


class TestQuerySession:
    """Tests for submit()."""

    def test_ready_state(self, fake_vectors):
        classifier = FakeClassifier({"img://1": ["Backpack", "bag"]})
        session = QuerySession(FakeEmbedder(fake_vectors), FakeImageLoader(), classifier)

        state = asyncio.run(session.submit("img://1"))

        assert state.status is QueryStatus.READY
        assert state.loaded is True
        assert np.array_equal(state.vector, [1, 0])
        assert state.labels == ("backpack", "bag")
        assert session.state is state
        assert state.token == 1

    def test_load_failure(self, fake_vectors):
        session = QuerySession(FakeEmbedder(fake_vectors), FakeImageLoader(failing={"img://1"}))
        state = asyncio.run(session.submit("img://1"))
        assert state.status is QueryStatus.FAILED
        assert state.loaded is False
        assert "img://1" in state.error
        assert session.state is state

    def test_embedding_failure_after_load(self):
        session = QuerySession(FakeEmbedder({}), FakeImageLoader())
        state = asyncio.run(session.submit("img://9"))
        assert state.status is QueryStatus.FAILED
        assert state.loaded is True
        assert state.vector is None

    def test_classification_failure_still_ready(self, fake_vectors):
        classifier = FakeClassifier({}, failing={"img://2"})
        session = QuerySession(FakeEmbedder(fake_vectors), FakeImageLoader(), classifier)
        state = asyncio.run(session.submit("img://2"))
        assert state.status is QueryStatus.READY
        assert state.labels == ()

    def test_superseded_result_is_dropped(self):
        async def run():
            embedder = GatedEmbedder()
            session = QuerySession(embedder, FakeImageLoader())
            slow = asyncio.ensure_future(session.submit("img://slow"))
            await asyncio.sleep(0.01)
            assert session.state.status is QueryStatus.PROCESSING

            fast = await session.submit("img://fast")
            embedder.release.set()
            stale = await slow
            return session, fast, stale

        session, fast, stale = asyncio.run(run())
        assert stale.status is QueryStatus.READY
        assert not session.is_current(stale)
        assert session.state is fast
        assert np.array_equal(session.state.vector, [1, 0])
        assert fast.token > stale.token

    def test_clear(self, fake_vectors):
        session = QuerySession(FakeEmbedder(fake_vectors), FakeImageLoader())
        asyncio.run(session.submit("img://1"))
        session.clear()
        assert session.state is None
