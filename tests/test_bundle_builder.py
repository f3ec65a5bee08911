"""Tests for bundle export and construction."""

import asyncio
import json

import numpy as np
import pytest

from visual_matcher.bundle_builder import build_bundle, export_bundle, export_packed_f16
from visual_matcher.remote_loader import decode_label_bundle, decode_vector_bundle

from conftest import FakeClassifier, FakeEmbedder, FakeImageLoader


class TestExport:
    """Tests for writing bundle files."""

    def test_keyed_bundle_reads_back(self, three_items, tmp_path):
        vectors = {"1": np.array([1, 0], np.float32), "3": np.array([0.5, 0.25], np.float32)}
        summary = export_bundle(three_items, vectors, {"1": ["bag"]}, str(tmp_path), "v2")

        assert summary["vectors"] == 2
        assert summary["missing"] == 1
        assert summary["embeds_path"].endswith("embeds.v2.json")

        with open(summary["embeds_path"]) as f:
            decoded = decode_vector_bundle(json.load(f), three_items)
        with open(summary["labels_path"]) as f:
            labels = decode_label_bundle(json.load(f), three_items)
        assert np.array_equal(decoded["3"], [0.5, 0.25])
        assert set(decoded) == {"1", "3"}
        assert labels == {"1": ["bag"]}

    def test_packed_f16(self, three_items, tmp_path):
        vectors = {
            "1": np.array([1, 0, 0, 0], np.float32),
            "2": np.array([0, 1, 0, 0], np.float32),
            "3": np.array([0.5, 0.5, 0, 0], np.float32),
        }
        path = tmp_path / "out" / "embeds.v1.f16"
        size = export_packed_f16(three_items, vectors, str(path))

        assert size == 3 * 4 * 2
        decoded = decode_vector_bundle(path.read_bytes(), three_items)
        assert np.array_equal(decoded["3"], [0.5, 0.5, 0, 0])

    def test_packed_needs_every_vector(self, three_items, tmp_path):
        with pytest.raises(ValueError, match="missing"):
            export_packed_f16(three_items, {"1": np.ones(2)}, str(tmp_path / "x.f16"))


class TestBuildBundle:
    """Tests for build_bundle()."""

    def test_builds_from_scratch(self, three_items, fake_vectors, tmp_path):
        summary = asyncio.run(build_bundle(
            three_items,
            FakeEmbedder(fake_vectors),
            str(tmp_path),
            image_loader=FakeImageLoader(),
            classifier=FakeClassifier({"img://1": ["Bag"]}),
            concurrency=2,
            packed=True,
        ))
        assert summary["vectors"] == 3
        assert summary["failed"] == 0
        assert (tmp_path / "embeds.v1.f16").exists()
        with open(summary["labels_path"]) as f:
            assert json.load(f) == {"1": ["bag"]}

    def test_failures_skip_packed_file(self, three_items, fake_vectors, tmp_path):
        summary = asyncio.run(build_bundle(
            three_items,
            FakeEmbedder(fake_vectors),
            str(tmp_path),
            image_loader=FakeImageLoader(failing={"img://2"}),
            concurrency=2,
            packed=True,
        ))
        assert summary["failed"] == 1
        assert summary["missing"] == 1
        assert "packed_path" not in summary
        assert not (tmp_path / "embeds.v1.f16").exists()
