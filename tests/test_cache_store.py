"""Tests for the versioned local cache."""

import json

import numpy as np
import pytest

from visual_matcher.cache_store import (
    MAX_TAG_CHARS,
    CacheStore,
    filename_to_version,
    version_to_filename,
)
from visual_matcher.codec import VectorCodec


@pytest.fixture
def store(tmp_path):
    return CacheStore(cache_dir=str(tmp_path / "cache"))


def sample_tables():
    vectors = {
        "1": np.array([0.1, 0.2, 0.3], dtype=np.float32),
        "2": np.array([-1.0, 0.0, 1e-7], dtype=np.float32),
    }
    labels = {"1": ["backpack"], "2": []}
    return vectors, labels


class TestCacheStore:
    """Tests for load/save/clear."""

    def test_save_then_load_is_exact(self, store):
        vectors, labels = sample_tables()
        assert store.save("v1", vectors, labels) is True
        loaded_vectors, loaded_labels = store.load("v1")
        assert set(loaded_vectors) == {"1", "2"}
        for key in vectors:
            assert loaded_vectors[key].tobytes() == vectors[key].tobytes()
        assert loaded_labels == labels

    def test_load_without_files_is_empty(self, store):
        assert store.load("v1") == ({}, {})

    def test_versions_do_not_mix(self, store):
        vectors, labels = sample_tables()
        store.save("v1:clip", vectors, labels)
        assert store.load("v1:hsv8x8") == ({}, {})
        assert set(store.versions()) == {"v1:clip"}

    def test_unparsable_file_is_cold_cache(self, store, tmp_path):
        vectors, labels = sample_tables()
        store.save("v1", vectors, labels)
        embeds_path, _ = store._paths("v1")
        embeds_path.write_text("{not json")
        loaded_vectors, loaded_labels = store.load("v1")
        assert loaded_vectors == {}
        assert loaded_labels == labels

    def test_corrupt_entries_are_dropped(self, store):
        vectors, labels = sample_tables()
        store.save("v1", vectors, labels)
        embeds_path, labels_path = store._paths("v1")
        data = json.loads(embeds_path.read_text())
        data["3"] = "AAAA"
        embeds_path.write_text(json.dumps(data))
        labels_path.write_text(json.dumps({"1": ["bag"], "2": "oops"}))

        loaded_vectors, loaded_labels = store.load("v1")
        assert set(loaded_vectors) == {"1", "2"}
        assert loaded_labels == {"1": ["bag"]}

    def test_non_object_document_is_ignored(self, store):
        store.cache_dir.mkdir(parents=True)
        embeds_path, _ = store._paths("v1")
        embeds_path.write_text("[1, 2, 3]")
        assert store.load("v1") == ({}, {})

    def test_quota_exceeded_is_swallowed(self, tmp_path):
        store = CacheStore(cache_dir=str(tmp_path / "cache"), max_bytes=10)
        vectors, labels = sample_tables()
        assert store.save("v1", vectors, labels) is False
        assert store.load("v1") == ({}, {})

    def test_failed_write_keeps_previous_cache(self, tmp_path):
        store = CacheStore(cache_dir=str(tmp_path / "cache"))
        vectors, labels = sample_tables()
        store.save("v1", vectors, labels)

        store.max_bytes = 10
        bigger = dict(vectors, **{"3": np.ones(64, dtype=np.float32)})
        assert store.save("v1", bigger, labels) is False
        assert set(store.load("v1")[0]) == {"1", "2"}

    def test_unwritable_directory_is_swallowed(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = CacheStore(cache_dir=str(blocker / "cache"))
        vectors, labels = sample_tables()
        assert store.save("v1", vectors, labels) is False

    def test_clear(self, store):
        vectors, labels = sample_tables()
        store.save("v1", vectors, labels)
        store.clear("v1")
        assert store.load("v1") == ({}, {})
        store.clear("v1")  # clearing twice is fine

    def test_float16_codec(self, tmp_path):
        store = CacheStore(cache_dir=str(tmp_path), codec=VectorCodec("float16"))
        store.save("v1", {"1": np.array([0.5, 0.25], dtype=np.float32)}, {})
        assert np.array_equal(store.load("v1")[0]["1"], [0.5, 0.25])

    def test_model_tag_with_slash(self, store):
        tag = "v1:Xenova/clip-vit-base-patch32"
        vectors, labels = sample_tables()
        assert store.save(tag, vectors, labels) is True
        assert all(path.parent == store.cache_dir for path in store._paths(tag))
        assert set(store.load(tag)[0]) == {"1", "2"}
        assert store.versions() == [tag]
        store.clear(tag)
        assert store.load(tag) == ({}, {})

    def test_similar_tags_do_not_share_files(self, store):
        store.save("a:b", {"1": np.array([1.0], dtype=np.float32)}, {})
        store.save("a__b", {"2": np.array([2.0], dtype=np.float32)}, {})
        assert set(store.load("a:b")[0]) == {"1"}
        assert set(store.load("a__b")[0]) == {"2"}
        assert sorted(store.versions()) == ["a:b", "a__b"]

    def test_tag_cannot_leave_cache_dir(self, store):
        store.save("../escape", {"1": np.array([1.0], dtype=np.float32)}, {})
        assert all(path.parent == store.cache_dir for path in store._paths("../escape"))
        assert set(store.load("../escape")[0]) == {"1"}

    def test_very_long_tag(self, store):
        tag = "v1:" + "x" * 500
        store.save(tag, {"1": np.array([1.0], dtype=np.float32)}, {})
        assert len(version_to_filename(tag)) == MAX_TAG_CHARS
        assert set(store.load(tag)[0]) == {"1"}
        assert version_to_filename(tag) != version_to_filename(tag + "y")


class TestVersionFilename:
    """Tests for version tag <-> file name mapping."""

    def test_only_portable_characters(self):
        name = version_to_filename("v1:Xenova/clip-vit-base-patch32.onnx~")
        assert all(c.isalnum() or c in "%_-" for c in name)

    def test_round_trip(self):
        for tag in ["v1", "v1:fake", "a__b", "a:b", "../x", "100%"]:
            assert filename_to_version(version_to_filename(tag)) == tag
