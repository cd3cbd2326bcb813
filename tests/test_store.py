"""Tests for the sample store."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest
from conftest import FakeEmbedder, frame

from teachablex.core.store import SampleStore
from teachablex.errors import (
    EmbeddingFailed,
    IndexOutOfRange,
    InvariantViolation,
    NotFound,
    NotReady,
)


class TestClasses:
    def test_starts_with_two_default_classes(self, store: SampleStore) -> None:
        classes = store.active_classes()
        assert [c.id for c in classes] == [0, 1]
        assert [c.name for c in classes] == ["Class 1", "Class 2"]
        assert all(c.sample_count == 0 for c in classes)

    def test_initial_classes_below_floor_rejected(self, embedder: FakeEmbedder) -> None:
        with pytest.raises(ValueError):
            SampleStore(embedder, initial_classes=1)

    def test_add_class_ids_increase(self, store: SampleStore) -> None:
        assert store.add_class("cats") == 2
        assert store.add_class() == 3
        assert store.get_class(2).name == "cats"
        assert store.get_class(3).name == "Class 4"

    def test_ids_never_reused_after_removal(self, store: SampleStore) -> None:
        third = store.add_class()
        store.remove_class(third)
        assert store.add_class() == third + 1

    def test_remove_at_floor_fails_and_leaves_store_unchanged(self, store: SampleStore) -> None:
        store.add_sample(0, frame(0))
        with pytest.raises(InvariantViolation):
            store.remove_class(0)
        assert [c.id for c in store.active_classes()] == [0, 1]
        assert store.get_class(0).sample_count == 1

    def test_remove_releases_samples(self, store: SampleStore) -> None:
        third = store.add_class()
        store.add_sample(third, frame(2))
        slot = store.get_class(third)
        store.remove_class(third)
        assert slot.samples == []
        assert third not in store
        with pytest.raises(NotFound):
            store.get_class(third)

    def test_remove_unknown_class(self, store: SampleStore) -> None:
        store.add_class()
        with pytest.raises(NotFound):
            store.remove_class(42)

    def test_rename_accepts_empty_name(self, store: SampleStore) -> None:
        store.rename_class(1, "")
        assert store.get_class(1).name == ""

    def test_rename_removed_class_fails(self, store: SampleStore) -> None:
        third = store.add_class()
        store.remove_class(third)
        with pytest.raises(NotFound):
            store.rename_class(third, "x")

    def test_active_classes_keep_creation_order(self, store: SampleStore) -> None:
        a = store.add_class("a")
        b = store.add_class("b")
        store.remove_class(a)
        assert [c.id for c in store.active_classes()] == [0, 1, b]


class TestSamples:
    def test_add_sample_stores_image_and_embedding(self, store: SampleStore) -> None:
        index = store.add_sample(0, frame(1))
        sample = store.get_sample(0, index)
        assert index == 0
        assert sample.raw_image == frame(1)
        assert sample.embedding.shape == (4,)
        assert sample.embedding.dtype == np.float32

    def test_embedding_failure_adds_nothing(self, store: SampleStore) -> None:
        with pytest.raises(EmbeddingFailed):
            store.add_sample(0, b"bad image")
        assert store.get_class(0).sample_count == 0

    def test_not_ready_provider(self, embedder: FakeEmbedder, store: SampleStore) -> None:
        embedder.is_ready = False
        with pytest.raises(NotReady):
            store.add_sample(0, frame(0))

    def test_wrong_length_embedding_rejected(self, embedder: FakeEmbedder) -> None:
        class ShortEmbedder(FakeEmbedder):
            def embed(self, image: bytes) -> np.ndarray:
                return np.ones(3, dtype=np.float32)

        store = SampleStore(ShortEmbedder(dim=4))
        with pytest.raises(EmbeddingFailed, match="dimension"):
            store.add_sample(0, frame(0))
        assert store.get_class(0).sample_count == 0

    def test_add_sample_unknown_class(self, store: SampleStore) -> None:
        with pytest.raises(NotFound):
            store.add_sample(9, frame(0))

    def test_remove_sample_shifts_indices(self, store: SampleStore) -> None:
        for variant in range(3):
            store.add_sample(0, frame(0, variant))
        store.remove_sample(0, 1)
        images = [s.raw_image for s in store.get_class(0).samples]
        assert images == [frame(0, 0), frame(0, 2)]

    @pytest.mark.parametrize("index", [-1, 1, 5])
    def test_remove_sample_out_of_range(self, store: SampleStore, index: int) -> None:
        store.add_sample(0, frame(0))
        with pytest.raises(IndexOutOfRange):
            store.remove_sample(0, index)
        assert store.get_class(0).sample_count == 1

    def test_images_and_embeddings_stay_paired(self, store: SampleStore, embedder: FakeEmbedder) -> None:
        ops = [("add", 0), ("add", 1), ("add", 2), ("remove", 0), ("add", 3), ("remove", 1), ("add", 4)]
        for op, value in ops:
            if op == "add":
                store.add_sample(0, frame(value, value))
            else:
                store.remove_sample(0, value)
        for sample in store.get_class(0).samples:
            np.testing.assert_array_equal(sample.embedding, embedder.embed(sample.raw_image))

    def test_batch_continues_past_failures(self, store: SampleStore) -> None:
        result = store.add_samples(1, [frame(1, 0), b"bad one", frame(1, 1)])
        assert result.added == (0, 1)
        assert len(result.failed) == 1
        assert result.failed[0][0] == 1
        assert store.get_class(1).sample_count == 2

    def test_concurrent_adds_to_one_class_keep_pairs(self) -> None:
        class SlowEmbedder(FakeEmbedder):
            def embed(self, image: bytes) -> np.ndarray:
                time.sleep(0.01)
                return super().embed(image)

        embedder = SlowEmbedder()
        store = SampleStore(embedder)
        threads = [threading.Thread(target=store.add_sample, args=(0, frame(i % 4, i))) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        samples = store.get_class(0).samples
        assert len(samples) == 8
        for sample in samples:
            np.testing.assert_array_equal(sample.embedding, FakeEmbedder().embed(sample.raw_image))

    def test_class_removed_during_embedding(self) -> None:
        started = threading.Event()
        release = threading.Event()

        class BlockingEmbedder(FakeEmbedder):
            def embed(self, image: bytes) -> np.ndarray:
                started.set()
                release.wait(timeout=5)
                return super().embed(image)

        store = SampleStore(BlockingEmbedder(), initial_classes=3)
        errors: list[Exception] = []

        def add() -> None:
            try:
                store.add_sample(2, frame(2))
            except NotFound as exc:
                errors.append(exc)

        worker = threading.Thread(target=add)
        worker.start()
        assert started.wait(timeout=5)
        store.remove_class(2)
        release.set()
        worker.join(timeout=5)

        assert len(errors) == 1
        assert 2 not in store


class TestSummary:
    def test_ready_for_training_needs_two_non_empty_classes(self, store: SampleStore) -> None:
        assert store.ready_for_training() is False
        store.add_sample(0, frame(0))
        assert store.ready_for_training() is False
        store.add_sample(1, frame(1))
        assert store.ready_for_training() is True

    def test_statistics(self, store: SampleStore) -> None:
        store.add_class()
        store.add_samples(0, [frame(0, 0), frame(0, 1)])
        store.add_sample(2, frame(2))
        stats = store.statistics()
        assert stats.class_count == 3
        assert stats.total_images == 3
        assert stats.ready_for_training is True
