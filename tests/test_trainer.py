"""Tests for the trainer state machine."""

from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest
from conftest import FakeHeadFactory

from teachablex.core.dataset import TrainingSet
from teachablex.core.trainer import (
    Trainer,
    TrainerState,
    TrainingConfig,
    classify_failure,
)
from teachablex.errors import AlreadyTraining, NotTrained, TrainingError, TrainingErrorCategory

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _training_set(num_classes: int = 3, per_class: int = 4, dim: int = 8) -> TrainingSet:
    rng = np.random.default_rng(0)
    labels = np.repeat(np.arange(num_classes), per_class).astype(np.int64)
    features = rng.normal(size=(labels.shape[0], dim)).astype(np.float32)
    return TrainingSet(
        features=features,
        labels=labels,
        class_names=tuple(f"class-{i}" for i in range(num_classes)),
    )


SMALL = TrainingConfig(epochs=3, batch_size=4)


# ---------------------------------------------------------------------------
# TrainingConfig
# ---------------------------------------------------------------------------


class TestTrainingConfig:
    def test_defaults(self) -> None:
        config = TrainingConfig()
        assert config.epochs == 50
        assert config.batch_size == 16
        assert config.validation_split == pytest.approx(0.2)
        assert config.learning_rate == pytest.approx(0.001)

    def test_overrides_skip_none(self) -> None:
        config = TrainingConfig().with_overrides(epochs=5, batch_size=None)
        assert config.epochs == 5
        assert config.batch_size == 16

    @pytest.mark.parametrize(
        "kwargs",
        [{"epochs": 0}, {"batch_size": 0}, {"validation_split": 1.0}, {"validation_split": -0.1}],
    )
    def test_invalid_values(self, kwargs: dict[str, float]) -> None:
        with pytest.raises(ValueError):
            TrainingConfig(**kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Trainer
# ---------------------------------------------------------------------------


class TestTrainer:
    def test_starts_idle_without_model(self, head_factory: FakeHeadFactory) -> None:
        trainer = Trainer(head_factory)
        assert trainer.state == TrainerState.IDLE
        assert trainer.snapshot() is None

    def test_successful_run(self, head_factory: FakeHeadFactory) -> None:
        trainer = Trainer(head_factory)
        trained = trainer.train(_training_set(), SMALL)

        assert trainer.state == TrainerState.TRAINED
        assert trained.class_names == ("class-0", "class-1", "class-2")
        assert trained.result.accuracy == pytest.approx(1.0)
        model = head_factory.built[0]
        assert (model.input_dim, model.num_classes) == (8, 3)
        assert trainer.snapshot() is trained

    def test_progress_callback_each_epoch(self, head_factory: FakeHeadFactory) -> None:
        seen: list[tuple[int, float]] = []
        trainer = Trainer(head_factory)
        trainer.train(_training_set(), SMALL, on_epoch=lambda e, a: seen.append((e, a)))
        assert [e for e, _ in seen] == [1, 2, 3]
        assert trainer.progress is not None
        assert trainer.progress.epoch == 3

    def test_failing_progress_callback_does_not_abort(self, head_factory: FakeHeadFactory) -> None:
        def explode(epoch: int, accuracy: float) -> None:
            raise RuntimeError("ui went away")

        trainer = Trainer(head_factory)
        trainer.train(_training_set(), SMALL, on_epoch=explode)
        assert trainer.state == TrainerState.TRAINED

    def test_second_call_while_fitting_is_rejected(self, head_factory: FakeHeadFactory) -> None:
        gate = threading.Event()
        head_factory.gate = gate
        trainer = Trainer(head_factory)

        future = trainer.start(_training_set(), SMALL)
        assert _wait_built(head_factory)
        assert trainer.state == TrainerState.FITTING

        with pytest.raises(AlreadyTraining):
            trainer.start(_training_set(num_classes=2), SMALL)

        gate.set()
        trained = future.result(timeout=5)
        assert len(head_factory.built) == 1
        assert trained.model is head_factory.built[0]
        assert trained.class_names == ("class-0", "class-1", "class-2")
        assert not head_factory.built[0].disposed

    def test_retraining_disposes_previous_model(self, head_factory: FakeHeadFactory) -> None:
        trainer = Trainer(head_factory)
        trainer.train(_training_set(), SMALL)
        trainer.train(_training_set(num_classes=2), SMALL)

        first, second = head_factory.built
        assert first.disposed
        assert not second.disposed
        snapshot = trainer.snapshot()
        assert snapshot is not None
        assert snapshot.class_names == ("class-0", "class-1")

    def test_fit_failure_sets_failed_and_disposes(self, head_factory: FakeHeadFactory) -> None:
        head_factory.fail_fit = ValueError("shapes (4,8) and (6,128) not aligned")
        trainer = Trainer(head_factory)

        with pytest.raises(TrainingError) as exc_info:
            trainer.train(_training_set(), SMALL)

        assert exc_info.value.category == TrainingErrorCategory.DATA_SHAPE
        assert trainer.state == TrainerState.FAILED
        assert trainer.snapshot() is None
        assert head_factory.built[0].disposed
        assert trainer.last_error is exc_info.value

    def test_build_failure(self, head_factory: FakeHeadFactory) -> None:
        head_factory.fail_build = MemoryError()
        trainer = Trainer(head_factory)
        with pytest.raises(TrainingError) as exc_info:
            trainer.train(_training_set(), SMALL)
        assert exc_info.value.category == TrainingErrorCategory.RESOURCE
        assert trainer.state == TrainerState.FAILED

    def test_can_train_again_after_failure(self, head_factory: FakeHeadFactory) -> None:
        head_factory.fail_fit = RuntimeError("boom")
        trainer = Trainer(head_factory)
        with pytest.raises(TrainingError):
            trainer.train(_training_set(), SMALL)

        head_factory.fail_fit = None
        trainer.train(_training_set(), SMALL)
        assert trainer.state == TrainerState.TRAINED
        assert trainer.last_error is None

    def test_dispose_is_idempotent(self, head_factory: FakeHeadFactory) -> None:
        trainer = Trainer(head_factory)
        trainer.dispose()
        trainer.train(_training_set(), SMALL)
        trainer.dispose()
        trainer.dispose()
        assert trainer.state == TrainerState.IDLE
        assert trainer.snapshot() is None
        assert head_factory.built[0].disposed

    def test_export(self, head_factory: FakeHeadFactory, tmp_path: Path) -> None:
        trainer = Trainer(head_factory)
        with pytest.raises(NotTrained):
            trainer.export(tmp_path / "model.pt")

        trainer.train(_training_set(num_classes=2), SMALL)
        path = trainer.export(tmp_path / "out" / "model.pt")
        assert path.read_text() == "class-0,class-1"


def _wait_built(head_factory: FakeHeadFactory) -> bool:
    for _ in range(500):
        if head_factory.built:
            return head_factory.built[0].fitting.wait(timeout=5)
        threading.Event().wait(0.01)
    return False


class TestClassifyFailure:
    @pytest.mark.parametrize(
        ("exc", "category"),
        [
            (MemoryError(), TrainingErrorCategory.RESOURCE),
            (RuntimeError("CUDA out of memory. Tried to allocate"), TrainingErrorCategory.RESOURCE),
            (ValueError("bad"), TrainingErrorCategory.DATA_SHAPE),
            (RuntimeError("mat1 and mat2 shapes cannot be multiplied"), TrainingErrorCategory.DATA_SHAPE),
            (RuntimeError("something else"), TrainingErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, exc: BaseException, category: TrainingErrorCategory) -> None:
        assert classify_failure(exc) == category
