"""Tests for the torch classification head."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from teachablex.core.dataset import TrainingSet
from teachablex.core.trainer import Trainer, TrainingConfig
from teachablex.errors import ModelDisposed
from teachablex.ml.head import ClassificationHead, TorchHeadFactory, TorchHeadModel, load_head, resolve_device


def _clusters(num_classes: int = 3, per_class: int = 10, dim: int = 16) -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(1)
    centers = np.eye(num_classes, dim, dtype=np.float32) * 3.0
    labels = np.repeat(np.arange(num_classes), per_class).astype(np.int64)
    features = centers[labels] + rng.normal(0.0, 0.1, (labels.shape[0], dim)).astype(np.float32)
    return features.astype(np.float32), labels


CONFIG = TrainingConfig(epochs=40, batch_size=8, validation_split=0.2, seed=0)


@pytest.fixture()
def fitted() -> tuple[TorchHeadModel, np.ndarray, np.ndarray]:
    features, labels = _clusters()
    model = TorchHeadFactory().build(16, 3, CONFIG)
    model.fit(features, labels, CONFIG, lambda epoch, acc: None)
    return model, features, labels


class TestClassificationHead:
    def test_layer_layout(self) -> None:
        head = ClassificationHead(16, 3, hidden_units=32, dropout=0.5)
        kinds = [type(layer).__name__ for layer in head.classifier]
        assert kinds == ["Linear", "ReLU", "Dropout", "Linear"]

    def test_no_dropout_layer_when_zero(self) -> None:
        head = ClassificationHead(16, 3, dropout=0.0)
        assert "Dropout" not in [type(layer).__name__ for layer in head.classifier]


class TestTorchHeadModel:
    def test_fit_reports_every_epoch(self) -> None:
        features, labels = _clusters()
        model = TorchHeadFactory().build(16, 3, CONFIG)
        epochs: list[int] = []
        result = model.fit(features, labels, CONFIG, lambda epoch, acc: epochs.append(epoch))

        assert epochs == list(range(1, CONFIG.epochs + 1))
        assert result.train_samples == 24
        assert result.validation_samples == 6
        assert result.val_accuracy is not None

    def test_learns_separable_clusters(self, fitted: tuple[TorchHeadModel, np.ndarray, np.ndarray]) -> None:
        model, features, labels = fitted
        predicted = [int(np.argmax(model.predict(f))) for f in features]
        assert np.mean(np.asarray(predicted) == labels) >= 0.9

    def test_probabilities_sum_to_one(self, fitted: tuple[TorchHeadModel, np.ndarray, np.ndarray]) -> None:
        model, features, _ = fitted
        probs = model.predict(features[0])
        assert probs.shape == (3,)
        assert probs.sum() == pytest.approx(1.0, abs=1e-5)
        assert np.all(probs >= 0)

    def test_tiny_dataset_skips_validation(self) -> None:
        features, labels = _clusters(num_classes=2, per_class=1)
        model = TorchHeadFactory().build(16, 2, CONFIG)
        result = model.fit(features, labels, CONFIG, lambda epoch, acc: None)
        assert result.validation_samples == 0
        assert result.val_accuracy is None

    def test_wrong_feature_width(self) -> None:
        features, labels = _clusters(dim=8)
        model = TorchHeadFactory().build(16, 3, CONFIG)
        with pytest.raises(ValueError, match="input dim"):
            model.fit(features, labels, CONFIG, lambda epoch, acc: None)

    def test_predict_wrong_width(self, fitted: tuple[TorchHeadModel, np.ndarray, np.ndarray]) -> None:
        model, _, _ = fitted
        with pytest.raises(ValueError):
            model.predict(np.ones(4, dtype=np.float32))

    def test_dispose_is_idempotent(self, fitted: tuple[TorchHeadModel, np.ndarray, np.ndarray]) -> None:
        model, features, _ = fitted
        model.dispose()
        model.dispose()
        assert model.disposed
        with pytest.raises(ModelDisposed):
            model.predict(features[0])

    def test_save_and_load(self, fitted: tuple[TorchHeadModel, np.ndarray, np.ndarray], tmp_path: Path) -> None:
        model, features, _ = fitted
        path = model.save(tmp_path / "nested" / "head.pt", ("a", "b", "c"))
        loaded, class_names = load_head(path)

        assert class_names == ("a", "b", "c")
        np.testing.assert_allclose(loaded.predict(features[3]), model.predict(features[3]), rtol=1e-5)


class TestWithTrainer:
    def test_trainer_drives_torch_head(self) -> None:
        features, labels = _clusters(num_classes=2)
        training_set = TrainingSet(features=features, labels=labels, class_names=("x", "y"))
        trainer = Trainer(TorchHeadFactory())
        try:
            trained = trainer.train(training_set, TrainingConfig(epochs=5, batch_size=4, seed=3))
            assert trained.result.epochs == 5
            assert trained.model.predict(features[0]).shape == (2,)
        finally:
            trainer.shutdown()


def test_resolve_device_falls_back_to_cpu() -> None:
    assert resolve_device("cpu") == "cpu"
    assert resolve_device("openvino") == "cpu"
