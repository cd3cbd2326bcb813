"""Trainable classification head on frozen embeddings.

Dense(hidden, ReLU, He-normal) -> Dropout -> Dense(num_classes), trained with
Adam and cross-entropy on integer labels; softmax is applied at prediction.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import torch
from torch import nn

from teachablex.core.trainer import EpochMetrics, FitResult
from teachablex.errors import ModelDisposed

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from teachablex.core.trainer import TrainingConfig

logger = logging.getLogger(__name__)


class ClassificationHead(nn.Module):
    """One hidden layer MLP classifier on embeddings."""

    def __init__(self, input_dim: int, num_classes: int, hidden_units: int = 128, dropout: float = 0.5) -> None:
        super().__init__()
        self.input_dim = input_dim
        self.num_classes = num_classes
        self.hidden_units = hidden_units
        self.dropout = dropout

        hidden = nn.Linear(input_dim, hidden_units)
        nn.init.kaiming_normal_(hidden.weight, nonlinearity="relu")
        nn.init.zeros_(hidden.bias)

        layers: list[nn.Module] = [hidden, nn.ReLU()]
        if dropout > 0:
            layers.append(nn.Dropout(dropout))
        layers.append(nn.Linear(hidden_units, num_classes))
        self.classifier = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.classifier(x)


class TorchHeadModel:
    """Wraps a ``ClassificationHead`` with fit/predict/save/dispose."""

    def __init__(self, module: ClassificationHead, device: str = "cpu") -> None:
        self._module: ClassificationHead | None = module.to(device)
        self._device = device
        self._lock = threading.Lock()

    @property
    def input_dim(self) -> int:
        return self._require_module().input_dim

    @property
    def num_classes(self) -> int:
        return self._require_module().num_classes

    @property
    def disposed(self) -> bool:
        return self._module is None

    def fit(
        self,
        features: NDArray[np.float32],
        labels: NDArray[np.int64],
        config: TrainingConfig,
        on_epoch: Callable[[int, float], None],
    ) -> FitResult:
        module = self._require_module()
        if features.ndim != 2 or features.shape[1] != module.input_dim:
            raise ValueError(f"Feature shape {features.shape} does not match head input dim {module.input_dim}")
        if labels.shape[0] != features.shape[0]:
            raise ValueError(f"Got {labels.shape[0]} labels for {features.shape[0]} samples")

        n = features.shape[0]
        rng = np.random.default_rng(config.seed)
        order = rng.permutation(n) if config.shuffle else np.arange(n)
        n_val = int(n * config.validation_split)
        if n_val < 1 or n - n_val < 1:
            n_val = 0
        train_idx = torch.as_tensor(order[: n - n_val], dtype=torch.long, device=self._device)
        val_idx = torch.as_tensor(order[n - n_val :], dtype=torch.long, device=self._device)

        x = torch.as_tensor(features, dtype=torch.float32, device=self._device)
        y = torch.as_tensor(labels, dtype=torch.long, device=self._device)
        x_train, y_train = x[train_idx], y[train_idx]
        x_val, y_val = x[val_idx], y[val_idx]

        generator = torch.Generator()
        if config.seed is not None:
            generator.manual_seed(config.seed)

        optimizer = torch.optim.Adam(module.parameters(), lr=config.learning_rate)
        criterion = nn.CrossEntropyLoss()
        history: list[EpochMetrics] = []
        n_train = x_train.shape[0]

        for epoch in range(1, config.epochs + 1):
            module.train()
            if config.shuffle:
                perm = torch.randperm(n_train, generator=generator).to(self._device)
            else:
                perm = torch.arange(n_train, device=self._device)

            total_loss = 0.0
            correct = 0
            for start in range(0, n_train, config.batch_size):
                batch = perm[start : start + config.batch_size]
                embs, targets = x_train[batch], y_train[batch]

                optimizer.zero_grad()
                logits = module(embs)
                loss = criterion(logits, targets)
                loss.backward()
                optimizer.step()

                total_loss += loss.item() * len(targets)
                correct += int((logits.argmax(dim=1) == targets).sum().item())

            metrics = EpochMetrics(epoch=epoch, loss=total_loss / n_train, accuracy=correct / n_train)
            if n_val:
                val_loss, val_acc = self._validate(module, x_val, y_val, criterion)
                metrics = EpochMetrics(
                    epoch=epoch,
                    loss=metrics.loss,
                    accuracy=metrics.accuracy,
                    val_loss=val_loss,
                    val_accuracy=val_acc,
                )
            history.append(metrics)
            on_epoch(epoch, metrics.accuracy)

        module.eval()
        return FitResult(
            epochs=config.epochs,
            train_samples=int(n_train),
            validation_samples=int(n_val),
            history=tuple(history),
        )

    def predict(self, vector: NDArray[np.float32]) -> NDArray[np.float32]:
        module = self._require_module()
        flat = np.asarray(vector, dtype=np.float32).reshape(1, -1)
        if flat.shape[1] != module.input_dim:
            raise ValueError(f"Embedding dim {flat.shape[1]} does not match head input dim {module.input_dim}")

        module.eval()
        with torch.no_grad():
            logits = module(torch.as_tensor(flat, device=self._device))
            probs = torch.softmax(logits, dim=1)[0]
        return probs.cpu().numpy().astype(np.float32)

    def save(self, destination: Path, class_names: tuple[str, ...]) -> Path:
        module = self._require_module()
        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(
            {
                "model_state": module.state_dict(),
                "input_dim": module.input_dim,
                "num_classes": module.num_classes,
                "hidden_units": module.hidden_units,
                "dropout": module.dropout,
                "class_names": list(class_names),
            },
            path,
        )
        return path

    def dispose(self) -> None:
        with self._lock:
            if self._module is None:
                return
            self._module = None
        if self._device == "cuda":
            torch.cuda.empty_cache()

    @staticmethod
    def _validate(
        module: ClassificationHead,
        embeddings: torch.Tensor,
        labels: torch.Tensor,
        criterion: nn.Module,
    ) -> tuple[float, float]:
        module.eval()
        with torch.no_grad():
            logits = module(embeddings)
            loss = criterion(logits, labels).item()
            acc = (logits.argmax(dim=1) == labels).float().mean().item()
        return loss, acc

    def _require_module(self) -> ClassificationHead:
        module = self._module
        if module is None:
            raise ModelDisposed("Model has been disposed")
        return module


def load_head(path: Path, device: str = "cpu") -> tuple[TorchHeadModel, tuple[str, ...]]:
    """Load a head written by ``TorchHeadModel.save``."""
    checkpoint = torch.load(path, map_location=device)
    module = ClassificationHead(
        input_dim=checkpoint["input_dim"],
        num_classes=checkpoint["num_classes"],
        hidden_units=checkpoint.get("hidden_units", 128),
        dropout=checkpoint.get("dropout", 0.5),
    )
    module.load_state_dict(checkpoint["model_state"])
    return TorchHeadModel(module, device=device), tuple(checkpoint.get("class_names", ()))


class TorchHeadFactory:
    """Builds fresh ``TorchHeadModel`` instances on a fixed device."""

    def __init__(self, device: str = "cpu") -> None:
        self._device = device

    def build(self, input_dim: int, num_classes: int, config: TrainingConfig) -> TorchHeadModel:
        if config.seed is not None:
            torch.manual_seed(config.seed)
        module = ClassificationHead(
            input_dim=input_dim,
            num_classes=num_classes,
            hidden_units=config.hidden_units,
            dropout=config.dropout,
        )
        logger.info(
            "Built head: %d -> %d -> %d (dropout=%.2f, device=%s)",
            input_dim,
            config.hidden_units,
            num_classes,
            config.dropout,
            self._device,
        )
        return TorchHeadModel(module, device=self._device)


def resolve_device(requested: str) -> str:
    """Map the configured device onto a torch device string."""
    if requested == "cuda" and torch.cuda.is_available():
        return "cuda"
    return "cpu"
