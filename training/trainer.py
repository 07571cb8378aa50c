"""Model Trainer

One training run: seeded split, fit with early stopping on validation
loss, evaluation on the held-out test split.
"""

from __future__ import annotations

import copy
import logging
import math
import time
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
from torch.utils.data import DataLoader, TensorDataset

from core.config import TrainingConfig
from core.exceptions import DataInsufficientError
from core.sample_model import LabeledSample
from features.token_features import FEATURE_COUNT
from models.rug_classifier import ClassifierSpec, RugClassifier
from training.evaluator import ModelEvaluator, ModelMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataSplit:
    train_x: np.ndarray
    train_y: np.ndarray
    val_x: np.ndarray
    val_y: np.ndarray
    test_x: np.ndarray
    test_y: np.ndarray

    @property
    def sizes(self) -> tuple[int, int, int]:
        return len(self.train_y), len(self.val_y), len(self.test_y)


@dataclass
class TrainingResult:
    classifier: RugClassifier
    metrics: ModelMetrics
    split: DataSplit
    samples_used: int
    epochs_run: int
    best_epoch: int
    train_loss: float
    validation_loss: float
    training_time_ms: float

    def to_dict(self) -> dict:
        train_size, val_size, test_size = self.split.sizes
        return {
            "samples_used": self.samples_used,
            "train_size": train_size,
            "validation_size": val_size,
            "test_size": test_size,
            "epochs_run": self.epochs_run,
            "best_epoch": self.best_epoch,
            "train_loss": self.train_loss,
            "validation_loss": self.validation_loss,
            "training_time_ms": self.training_time_ms,
            "metrics": self.metrics.to_dict(),
        }


def samples_to_arrays(samples: Sequence[LabeledSample]) -> tuple[np.ndarray, np.ndarray]:
    if len(samples) == 0:
        return np.zeros((0, FEATURE_COUNT), dtype=np.float32), np.zeros(0, dtype=np.float32)
    x = np.asarray([list(s.feature_vector) for s in samples], dtype=np.float32)
    y = np.asarray([s.target for s in samples], dtype=np.float32)
    return x, y


def split_dataset(
    x: np.ndarray,
    y: np.ndarray,
    train_split: float,
    validation_split: float,
    rng: np.random.Generator,
) -> DataSplit:
    """Shuffle then cut at floor(n*train) and floor(n*train)+floor(n*val)."""
    n = len(y)
    order = rng.permutation(n)
    x = x[order]
    y = y[order]

    train_end = int(math.floor(n * train_split))
    val_end = train_end + int(math.floor(n * validation_split))

    return DataSplit(
        train_x=x[:train_end],
        train_y=y[:train_end],
        val_x=x[train_end:val_end],
        val_y=y[train_end:val_end],
        test_x=x[val_end:],
        test_y=y[val_end:],
    )


class ModelTrainer:
    """Fits a RugClassifier with early stopping."""

    def __init__(
        self,
        config: Optional[TrainingConfig] = None,
        evaluator: Optional[ModelEvaluator] = None,
        spec: Optional[ClassifierSpec] = None,
    ):
        self.config = config or TrainingConfig()
        self.evaluator = evaluator or ModelEvaluator()
        self.spec = spec or ClassifierSpec()

    def train(
        self,
        samples: Sequence[LabeledSample],
        hyperparams: Optional[TrainingConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> TrainingResult:
        cfg = hyperparams or self.config
        if len(samples) < cfg.min_samples:
            raise DataInsufficientError(
                f"Insufficient training data: {len(samples)} < {cfg.min_samples}"
            )
        x, y = samples_to_arrays(samples)
        return self.fit(x, y, cfg, rng=rng)

    def fit(
        self,
        x: np.ndarray,
        y: np.ndarray,
        hyperparams: Optional[TrainingConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> TrainingResult:
        cfg = hyperparams or self.config
        n = len(y)
        if n < cfg.min_samples:
            raise DataInsufficientError(f"Insufficient training data: {n} < {cfg.min_samples}")

        rng = rng if rng is not None else np.random.default_rng(cfg.seed)
        split = split_dataset(
            np.asarray(x, dtype=np.float32),
            np.asarray(y, dtype=np.float32),
            cfg.train_split,
            cfg.validation_split,
            rng,
        )
        train_size, val_size, test_size = split.sizes
        if train_size < 2:
            raise DataInsufficientError(f"Training split too small: {train_size}")

        logger.info(
            "Training on %d samples (train=%d val=%d test=%d)",
            n,
            train_size,
            val_size,
            test_size,
        )

        start = time.perf_counter()
        torch.manual_seed(int(rng.integers(0, 2**31 - 1)))
        classifier = RugClassifier.create(self.spec)
        model = classifier.model

        optimizer = torch.optim.Adam(model.parameters(), lr=cfg.learning_rate)
        loss_fn = nn.BCELoss()

        generator = torch.Generator()
        generator.manual_seed(int(rng.integers(0, 2**31 - 1)))
        loader = DataLoader(
            TensorDataset(
                torch.from_numpy(split.train_x),
                torch.from_numpy(split.train_y).reshape(-1, 1),
            ),
            batch_size=int(cfg.batch_size),
            shuffle=True,
            generator=generator,
        )
        val_x = torch.from_numpy(split.val_x)
        val_y = torch.from_numpy(split.val_y).reshape(-1, 1)

        best_val_loss = math.inf
        best_state = copy.deepcopy(model.state_dict())
        best_epoch = 0
        patience_left = cfg.early_stopping_patience
        train_loss = math.nan
        val_loss = math.nan
        epochs_run = 0

        for epoch in range(1, int(cfg.epochs) + 1):
            model.train()
            total = 0.0
            seen = 0
            for xb, yb in loader:
                # BatchNorm needs more than one row in training mode
                if xb.shape[0] < 2:
                    continue
                optimizer.zero_grad()
                loss = loss_fn(model(xb), yb)
                loss.backward()
                optimizer.step()
                total += float(loss.item()) * xb.shape[0]
                seen += xb.shape[0]
            train_loss = total / max(seen, 1)
            epochs_run = epoch

            if val_size > 0:
                model.eval()
                with torch.no_grad():
                    val_loss = float(loss_fn(model(val_x), val_y).item())
            else:
                val_loss = train_loss

            if val_loss < best_val_loss:
                best_val_loss = val_loss
                best_state = copy.deepcopy(model.state_dict())
                best_epoch = epoch
                patience_left = cfg.early_stopping_patience
            else:
                patience_left -= 1
                if patience_left <= 0:
                    logger.info("Early stopping at epoch %d (best epoch %d)", epoch, best_epoch)
                    break

            if epoch % 10 == 0:
                logger.debug("Epoch %d train_loss=%.4f val_loss=%.4f", epoch, train_loss, val_loss)

        model.load_state_dict(best_state)
        model.eval()

        metrics = self.evaluator.calculate_metrics(
            classifier.predict(split.test_x), split.test_y.astype(int).tolist(), cfg.threshold
        )
        elapsed_ms = (time.perf_counter() - start) * 1000

        logger.info(
            "Training finished in %.0fms: epochs=%d accuracy=%.4f f1=%.4f auc=%.4f",
            elapsed_ms,
            epochs_run,
            metrics.accuracy,
            metrics.f1_score,
            metrics.auc,
        )

        return TrainingResult(
            classifier=classifier,
            metrics=metrics,
            split=split,
            samples_used=n,
            epochs_run=epochs_run,
            best_epoch=best_epoch,
            train_loss=float(train_loss),
            validation_loss=float(best_val_loss if math.isfinite(best_val_loss) else val_loss),
            training_time_ms=elapsed_ms,
        )
