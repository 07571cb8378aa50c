"""Tests for ModelTrainer and dataset splitting"""

import dataclasses

import numpy as np
import pytest

from core.config import TrainingConfig
from core.exceptions import DataInsufficientError
from training.trainer import ModelTrainer, samples_to_arrays, split_dataset

FAST = dataclasses.replace(TrainingConfig(), epochs=5)


class TestSplit:
    """Seeded train/validation/test split"""

    def test_sizes_use_floor(self):
        """150 rows split 105/22/23"""
        x = np.zeros((150, 28), dtype=np.float32)
        y = np.zeros(150, dtype=np.float32)
        split = split_dataset(x, y, 0.70, 0.15, np.random.default_rng(0))
        assert split.sizes == (105, 22, 23)
        assert sum(split.sizes) == 150

    def test_seeded_split_is_reproducible(self):
        """Equal seeds give identical splits"""
        x = np.arange(100, dtype=np.float32).reshape(-1, 1)
        y = np.arange(100, dtype=np.float32)
        a = split_dataset(x, y, 0.7, 0.15, np.random.default_rng(5))
        b = split_dataset(x, y, 0.7, 0.15, np.random.default_rng(5))
        assert np.array_equal(a.train_y, b.train_y)
        assert np.array_equal(a.test_y, b.test_y)

    def test_split_is_a_partition(self):
        """Every row lands in exactly one split"""
        x = np.arange(50, dtype=np.float32).reshape(-1, 1)
        y = np.arange(50, dtype=np.float32)
        split = split_dataset(x, y, 0.7, 0.15, np.random.default_rng(1))
        combined = np.concatenate([split.train_y, split.val_y, split.test_y])
        assert sorted(combined.tolist()) == list(range(50))


class TestTrainer:
    """Training runs"""

    def test_insufficient_data(self, sample_factory):
        """Fewer samples than the minimum fails fast"""
        with pytest.raises(DataInsufficientError):
            ModelTrainer(FAST).train(sample_factory(40, 10))

    def test_samples_to_arrays(self, sample_factory):
        """Rug samples map to target 1"""
        x, y = samples_to_arrays(sample_factory(3, 2))
        assert x.shape == (5, 28)
        assert y.tolist() == [0, 0, 0, 1, 1]

    def test_train_150_samples(self, sample_factory):
        """150 samples train end to end with a full split"""
        result = ModelTrainer(FAST).train(sample_factory(100, 50), rng=np.random.default_rng(42))
        assert result.samples_used == 150
        assert sum(result.split.sizes) == 150
        assert 1 <= result.epochs_run <= 5
        assert 1 <= result.best_epoch <= result.epochs_run
        assert np.isfinite(result.train_loss)
        assert np.isfinite(result.validation_loss)
        assert result.metrics.sample_count == result.split.sizes[2]
        assert 0.0 <= result.metrics.accuracy <= 1.0

        preds = result.classifier.predict(result.split.test_x)
        assert len(preds) == result.split.sizes[2]
        assert all(0.0 <= p <= 1.0 for p in preds)

    def test_early_stopping(self, sample_factory):
        """Patience 1 stops before the epoch budget on noise"""
        cfg = dataclasses.replace(TrainingConfig(), epochs=200, early_stopping_patience=1)
        result = ModelTrainer(cfg).train(sample_factory(100, 50), rng=np.random.default_rng(0))
        assert result.epochs_run < 200

    def test_to_dict(self, sample_factory):
        """Result serializes sizes and metrics"""
        result = ModelTrainer(FAST).train(sample_factory(100, 50), rng=np.random.default_rng(1))
        d = result.to_dict()
        assert d["samples_used"] == 150
        assert d["train_size"] + d["validation_size"] + d["test_size"] == 150
        assert "accuracy" in d["metrics"]
