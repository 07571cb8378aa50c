"""Shared fixtures for ML pipeline tests"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from core.sample_model import LabeledSample, LabelSource, OutcomeLabel
from features.token_features import FEATURE_COUNT

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_samples(n_stable: int, n_rug: int, seed: int = 42) -> list[LabeledSample]:
    """Labeled samples with uniform random [0, 1] feature vectors."""
    rnd = random.Random(seed)
    labels = [OutcomeLabel.STABLE] * n_stable + [OutcomeLabel.RUG] * n_rug
    samples = []
    for i, label in enumerate(labels):
        ts = (BASE_TIME + timedelta(minutes=i)).isoformat()
        samples.append(
            LabeledSample(
                token_id=f"tok{i}",
                feature_vector=tuple(rnd.random() for _ in range(FEATURE_COUNT)),
                outcome_label=label,
                label_confidence=1.0,
                label_source=LabelSource.AUTO,
                discovered_at=ts,
                labeled_at=ts,
            )
        )
    return samples


@pytest.fixture
def sample_factory():
    return make_samples
