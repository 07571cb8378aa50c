"""Tests for outcome labeling"""

from datetime import datetime, timezone

import pytest

from adaptive.outcomes import OutcomeEvent, label_outcome
from core.exceptions import InputError
from core.sample_model import LabelSource, OutcomeLabel
from features.token_features import FEATURE_COUNT, FeatureExtractor

NOW = datetime(2024, 2, 1, 12, 0, tzinfo=timezone.utc)


class TestLabelOutcome:
    """OutcomeEvent -> LabeledSample"""

    def test_uses_provided_vector(self):
        vector = tuple(0.1 for _ in range(FEATURE_COUNT))
        event = OutcomeEvent(token_id="tokA", outcome_kind="rug", feature_vector=vector, confidence=0.9)
        sample = label_outcome(event, FeatureExtractor(), now=NOW)
        assert sample.feature_vector == vector
        assert sample.outcome_label is OutcomeLabel.RUG
        assert sample.target == 1
        assert sample.label_confidence == pytest.approx(0.9)
        assert sample.label_source is LabelSource.AUTO
        assert sample.labeled_at == NOW.isoformat()

    def test_extracts_from_initial_state(self):
        event = OutcomeEvent(
            token_id="tokB",
            outcome_kind="stable",
            initial_state={"liquidity_usd": 50_000, "risk_score": 20, "created_at": "2024-02-01T10:00:00+00:00"},
            discovered_at="2024-02-01T11:00:00+00:00",
            label_source="manual",
        )
        sample = label_outcome(event, FeatureExtractor(), now=NOW)
        assert len(sample.feature_vector) == FEATURE_COUNT
        assert all(0.0 <= v <= 1.0 for v in sample.feature_vector)
        assert sample.target == 0
        assert sample.label_source is LabelSource.MANUAL
        assert sample.discovered_at == "2024-02-01T11:00:00+00:00"

    def test_confidence_is_clamped(self):
        vector = tuple(0.0 for _ in range(FEATURE_COUNT))
        event = OutcomeEvent(token_id="t", outcome_kind="pump", feature_vector=vector, confidence=3.0)
        assert label_outcome(event, FeatureExtractor(), now=NOW).label_confidence == 1.0

    def test_unknown_kind(self):
        with pytest.raises(InputError):
            label_outcome(OutcomeEvent(token_id="t", outcome_kind="moon"), FeatureExtractor(), now=NOW)

    def test_unknown_source(self):
        event = OutcomeEvent(token_id="t", outcome_kind="rug", label_source="oracle")
        with pytest.raises(InputError):
            label_outcome(event, FeatureExtractor(), now=NOW)

    def test_wrong_vector_length(self):
        event = OutcomeEvent(token_id="t", outcome_kind="rug", feature_vector=(0.5, 0.5))
        with pytest.raises(InputError):
            label_outcome(event, FeatureExtractor(), now=NOW)

    def test_vector_outside_unit_range(self):
        vector = (1e9, -5.0) + tuple(0.5 for _ in range(FEATURE_COUNT - 2))
        event = OutcomeEvent(token_id="t", outcome_kind="rug", feature_vector=vector)
        with pytest.raises(InputError, match="liquidityUsd"):
            label_outcome(event, FeatureExtractor(), now=NOW)

    def test_non_finite_vector(self):
        vector = (float("nan"),) + tuple(0.5 for _ in range(FEATURE_COUNT - 1))
        event = OutcomeEvent(token_id="t", outcome_kind="rug", feature_vector=vector)
        with pytest.raises(InputError):
            label_outcome(event, FeatureExtractor(), now=NOW)

    def test_malformed_discovered_at(self):
        event = OutcomeEvent(token_id="t", outcome_kind="rug", discovered_at="yesterday")
        with pytest.raises(InputError, match="discovered_at"):
            label_outcome(event, FeatureExtractor(), now=NOW)

    def test_malformed_created_at(self):
        event = OutcomeEvent(token_id="t", outcome_kind="rug", initial_state={"created_at": "last week"})
        with pytest.raises(InputError, match="created_at"):
            label_outcome(event, FeatureExtractor(), now=NOW)
