"""Tests for the registry-backed rug backend"""

import asyncio

import numpy as np
import pytest

from core.config import RegistryConfig
from core.exceptions import InputError, ModelUnavailableError
from features.token_features import FeatureExtractor
from inference.backends import (
    RegistryRugBackend,
    _ModelHandle,
    features_from_payload,
    rug_recommendation,
)
from model_registry.registry import ModelVersionRegistry
from models.rug_classifier import RugClassifier

GOOD = {"accuracy": 0.8, "f1_score": 0.7}


def make_registry(tmp_path):
    return ModelVersionRegistry(RegistryConfig(models_dir=tmp_path / "models"))


class TestPayloads:
    """Input decoding"""

    def test_feature_vector(self):
        """An explicit vector must have 28 values in [0, 1]"""
        vec = features_from_payload({"feature_vector": [0.5] * 28}, FeatureExtractor())
        assert vec.shape == (28,)
        with pytest.raises(InputError):
            features_from_payload({"feature_vector": [0.5] * 3}, FeatureExtractor())
        with pytest.raises(InputError):
            features_from_payload({"feature_vector": [2.0] * 28}, FeatureExtractor())

    def test_state(self):
        """A raw state is run through the extractor"""
        vec = features_from_payload({"state": {"risk_score": 80}}, FeatureExtractor())
        assert vec[1] == pytest.approx(0.8)

    def test_flat_mapping(self):
        """A flat name-to-value mapping is ordered by feature name"""
        vec = features_from_payload({"riskScore": 0.3}, FeatureExtractor())
        assert vec[1] == pytest.approx(0.3)

    def test_recommendation(self):
        """Probability bands map to recommendations"""
        assert rug_recommendation(0.9) == "avoid"
        assert rug_recommendation(0.5) == "caution"
        assert rug_recommendation(0.1) == "safe"


class TestRegistryRugBackend:
    """Loading, serving and swapping"""

    def test_no_production_model(self, tmp_path):
        """Without a production version the backend is unavailable"""
        backend = RegistryRugBackend(make_registry(tmp_path))
        assert asyncio.run(backend.warm_up()) is False
        with pytest.raises(ModelUnavailableError):
            asyncio.run(backend.predict({"feature_vector": [0.5] * 28}))

    def test_predict(self, tmp_path):
        """Predictions come from the production artifact"""
        reg = make_registry(tmp_path)
        clf = RugClassifier.create(seed=3)
        mv = reg.register_version(GOOD, 10, classifier=clf)
        reg.activate_version(mv.version)

        backend = RegistryRugBackend(reg)
        assert asyncio.run(backend.warm_up()) is True
        result = asyncio.run(backend.predict({"feature_vector": [0.5] * 28}))
        expected = clf.predict([[0.5] * 28])[0]
        assert result.model_version == mv.version
        assert result.prediction["rug_probability"] == pytest.approx(expected, abs=1e-6)
        assert result.prediction["confidence"] == pytest.approx(abs(expected - 0.5) * 2, abs=1e-6)

    def test_shadow_scores_are_recorded(self, tmp_path):
        """The challenger scores live traffic without affecting the response"""
        reg = make_registry(tmp_path)
        prod = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=1)).version
        chal = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=2)).version
        reg.activate_version(prod)
        reg.start_ab_test(chal, traffic_split=0.0)

        recorded = []
        backend = RegistryRugBackend(reg, shadow_recorder=lambda *args: recorded.append(args))
        backend.reload()
        result = asyncio.run(backend.predict({"feature_vector": [0.2] * 28}, subject_id="tok1"))
        assert result.model_version == prod
        assert len(recorded) == 1
        token, _, production_p = recorded[0]
        assert token == "tok1"
        assert production_p == pytest.approx(result.prediction["rug_probability"])
        assert reg.get_ab_test_stats()["champion"]["predictions"] == 1

    def test_challenger_arm_serves_when_drawn(self, tmp_path):
        """A full traffic split routes every request to the challenger"""
        reg = make_registry(tmp_path)
        prod = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=1)).version
        chal = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=2)).version
        reg.activate_version(prod)
        reg.start_ab_test(chal, traffic_split=1.0)
        backend = RegistryRugBackend(reg)
        backend.reload()
        result = asyncio.run(backend.predict({"feature_vector": [0.2] * 28}))
        assert result.model_version == chal
        assert reg.get_ab_test_stats()["challenger"]["predictions"] == 1

    def test_swap_disposes_old_model(self, tmp_path):
        """Reload after promotion retires the previous production model"""
        reg = make_registry(tmp_path)
        a = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=1)).version
        b = reg.register_version(GOOD, 10, classifier=RugClassifier.create(seed=2)).version
        reg.activate_version(a)
        backend = RegistryRugBackend(reg)
        backend.reload()
        old = backend._production

        reg.activate_version(b)
        backend.on_model_change(b)
        assert backend.production_version == b
        assert old.classifier.disposed

    def test_in_flight_handle_outlives_swap(self):
        """A retired handle is disposed only after its last release"""
        handle = _ModelHandle("v1", RugClassifier.create(seed=0))
        handle.acquire()
        handle.retire()
        assert not handle.classifier.disposed
        assert len(handle.classifier.predict(np.full((1, 28), 0.5, dtype=np.float32))) == 1
        handle.release()
        assert handle.classifier.disposed
