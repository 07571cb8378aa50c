"""Model backends served by the InferenceServer.

A backend turns a request input into a prediction for one model kind.
The registry-backed rug backend holds a read reference to the current
production artifact and swaps it atomically on promotion; the retired
artifact is disposed only after its in-flight predictions finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import numpy as np

from core.exceptions import ModelUnavailableError
from features.token_features import FeatureExtractor, TokenState, check_feature_vector, vector_from_mapping
from model_registry.registry import ARM_CHALLENGER, ModelVersionRegistry
from models.rug_classifier import RugClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendResult:
    prediction: Any
    model_version: str


class ModelBackend:
    """Base backend. Subclasses implement predict()."""

    async def predict(self, payload: dict, subject_id: Optional[str] = None) -> BackendResult:
        raise NotImplementedError

    async def warm_up(self) -> bool:
        return True


class CallableBackend(ModelBackend):
    """Adapts a plain (sync or async) prediction function."""

    def __init__(
        self,
        fn: Callable[[dict], Union[Any, Awaitable[Any]]],
        model_version: str,
    ):
        self.fn = fn
        self.model_version = model_version

    async def predict(self, payload: dict, subject_id: Optional[str] = None) -> BackendResult:
        out = self.fn(payload)
        if inspect.isawaitable(out):
            out = await out
        return BackendResult(prediction=out, model_version=self.model_version)


class _ModelHandle:
    """Reference-counted classifier. Disposed once retired and idle."""

    def __init__(self, version: str, classifier: RugClassifier):
        self.version = version
        self.classifier = classifier
        self._lock = threading.Lock()
        self._in_flight = 0
        self._retired = False

    def acquire(self) -> None:
        with self._lock:
            self._in_flight += 1

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
            dispose = self._retired and self._in_flight == 0
        if dispose:
            self._dispose()

    def retire(self) -> None:
        with self._lock:
            self._retired = True
            dispose = self._in_flight == 0
        if dispose:
            self._dispose()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _dispose(self) -> None:
        self.classifier.dispose()
        logger.info("Disposed retired model %s", self.version)


def features_from_payload(payload: dict, extractor: FeatureExtractor) -> np.ndarray:
    """Feature vector from feature_vector, features, state or a flat mapping."""
    if "feature_vector" in payload:
        return np.asarray(check_feature_vector(payload["feature_vector"]), dtype=np.float32)
    if isinstance(payload.get("features"), dict):
        return np.asarray(vector_from_mapping(payload["features"]), dtype=np.float32)
    if isinstance(payload.get("state"), dict):
        return extractor.extract(TokenState.from_dict(payload["state"])).to_array()
    return np.asarray(vector_from_mapping(payload), dtype=np.float32)


def rug_recommendation(probability: float) -> str:
    if probability >= 0.7:
        return "avoid"
    if probability >= 0.4:
        return "caution"
    return "safe"


def rug_risk_factors(vector: np.ndarray) -> list[str]:
    # indices follow FEATURE_NAMES
    factors = []
    if vector[0] < 0.5:
        factors.append("Low liquidity")
    if vector[3] > 0.5:
        factors.append("Concentrated holders")
    if vector[4] < 0.5:
        factors.append("Mint authority active")
    if vector[5] < 0.5:
        factors.append("Freeze authority active")
    if vector[6] < 0.5:
        factors.append("LP not burned")
    if vector[24] >= 0.5:
        factors.append("Price dumping")
    return factors


class RegistryRugBackend(ModelBackend):
    """Serves rug predictions from the registry's champion/challenger pair.

    The registry's per-prediction draw picks the serving arm; at traffic
    split 0 (shadow mode) that is always production. A loaded challenger
    scores the same input and shadow_recorder receives
    (subject_id, challenger_probability, production_probability).
    """

    def __init__(
        self,
        registry: ModelVersionRegistry,
        extractor: Optional[FeatureExtractor] = None,
        shadow_recorder: Optional[Callable[[str, float, float], Any]] = None,
    ):
        self.registry = registry
        self.extractor = extractor or FeatureExtractor()
        self.shadow_recorder = shadow_recorder
        self._swap_lock = threading.Lock()
        self._production: Optional[_ModelHandle] = None
        self._shadow: Optional[_ModelHandle] = None

    @property
    def production_version(self) -> Optional[str]:
        handle = self._production
        return handle.version if handle else None

    def _load(self, version: Optional[str]) -> Optional[_ModelHandle]:
        if version is None:
            return None
        return _ModelHandle(version, self.registry.load_classifier(version))

    def reload(self) -> Optional[str]:
        """Swap in the registry's current production and challenger models."""
        active = self.registry.get_production_version()
        challenger = self.registry.get_challenger_version()

        loaded = {h.version: h for h in (self._production, self._shadow) if h is not None}
        new_prod = None
        if active is not None:
            new_prod = loaded.get(active.version) or self._load(active.version)
        new_shadow = None
        if challenger is not None:
            new_shadow = loaded.get(challenger.version) or self._load(challenger.version)

        with self._swap_lock:
            old_prod, self._production = self._production, new_prod
            old_shadow, self._shadow = self._shadow, new_shadow

        # dispose after swap
        for old in (old_prod, old_shadow):
            if old is not None and old is not new_prod and old is not new_shadow:
                old.retire()

        logger.info(
            "Rug backend loaded production=%s shadow=%s",
            new_prod.version if new_prod else None,
            new_shadow.version if new_shadow else None,
        )
        return new_prod.version if new_prod else None

    def on_model_change(self, version: str) -> None:
        self.reload()

    async def warm_up(self) -> bool:
        await asyncio.to_thread(self.reload)
        return self._production is not None

    def _lease(self, attr: str) -> Optional[_ModelHandle]:
        with self._swap_lock:
            handle = getattr(self, attr)
            if handle is not None:
                handle.acquire()
            return handle

    def _score(self, attr: str, vector: np.ndarray) -> Optional[tuple[str, float]]:
        handle = self._lease(attr)
        if handle is None:
            return None
        try:
            return handle.version, float(handle.classifier.predict_proba(vector)[0])
        finally:
            handle.release()

    async def predict(self, payload: dict, subject_id: Optional[str] = None) -> BackendResult:
        vector = features_from_payload(payload, self.extractor)
        _, arm = self.registry.select_model_for_prediction()

        production = self._score("_production", vector)
        if production is None:
            raise ModelUnavailableError("No production rug model loaded")

        record = bool(subject_id) and self.shadow_recorder is not None
        challenger = None
        if arm == ARM_CHALLENGER or record:
            challenger = self._score("_shadow", vector)
        if challenger is not None and record:
            self.shadow_recorder(subject_id, challenger[1], production[1])

        version, probability = challenger if arm == ARM_CHALLENGER and challenger is not None else production
        return BackendResult(
            prediction={
                "rug_probability": probability,
                "confidence": abs(probability - 0.5) * 2,
                "risk_factors": rug_risk_factors(vector),
                "recommendation": rug_recommendation(probability),
            },
            model_version=version,
        )
