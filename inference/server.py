"""Inference Server

Serves predictions for every model kind behind one contract.

Rules:
- the cache is checked first (keyed by kind and subject id) unless disabled
- any backend failure, or a kind with no backend, yields the documented fallback
- only successful, non-fallback results with a subject id are cached
- slow requests are logged, never failed
- batch items run concurrently and independently; output order matches input
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from core.config import InferenceConfig
from core.exceptions import InputError
from inference.backends import ModelBackend
from inference.cache import PredictionCache, make_key
from inference.explain import explain_input
from inference.fallbacks import ModelKind, fallback_prediction, fallback_version

logger = logging.getLogger(__name__)


def parse_kind(value: Any) -> ModelKind:
    if isinstance(value, ModelKind):
        return value
    try:
        return ModelKind(str(value))
    except ValueError:
        valid = ", ".join(k.value for k in ModelKind)
        raise InputError(f"Unknown model kind '{value}' (expected one of: {valid})") from None


@dataclass(frozen=True)
class InferenceRequest:
    model_kind: ModelKind
    input: dict = field(default_factory=dict)
    subject_id: Optional[str] = None
    use_cache: bool = True
    explain: bool = False
    batch_id: Optional[str] = None

    @classmethod
    def create(
        cls,
        model_kind: Any,
        input: Optional[dict] = None,
        subject_id: Optional[str] = None,
        use_cache: bool = True,
        explain: bool = False,
        batch_id: Optional[str] = None,
    ) -> InferenceRequest:
        if input is not None and not isinstance(input, dict):
            raise InputError("input must be a mapping")
        return cls(
            model_kind=parse_kind(model_kind),
            input=dict(input or {}),
            subject_id=subject_id,
            use_cache=use_cache,
            explain=explain,
            batch_id=batch_id,
        )


@dataclass(frozen=True)
class InferenceResponse:
    prediction: Any
    model_version: str
    confidence: float
    latency_ms: float
    cache_hit: bool = False
    fallback: bool = False
    explanation: Optional[list[dict]] = None

    def to_dict(self) -> dict:
        out = {
            "prediction": self.prediction,
            "modelVersion": self.model_version,
            "confidence": self.confidence,
            "inferenceTime": self.latency_ms,
            "cached": self.cache_hit,
            "fallback": self.fallback,
        }
        if self.explanation is not None:
            out["explanation"] = self.explanation
        return out


def extract_confidence(prediction: Any) -> float:
    """Confidence of a prediction, or of its first element for list outputs."""
    if isinstance(prediction, dict) and isinstance(prediction.get("confidence"), (int, float)):
        return float(prediction["confidence"])
    if isinstance(prediction, list) and prediction:
        first = prediction[0]
        if isinstance(first, dict) and isinstance(first.get("confidence"), (int, float)):
            return float(first["confidence"])
    return 0.5


@dataclass
class _Stats:
    requests: int = 0
    cache_hits: int = 0
    fallbacks: int = 0
    slow: int = 0
    total_latency_ms: float = 0.0

    def to_dict(self) -> dict:
        served = self.requests - self.cache_hits
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "fallbacks": self.fallbacks,
            "slow_requests": self.slow,
            "avg_latency_ms": self.total_latency_ms / served if served > 0 else 0.0,
        }


class InferenceServer:
    def __init__(
        self,
        config: Optional[InferenceConfig] = None,
        cache: Optional[PredictionCache] = None,
    ):
        self.config = config or InferenceConfig()
        self.cache = cache or PredictionCache(
            ttl_seconds=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
        )
        self._backends: dict[ModelKind, ModelBackend] = {}
        self._stats = _Stats()

    def register_backend(self, kind: Any, backend: ModelBackend) -> None:
        kind = parse_kind(kind)
        self._backends[kind] = backend
        logger.info("Registered backend for %s: %s", kind.value, type(backend).__name__)

    def loaded_kinds(self) -> list[str]:
        return [k.value for k in self._backends]

    async def warm_up(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for kind, backend in self._backends.items():
            try:
                results[kind.value] = bool(await backend.warm_up())
            except Exception:
                logger.exception("Warm-up failed for %s", kind.value)
                results[kind.value] = False
        logger.info("Inference warm-up: %s", results)
        return results

    async def predict(self, request: InferenceRequest) -> InferenceResponse:
        start = time.perf_counter()
        kind = request.model_kind
        self._stats.requests += 1

        cache_key = make_key(kind.value, request.subject_id) if request.subject_id else None
        if cache_key is not None and request.use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self._stats.cache_hits += 1
                prediction, version = cached
                return InferenceResponse(
                    prediction=prediction,
                    model_version=version,
                    confidence=extract_confidence(prediction),
                    latency_ms=(time.perf_counter() - start) * 1000,
                    cache_hit=True,
                    explanation=self._explain(request),
                )

        is_fallback = False
        backend = self._backends.get(kind)
        if backend is None:
            logger.warning("Model %s not loaded, serving fallback", kind.value)
            prediction, version, is_fallback = fallback_prediction(kind), fallback_version(kind), True
        else:
            try:
                result = await backend.predict(request.input, request.subject_id)
                prediction, version = result.prediction, result.model_version
            except Exception as e:
                logger.warning("Prediction failed for %s, serving fallback: %s", kind.value, e)
                prediction, version, is_fallback = fallback_prediction(kind), fallback_version(kind), True

        if is_fallback:
            self._stats.fallbacks += 1
        elif cache_key is not None:
            self.cache.set(cache_key, (prediction, version))

        latency_ms = (time.perf_counter() - start) * 1000
        self._stats.total_latency_ms += latency_ms
        if latency_ms > self.config.max_inference_time_ms:
            self._stats.slow += 1
            logger.warning(
                "Slow inference for %s: %.1fms (budget %.0fms)",
                kind.value,
                latency_ms,
                self.config.max_inference_time_ms,
            )

        return InferenceResponse(
            prediction=prediction,
            model_version=version,
            confidence=0.0 if is_fallback else extract_confidence(prediction),
            latency_ms=latency_ms,
            fallback=is_fallback,
            explanation=self._explain(request),
        )

    async def predict_batch(self, requests: Sequence[InferenceRequest]) -> list[InferenceResponse]:
        if len(requests) > self.config.max_batch_size:
            raise InputError(f"Batch size {len(requests)} exceeds limit of {self.config.max_batch_size}")
        if not requests:
            return []

        start = time.perf_counter()
        responses = await asyncio.gather(*(self.predict(r) for r in requests))
        total_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Batch inference: %d requests in %.1fms (avg %.1fms)",
            len(requests),
            total_ms,
            total_ms / len(requests),
        )
        return list(responses)

    def _explain(self, request: InferenceRequest) -> Optional[list[dict]]:
        if not request.explain:
            return None
        features = request.input.get("features")
        if not isinstance(features, dict):
            features = request.input
        return [c.to_dict() for c in explain_input(features, top_n=self.config.explain_top_n)]

    def clear_cache(self, kind: Any = None) -> int:
        if kind is None:
            return self.cache.clear()
        return self.cache.clear(prefix=make_key(parse_kind(kind).value, ""))

    def get_stats(self) -> dict:
        return {
            **self._stats.to_dict(),
            "loaded_models": self.loaded_kinds(),
            "cache": self.cache.get_stats(),
        }
