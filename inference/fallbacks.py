"""Documented fallback predictions, one per model kind.

Served whenever a kind is unavailable or its backend fails. Every
fallback carries confidence 0 and a ``-fallback`` model version.
"""

from __future__ import annotations

import copy
from enum import Enum


class ModelKind(Enum):
    PRICE_PREDICTION = "price_prediction"
    SENTIMENT_CORRELATION = "sentiment_correlation"
    WHALE_BEHAVIOR = "whale_behavior"
    RUG_PREDICTION = "rug_prediction"


THIRD = 1.0 / 3.0

_FALLBACKS: dict[ModelKind, object] = {
    ModelKind.PRICE_PREDICTION: [
        {
            "timeframe": "1h",
            "probabilities": {"up": THIRD, "down": THIRD, "sideways": THIRD},
            "predicted_direction": "sideways",
            "confidence": 0.0,
            "expected_change": 0.0,
            "model_version": "fallback",
        }
    ],
    ModelKind.SENTIMENT_CORRELATION: {
        "correlation": 0.0,
        "time_lag": 0,
        "predicted_price_impact": 0.0,
        "confidence": 0.0,
        "is_significant": False,
        "recommendation": "neutral",
    },
    ModelKind.WHALE_BEHAVIOR: {
        "predicted_action": "holding",
        "confidence": 0.0,
        "probabilities": {
            "accumulation": 0.25,
            "distribution": 0.25,
            "dump": 0.25,
            "holding": 0.25,
        },
        "dump_probability": 0.25,
        "time_to_action": 24,
        "risk_level": "low",
        "signals": [],
    },
    ModelKind.RUG_PREDICTION: {
        "rug_probability": 0.5,
        "confidence": 0.0,
        "risk_factors": ["Model unavailable"],
        "recommendation": "unknown",
    },
}


def fallback_prediction(kind: ModelKind) -> object:
    """Fresh copy of the fallback for kind; callers may mutate it."""
    return copy.deepcopy(_FALLBACKS.get(kind, _FALLBACKS[ModelKind.RUG_PREDICTION]))


def fallback_version(kind: ModelKind) -> str:
    return f"v1.0.0-{kind.value}-fallback"
