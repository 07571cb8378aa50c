from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from features.token_features import FEATURE_DISPLAY_NAMES

IMPORTANT_FEATURES = frozenset({"liquidityUsd", "riskScore", "sentimentScore", "dumpProbability"})
IMPORTANT_BASE = 0.8
DEFAULT_BASE = 0.5


@dataclass(frozen=True)
class FeatureContribution:
    feature: str
    importance: float
    value: float
    impact: str

    @property
    def label(self) -> str:
        return FEATURE_DISPLAY_NAMES.get(self.feature, self.feature)

    def to_dict(self) -> dict:
        return {
            "feature": self.feature,
            "label": self.label,
            "importance": self.importance,
            "value": self.value,
            "impact": self.impact,
        }


def explain_input(features: dict[str, Any], top_n: int = 10) -> list[FeatureContribution]:
    """Rank numeric inputs by a heuristic importance.

    Not an attribution method: allow-listed names get a higher base weight,
    scaled by the value's distance from the neutral midpoint 0.5.
    """
    out: list[FeatureContribution] = []
    for name, raw in features.items():
        if isinstance(raw, bool):
            value = float(raw)
        elif isinstance(raw, (int, float)):
            value = float(raw)
        else:
            continue
        if not math.isfinite(value):
            continue
        base = IMPORTANT_BASE if name in IMPORTANT_FEATURES else DEFAULT_BASE
        if value > 0.6:
            impact = "positive"
        elif value < 0.4:
            impact = "negative"
        else:
            impact = "neutral"
        out.append(FeatureContribution(name, base * (1 + abs(value - 0.5)), value, impact))

    out.sort(key=lambda c: c.importance, reverse=True)
    return out[:top_n]
