from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OutcomeLabel(Enum):
    RUG = "rug"
    PUMP = "pump"
    STABLE = "stable"
    DECLINE = "decline"


class LabelSource(Enum):
    AUTO = "auto"
    MANUAL = "manual"


def label_to_target(label: OutcomeLabel) -> int:
    """Binary training target: rug is the positive class."""
    return 1 if label is OutcomeLabel.RUG else 0


@dataclass(frozen=True)
class LabeledSample:
    token_id: str
    feature_vector: tuple[float, ...]
    outcome_label: OutcomeLabel
    label_confidence: float
    label_source: LabelSource
    discovered_at: str
    labeled_at: str
    feature_version: str = "v2"
    symbol: Optional[str] = None

    @property
    def target(self) -> int:
        return label_to_target(self.outcome_label)

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "symbol": self.symbol,
            "feature_vector": list(self.feature_vector),
            "feature_version": self.feature_version,
            "outcome_label": self.outcome_label.value,
            "label_confidence": self.label_confidence,
            "label_source": self.label_source.value,
            "discovered_at": self.discovered_at,
            "labeled_at": self.labeled_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LabeledSample:
        return cls(
            token_id=str(data["token_id"]),
            symbol=data.get("symbol"),
            feature_vector=tuple(float(v) for v in data["feature_vector"]),
            feature_version=str(data.get("feature_version", "v2")),
            outcome_label=OutcomeLabel(data["outcome_label"]),
            label_confidence=float(data.get("label_confidence", 1.0)),
            label_source=LabelSource(data.get("label_source", "auto")),
            discovered_at=str(data["discovered_at"]),
            labeled_at=str(data["labeled_at"]),
        )
