from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from core.exceptions import InputError
from core.sample_model import LabeledSample, LabelSource, OutcomeLabel
from features.token_features import FEATURE_VERSION, FeatureExtractor, TokenState, check_feature_vector


@dataclass(frozen=True)
class OutcomeEvent:
    """A token's observed outcome plus the state captured at discovery."""
    token_id: str
    outcome_kind: str
    confidence: float = 1.0
    symbol: Optional[str] = None
    initial_state: dict = field(default_factory=dict)
    feature_vector: Optional[tuple[float, ...]] = None
    discovered_at: Optional[str] = None
    outcome_recorded_at: Optional[str] = None
    label_source: str = "auto"


def _parse_timestamp(value: str, name: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise InputError(f"{name} is not an ISO-8601 timestamp: {value!r}") from e


def label_outcome(
    event: OutcomeEvent,
    extractor: FeatureExtractor,
    now: Optional[datetime] = None,
) -> LabeledSample:
    """Turn an outcome event into an immutable LabeledSample.

    Raises:
        InputError: unknown kind or source, a malformed timestamp, or a
            supplied feature vector that is not 28 values in [0, 1].
    """
    try:
        label = OutcomeLabel(event.outcome_kind)
    except ValueError as e:
        raise InputError(f"Unknown outcome kind: {event.outcome_kind}") from e
    try:
        source = LabelSource(event.label_source)
    except ValueError as e:
        raise InputError(f"Unknown label source: {event.label_source}") from e

    now = now or datetime.now(timezone.utc)
    discovered = event.discovered_at or now.isoformat()
    discovered_at = _parse_timestamp(discovered, "discovered_at")
    if event.outcome_recorded_at is not None:
        _parse_timestamp(event.outcome_recorded_at, "outcome_recorded_at")

    if event.feature_vector is not None:
        vector = check_feature_vector(event.feature_vector)
    else:
        state = TokenState.from_dict(event.initial_state)
        vector = extractor.extract(state, now=discovered_at).values

    return LabeledSample(
        token_id=event.token_id,
        symbol=event.symbol,
        feature_vector=vector,
        feature_version=FEATURE_VERSION,
        outcome_label=label,
        label_confidence=min(1.0, max(0.0, float(event.confidence))),
        label_source=source,
        discovered_at=discovered,
        labeled_at=event.outcome_recorded_at or now.isoformat(),
    )
