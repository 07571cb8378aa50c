"""Distribution Monitor

Detects concept drift by comparing recent feature distributions against a
baseline captured from training-time data. Produces the degradation
signal consumed by the auto-trainer.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

import numpy as np

from core.config import MonitoringConfig
from features.token_features import FEATURE_NAMES
from monitoring.events import EVENT_DRIFT_CHECK, EventLog

logger = logging.getLogger(__name__)

DRIFTED_FEATURES_WARN = 3

URGENCY_NONE = "none"
URGENCY_LOW = "low"
URGENCY_MEDIUM = "medium"
URGENCY_HIGH = "high"
URGENCY_CRITICAL = "critical"


@dataclass(frozen=True)
class DistributionSnapshot:
    feature_name: str
    mean: float
    std: float
    percentiles: tuple[float, ...]
    histogram: tuple[int, ...]

    def to_dict(self) -> dict:
        return {
            "feature_name": self.feature_name,
            "mean": self.mean,
            "std": self.std,
            "percentiles": list(self.percentiles),
            "histogram": list(self.histogram),
        }


@dataclass(frozen=True)
class FeatureDrift:
    feature_name: str
    drift_score: float
    drift_type: str
    significance: str
    current_mean: float
    baseline_mean: float
    current_std: float
    baseline_std: float

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass(frozen=True)
class DriftReport:
    timestamp: str
    overall_drift_score: float
    drifted_feature_count: int
    retraining_recommended: bool
    urgency: str
    feature_drift: list[FeatureDrift] = field(default_factory=list)
    suggested_actions: list[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "overall_drift_score": self.overall_drift_score,
            "drifted_feature_count": self.drifted_feature_count,
            "retraining_recommended": self.retraining_recommended,
            "urgency": self.urgency,
            "feature_drift": [f.to_dict() for f in self.feature_drift],
            "suggested_actions": list(self.suggested_actions),
            "reason": self.reason,
        }


def snapshot(feature_name: str, values: np.ndarray, bins: int = 10) -> DistributionSnapshot:
    vals = np.sort(np.asarray(values, dtype=np.float64))
    n = len(vals)
    mean = float(np.mean(vals))
    std = float(np.std(vals))
    percentiles = tuple(float(vals[int(math.floor(n * q))]) for q in (0.05, 0.25, 0.5, 0.75, 0.95))

    lo = float(vals[0])
    hi = float(vals[-1])
    width = (hi - lo) / bins or 1.0
    counts = []
    for i in range(bins):
        start = lo + i * width
        end = start + width
        if i == bins - 1:
            counts.append(int(np.sum((vals >= start) & (vals <= end))))
        else:
            counts.append(int(np.sum((vals >= start) & (vals < end))))
    return DistributionSnapshot(feature_name, mean, std, percentiles, tuple(counts))


def js_divergence(p_counts: Sequence[int], q_counts: Sequence[int]) -> float:
    """Jensen-Shannon divergence of two histograms with add-one smoothing."""
    if len(p_counts) != len(q_counts) or len(p_counts) == 0:
        return 0.0
    k = len(p_counts)
    tp = sum(p_counts)
    tq = sum(q_counts)
    div = 0.0
    for pc, qc in zip(p_counts, q_counts):
        p = (pc + 1) / (tp + k)
        q = (qc + 1) / (tq + k)
        m = (p + q) / 2
        div += 0.5 * (p * math.log(p / m) + q * math.log(q / m))
    return div


def drift_score(baseline: DistributionSnapshot, current: DistributionSnapshot) -> float:
    mean_delta = abs(current.mean - baseline.mean)
    mean_shift = mean_delta / abs(baseline.mean) if baseline.mean != 0 else mean_delta
    std_delta = abs(current.std - baseline.std)
    std_change = std_delta / baseline.std if baseline.std > 0 else std_delta
    divergence = js_divergence(baseline.histogram, current.histogram)
    score = 0.4 * min(1.0, mean_shift) + 0.3 * min(1.0, std_change) + 0.3 * min(1.0, divergence)
    return min(1.0, score)


def classify_drift_type(baseline: DistributionSnapshot, current: DistributionSnapshot) -> str:
    mean_shift = abs(current.mean - baseline.mean) / (baseline.std or 1.0)
    std_ratio = current.std / baseline.std if baseline.std > 0 else 1.0
    if mean_shift > 2:
        return "sudden"
    if mean_shift > 0.5 and 0.8 < std_ratio < 1.2:
        return "gradual"
    if std_ratio > 1.5 or std_ratio < 0.67:
        return "seasonal"
    return "none"


class DistributionMonitor:
    """Baseline-vs-recent feature drift detector.

    Args:
        config: Monitoring thresholds
        sample_source: Returns the most recent feature vectors, newest first
        events: Optional event log for drift checks
    """

    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        sample_source: Optional[Callable[[int], list[list[float]]]] = None,
        events: Optional[EventLog] = None,
        recent_window: int = 5000,
    ):
        self.config = config or MonitoringConfig()
        self.sample_source = sample_source
        self.events = events
        self.recent_window = recent_window
        self.baselines: dict[str, DistributionSnapshot] = {}
        self.last_report: Optional[DriftReport] = None

    def _significance(self, score: float) -> str:
        if score >= self.config.drift_critical:
            return URGENCY_CRITICAL
        if score >= self.config.drift_high:
            return URGENCY_HIGH
        if score >= self.config.drift_medium:
            return URGENCY_MEDIUM
        return URGENCY_LOW

    def calculate_baselines(self, vectors: Sequence[Sequence[float]]) -> bool:
        """Capture baseline distributions. Returns False if too few samples."""
        arr = np.asarray(vectors, dtype=np.float64)
        if arr.ndim != 2 or arr.shape[0] < self.config.drift_min_samples:
            logger.warning("Not enough samples for drift baselines: %d", 0 if arr.ndim != 2 else arr.shape[0])
            return False

        self.baselines = {}
        for i, name in enumerate(FEATURE_NAMES[: arr.shape[1]]):
            col = arr[:, i]
            col = col[np.isfinite(col)]
            if col.size == 0:
                continue
            self.baselines[name] = snapshot(name, col, self.config.drift_bins)
        logger.info("Calculated drift baselines for %d features", len(self.baselines))
        return True

    def _empty_report(self, reason: str) -> DriftReport:
        return DriftReport(
            timestamp=datetime.now(timezone.utc).isoformat(),
            overall_drift_score=0.0,
            drifted_feature_count=0,
            retraining_recommended=False,
            urgency=URGENCY_NONE,
            reason=reason,
        )

    def check_drift(self, current: Optional[Sequence[Sequence[float]]] = None) -> DriftReport:
        if current is None:
            current = self.sample_source(self.recent_window) if self.sample_source else []

        arr = np.asarray(current, dtype=np.float64)
        if arr.ndim != 2 or arr.shape[0] < self.config.drift_min_samples:
            return self._empty_report("Insufficient recent samples")
        if not self.baselines:
            return self._empty_report("No baseline distributions")

        features: list[FeatureDrift] = []
        for i, name in enumerate(FEATURE_NAMES[: arr.shape[1]]):
            base = self.baselines.get(name)
            if base is None:
                continue
            col = arr[:, i]
            col = col[np.isfinite(col)]
            if col.size == 0:
                continue
            cur = snapshot(name, col, self.config.drift_bins)
            score = drift_score(base, cur)
            features.append(
                FeatureDrift(
                    feature_name=name,
                    drift_score=score,
                    drift_type=classify_drift_type(base, cur),
                    significance=self._significance(score),
                    current_mean=cur.mean,
                    baseline_mean=base.mean,
                    current_std=cur.std,
                    baseline_std=base.std,
                )
            )

        drifted = [f for f in features if f.significance != URGENCY_LOW]
        overall = sum(f.drift_score for f in features) / len(features) if features else 0.0
        critical = sum(1 for f in features if f.significance == URGENCY_CRITICAL)
        high = sum(1 for f in features if f.significance == URGENCY_HIGH)

        if critical >= 3 or overall > self.config.drift_critical:
            urgency = URGENCY_CRITICAL
        elif critical >= 1 or high >= 3 or overall > self.config.drift_high:
            urgency = URGENCY_HIGH
        elif high >= 1 or len(drifted) >= DRIFTED_FEATURES_WARN:
            urgency = URGENCY_MEDIUM
        elif drifted:
            urgency = URGENCY_LOW
        else:
            urgency = URGENCY_NONE

        report = DriftReport(
            timestamp=datetime.now(timezone.utc).isoformat(),
            overall_drift_score=overall,
            drifted_feature_count=len(drifted),
            retraining_recommended=urgency in (URGENCY_HIGH, URGENCY_CRITICAL),
            urgency=urgency,
            feature_drift=features,
            suggested_actions=self._suggest(features, urgency),
        )
        self.last_report = report

        logger.info(
            "Drift check: score=%.3f drifted=%d urgency=%s",
            overall,
            len(drifted),
            urgency,
        )
        if self.events is not None and urgency != URGENCY_NONE:
            self.events.append(
                EVENT_DRIFT_CHECK,
                {
                    "overall_drift_score": overall,
                    "drifted_feature_count": len(drifted),
                    "urgency": urgency,
                },
            )
        return report

    @staticmethod
    def _suggest(features: list[FeatureDrift], urgency: str) -> list[str]:
        actions: list[str] = []
        if urgency == URGENCY_CRITICAL:
            actions.append("Trigger immediate model retraining")
        elif urgency == URGENCY_HIGH:
            actions.append("Schedule model retraining within 24 hours")
        elif urgency == URGENCY_MEDIUM:
            actions.append("Consider retraining within the next week")

        critical = [f.feature_name for f in features if f.significance == URGENCY_CRITICAL]
        if critical:
            actions.append(f"Review feature extraction for: {', '.join(critical[:3])}")

        up = sum(1 for f in features if f.current_mean > f.baseline_mean * 1.1)
        down = sum(1 for f in features if f.current_mean < f.baseline_mean * 0.9)
        if up > len(FEATURE_NAMES) / 2:
            actions.append("Systematic increase across features, check data source")
        if down > len(FEATURE_NAMES) / 2:
            actions.append("Systematic decrease across features, check data source")

        if not actions:
            actions.append("No action required")
        return actions
