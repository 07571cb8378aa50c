"""Data Quality Checker

Scores the labeled training set before it is used for training:
missing values, z-score outliers, class balance and per-feature health.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd

from core.config import MonitoringConfig
from core.sample_model import LabeledSample
from features.token_features import FEATURE_NAMES, to_frame

logger = logging.getLogger(__name__)

MISSING_WARN_PERCENT = 5.0
MISSING_CRITICAL_PERCENT = 10.0
OUTLIER_WARN_PERCENT = 5.0
OUTLIER_CRITICAL_PERCENT = 10.0

WEIGHT_MISSING = 0.25
WEIGHT_OUTLIERS = 0.20
WEIGHT_BALANCE = 0.25
WEIGHT_FEATURES = 0.30


@dataclass(frozen=True)
class FeatureQuality:
    feature_name: str
    missing_percent: float
    outlier_percent: float
    mean: float
    std: float

    @property
    def is_good(self) -> bool:
        return (
            self.missing_percent < MISSING_WARN_PERCENT
            and self.outlier_percent < OUTLIER_WARN_PERCENT
            and self.std > 0
        )


@dataclass(frozen=True)
class QualityReport:
    timestamp: str
    total_samples: int
    score: float
    total_missing_percent: float = 0.0
    total_outlier_percent: float = 0.0
    class_counts: dict[str, int] = field(default_factory=dict)
    imbalance_ratio: float = 0.0
    is_imbalanced: bool = False
    low_quality_features: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "total_samples": self.total_samples,
            "score": self.score,
            "total_missing_percent": self.total_missing_percent,
            "total_outlier_percent": self.total_outlier_percent,
            "class_counts": dict(self.class_counts),
            "imbalance_ratio": self.imbalance_ratio,
            "is_imbalanced": self.is_imbalanced,
            "low_quality_features": list(self.low_quality_features),
            "issues": list(self.issues),
            "recommendations": list(self.recommendations),
        }


class DataQualityChecker:
    def __init__(
        self,
        config: Optional[MonitoringConfig] = None,
        sample_source: Optional[Callable[[int], list[LabeledSample]]] = None,
        sample_limit: int = 10000,
    ):
        self.config = config or MonitoringConfig()
        self.sample_source = sample_source
        self.sample_limit = sample_limit
        self.last_report: Optional[QualityReport] = None

    def check_quality(self, samples: Optional[Sequence[LabeledSample]] = None) -> QualityReport:
        if samples is None:
            samples = self.sample_source(self.sample_limit) if self.sample_source else []

        now = datetime.now(timezone.utc).isoformat()
        if len(samples) == 0:
            report = QualityReport(timestamp=now, total_samples=0, score=0.0, issues=["No samples"])
            self.last_report = report
            return report

        frame = to_frame([list(s.feature_vector) for s in samples])
        labels = pd.Series([s.outcome_label.value for s in samples])
        report = self.score_frame(frame, labels)
        self.last_report = report

        logger.info("Quality check: score=%.1f/100 over %d samples", report.score, report.total_samples)
        return report

    def score_frame(self, frame: pd.DataFrame, labels: pd.Series) -> QualityReport:
        frame = frame.reindex(columns=list(FEATURE_NAMES)).astype(float)
        frame = frame.replace([np.inf, -np.inf], np.nan)
        n = len(frame)

        missing = frame.isna()
        total_missing_pct = float(missing.to_numpy().mean() * 100) if n else 0.0

        per_feature: list[FeatureQuality] = []
        total_outliers = 0
        total_values = 0
        for name in FEATURE_NAMES:
            col = frame[name].dropna()
            missing_pct = (n - len(col)) / n * 100 if n else 100.0
            if col.empty:
                per_feature.append(FeatureQuality(name, missing_pct, 0.0, 0.0, 0.0))
                continue
            mean = float(col.mean())
            std = float(col.std(ddof=0))
            outliers = int(((col - mean).abs() / std > self.config.quality_outlier_z).sum()) if std > 0 else 0
            total_outliers += outliers
            total_values += len(col)
            per_feature.append(FeatureQuality(name, missing_pct, outliers / len(col) * 100, mean, std))

        total_outlier_pct = total_outliers / total_values * 100 if total_values else 0.0

        counts = labels.value_counts()
        class_counts = {str(k): int(v) for k, v in counts.items()}
        max_count = max(class_counts.values(), default=1)
        min_count = min((v for v in class_counts.values() if v > 0), default=max_count)
        imbalance_ratio = max_count / min_count if min_count > 0 else 0.0
        is_imbalanced = imbalance_ratio > self.config.quality_imbalance_ratio

        missing_score = max(0.0, 100 - total_missing_pct * 5)
        outlier_score = max(0.0, 100 - total_outlier_pct * 5)
        balance_score = max(0.0, 100 - (imbalance_ratio - 1) * 10) if is_imbalanced else 100.0
        feature_score = sum(1 for f in per_feature if f.is_good) / len(FEATURE_NAMES) * 100

        score = (
            missing_score * WEIGHT_MISSING
            + outlier_score * WEIGHT_OUTLIERS
            + balance_score * WEIGHT_BALANCE
            + feature_score * WEIGHT_FEATURES
        )

        low_quality = [
            f.feature_name
            for f in per_feature
            if f.missing_percent > MISSING_CRITICAL_PERCENT
            or f.outlier_percent > OUTLIER_CRITICAL_PERCENT
            or f.std == 0
        ]

        issues: list[str] = []
        recommendations: list[str] = []
        if total_missing_pct > MISSING_CRITICAL_PERCENT:
            issues.append(f"Critical: {total_missing_pct:.1f}% missing data overall")
            recommendations.append("Improve data collection to reduce missing values")
        elif total_missing_pct > MISSING_WARN_PERCENT:
            issues.append(f"Warning: {total_missing_pct:.1f}% missing data overall")
        if total_outlier_pct > OUTLIER_CRITICAL_PERCENT:
            issues.append(f"Critical: {total_outlier_pct:.1f}% outliers detected")
        if is_imbalanced:
            rarest = min(class_counts.items(), key=lambda kv: kv[1])
            issues.append(f"Class imbalance detected (ratio: {imbalance_ratio:.1f}:1)")
            recommendations.append(f"Collect more samples for class '{rarest[0]}' (currently {rarest[1]})")
        if low_quality:
            issues.append(f"{len(low_quality)} low-quality features: {', '.join(low_quality[:5])}")
        if not issues:
            recommendations.append("Data quality is good")

        return QualityReport(
            timestamp=datetime.now(timezone.utc).isoformat(),
            total_samples=n,
            score=round(score, 1),
            total_missing_percent=total_missing_pct,
            total_outlier_percent=total_outlier_pct,
            class_counts=class_counts,
            imbalance_ratio=imbalance_ratio,
            is_imbalanced=is_imbalanced,
            low_quality_features=low_quality,
            issues=issues,
            recommendations=recommendations,
        )
