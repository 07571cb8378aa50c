"""Model evaluation.

Classification metrics, ROC AUC, calibration and the paired McNemar
comparison used to decide whether a challenger beats production.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

CALIBRATION_BINS = 10
SIGNIFICANCE_LEVEL = 0.05
SIGNIFICANT_DELTA = 0.01
AVERAGE_DELTA = 0.02
MAX_CONFIDENCE = 0.99

WINNER_CHALLENGER = "challenger"
WINNER_PRODUCTION = "production"
WINNER_TIE = "tie"


def predicts_positive(score, threshold: float = 0.5):
    """A score at or above threshold is positive. Scalars or numpy arrays."""
    return score >= threshold


@dataclass(frozen=True)
class ConfusionMatrix:
    tp: int = 0
    fp: int = 0
    tn: int = 0
    fn: int = 0

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.tn + self.fn

    def to_dict(self) -> dict:
        return {"tp": self.tp, "fp": self.fp, "tn": self.tn, "fn": self.fn}


@dataclass(frozen=True)
class CalibrationBin:
    bin_start: float
    bin_end: float
    mean_predicted: float
    actual_positive_rate: float
    count: int

    def to_dict(self) -> dict:
        return {
            "bin_start": self.bin_start,
            "bin_end": self.bin_end,
            "mean_predicted": self.mean_predicted,
            "actual_positive_rate": self.actual_positive_rate,
            "count": self.count,
        }


@dataclass(frozen=True)
class ModelMetrics:
    accuracy: float
    precision: float
    recall: float
    f1_score: float
    specificity: float
    npv: float
    auc: float
    brier_score: float
    calibration_error: float
    confusion_matrix: ConfusionMatrix
    calibration_bins: tuple[CalibrationBin, ...] = ()
    sample_count: int = 0
    threshold: float = 0.5

    def to_dict(self) -> dict:
        return {
            "accuracy": self.accuracy,
            "precision": self.precision,
            "recall": self.recall,
            "f1_score": self.f1_score,
            "specificity": self.specificity,
            "npv": self.npv,
            "auc": self.auc,
            "brier_score": self.brier_score,
            "calibration_error": self.calibration_error,
            "confusion_matrix": self.confusion_matrix.to_dict(),
            "calibration_bins": [b.to_dict() for b in self.calibration_bins],
            "sample_count": self.sample_count,
            "threshold": self.threshold,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ModelMetrics:
        cm = data.get("confusion_matrix") or {}
        return cls(
            accuracy=float(data.get("accuracy", 0.0)),
            precision=float(data.get("precision", 0.0)),
            recall=float(data.get("recall", 0.0)),
            f1_score=float(data.get("f1_score", 0.0)),
            specificity=float(data.get("specificity", 0.0)),
            npv=float(data.get("npv", 0.0)),
            auc=float(data.get("auc", 0.0)),
            brier_score=float(data.get("brier_score", 1.0)),
            calibration_error=float(data.get("calibration_error", 1.0)),
            confusion_matrix=ConfusionMatrix(
                tp=int(cm.get("tp", 0)),
                fp=int(cm.get("fp", 0)),
                tn=int(cm.get("tn", 0)),
                fn=int(cm.get("fn", 0)),
            ),
            calibration_bins=tuple(
                CalibrationBin(**b) for b in data.get("calibration_bins", [])
            ),
            sample_count=int(data.get("sample_count", 0)),
            threshold=float(data.get("threshold", 0.5)),
        )

    @classmethod
    def empty(cls, threshold: float = 0.5) -> ModelMetrics:
        return cls(
            accuracy=0.0,
            precision=0.0,
            recall=0.0,
            f1_score=0.0,
            specificity=0.0,
            npv=0.0,
            auc=0.0,
            brier_score=1.0,
            calibration_error=1.0,
            confusion_matrix=ConfusionMatrix(),
            threshold=threshold,
        )


@dataclass(frozen=True)
class StatisticalTest:
    test_name: str
    statistic: float
    p_value: float
    is_significant: bool
    b: int
    c: int

    def to_dict(self) -> dict:
        return {
            "test_name": self.test_name,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "b": self.b,
            "c": self.c,
        }


@dataclass(frozen=True)
class ModelComparison:
    production_version: str
    challenger_version: str
    production_metrics: ModelMetrics
    challenger_metrics: ModelMetrics
    accuracy_delta: float
    precision_delta: float
    recall_delta: float
    f1_delta: float
    auc_delta: float
    statistical_test: StatisticalTest
    winner: str
    winner_version: str
    confidence: float
    test_set_size: int
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_significant(self) -> bool:
        return self.statistical_test.is_significant

    @property
    def p_value(self) -> float:
        return self.statistical_test.p_value

    def to_dict(self) -> dict:
        return {
            "production_version": self.production_version,
            "challenger_version": self.challenger_version,
            "production_metrics": self.production_metrics.to_dict(),
            "challenger_metrics": self.challenger_metrics.to_dict(),
            "accuracy_delta": self.accuracy_delta,
            "precision_delta": self.precision_delta,
            "recall_delta": self.recall_delta,
            "f1_delta": self.f1_delta,
            "auc_delta": self.auc_delta,
            "statistical_test": self.statistical_test.to_dict(),
            "winner": self.winner,
            "winner_version": self.winner_version,
            "confidence": self.confidence,
            "test_set_size": self.test_set_size,
            "details": self.details,
        }


def _safe_div(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def erf(x: float) -> float:
    """Abramowitz-Stegun 7.1.26 approximation."""
    a1 = 0.254829592
    a2 = -0.284496736
    a3 = 1.421413741
    a4 = -1.453152027
    a5 = 1.061405429
    p = 0.3275911

    sign = -1.0 if x < 0 else 1.0
    x = abs(x)
    t = 1.0 / (1.0 + p * x)
    y = 1.0 - (((((a5 * t + a4) * t) + a3) * t + a2) * t + a1) * t * math.exp(-x * x)
    return sign * y


def normal_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / math.sqrt(2.0)))


class ModelEvaluator:
    """Stateless evaluator. Thresholds are overridable per instance."""

    def __init__(
        self,
        significance_level: float = SIGNIFICANCE_LEVEL,
        significant_delta: float = SIGNIFICANT_DELTA,
        average_delta: float = AVERAGE_DELTA,
        calibration_bins: int = CALIBRATION_BINS,
    ):
        self.significance_level = significance_level
        self.significant_delta = significant_delta
        self.average_delta = average_delta
        self.n_bins = calibration_bins

    def calculate_metrics(
        self,
        predictions: Sequence[float],
        labels: Sequence[int],
        threshold: float = 0.5,
    ) -> ModelMetrics:
        preds = np.asarray(predictions, dtype=np.float64).reshape(-1)
        y = np.asarray(labels, dtype=np.float64).reshape(-1)

        if preds.size == 0 or preds.size != y.size:
            if preds.size != y.size:
                logger.warning(
                    "Prediction/label length mismatch: %d vs %d", preds.size, y.size
                )
            return ModelMetrics.empty(threshold)

        pred_cls = predicts_positive(preds, threshold)
        actual = y == 1
        cm = ConfusionMatrix(
            tp=int(np.sum(pred_cls & actual)),
            fp=int(np.sum(pred_cls & ~actual)),
            tn=int(np.sum(~pred_cls & ~actual)),
            fn=int(np.sum(~pred_cls & actual)),
        )

        n = cm.total
        accuracy = _safe_div(cm.tp + cm.tn, n)
        precision = _safe_div(cm.tp, cm.tp + cm.fp)
        recall = _safe_div(cm.tp, cm.tp + cm.fn)
        specificity = _safe_div(cm.tn, cm.tn + cm.fp)
        npv = _safe_div(cm.tn, cm.tn + cm.fn)
        f1 = _safe_div(2 * precision * recall, precision + recall)

        bins = self.calibration_bins(preds, y)

        return ModelMetrics(
            accuracy=accuracy,
            precision=precision,
            recall=recall,
            f1_score=f1,
            specificity=specificity,
            npv=npv,
            auc=self.calculate_auc(preds, y),
            brier_score=self.brier_score(preds, y),
            calibration_error=self._expected_calibration_error(bins, n),
            confusion_matrix=cm,
            calibration_bins=tuple(bins),
            sample_count=n,
            threshold=threshold,
        )

    def calculate_auc(self, predictions: Sequence[float], labels: Sequence[int]) -> float:
        """ROC AUC by trapezoidal integration over descending scores."""
        preds = np.asarray(predictions, dtype=np.float64).reshape(-1)
        y = np.asarray(labels, dtype=np.float64).reshape(-1)
        n = preds.size
        if n == 0:
            return 0.0

        positives = int(np.sum(y == 1))
        negatives = n - positives
        if positives == 0 or negatives == 0:
            return 0.5

        order = np.argsort(-preds, kind="stable")
        sorted_preds = preds[order]
        sorted_y = y[order]

        auc = 0.0
        tp = 0
        fp = 0
        prev_tpr = 0.0
        prev_fpr = 0.0
        i = 0
        # tied scores move the curve diagonally in one step
        while i < n:
            j = i
            while j < n and sorted_preds[j] == sorted_preds[i]:
                if sorted_y[j] == 1:
                    tp += 1
                else:
                    fp += 1
                j += 1
            tpr = tp / positives
            fpr = fp / negatives
            auc += (fpr - prev_fpr) * (tpr + prev_tpr) / 2
            prev_tpr = tpr
            prev_fpr = fpr
            i = j

        return float(auc)

    def brier_score(self, predictions: Sequence[float], labels: Sequence[int]) -> float:
        preds = np.asarray(predictions, dtype=np.float64).reshape(-1)
        y = np.asarray(labels, dtype=np.float64).reshape(-1)
        if preds.size == 0 or preds.size != y.size:
            return 1.0
        return float(np.mean((preds - y) ** 2))

    def calibration_bins(
        self, predictions: Sequence[float], labels: Sequence[int]
    ) -> list[CalibrationBin]:
        preds = np.asarray(predictions, dtype=np.float64).reshape(-1)
        y = np.asarray(labels, dtype=np.float64).reshape(-1)
        width = 1.0 / self.n_bins

        bins: list[CalibrationBin] = []
        for i in range(self.n_bins):
            start = i * width
            end = (i + 1) * width
            if i == self.n_bins - 1:
                mask = (preds >= start) & (preds <= end)
            else:
                mask = (preds >= start) & (preds < end)
            count = int(np.sum(mask))
            if count == 0:
                bins.append(CalibrationBin(start, end, (start + end) / 2, 0.0, 0))
                continue
            bins.append(
                CalibrationBin(
                    bin_start=start,
                    bin_end=end,
                    mean_predicted=float(np.mean(preds[mask])),
                    actual_positive_rate=float(np.mean(y[mask] == 1)),
                    count=count,
                )
            )
        return bins

    def calibration_error(self, predictions: Sequence[float], labels: Sequence[int]) -> float:
        preds = np.asarray(predictions, dtype=np.float64).reshape(-1)
        return self._expected_calibration_error(self.calibration_bins(preds, labels), preds.size)

    @staticmethod
    def _expected_calibration_error(bins: Sequence[CalibrationBin], n: int) -> float:
        if n == 0:
            return 1.0
        ece = 0.0
        for b in bins:
            if b.count > 0:
                ece += (b.count / n) * abs(b.mean_predicted - b.actual_positive_rate)
        return float(ece)

    def mcnemar_test(
        self,
        production_predictions: Sequence[float],
        challenger_predictions: Sequence[float],
        labels: Sequence[int],
        threshold: float = 0.5,
    ) -> StatisticalTest:
        """McNemar's test with continuity correction on paired correctness."""
        prod = predicts_positive(np.asarray(production_predictions, dtype=np.float64).reshape(-1), threshold)
        chal = predicts_positive(np.asarray(challenger_predictions, dtype=np.float64).reshape(-1), threshold)
        actual = np.asarray(labels, dtype=np.float64).reshape(-1) == 1

        prod_correct = prod == actual
        chal_correct = chal == actual
        b = int(np.sum(prod_correct & ~chal_correct))
        c = int(np.sum(~prod_correct & chal_correct))

        if b + c > 0:
            chi2 = (abs(b - c) - 1) ** 2 / (b + c)
        else:
            chi2 = 0.0

        p_value = 2 * (1 - normal_cdf(math.sqrt(chi2)))
        p_value = min(1.0, max(0.0, p_value))

        return StatisticalTest(
            test_name="mcnemar",
            statistic=float(chi2),
            p_value=float(p_value),
            is_significant=p_value < self.significance_level,
            b=b,
            c=c,
        )

    def decide_winner(
        self,
        accuracy_delta: float,
        f1_delta: float,
        auc_delta: float,
        is_significant: bool,
    ) -> tuple[str, float]:
        """Return (winner, confidence) where winner is challenger/production/tie."""
        winner = WINNER_TIE
        confidence = 0.5

        if is_significant:
            if accuracy_delta > self.significant_delta and f1_delta > self.significant_delta:
                winner = WINNER_CHALLENGER
                confidence = min(MAX_CONFIDENCE, 0.5 + abs(accuracy_delta) + abs(f1_delta))
            elif accuracy_delta < -self.significant_delta and f1_delta < -self.significant_delta:
                winner = WINNER_PRODUCTION
                confidence = min(MAX_CONFIDENCE, 0.5 + abs(accuracy_delta) + abs(f1_delta))
        else:
            avg = (accuracy_delta + f1_delta + auc_delta) / 3
            if avg > self.average_delta:
                winner = WINNER_CHALLENGER
                confidence = 0.5 + avg
            elif avg < -self.average_delta:
                winner = WINNER_PRODUCTION
                confidence = 0.5 - avg

        return winner, min(MAX_CONFIDENCE, confidence)

    def compare_predictions(
        self,
        production_version: str,
        challenger_version: str,
        production_predictions: Sequence[float],
        challenger_predictions: Sequence[float],
        labels: Sequence[int],
        threshold: float = 0.5,
    ) -> ModelComparison:
        prod_m = self.calculate_metrics(production_predictions, labels, threshold)
        chal_m = self.calculate_metrics(challenger_predictions, labels, threshold)
        test = self.mcnemar_test(production_predictions, challenger_predictions, labels, threshold)

        acc_d = chal_m.accuracy - prod_m.accuracy
        f1_d = chal_m.f1_score - prod_m.f1_score
        auc_d = chal_m.auc - prod_m.auc
        winner, confidence = self.decide_winner(acc_d, f1_d, auc_d, test.is_significant)

        if winner == WINNER_CHALLENGER:
            winner_version = challenger_version
        elif winner == WINNER_PRODUCTION:
            winner_version = production_version
        else:
            winner_version = WINNER_TIE

        comparison = ModelComparison(
            production_version=production_version,
            challenger_version=challenger_version,
            production_metrics=prod_m,
            challenger_metrics=chal_m,
            accuracy_delta=acc_d,
            precision_delta=chal_m.precision - prod_m.precision,
            recall_delta=chal_m.recall - prod_m.recall,
            f1_delta=f1_d,
            auc_delta=auc_d,
            statistical_test=test,
            winner=winner,
            winner_version=winner_version,
            confidence=confidence,
            test_set_size=len(labels),
        )
        logger.info(
            "Compared %s vs %s: winner=%s acc_delta=%.4f p=%.4f",
            production_version,
            challenger_version,
            winner,
            acc_d,
            test.p_value,
        )
        return comparison

    def compare_models(
        self,
        production: Callable[[np.ndarray], Sequence[float]],
        challenger: Callable[[np.ndarray], Sequence[float]],
        features: np.ndarray,
        labels: Sequence[int],
        production_version: str = "production",
        challenger_version: str = "challenger",
        threshold: float = 0.5,
    ) -> ModelComparison:
        """Run both predictors on the identical test set and compare."""
        x = np.asarray(features, dtype=np.float32)
        prod_preds = list(production(x))
        chal_preds = list(challenger(x))
        return self.compare_predictions(
            production_version,
            challenger_version,
            prod_preds,
            chal_preds,
            labels,
            threshold,
        )

    def evaluate(
        self,
        predict: Callable[[np.ndarray], Sequence[float]],
        features: np.ndarray,
        labels: Sequence[int],
        threshold: Optional[float] = None,
    ) -> ModelMetrics:
        preds = list(predict(np.asarray(features, dtype=np.float32)))
        return self.calculate_metrics(preds, labels, 0.5 if threshold is None else threshold)
