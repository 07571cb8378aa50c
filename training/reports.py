from __future__ import annotations

from training.evaluator import ModelComparison, ModelMetrics


def _pct(x: float) -> str:
    return f"{x * 100:.1f}%"


def generate_report(metrics: ModelMetrics, title: str = "Model Evaluation") -> str:
    cm = metrics.confusion_matrix
    lines = [
        f"=== {title} ===",
        f"Samples: {metrics.sample_count} (threshold {metrics.threshold:.2f})",
        "",
        f"Accuracy:    {_pct(metrics.accuracy)}",
        f"Precision:   {_pct(metrics.precision)}",
        f"Recall:      {_pct(metrics.recall)}",
        f"F1:          {_pct(metrics.f1_score)}",
        f"Specificity: {_pct(metrics.specificity)}",
        f"NPV:         {_pct(metrics.npv)}",
        f"AUC:         {metrics.auc:.4f}",
        f"Brier:       {metrics.brier_score:.4f}",
        f"ECE:         {metrics.calibration_error:.4f}",
        "",
        "Confusion matrix:",
        f"  TP={cm.tp}  FP={cm.fp}",
        f"  FN={cm.fn}  TN={cm.tn}",
    ]

    populated = [b for b in metrics.calibration_bins if b.count > 0]
    if populated:
        lines.append("")
        lines.append("Calibration:")
        for b in populated:
            lines.append(
                f"  [{b.bin_start:.1f}-{b.bin_end:.1f}] predicted={b.mean_predicted:.3f} "
                f"actual={b.actual_positive_rate:.3f} n={b.count}"
            )
    return "\n".join(lines)


def generate_comparison_report(comparison: ModelComparison) -> str:
    test = comparison.statistical_test
    p = comparison.production_metrics
    c = comparison.challenger_metrics

    def row(name: str, a: float, b: float, delta: float) -> str:
        return f"  {name:<10} {_pct(a):>8} {_pct(b):>8} {delta * 100:+.2f}pp"

    lines = [
        "=== Model Comparison ===",
        f"Production: {comparison.production_version}",
        f"Challenger: {comparison.challenger_version}",
        f"Test set:   {comparison.test_set_size} samples",
        "",
        f"  {'metric':<10} {'prod':>8} {'chal':>8} delta",
        row("accuracy", p.accuracy, c.accuracy, comparison.accuracy_delta),
        row("precision", p.precision, c.precision, comparison.precision_delta),
        row("recall", p.recall, c.recall, comparison.recall_delta),
        row("f1", p.f1_score, c.f1_score, comparison.f1_delta),
        f"  {'auc':<10} {p.auc:>8.4f} {c.auc:>8.4f} {comparison.auc_delta:+.4f}",
        "",
        f"McNemar: chi2={test.statistic:.4f} p={test.p_value:.4f} "
        f"({'significant' if test.is_significant else 'not significant'}, b={test.b}, c={test.c})",
        f"Winner: {comparison.winner} ({comparison.winner_version}), confidence {_pct(comparison.confidence)}",
    ]
    return "\n".join(lines)
