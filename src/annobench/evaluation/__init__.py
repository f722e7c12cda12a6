"""Evaluation metrics, timing and figures."""

from annobench.evaluation.metrics import (
    SUMMARY_METRICS,
    agreement_table,
    compare_methods,
    compute_metrics,
    get_classification_report,
    metrics_wide,
    plot_confusion_matrix,
    print_metrics,
)
from annobench.evaluation.timing import RuntimeRecord, TimingRecorder

__all__ = [
    "SUMMARY_METRICS",
    "agreement_table",
    "compare_methods",
    "compute_metrics",
    "get_classification_report",
    "metrics_wide",
    "plot_confusion_matrix",
    "print_metrics",
    "RuntimeRecord",
    "TimingRecorder",
]
