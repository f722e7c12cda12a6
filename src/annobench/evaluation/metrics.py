"""Evaluation metrics for annotation benchmarks."""

from __future__ import annotations

from itertools import combinations
from pathlib import Path
from typing import Any

import numpy as np
import polars as pl
from loguru import logger
from sklearn.metrics import (
    accuracy_score,
    classification_report,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
)

from annobench.pipeline.base import UNASSIGNED
from annobench.pipeline.components.annotators.mapping import OTHER

# Headline metrics reported for every method, in display order
SUMMARY_METRICS = [
    "accuracy",
    "macro_f1",
    "micro_f1",
    "macro_precision",
    "macro_recall",
]

METRIC_LABELS = {
    "accuracy": "Accuracy",
    "macro_f1": "Macro F1",
    "micro_f1": "Micro F1",
    "weighted_f1": "Weighted F1",
    "macro_precision": "Macro precision",
    "macro_recall": "Macro recall",
}

DEFAULT_EXCLUDE = (UNASSIGNED, OTHER)


def compute_metrics(
    y_true: np.ndarray | list[str],
    y_pred: np.ndarray | list[str],
    class_names: list[str] | None = None,
) -> dict[str, Any]:
    """Compute multiclass metrics for string labels.

    Macro and micro averages range over class_names, which defaults to the
    sorted labels present in y_true. Predictions outside that set (for
    example "unassigned") count as misses for the true class.

    Args:
        y_true: Reference labels
        y_pred: Predicted labels
        class_names: Classes to average over

    Returns:
        Dictionary of metrics
    """
    y_true = np.asarray(y_true, dtype=object)
    y_pred = np.asarray(y_pred, dtype=object)
    if y_true.shape != y_pred.shape:
        raise ValueError(f"y_true and y_pred differ in length: {y_true.shape} vs {y_pred.shape}")
    if y_true.size == 0:
        raise ValueError("Cannot compute metrics on zero cells")

    labels = class_names if class_names is not None else sorted(set(y_true.tolist()))
    all_labels = sorted(set(labels) | set(y_pred.tolist()) | set(y_true.tolist()))

    per_f1 = f1_score(y_true, y_pred, labels=labels, average=None, zero_division=0)
    per_precision = precision_score(y_true, y_pred, labels=labels, average=None, zero_division=0)
    per_recall = recall_score(y_true, y_pred, labels=labels, average=None, zero_division=0)

    metrics = {
        # Overall metrics
        "accuracy": float(accuracy_score(y_true, y_pred)),
        "macro_f1": float(f1_score(y_true, y_pred, labels=labels, average="macro", zero_division=0)),
        "micro_f1": float(f1_score(y_true, y_pred, labels=labels, average="micro", zero_division=0)),
        "weighted_f1": float(
            f1_score(y_true, y_pred, labels=labels, average="weighted", zero_division=0)
        ),
        "macro_precision": float(
            precision_score(y_true, y_pred, labels=labels, average="macro", zero_division=0)
        ),
        "macro_recall": float(
            recall_score(y_true, y_pred, labels=labels, average="macro", zero_division=0)
        ),
        "n_cells": int(y_true.size),
        "fraction_unassigned": float(np.mean(y_pred == UNASSIGNED)),
        # Per-class metrics
        "class_names": list(labels),
        "per_class_metrics": {
            name: {
                "f1": float(per_f1[i]),
                "precision": float(per_precision[i]),
                "recall": float(per_recall[i]),
                "support": int(np.sum(y_true == name)),
            }
            for i, name in enumerate(labels)
        },
        # Confusion matrix over every label seen on either side
        "confusion_labels": all_labels,
        "confusion_matrix": confusion_matrix(y_true, y_pred, labels=all_labels).tolist(),
    }
    return metrics


def print_metrics(metrics: dict[str, Any], title: str = "EVALUATION METRICS") -> None:
    """Log metrics in a formatted way.

    Args:
        metrics: Dictionary from compute_metrics
        title: Header line
    """
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)

    logger.info("Overall Metrics:")
    for key in SUMMARY_METRICS + ["weighted_f1"]:
        logger.info(f"  {METRIC_LABELS[key] + ':':<18}{metrics[key]:.4f}")
    logger.info(f"  {'Cells:':<18}{metrics['n_cells']}")

    if "per_class_metrics" in metrics:
        logger.info("Per-Class Metrics:")
        logger.info(f"{'Class':<20} {'F1':>8} {'Precision':>10} {'Recall':>8} {'Support':>8}")
        logger.info("-" * 58)
        for name, class_metrics in metrics["per_class_metrics"].items():
            logger.info(
                f"{name:<20} {class_metrics['f1']:>8.4f} "
                f"{class_metrics['precision']:>10.4f} {class_metrics['recall']:>8.4f} "
                f"{class_metrics['support']:>8d}"
            )

    logger.info("=" * 60)


def get_classification_report(
    y_true: np.ndarray | list[str],
    y_pred: np.ndarray | list[str],
    class_names: list[str] | None = None,
) -> str:
    """Get sklearn classification report."""
    labels = class_names if class_names is not None else sorted(set(np.asarray(y_true).tolist()))
    return classification_report(y_true, y_pred, labels=labels, zero_division=0)


def compare_methods(
    predictions: pl.DataFrame,
    reference: str,
    methods: list[str] | None = None,
    exclude_labels: tuple[str, ...] = DEFAULT_EXCLUDE,
) -> tuple[pl.DataFrame, dict[str, dict[str, Any]]]:
    """Score every method against a reference method's labels.

    Args:
        predictions: Wide table with a cell_id column and one harmonized
            label column per method
        reference: Column used as pseudo ground truth
        methods: Columns to score (default: every other column)
        exclude_labels: Reference labels whose cells are left out

    Returns:
        (long table with method, metric, value, n_cells;
         full metrics dict per method)

    Raises:
        ValueError: If the reference is missing or no cells remain
    """
    if reference not in predictions.columns:
        raise ValueError(f"Reference method '{reference}' not in predictions")

    if methods is None:
        methods = [c for c in predictions.columns if c not in ("cell_id", reference)]

    scored = predictions.filter(
        pl.col(reference).is_not_null() & ~pl.col(reference).is_in(list(exclude_labels))
    )
    n_excluded = predictions.height - scored.height
    if scored.height == 0:
        raise ValueError(
            f"No cells left to score after excluding reference labels {list(exclude_labels)}"
        )
    if n_excluded:
        logger.info(f"Excluding {n_excluded} cells with reference label in {list(exclude_labels)}")

    y_true = scored[reference].to_numpy()
    rows = []
    full: dict[str, dict[str, Any]] = {}
    for method in methods:
        if method not in scored.columns:
            raise ValueError(f"Method '{method}' not in predictions")
        y_pred = scored[method].fill_null(UNASSIGNED).to_numpy()
        metrics = compute_metrics(y_true, y_pred)
        metrics["n_excluded"] = n_excluded
        full[method] = metrics
        for key in SUMMARY_METRICS:
            rows.append(
                {
                    "method": method,
                    "metric": key,
                    "value": metrics[key],
                    "n_cells": metrics["n_cells"],
                }
            )

    if not rows:
        long_df = pl.DataFrame(
            schema={"method": pl.Utf8, "metric": pl.Utf8, "value": pl.Float64, "n_cells": pl.Int64}
        )
    else:
        long_df = pl.DataFrame(rows)
    return long_df, full


def metrics_wide(long_df: pl.DataFrame) -> pl.DataFrame:
    """Pivot a long metrics table to one row per method."""
    return long_df.pivot(on="metric", index="method", values="value").select(
        ["method"] + [m for m in SUMMARY_METRICS if m in long_df["metric"].unique().to_list()]
    )


def agreement_table(predictions: pl.DataFrame, methods: list[str] | None = None) -> pl.DataFrame:
    """Pairwise fraction of cells on which two methods give the same label."""
    if methods is None:
        methods = [c for c in predictions.columns if c != "cell_id"]

    rows = []
    for a, b in combinations(methods, 2):
        both = predictions.select(a, b).drop_nulls()
        agreement = float((both[a] == both[b]).mean()) if both.height else float("nan")
        rows.append({"method_a": a, "method_b": b, "agreement": agreement, "n_cells": both.height})

    if not rows:
        return pl.DataFrame(
            schema={"method_a": pl.Utf8, "method_b": pl.Utf8, "agreement": pl.Float64, "n_cells": pl.Int64}
        )
    return pl.DataFrame(rows)


def plot_confusion_matrix(
    y_true: np.ndarray | list[str],
    y_pred: np.ndarray | list[str],
    save_path: str | Path | None = None,
    normalize: bool = True,
    figsize: tuple[int, int] = (8, 7),
    title: str | None = None,
) -> None:
    """Plot a confusion matrix over every label seen on either side.

    Args:
        y_true: Reference labels
        y_pred: Predicted labels
        save_path: Optional path to save figure
        normalize: Whether to normalize by true labels
        figsize: Figure size
        title: Figure title
    """
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
    import seaborn as sns

    labels = sorted(set(np.asarray(y_true).tolist()) | set(np.asarray(y_pred).tolist()))
    cm = confusion_matrix(y_true, y_pred, labels=labels)

    if normalize:
        cm = cm.astype(float) / cm.sum(axis=1, keepdims=True)
        cm = np.nan_to_num(cm)  # Handle division by zero
        fmt = ".2f"
        default_title = "Normalized Confusion Matrix"
    else:
        fmt = "d"
        default_title = "Confusion Matrix"

    plt.figure(figsize=figsize)
    sns.heatmap(
        cm,
        annot=True,
        fmt=fmt,
        cmap="Blues",
        xticklabels=labels,
        yticklabels=labels,
    )
    plt.title(title or default_title)
    plt.ylabel("Reference label")
    plt.xlabel("Predicted label")
    plt.tight_layout()

    if save_path is not None:
        plt.savefig(save_path, dpi=150)
        logger.info(f"Saved confusion matrix to {save_path}")

    plt.close()
