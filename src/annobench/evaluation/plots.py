"""Figures for the annotation benchmark.

- plot_metric_comparison: grouped bars, one facet per metric
- plot_runtime: horizontal bars of wall-clock time per method
- plot_embeddings: UMAP / t-SNE coloured by each method's labels

All functions write a PNG and return its path; nothing is shown
interactively.
"""

from __future__ import annotations

from pathlib import Path

import anndata as ad
import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import polars as pl  # noqa: E402
import seaborn as sns  # noqa: E402
from loguru import logger  # noqa: E402

from annobench.evaluation.metrics import METRIC_LABELS, SUMMARY_METRICS  # noqa: E402


def plot_metric_comparison(
    metrics_long: pl.DataFrame,
    save_path: str | Path,
    title: str | None = None,
    col_wrap: int = 5,
) -> Path:
    """Grouped bar chart of metric values per method, faceted by metric.

    Args:
        metrics_long: Table with method, metric, value columns
        save_path: Output PNG path
        title: Figure title
        col_wrap: Facets per row
    """
    if metrics_long.height == 0:
        raise ValueError("No metrics to plot")

    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    df = metrics_long.select("method", "metric", "value").to_pandas()
    order = [m for m in SUMMARY_METRICS if m in set(df["metric"])]
    df["metric"] = df["metric"].map(lambda m: METRIC_LABELS.get(m, m))
    col_order = [METRIC_LABELS.get(m, m) for m in order]

    grid = sns.catplot(
        data=df,
        x="method",
        y="value",
        hue="method",
        col="metric",
        col_order=col_order,
        col_wrap=min(col_wrap, len(col_order)),
        kind="bar",
        height=3.2,
        aspect=0.9,
        legend=False,
        palette="Set2",
    )
    grid.set(ylim=(0, 1))
    grid.set_titles("{col_name}")
    grid.set_axis_labels("", "Score")
    for ax in grid.axes.flat:
        ax.tick_params(axis="x", rotation=45)
        for container in ax.containers:
            ax.bar_label(container, fmt="%.2f", fontsize=7)
    if title:
        grid.figure.suptitle(title, y=1.03)

    grid.figure.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(grid.figure)
    logger.info(f"Saved metric comparison to {save_path}")
    return save_path


def plot_runtime(
    runtime: pl.DataFrame,
    save_path: str | Path,
    log_scale: bool = False,
) -> Path:
    """Horizontal bar chart of wall-clock seconds per method."""
    if runtime.height == 0:
        raise ValueError("No runtimes to plot")

    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    df = runtime.sort("seconds").to_pandas()

    fig, ax = plt.subplots(figsize=(6, 0.6 * len(df) + 1.2))
    sns.barplot(data=df, x="seconds", y="method", hue="method", palette="Set2", legend=False, ax=ax)
    for container in ax.containers:
        ax.bar_label(container, fmt="%.1f s", fontsize=8, padding=2)
    if log_scale:
        ax.set_xscale("log")
    ax.set_xlabel("Wall-clock time (s)")
    ax.set_ylabel("")
    ax.set_title("Runtime per method")
    fig.tight_layout()

    fig.savefig(save_path, dpi=150)
    plt.close(fig)
    logger.info(f"Saved runtime plot to {save_path}")
    return save_path


def plot_embeddings(
    adata: ad.AnnData,
    label_keys: list[str],
    save_dir: str | Path,
    bases: tuple[str, ...] = ("umap", "tsne"),
) -> list[Path]:
    """Scatter each available embedding coloured by each label column.

    Embeddings missing from adata.obsm are skipped with a warning.
    """
    import scanpy as sc

    save_dir = Path(save_dir)
    save_dir.mkdir(parents=True, exist_ok=True)

    missing_keys = [k for k in label_keys if k not in adata.obs]
    if missing_keys:
        raise ValueError(f"Label columns not in adata.obs: {missing_keys}")

    paths = []
    for basis in bases:
        if f"X_{basis}" not in adata.obsm:
            logger.warning(f"No {basis} embedding in adata.obsm, skipping")
            continue
        fig = sc.pl.embedding(
            adata,
            basis=basis,
            color=label_keys,
            ncols=min(3, len(label_keys)),
            frameon=False,
            show=False,
            return_fig=True,
        )
        path = save_dir / f"{basis}_labels.png"
        fig.savefig(path, dpi=150, bbox_inches="tight")
        plt.close(fig)
        logger.info(f"Saved {basis} plot to {path}")
        paths.append(path)
    return paths
