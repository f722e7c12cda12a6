"""scANVI-based cell type annotation component.

scANVI (single-cell ANnotation using Variational Inference) is a semi-supervised
deep learning model that propagates cell type labels from a labelled subset of
cells to the rest.

scANVI training is slow and GPU-friendly, so it runs as a separate step
(`annobench train-scanvi` or scripts/train_scanvi.py) that exports a
predictions file. The benchmark report consumes that file through
ScANVIAnnotator, with the training runtime read from a JSON sidecar.

Seed labels: a random fraction of cells keep the label from a chosen obs
column (by default the harmonized SingleR labels); the rest are marked
"Unknown" and predicted by the model.

Reference: Xu et al. Molecular Systems Biology 2021
https://github.com/scverse/scvi-tools
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import scanpy as sc
from loguru import logger

from annobench.pipeline.base import (
    UNASSIGNED,
    AnnotationConfig,
    AnnotationResult,
    build_annotations_df,
)
from annobench.pipeline.components.annotators.mapping import (
    OTHER,
    harmonize_labels,
    is_unassigned,
)
from annobench.pipeline.registry import register_annotator


UNLABELED_CATEGORY = "Unknown"
SEED_LABELS_KEY = "_scanvi_seed_labels"


@dataclass
class ScANVITrainingResult:
    """Predictions and bookkeeping from one scANVI training run."""

    predictions_df: pl.DataFrame  # cell_id, predicted_type, confidence
    probabilities: pd.DataFrame | None = None
    runtime_seconds: float = 0.0
    params: dict[str, Any] = field(default_factory=dict)


def make_seed_labels(
    labels: list[object] | np.ndarray | pd.Series,
    labelled_fraction: float = 0.1,
    seed: int = 0,
    exclude: tuple[str, ...] = (UNASSIGNED, OTHER),
) -> np.ndarray:
    """Keep a random fraction of labels and mark the rest as unlabeled.

    Labels that are unassigned (or listed in exclude) are never used as
    seeds. At least one cell per label class is kept when that class has
    any eligible cell.

    Args:
        labels: Per-cell labels
        labelled_fraction: Fraction of eligible cells to keep, in (0, 1]
        seed: Random seed
        exclude: Labels never used as seeds

    Returns:
        Object array of seed labels with UNLABELED_CATEGORY elsewhere
    """
    if not 0.0 < labelled_fraction <= 1.0:
        raise ValueError(f"labelled_fraction must be in (0, 1], got {labelled_fraction}")

    labels = np.asarray([None if is_unassigned(x) else str(x) for x in labels], dtype=object)
    eligible = np.array([x is not None and x not in exclude for x in labels])
    seeds = np.full(labels.shape[0], UNLABELED_CATEGORY, dtype=object)

    rng = np.random.default_rng(seed)
    for label in sorted({x for x in labels[eligible]}):
        idx = np.flatnonzero(eligible & (labels == label))
        n_keep = max(1, int(round(labelled_fraction * idx.size)))
        keep = rng.choice(idx, size=n_keep, replace=False)
        seeds[keep] = label

    if not (seeds != UNLABELED_CATEGORY).any():
        raise ValueError("No eligible seed labels; scANVI needs at least one labelled cell")
    return seeds


def train_scanvi(
    adata: ad.AnnData,
    labels_key: str,
    labelled_fraction: float = 0.1,
    n_top_genes: int = 2000,
    n_latent: int = 30,
    n_layers: int = 2,
    max_epochs_scvi: int = 100,
    max_epochs_scanvi: int = 50,
    batch_key: str | None = None,
    counts_layer: str | None = "counts",
    seed: int = 0,
) -> ScANVITrainingResult:
    """Train scVI then scANVI on seed labels and predict every cell.

    Args:
        adata: Dataset with raw counts in counts_layer (or X)
        labels_key: obs column with labels to seed from
        labelled_fraction: Fraction of cells kept as seeds
        n_top_genes: HVGs used for training
        n_latent: Latent dimension size
        n_layers: Number of hidden layers
        max_epochs_scvi: Max epochs for unsupervised pretraining
        max_epochs_scanvi: Max epochs for semi-supervised training
        batch_key: Optional obs column for batch correction
        counts_layer: Layer with raw counts
        seed: Random seed

    Returns:
        Training result with per-cell predictions and runtime
    """
    import scvi

    if labels_key not in adata.obs:
        raise ValueError(f"Labels column '{labels_key}' not found in adata.obs")

    start = time.perf_counter()
    scvi.settings.seed = seed

    train_adata = adata.copy()
    layer = counts_layer if counts_layer in train_adata.layers else None
    train_adata.obs[SEED_LABELS_KEY] = make_seed_labels(
        train_adata.obs[labels_key].tolist(),
        labelled_fraction=labelled_fraction,
        seed=seed,
    )
    n_seed = int((train_adata.obs[SEED_LABELS_KEY] != UNLABELED_CATEGORY).sum())
    logger.info(f"scANVI seed labels: {n_seed}/{train_adata.n_obs} cells from '{labels_key}'")

    n_top = min(n_top_genes, train_adata.n_vars)
    sc.pp.highly_variable_genes(
        train_adata,
        n_top_genes=n_top,
        flavor="seurat_v3",
        layer=layer,
        batch_key=batch_key,
        subset=True,
    )
    logger.info(f"Using {train_adata.n_vars} highly variable genes")

    scvi.model.SCVI.setup_anndata(
        train_adata,
        layer=layer,
        batch_key=batch_key,
        labels_key=SEED_LABELS_KEY,
    )

    logger.info("Training scVI (unsupervised)...")
    scvi_model = scvi.model.SCVI(train_adata, n_latent=n_latent, n_layers=n_layers)
    scvi_model.train(
        max_epochs=max_epochs_scvi,
        early_stopping=True,
        early_stopping_patience=10,
    )

    logger.info("Training scANVI (semi-supervised)...")
    scanvi_model = scvi.model.SCANVI.from_scvi_model(
        scvi_model,
        unlabeled_category=UNLABELED_CATEGORY,
    )
    scanvi_model.train(
        max_epochs=max_epochs_scanvi,
        early_stopping=True,
        early_stopping_patience=10,
    )

    logger.info("Predicting cell types...")
    predictions = np.asarray(scanvi_model.predict()).astype(str)
    probabilities = scanvi_model.predict(soft=True)
    if not isinstance(probabilities, pd.DataFrame):
        probabilities = pd.DataFrame(np.asarray(probabilities), index=train_adata.obs_names)
    probabilities.index = train_adata.obs_names
    confidence = probabilities.to_numpy(dtype=float).max(axis=1)

    runtime = time.perf_counter() - start
    logger.info(f"scANVI training complete in {runtime:.1f}s")

    predictions_df = pl.DataFrame(
        {
            "cell_id": [str(c) for c in train_adata.obs_names],
            "predicted_type": predictions.tolist(),
            "confidence": confidence.tolist(),
        }
    )
    return ScANVITrainingResult(
        predictions_df=predictions_df,
        probabilities=probabilities,
        runtime_seconds=runtime,
        params={
            "labels_key": labels_key,
            "labelled_fraction": labelled_fraction,
            "n_seed_cells": n_seed,
            "n_top_genes": int(train_adata.n_vars),
            "n_latent": n_latent,
            "n_layers": n_layers,
            "max_epochs_scvi": max_epochs_scvi,
            "max_epochs_scanvi": max_epochs_scanvi,
            "batch_key": batch_key,
            "seed": seed,
        },
    )


def sidecar_path(path: Path | str) -> Path:
    """JSON metadata file stored next to a predictions file."""
    path = Path(path)
    return path.with_suffix(path.suffix + ".json")


def export_predictions(result: ScANVITrainingResult, path: Path | str) -> Path:
    """Write predictions (CSV, TSV or parquet) plus a JSON metadata sidecar."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix == ".parquet":
        result.predictions_df.write_parquet(path)
    elif path.suffix == ".tsv":
        result.predictions_df.write_csv(path, separator="\t")
    elif path.suffix == ".csv":
        result.predictions_df.write_csv(path)
    else:
        raise ValueError(f"Unsupported predictions format: {path}")

    meta = {
        "method": "scanvi",
        "n_cells": result.predictions_df.height,
        "runtime_seconds": result.runtime_seconds,
        "params": result.params,
    }
    sidecar_path(path).write_text(json.dumps(meta, indent=2))
    logger.info(f"Saved scANVI predictions to {path}")
    return path


def load_predictions(path: Path | str) -> tuple[pl.DataFrame, dict[str, Any]]:
    """Read a predictions file and its sidecar metadata (empty if absent).

    Raises:
        FileNotFoundError: If the predictions file is missing
        ValueError: If required columns are missing or a cell has conflicting rows
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"scANVI predictions not found: {path}")

    if path.suffix == ".parquet":
        df = pl.read_parquet(path)
    elif path.suffix == ".tsv":
        df = pl.read_csv(path, separator="\t")
    elif path.suffix == ".csv":
        df = pl.read_csv(path)
    else:
        raise ValueError(f"Unsupported predictions format: {path}")

    missing = [c for c in ("cell_id", "predicted_type") if c not in df.columns]
    if missing:
        raise ValueError(f"Predictions file {path} is missing columns: {missing}")
    if "confidence" not in df.columns:
        df = df.with_columns(pl.lit(None, dtype=pl.Float64).alias("confidence"))

    df = df.with_columns(
        pl.col("cell_id").cast(pl.Utf8),
        pl.col("predicted_type").cast(pl.Utf8),
        pl.col("confidence").cast(pl.Float64),
    )

    n_rows = df.height
    df = df.unique(maintain_order=True)
    if df.height < n_rows:
        logger.warning(f"Dropped {n_rows - df.height} repeated rows from {path}")
    conflicting = df.filter(pl.col("cell_id").is_duplicated())["cell_id"].unique().to_list()
    if conflicting:
        raise ValueError(
            f"Predictions file {path} has conflicting rows for {len(conflicting)} cells: {conflicting[:5]}"
        )

    meta: dict[str, Any] = {}
    meta_path = sidecar_path(path)
    if meta_path.exists():
        meta = json.loads(meta_path.read_text())
    return df, meta


@register_annotator
class ScANVIAnnotator:
    """Cell type annotation from scANVI predictions.

    Reads predictions exported by the training step. With train_if_missing,
    trains in-process when no predictions file exists yet.
    """

    name = "scanvi"

    def __init__(
        self,
        config: AnnotationConfig | None = None,
        predictions_path: Path | str | None = None,
        train_if_missing: bool = False,
        labels_key: str = "singler_label",
        **train_kwargs: Any,
    ):
        """Initialize the scANVI annotator.

        Args:
            config: Annotation configuration
            predictions_path: Exported predictions (CSV/TSV/parquet)
            train_if_missing: Train when predictions_path does not exist
            labels_key: obs column with seed labels when training
            **train_kwargs: Passed through to train_scanvi()
        """
        self.config = config or AnnotationConfig()
        self.predictions_path = Path(predictions_path) if predictions_path else None
        self.train_if_missing = train_if_missing
        self.labels_key = labels_key
        self.train_kwargs = train_kwargs

    def annotate(
        self,
        config: AnnotationConfig | None = None,
        adata: ad.AnnData | None = None,
        expression_path: Path | None = None,
    ) -> AnnotationResult:
        """Annotate cells using exported (or freshly trained) scANVI predictions.

        Cells of adata missing from the predictions file are "unassigned".

        Args:
            config: Override config for this call
            adata: Dataset whose cells are annotated
            expression_path: Path to expression data (alternative to adata)

        Returns:
            Annotation results with cell types and confidence
        """
        cfg = config or self.config

        if adata is None and expression_path is not None:
            from annobench.data.loader import load_dataset

            adata = load_dataset(expression_path)

        if self.predictions_path is not None and self.predictions_path.exists():
            predictions_df, meta = load_predictions(self.predictions_path)
            logger.info(f"Loaded {predictions_df.height} scANVI predictions from {self.predictions_path}")
        elif self.train_if_missing:
            if adata is None:
                raise ValueError("ScANVIAnnotator needs adata to train")
            training = train_scanvi(
                adata,
                labels_key=self.labels_key,
                seed=cfg.seed,
                **self.train_kwargs,
            )
            if self.predictions_path is not None:
                export_predictions(training, self.predictions_path)
            predictions_df = training.predictions_df
            meta = {"runtime_seconds": training.runtime_seconds, "params": training.params}
        else:
            raise FileNotFoundError(
                f"scANVI predictions not found: {self.predictions_path}. "
                "Run `annobench train-scanvi -d <output_dir>/adata_annotated.h5ad` on a "
                "finished run first, or enable train_if_missing."
            )

        if adata is not None:
            predictions_df = self._align_to_cells(predictions_df, list(adata.obs_names))

        labels = predictions_df["predicted_type"].to_list()
        labels = [UNASSIGNED if is_unassigned(label) else label for label in labels]
        harmonized = harmonize_labels(labels, source="scanvi", level=cfg.level)

        annotations_df = build_annotations_df(
            cell_ids=predictions_df["cell_id"].to_list(),
            predicted=labels,
            harmonized=harmonized,
            confidence=predictions_df["confidence"].fill_null(float("nan")).to_numpy(),
        )

        runtime = meta.get("runtime_seconds")
        result = AnnotationResult(
            annotations_df=annotations_df,
            external_runtime=float(runtime) if runtime is not None else None,
            stats={
                "method": "scanvi",
                "predictions_path": str(self.predictions_path) if self.predictions_path else None,
                "params": meta.get("params", {}),
            },
        )
        result.stats["n_annotated"] = result.n_annotated
        result.stats["class_distribution"] = result.get_class_distribution(harmonized=False)

        logger.info(f"scANVI annotation complete: {result.n_annotated}/{result.n_cells} cells annotated")
        return result

    @staticmethod
    def _align_to_cells(predictions_df: pl.DataFrame, cell_ids: list[str]) -> pl.DataFrame:
        """Reorder predictions to cell_ids; cells without a prediction are unassigned."""
        cells = pl.DataFrame({"cell_id": [str(c) for c in cell_ids]})
        aligned = cells.join(predictions_df, on="cell_id", how="left")

        n_missing = aligned["predicted_type"].null_count()
        if n_missing:
            logger.warning(f"{n_missing} cells have no scANVI prediction, marking unassigned")
        n_extra = predictions_df.height - (aligned.height - n_missing)
        if n_extra > 0:
            logger.debug(f"Ignoring {n_extra} predictions for cells not in the dataset")

        return aligned.with_columns(pl.col("predicted_type").fill_null(UNASSIGNED))
