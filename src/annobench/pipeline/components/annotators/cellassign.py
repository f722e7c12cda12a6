"""CellAssign-based cell type annotation component.

CellAssign assigns cells to known types with a negative binomial model of
marker gene counts parameterized by a binary marker matrix. The model is
taken from scvi-tools (scvi.external.CellAssign); this module prepares its
inputs, runs it, and turns the per-cell posterior (gamma matrix) into labels.

Input requirements:
- Raw counts, restricted to marker genes
- Size factors computed on the full gene set (not just markers), one
  strictly positive value per cell

Reference: Zhang et al. Nature Methods 2019
https://docs.scvi-tools.org/en/stable/api/reference/scvi.external.CellAssign.html
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp
from loguru import logger

from annobench.data.loader import looks_like_counts
from annobench.data.preprocessing import compute_size_factors
from annobench.markers import align_marker_matrix, get_marker_matrix, validate_marker_matrix
from annobench.pipeline.base import (
    UNASSIGNED,
    AnnotationConfig,
    AnnotationResult,
    build_annotations_df,
)
from annobench.pipeline.components.annotators.mapping import harmonize_labels
from annobench.pipeline.registry import register_annotator


# CellAssign is meant for a handful of markers, not whole transcriptomes
MAX_RECOMMENDED_GENES = 100

# Below this many cells training is not attempted
MIN_CELLS = 30


def validate_cellassign_inputs(
    counts: Any,
    marker_mat: pd.DataFrame,
    size_factors: np.ndarray,
) -> None:
    """Check CellAssign inputs, raising on errors and warning on oddities.

    Args:
        counts: N x G count matrix (dense or sparse), G = marker genes
        marker_mat: G x C binary marker matrix
        size_factors: Length-N size factors

    Raises:
        ValueError: On shape mismatches, non-binary markers or size
            factors <= 0
    """
    n_cells, n_genes = counts.shape
    validate_marker_matrix(marker_mat)

    size_factors = np.asarray(size_factors)
    if size_factors.ndim != 1:
        raise ValueError(f"Size factors must be a flat vector, got shape {size_factors.shape}")
    if size_factors.shape[0] != n_cells:
        raise ValueError(
            f"Got {size_factors.shape[0]} size factors for {n_cells} cells"
        )
    if np.any(size_factors <= 0):
        raise ValueError("Cells with size factors <= 0 must be removed prior to analysis")

    if marker_mat.shape[0] != n_genes:
        raise ValueError(
            f"Marker matrix has {marker_mat.shape[0]} genes but the expression "
            f"matrix has {n_genes}; input should be marker genes only"
        )

    gene_totals = np.asarray(counts.sum(axis=0)).ravel()
    if np.any(gene_totals == 0):
        zero_genes = marker_mat.index[gene_totals == 0].tolist()
        logger.warning(
            f"Genes with no mapping counts are present: {zero_genes}. "
            "This can be valid input (e.g. when cell types are overspecified)."
        )

    cell_totals = np.asarray(counts.sum(axis=1)).ravel()
    n_zero_cells = int((cell_totals == 0).sum())
    if n_zero_cells:
        logger.warning(
            f"{n_zero_cells} cells have no marker counts; consider filtering them out"
        )

    if n_genes > MAX_RECOMMENDED_GENES:
        logger.warning(
            f"{n_genes} input genes were given. Only marker genes should be used as input"
        )


def celltypes_from_probabilities(
    probabilities: pd.DataFrame,
    assign_prob: float = 0.95,
) -> tuple[list[str], np.ndarray]:
    """Turn a cell x type probability matrix into labels.

    Args:
        probabilities: Cell x cell-type assignment probabilities (gamma)
        assign_prob: Minimum max-probability for a call; cells below it are
            labelled "unassigned"

    Returns:
        (labels, max probability per cell)
    """
    if not 0.0 <= assign_prob <= 1.0:
        raise ValueError(f"assign_prob must be in [0, 1], got {assign_prob}")

    values = probabilities.to_numpy(dtype=float)
    best = values.argmax(axis=1)
    max_prob = values.max(axis=1)
    columns = np.asarray(probabilities.columns, dtype=object)

    labels = columns[best].astype(str)
    labels[max_prob < assign_prob] = UNASSIGNED
    return labels.tolist(), max_prob


def select_best_run(runs: list[tuple[pd.DataFrame, float]]) -> tuple[pd.DataFrame, float, int]:
    """Pick the run with the lowest final training loss.

    Returns:
        (probabilities, loss, run index)
    """
    if not runs:
        raise ValueError("No CellAssign runs to choose from")
    losses = [loss if np.isfinite(loss) else np.inf for _, loss in runs]
    best = int(np.argmin(losses))
    return runs[best][0], runs[best][1], best


def _final_loss(history: dict[str, pd.DataFrame]) -> float:
    for key in ("elbo_train", "train_loss_epoch", "train_loss"):
        if key in history and len(history[key]):
            return float(history[key].iloc[-1, 0])
    return float("nan")


@register_annotator
class CellAssignAnnotator:
    """Cell type annotation using CellAssign (scvi-tools).

    Runs the model num_runs times with different seeds and keeps the fit
    with the lowest final training loss.
    """

    name = "cellassign"

    def __init__(
        self,
        config: AnnotationConfig | None = None,
        marker_matrix: pd.DataFrame | None = None,
        assign_prob: float = 0.95,
        num_runs: int = 1,
        max_epochs: int = 400,
        learning_rate: float = 3e-3,
        batch_size: int = 1024,
        covariate_keys: list[str] | None = None,
        write_back: bool = True,
    ):
        """Initialize the CellAssign annotator.

        Args:
            config: Annotation configuration. If None, uses defaults.
            marker_matrix: Gene x cell-type binary matrix. If None, the
                config's marker_variant is used.
            assign_prob: Minimum probability for a call
            num_runs: Independent fits; the best one is kept
            max_epochs: Maximum training epochs per fit
            learning_rate: Optimizer learning rate
            batch_size: Minibatch size
            covariate_keys: Continuous obs columns used as covariates
            write_back: Store labels in adata.obs["cellassign_celltype"]
        """
        if num_runs < 1:
            raise ValueError("num_runs must be at least 1")
        self.config = config or AnnotationConfig()
        self.marker_matrix = marker_matrix
        self.assign_prob = assign_prob
        self.num_runs = num_runs
        self.max_epochs = max_epochs
        self.learning_rate = learning_rate
        self.batch_size = batch_size
        self.covariate_keys = covariate_keys
        self.write_back = write_back

    def annotate(
        self,
        config: AnnotationConfig | None = None,
        adata: ad.AnnData | None = None,
        expression_path: Path | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels using CellAssign.

        Args:
            config: Override config for this call
            adata: AnnData with raw counts (X or config.counts_layer)
            expression_path: Path to expression matrix (h5, h5ad)

        Returns:
            Annotation results with cell types, confidence and the gamma
            matrix in `probabilities`
        """
        cfg = config or self.config

        if adata is None:
            if expression_path is None:
                raise ValueError("CellAssignAnnotator requires either adata or expression_path")
            from annobench.data.loader import load_dataset

            adata = load_dataset(expression_path)

        marker_mat = self.marker_matrix
        if marker_mat is None:
            marker_mat = get_marker_matrix(cfg.marker_variant)

        adata_sub, marker_mat = self.prepare_input(adata, marker_mat, cfg)
        logger.info(
            f"Running CellAssign: {adata_sub.n_obs} cells, {marker_mat.shape[0]} marker genes, "
            f"{marker_mat.shape[1]} cell types"
        )

        if adata_sub.n_obs < MIN_CELLS:
            logger.warning(f"Only {adata_sub.n_obs} cells, skipping CellAssign training")
            probabilities = pd.DataFrame(
                np.full((adata_sub.n_obs, marker_mat.shape[1]), 1.0 / marker_mat.shape[1]),
                index=adata_sub.obs_names,
                columns=marker_mat.columns,
            )
            loss, best_run = float("nan"), -1
        else:
            runs = []
            for run in range(self.num_runs):
                seed = cfg.seed + run
                probs, run_loss = self._fit(adata_sub, marker_mat, seed, cfg)
                logger.info(f"  Run {run + 1}/{self.num_runs} (seed {seed}): final loss {run_loss:.4f}")
                runs.append((probs, run_loss))
            probabilities, loss, best_run = select_best_run(runs)

        probabilities.index = adata_sub.obs_names
        labels, confidence = celltypes_from_probabilities(probabilities, self.assign_prob)
        harmonized = harmonize_labels(labels, source="cellassign", level=cfg.level)

        annotations_df = build_annotations_df(
            cell_ids=list(adata_sub.obs_names),
            predicted=labels,
            harmonized=harmonized,
            confidence=confidence,
        )

        if self.write_back:
            self._write_back(adata, labels, probabilities, loss)

        result = AnnotationResult(
            annotations_df=annotations_df,
            probabilities=probabilities,
            stats={
                "method": "cellassign",
                "n_marker_genes": int(marker_mat.shape[0]),
                "cell_types": list(marker_mat.columns),
                "assign_prob": self.assign_prob,
                "num_runs": self.num_runs,
                "best_run": best_run,
                "final_loss": loss,
            },
        )
        result.stats["n_annotated"] = result.n_annotated
        result.stats["class_distribution"] = result.get_class_distribution(harmonized=False)

        logger.info(
            f"CellAssign annotation complete: {result.n_annotated}/{result.n_cells} cells assigned "
            f"at p >= {self.assign_prob}"
        )
        return result

    def prepare_input(
        self,
        adata: ad.AnnData,
        marker_mat: pd.DataFrame,
        cfg: AnnotationConfig,
    ) -> tuple[ad.AnnData, pd.DataFrame]:
        """Subset to marker genes with raw counts in X and size factors in obs.

        Size factors are taken from cfg.size_factor_key when present and
        computed on the full gene set otherwise.
        """
        marker_mat = align_marker_matrix(marker_mat, adata)

        if cfg.size_factor_key in adata.obs:
            size_factors = adata.obs[cfg.size_factor_key].to_numpy(dtype=float)
        else:
            logger.info("No size factors supplied - computing from the full gene set")
            size_factors = compute_size_factors(adata, layer=cfg.counts_layer, key=cfg.size_factor_key)

        adata_sub = adata[:, list(marker_mat.index)].copy()
        if cfg.counts_layer is not None and cfg.counts_layer in adata_sub.layers:
            adata_sub.X = adata_sub.layers[cfg.counts_layer].copy()
        if not looks_like_counts(adata_sub.X):
            raise ValueError(
                "CellAssign needs raw counts; the marker genes hold non-integer values. "
                f"Put counts in layers['{cfg.counts_layer}'] or X"
            )
        if sp.issparse(adata_sub.X):
            adata_sub.X = sp.csr_matrix(adata_sub.X)
        adata_sub.obs = adata_sub.obs[[]].copy()
        adata_sub.obs["size_factor"] = np.asarray(size_factors, dtype=float).ravel()

        if self.covariate_keys:
            for key in self.covariate_keys:
                if key not in adata.obs:
                    raise ValueError(f"Covariate '{key}' not found in adata.obs")
                values = adata.obs[key].to_numpy(dtype=float)
                # Standardize numeric covariates
                std = values.std()
                adata_sub.obs[key] = (values - values.mean()) / (std if std > 0 else 1.0)

        validate_cellassign_inputs(adata_sub.X, marker_mat, adata_sub.obs["size_factor"].to_numpy())
        return adata_sub, marker_mat

    def _fit(
        self,
        adata_sub: ad.AnnData,
        marker_mat: pd.DataFrame,
        seed: int,
        cfg: AnnotationConfig,
    ) -> tuple[pd.DataFrame, float]:
        """Train one CellAssign model and return (gamma, final loss)."""
        import scvi
        from scvi.external import CellAssign

        scvi.settings.seed = seed

        CellAssign.setup_anndata(
            adata_sub,
            size_factor_key="size_factor",
            continuous_covariate_keys=self.covariate_keys,
        )
        model = CellAssign(adata_sub, marker_mat)
        model.train(
            max_epochs=self.max_epochs,
            batch_size=self.batch_size,
            plan_kwargs={"lr": self.learning_rate},
        )

        probabilities = model.predict()
        probabilities = pd.DataFrame(
            np.asarray(probabilities),
            index=adata_sub.obs_names,
            columns=marker_mat.columns,
        )
        return probabilities, _final_loss(model.history)

    def _write_back(
        self,
        adata: ad.AnnData,
        labels: list[str],
        probabilities: pd.DataFrame,
        loss: float,
    ) -> None:
        if "cellassign_celltype" in adata.obs:
            logger.warning("Field 'cellassign_celltype' exists in adata.obs. Overwriting...")
        adata.obs["cellassign_celltype"] = pd.Categorical(labels)
        adata.obsm["cellassign_probabilities"] = probabilities.to_numpy()
        adata.uns["cellassign"] = {
            "cell_types": list(probabilities.columns),
            "assign_prob": self.assign_prob,
            "final_loss": loss,
        }
