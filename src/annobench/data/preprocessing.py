"""Quality control, normalization and embeddings.

Steps:
1. compute_qc_metrics / filter_cells_and_genes - thresholds on total counts,
   detected genes and (optionally) mitochondrial fraction
2. normalize_and_select_hvg - library-size normalization, log1p, HVG flags
3. compute_embeddings - PCA, UMAP and t-SNE (visualization only)
4. compute_size_factors - per-cell size factors for count models

Raw counts stay in layers["counts"]; X holds log-normalized values after
step 2.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

import anndata as ad
import numpy as np
import scanpy as sc
from loguru import logger

from annobench.data.loader import get_counts


@dataclass
class QCConfig:
    """Quality control thresholds. None disables a bound."""

    min_counts: int | None = 500
    max_counts: int | None = 20000
    min_genes: int | None = 200
    max_genes: int | None = 2500
    min_cells: int | None = 3  # Minimum cells expressing a gene
    max_pct_mito: float | None = None
    mito_prefix: str = "MT-"


@dataclass
class QCReport:
    """Summary of a QC filtering pass."""

    n_cells_before: int
    n_cells_after: int
    n_genes_before: int
    n_genes_after: int
    removed_by: dict[str, int] = field(default_factory=dict)

    @property
    def n_cells_removed(self) -> int:
        return self.n_cells_before - self.n_cells_after

    @property
    def fraction_retained(self) -> float:
        if self.n_cells_before == 0:
            return 0.0
        return self.n_cells_after / self.n_cells_before

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["fraction_retained"] = self.fraction_retained
        return d


def compute_qc_metrics(adata: ad.AnnData, mito_prefix: str = "MT-") -> ad.AnnData:
    """Annotate obs/var with QC metrics (in place).

    Adds obs columns total_counts, n_genes_by_counts and pct_counts_mt.
    """
    adata.var["mt"] = adata.var_names.str.upper().str.startswith(mito_prefix.upper())
    counts_layer = "counts" if "counts" in adata.layers else None
    sc.pp.calculate_qc_metrics(
        adata,
        qc_vars=["mt"],
        layer=counts_layer,
        percent_top=None,
        log1p=False,
        inplace=True,
    )
    return adata


def filter_cells_and_genes(
    adata: ad.AnnData,
    qc: QCConfig | None = None,
) -> tuple[ad.AnnData, QCReport]:
    """Apply QC thresholds and return the filtered copy plus a report.

    Each cell-level criterion is evaluated on the unfiltered data, so
    removed_by counts overlap when a cell fails several criteria.

    Raises:
        ValueError: If no cell passes QC
    """
    qc = qc or QCConfig()
    if "total_counts" not in adata.obs or "n_genes_by_counts" not in adata.obs:
        compute_qc_metrics(adata, mito_prefix=qc.mito_prefix)

    n_cells_before, n_genes_before = adata.n_obs, adata.n_vars
    total = adata.obs["total_counts"].to_numpy()
    n_genes = adata.obs["n_genes_by_counts"].to_numpy()

    masks: dict[str, np.ndarray] = {}
    if qc.min_counts is not None:
        masks["min_counts"] = total >= qc.min_counts
    if qc.max_counts is not None:
        masks["max_counts"] = total <= qc.max_counts
    if qc.min_genes is not None:
        masks["min_genes"] = n_genes >= qc.min_genes
    if qc.max_genes is not None:
        masks["max_genes"] = n_genes <= qc.max_genes
    if qc.max_pct_mito is not None:
        masks["max_pct_mito"] = adata.obs["pct_counts_mt"].to_numpy() <= qc.max_pct_mito

    keep = np.ones(adata.n_obs, dtype=bool)
    removed_by: dict[str, int] = {}
    for name, mask in masks.items():
        removed_by[name] = int((~mask).sum())
        keep &= mask

    if not keep.any():
        raise ValueError(f"No cells pass QC thresholds: {qc}")

    filtered = adata[keep].copy()

    if qc.min_cells is not None:
        counts = get_counts(filtered)
        cells_per_gene = np.asarray((counts > 0).sum(axis=0)).ravel()
        gene_keep = cells_per_gene >= qc.min_cells
        removed_by["min_cells"] = int((~gene_keep).sum())
        filtered = filtered[:, gene_keep].copy()

    report = QCReport(
        n_cells_before=n_cells_before,
        n_cells_after=filtered.n_obs,
        n_genes_before=n_genes_before,
        n_genes_after=filtered.n_vars,
        removed_by=removed_by,
    )
    logger.info(
        f"QC: {report.n_cells_after}/{report.n_cells_before} cells "
        f"({100 * report.fraction_retained:.1f}%), "
        f"{report.n_genes_after}/{report.n_genes_before} genes retained"
    )
    for name, n in removed_by.items():
        logger.debug(f"  {name}: {n} removed")

    return filtered, report


def normalize_and_select_hvg(
    adata: ad.AnnData,
    n_top_genes: int = 2000,
    target_sum: float = 1e4,
) -> ad.AnnData:
    """Normalize to target_sum, log1p and flag highly variable genes (in place).

    HVGs are selected with the seurat_v3 flavor on raw counts.
    """
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    n_top = min(n_top_genes, adata.n_vars)
    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=n_top,
        flavor="seurat_v3",
        layer="counts",
    )

    adata.X = adata.layers["counts"].copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    logger.info(f"Normalized to {target_sum:g} counts/cell, {int(adata.var['highly_variable'].sum())} HVGs")
    return adata


def compute_embeddings(
    adata: ad.AnnData,
    n_pcs: int = 50,
    n_neighbors: int = 15,
    run_umap: bool = True,
    run_tsne: bool = True,
    seed: int = 0,
) -> ad.AnnData:
    """Compute PCA, neighbor graph, UMAP and t-SNE (in place).

    Embeddings are only used for figures; annotators never read them.
    """
    n_comps = min(n_pcs, adata.n_obs - 1, adata.n_vars - 1)
    use_hvg = "highly_variable" in adata.var.columns
    sc.pp.pca(adata, n_comps=n_comps, mask_var="highly_variable" if use_hvg else None, random_state=seed)
    logger.info(f"PCA: {n_comps} components")

    if run_umap:
        sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_comps, random_state=seed)
        sc.tl.umap(adata, random_state=seed)
        logger.info("UMAP computed")

    if run_tsne:
        sc.tl.tsne(adata, n_pcs=n_comps, random_state=seed)
        logger.info("t-SNE computed")

    return adata


def compute_size_factors(
    adata: ad.AnnData,
    layer: str | None = "counts",
    key: str | None = "size_factor",
) -> np.ndarray:
    """Library-size factors scaled to mean 1, from the full gene set.

    Size factors must come from all genes, not just markers, so call this
    before subsetting to marker genes.

    Raises:
        ValueError: If any cell has a size factor <= 0
    """
    counts = get_counts(adata, layer)
    lib_size = np.asarray(counts.sum(axis=1)).ravel().astype(float)
    if lib_size.mean() <= 0:
        raise ValueError("All cells have zero counts")

    size_factors = lib_size / lib_size.mean()
    if np.any(size_factors <= 0):
        n_bad = int((size_factors <= 0).sum())
        raise ValueError(
            f"{n_bad} cells with size factors <= 0 must be removed prior to analysis"
        )

    if key is not None:
        adata.obs[key] = size_factors
    return size_factors

