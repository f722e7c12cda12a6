"""Dataset loading, preprocessing and simulation."""

from annobench.data.loader import download_pbmc68k, load_dataset, load_pbmc68k, map_genes_to_symbols
from annobench.data.preprocessing import (
    QCConfig,
    QCReport,
    compute_embeddings,
    compute_qc_metrics,
    compute_size_factors,
    filter_cells_and_genes,
    normalize_and_select_hvg,
)
from annobench.data.simulate import simulate_cellassign, simulate_dataset

__all__ = [
    "download_pbmc68k",
    "load_dataset",
    "load_pbmc68k",
    "map_genes_to_symbols",
    "QCConfig",
    "QCReport",
    "compute_embeddings",
    "compute_qc_metrics",
    "compute_size_factors",
    "filter_cells_and_genes",
    "normalize_and_select_hvg",
    "simulate_cellassign",
    "simulate_dataset",
]
