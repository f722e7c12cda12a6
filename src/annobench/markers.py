"""Marker gene lists and binary marker matrices.

Marker matrices are gene x cell-type tables where a 1 means the gene is a
marker for that type. Two hand-curated PBMC variants are provided:

- basic: six broad populations, three or fewer markers each
- refined: splits T cells into CD4/CD8 and monocytes into CD14+/FCGR3A+,
  with extra markers per population

Usage:
    from annobench.markers import get_marker_matrix, align_marker_matrix

    rho = get_marker_matrix("refined")
    rho = align_marker_matrix(rho, adata)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

import anndata as ad
import numpy as np
import pandas as pd
from loguru import logger

from annobench.data.loader import map_genes_to_symbols


BASIC_MARKERS: dict[str, list[str]] = {
    "B cells": ["CD19", "MS4A1", "CD79A"],
    "T cells": ["CD3D", "CD3E", "CD2"],
    "NK cells": ["NKG7", "GNLY", "NCAM1"],
    "Monocytes": ["CD14", "LYZ", "FCGR3A"],
    "Dendritic cells": ["FCER1A", "CST3"],
    "Megakaryocytes": ["PPBP", "PF4"],
}

REFINED_MARKERS: dict[str, list[str]] = {
    "B cells": ["CD19", "MS4A1", "CD79A", "CD79B"],
    "CD4 T cells": ["CD3D", "CD3E", "CD4", "IL7R"],
    "CD8 T cells": ["CD3D", "CD3E", "CD8A", "CD8B"],
    "NK cells": ["NKG7", "GNLY", "NCAM1", "KLRF1"],
    "CD14+ Monocytes": ["CD14", "LYZ", "S100A8", "S100A9"],
    "FCGR3A+ Monocytes": ["FCGR3A", "MS4A7", "LYZ"],
    "Dendritic cells": ["FCER1A", "CST3", "CLEC10A"],
    "Megakaryocytes": ["PPBP", "PF4", "GP9"],
}

MARKER_VARIANTS: dict[str, dict[str, list[str]]] = {
    "basic": BASIC_MARKERS,
    "refined": REFINED_MARKERS,
}


def marker_list_to_mat(
    markers: Mapping[str, Iterable[str]],
    include_other: bool = False,
) -> pd.DataFrame:
    """Convert a cell type -> marker genes mapping into a binary matrix.

    Args:
        markers: Mapping from cell type name to its marker genes
        include_other: Add an all-zero "other" column for cells that match
            no listed type

    Returns:
        Gene x cell-type DataFrame of 0/1 integers, genes sorted
    """
    if not markers:
        raise ValueError("Marker list is empty")

    marker_sets = {cell_type: set(genes) for cell_type, genes in markers.items()}
    genes = sorted(set().union(*marker_sets.values()))
    if not genes:
        raise ValueError("Marker list contains no genes")

    cell_types = list(marker_sets.keys())
    mat = pd.DataFrame(0, index=genes, columns=cell_types, dtype=int)
    for cell_type, gene_set in marker_sets.items():
        mat.loc[sorted(gene_set), cell_type] = 1

    if include_other:
        mat["other"] = 0

    mat.index.name = "gene"
    return mat


def get_marker_matrix(variant: str = "refined", include_other: bool = False) -> pd.DataFrame:
    """Build the marker matrix for a named variant ("basic" or "refined")."""
    if variant not in MARKER_VARIANTS:
        available = ", ".join(MARKER_VARIANTS.keys())
        raise ValueError(f"Unknown marker variant '{variant}'. Available: {available}")
    return marker_list_to_mat(MARKER_VARIANTS[variant], include_other=include_other)


def validate_marker_matrix(mat: pd.DataFrame) -> None:
    """Check that a marker matrix is a non-empty binary gene x type table."""
    if mat.empty:
        raise ValueError("Marker matrix is empty")

    values = np.unique(mat.to_numpy())
    if not set(values.tolist()) <= {0, 1}:
        raise ValueError(f"Marker matrix must be binary (0/1), found values {values.tolist()}")

    if mat.index.has_duplicates:
        dupes = mat.index[mat.index.duplicated()].unique().tolist()
        raise ValueError(f"Marker matrix has duplicated genes: {dupes}")


def load_marker_matrix(path: Path | str) -> pd.DataFrame:
    """Load a marker matrix from CSV/TSV with genes in the first column."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Marker matrix not found: {path}")

    if path.suffix in (".tsv", ".txt"):
        sep = "\t"
    elif path.suffix == ".csv":
        sep = ","
    else:
        raise ValueError(f"Unsupported marker matrix format: {path}")

    mat = pd.read_csv(path, sep=sep, index_col=0)
    mat = mat.fillna(0).astype(int)
    validate_marker_matrix(mat)
    logger.info(f"Loaded marker matrix: {mat.shape[0]} genes x {mat.shape[1]} cell types")
    return mat


def align_marker_matrix(
    mat: pd.DataFrame,
    genes: ad.AnnData | Iterable[str],
) -> pd.DataFrame:
    """Restrict a marker matrix to genes present in the dataset.

    When given an AnnData, marker genes written as Ensembl IDs or with
    different casing are translated to var_names first. Genes missing from
    the data are dropped, then cell types left without any marker are
    dropped (an "other" column is kept as-is).

    Args:
        mat: Gene x cell-type binary marker matrix
        genes: Dataset, or its var_names for exact matching only

    Raises:
        ValueError: If no marker gene is present in the data
    """
    if isinstance(genes, ad.AnnData):
        mapping, missing = map_genes_to_symbols(mat.index, genes)
    else:
        available = set(genes)
        mapping = {g: g for g in mat.index if g in available}
        missing = [g for g in mat.index if g not in available]
    if missing:
        logger.warning(f"{len(missing)} marker genes not in data, dropping: {missing}")

    aligned = mat.loc[[g for g in mat.index if g in mapping]]
    if aligned.empty:
        raise ValueError("None of the marker genes are present in the data")

    renamed = {g: mapping[g] for g in aligned.index if mapping[g] != g}
    if renamed:
        logger.info(f"Translated {len(renamed)} marker genes to dataset symbols")
        aligned = aligned.rename(index=mapping)
        # An ID and its symbol can both be listed
        if aligned.index.has_duplicates:
            aligned = aligned.groupby(level=0, sort=False).max()
        aligned.index.name = mat.index.name

    empty_types = [
        c for c in aligned.columns if c != "other" and aligned[c].sum() == 0
    ]
    if empty_types:
        logger.warning(f"Cell types without remaining markers, dropping: {empty_types}")
        aligned = aligned.drop(columns=empty_types)

    if aligned.shape[1] == 0:
        raise ValueError("No cell types left after aligning marker genes to the data")

    return aligned


def marker_summary(mat: pd.DataFrame) -> pd.DataFrame:
    """Per cell type marker counts and gene lists."""
    rows = []
    for cell_type in mat.columns:
        genes = mat.index[mat[cell_type] == 1].tolist()
        rows.append({"cell_type": cell_type, "n_markers": len(genes), "markers": ", ".join(genes)})
    return pd.DataFrame(rows)
