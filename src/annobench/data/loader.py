"""Dataset loading for the PBMC68k benchmark.

Supports the 10x Genomics formats the dataset is published in, plus h5ad:
- 10x mtx directory (matrix.mtx, genes.tsv/features.tsv, barcodes.tsv)
- 10x HDF5 (.h5)
- AnnData (.h5ad)

Gene symbols become var_names (made unique) and Ensembl IDs are kept in
var["gene_ids"], so hand-written marker lists can be matched by symbol.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import anndata as ad
import numpy as np
import scanpy as sc
import scipy.sparse as sp
from loguru import logger


PBMC68K_URL = (
    "https://cf.10xgenomics.com/samples/cell-exp/1.1.0/fresh_68k_pbmc_donor_a/"
    "fresh_68k_pbmc_donor_a_filtered_gene_bc_matrices.tar.gz"
)
PBMC68K_ARCHIVE = "fresh_68k_pbmc_donor_a_filtered_gene_bc_matrices.tar.gz"


def default_cache_dir() -> Path:
    """Default location for downloaded datasets."""
    return Path.home() / ".cache" / "annobench" / "datasets"


def _find_mtx_dir(root: Path) -> Path:
    """Find the directory containing matrix.mtx(.gz) below root."""
    for pattern in ("matrix.mtx", "matrix.mtx.gz"):
        hits = sorted(root.rglob(pattern))
        if hits:
            return hits[0].parent
    raise FileNotFoundError(f"No matrix.mtx found under {root}")


def download_pbmc68k(cache_dir: Path | str | None = None) -> Path:
    """Download the 10x PBMC68k filtered matrices and return the mtx directory.

    Args:
        cache_dir: Where to cache the archive and extracted files

    Returns:
        Path to the directory holding matrix.mtx, genes.tsv, barcodes.tsv
    """
    import pooch

    cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
    cache_dir.mkdir(parents=True, exist_ok=True)

    extract_dir = cache_dir / "pbmc68k"
    if extract_dir.exists():
        try:
            mtx_dir = _find_mtx_dir(extract_dir)
            logger.info(f"Using cached PBMC68k: {mtx_dir}")
            return mtx_dir
        except FileNotFoundError:
            logger.warning(f"Incomplete PBMC68k cache at {extract_dir}, downloading again")

    logger.info("Downloading PBMC68k from 10x Genomics")
    pooch.retrieve(
        url=PBMC68K_URL,
        known_hash=None,
        path=cache_dir,
        fname=PBMC68K_ARCHIVE,
        processor=pooch.Untar(extract_dir=str(extract_dir)),
        progressbar=False,
    )
    return _find_mtx_dir(extract_dir)


def load_dataset(path: Path | str) -> ad.AnnData:
    """Load a count matrix as AnnData.

    Raw counts are copied into layers["counts"] so later normalization of X
    does not lose them.

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the format is not supported
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.is_dir():
        mtx_dir = _find_mtx_dir(path)
        logger.info(f"Reading 10x mtx directory: {mtx_dir}")
        adata = sc.read_10x_mtx(mtx_dir, var_names="gene_symbols", make_unique=True)
    elif path.suffix == ".h5":
        logger.info(f"Reading 10x HDF5: {path}")
        adata = sc.read_10x_h5(path)
        adata.var_names_make_unique()
    elif path.suffix == ".h5ad":
        logger.info(f"Reading AnnData: {path}")
        adata = ad.read_h5ad(path)
        adata.var_names_make_unique()
    else:
        raise ValueError(f"Unsupported dataset format: {path}")

    adata.obs_names_make_unique()
    if not sp.issparse(adata.X):
        adata.X = sp.csr_matrix(adata.X)
    if "counts" not in adata.layers:
        adata.layers["counts"] = adata.X.copy()

    logger.info(f"Loaded {adata.n_obs} cells x {adata.n_vars} genes")
    return adata


def load_pbmc68k(path: Path | str | None = None, cache_dir: Path | str | None = None) -> ad.AnnData:
    """Load PBMC68k from a local path, downloading it if no path is given."""
    if path is None:
        path = download_pbmc68k(cache_dir)
    return load_dataset(path)


def map_genes_to_symbols(
    genes: Iterable[str],
    adata: ad.AnnData,
    id_column: str = "gene_ids",
) -> tuple[dict[str, str], list[str]]:
    """Translate gene symbols or Ensembl IDs to the dataset's var_names.

    Args:
        genes: Gene symbols and/or Ensembl IDs
        adata: Dataset whose var_names are gene symbols
        id_column: var column holding Ensembl IDs

    Returns:
        (mapping from input gene to var_name, genes that could not be found)
    """
    var_names = set(adata.var_names)
    id_to_symbol: dict[str, str] = {}
    if id_column in adata.var.columns:
        id_to_symbol = dict(zip(adata.var[id_column].astype(str), adata.var_names))

    # Case-insensitive fallback for symbols
    upper_to_symbol = {name.upper(): name for name in adata.var_names}

    mapping: dict[str, str] = {}
    missing: list[str] = []
    for gene in genes:
        if gene in var_names:
            mapping[gene] = gene
        elif gene in id_to_symbol:
            mapping[gene] = id_to_symbol[gene]
        elif gene.upper() in upper_to_symbol:
            mapping[gene] = upper_to_symbol[gene.upper()]
        else:
            missing.append(gene)

    if missing:
        logger.debug(f"{len(missing)} genes not found in dataset: {missing[:10]}")
    return mapping, missing


def get_counts(adata: ad.AnnData, layer: str | None = "counts"):
    """Return the raw count matrix (layer if present, else X)."""
    if layer is not None and layer in adata.layers:
        return adata.layers[layer]
    return adata.X


def looks_like_counts(matrix) -> bool:
    """Whether a matrix holds non-negative integer values."""
    data = matrix.data if sp.issparse(matrix) else np.asarray(matrix).ravel()
    if data.size == 0:
        return True
    sample = data[: min(data.size, 10000)]
    return bool(np.all(sample >= 0) and np.allclose(sample, np.round(sample)))
