"""Simulate counts from the CellAssign generative model.

Counts follow a negative binomial whose mean is

    log mu[n, g] = log s[n] + X[n] @ beta[g] + rho[g, pi[n]] * delta[g, pi[n]]

so marker genes are over-expressed by exp(delta) in their own cell type.
Dispersions come from a radial basis function of the mean with B bases
evenly spaced over [min_y, max_y].

Used to build synthetic datasets with known labels for tests and for
sanity-checking marker-based annotators.
"""

from __future__ import annotations

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

LOWER_BOUND = 1e-10


def _with_intercept(X: np.ndarray | None, n_cells: int) -> np.ndarray:
    intercept = np.ones((n_cells, 1))
    if X is None:
        return intercept
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[0] != n_cells:
        raise ValueError("X must be a 2D array with one row per cell")
    return np.hstack([intercept, X])


def simulate_cellassign(
    rho: np.ndarray,
    s: np.ndarray,
    pi: np.ndarray,
    delta: np.ndarray,
    a: np.ndarray,
    beta: np.ndarray,
    X: np.ndarray | None = None,
    B: int = 20,
    min_y: float = 0.0,
    max_y: float = 1000.0,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Simulate an N x G count matrix from the CellAssign model.

    Args:
        rho: G x C binary marker matrix
        s: Length-N cell size factors
        pi: Length-N integer cell type assignment (column index into rho)
        delta: G x C log fold changes (ignored where rho is 0)
        a: Length-B RBF weights for the dispersion function
        beta: G x P coefficients; column 0 is the intercept (baseline)
        X: Optional N x (P-1) covariates; an intercept column is always added
        B: Number of RBF bases
        min_y, max_y: Range of the RBF basis means
        rng: Random generator

    Returns:
        N x G integer count matrix
    """
    rng = rng or np.random.default_rng()
    rho = np.asarray(rho, dtype=float)
    s = np.asarray(s, dtype=float).ravel()
    pi = np.asarray(pi, dtype=int).ravel()
    delta = np.asarray(delta, dtype=float)
    beta = np.asarray(beta, dtype=float)
    a = np.asarray(a, dtype=float).ravel()

    G, C = rho.shape
    N = s.shape[0]

    if pi.shape[0] != N:
        raise ValueError("pi must have one entry per cell")
    if pi.min() < 0 or pi.max() >= C:
        raise ValueError("pi must index columns of rho")
    if beta.shape[0] != G:
        raise ValueError("beta must have one row per gene")
    if delta.shape != (G, C):
        raise ValueError("delta must have the same shape as rho")
    if a.shape[0] != B:
        raise ValueError("a must have one weight per basis")
    if np.any(s <= 0):
        raise ValueError("Size factors must be positive")

    X = _with_intercept(X, N)
    if X.shape[1] != beta.shape[1]:
        raise ValueError("beta must have one column per covariate plus intercept")

    basis_means = np.linspace(min_y, max_y, B)
    b_init = 2 * (basis_means[1] - basis_means[0]) ** 2
    b = np.full(B, 1.0 / b_init)

    # N x G
    log_mu = np.log(s)[:, None] + X @ beta.T + (rho * delta)[:, pi].T
    mu = np.exp(log_mu)

    # N x G x B -> N x G
    sq = (mu[..., None] - basis_means) ** 2
    phi = (a * np.exp(-b * sq)).sum(axis=-1) + LOWER_BOUND

    p = phi / (phi + mu)
    return rng.negative_binomial(phi, p)


def simulate_dataset(
    marker_mat: pd.DataFrame,
    n_cells: int = 300,
    n_background_genes: int = 20,
    delta: float = 2.0,
    baseline: float = 0.5,
    seed: int = 0,
) -> ad.AnnData:
    """Build an AnnData of simulated counts with known cell types.

    Args:
        marker_mat: Gene x cell-type binary marker matrix
        n_cells: Number of cells
        n_background_genes: Extra non-marker genes (named BG1, BG2, ...)
        delta: Marker log fold change
        baseline: Log baseline expression for every gene
        seed: Random seed

    Returns:
        AnnData with integer counts in X and layers["counts"], true labels
        in obs["true_type"] and size factors in obs["true_size_factor"]
    """
    rng = np.random.default_rng(seed)
    background = pd.DataFrame(
        0,
        index=[f"BG{i + 1}" for i in range(n_background_genes)],
        columns=marker_mat.columns,
    )
    rho_df = pd.concat([marker_mat, background])
    G, C = rho_df.shape

    pi = rng.integers(0, C, size=n_cells)
    s = rng.lognormal(mean=0.0, sigma=0.3, size=n_cells)
    B = 10
    counts = simulate_cellassign(
        rho=rho_df.to_numpy(),
        s=s,
        pi=pi,
        delta=np.full((G, C), delta),
        a=np.full(B, 5.0),
        beta=np.full((G, 1), baseline),
        B=B,
        max_y=100.0,
        rng=rng,
    )

    adata = ad.AnnData(X=sp.csr_matrix(counts.astype(np.float32)))
    adata.obs_names = [f"cell{i}" for i in range(n_cells)]
    adata.var_names = list(rho_df.index)
    adata.var["gene_ids"] = [f"ENSG{i:011d}" for i in range(G)]
    adata.obs["true_type"] = pd.Categorical(rho_df.columns[pi])
    adata.obs["true_size_factor"] = s
    adata.layers["counts"] = adata.X.copy()
    return adata
