"""Shared fixtures: small simulated PBMC-like datasets."""

import polars as pl
import pytest

from annobench.data.simulate import simulate_dataset
from annobench.markers import get_marker_matrix


@pytest.fixture
def basic_markers():
    """Basic PBMC marker matrix (genes x 6 cell types)."""
    return get_marker_matrix("basic")


@pytest.fixture
def sim_adata(basic_markers):
    """300 simulated cells with known types and raw counts in layers['counts']."""
    return simulate_dataset(basic_markers, n_cells=300, n_background_genes=20, seed=0)


@pytest.fixture
def wide_predictions():
    """Harmonized labels for 8 cells from a reference and two methods."""
    return pl.DataFrame(
        {
            "cell_id": [f"cell{i}" for i in range(8)],
            "singler": ["T cell", "T cell", "B cell", "B cell", "NK cell", "Monocyte", "Other", "unassigned"],
            "perfect": ["T cell", "T cell", "B cell", "B cell", "NK cell", "Monocyte", "T cell", "B cell"],
            "noisy": ["T cell", "B cell", "B cell", "unassigned", "NK cell", "T cell", "T cell", "T cell"],
        }
    )
