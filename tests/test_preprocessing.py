"""Tests for dataset loading, QC and normalization."""

import anndata as ad
import numpy as np
import pytest
import scipy.sparse as sp

from annobench.data.loader import load_dataset, looks_like_counts, map_genes_to_symbols
from annobench.data.preprocessing import (
    QCConfig,
    QCReport,
    compute_size_factors,
    filter_cells_and_genes,
    normalize_and_select_hvg,
)


def _toy_adata(counts):
    adata = ad.AnnData(X=sp.csr_matrix(np.asarray(counts, dtype=np.float32)))
    adata.obs_names = [f"c{i}" for i in range(adata.n_obs)]
    adata.var_names = [f"g{j}" for j in range(adata.n_vars)]
    adata.layers["counts"] = adata.X.copy()
    return adata


class TestQCFilter:
    """Tests for QC thresholds."""

    def test_filters_cells_by_counts_and_genes(self):
        counts = np.array(
            [
                [10, 10, 10, 0],  # 30 counts, 3 genes
                [1, 0, 0, 0],  # too few counts and genes
                [100, 100, 0, 0],  # too many counts
                [5, 5, 5, 5],  # 20 counts, 4 genes
            ]
        )
        qc = QCConfig(min_counts=10, max_counts=50, min_genes=2, max_genes=None, min_cells=None)

        filtered, report = filter_cells_and_genes(_toy_adata(counts), qc)

        assert list(filtered.obs_names) == ["c0", "c3"]
        assert report.n_cells_before == 4
        assert report.n_cells_after == 2
        assert report.removed_by["min_counts"] == 1
        assert report.removed_by["max_counts"] == 1
        assert report.removed_by["min_genes"] == 1
        assert report.fraction_retained == pytest.approx(0.5)

    def test_min_cells_filters_genes(self):
        counts = np.array([[1, 1, 0], [1, 0, 0], [1, 1, 0]])
        qc = QCConfig(min_counts=None, max_counts=None, min_genes=None, max_genes=None, min_cells=2)

        filtered, report = filter_cells_and_genes(_toy_adata(counts), qc)

        assert list(filtered.var_names) == ["g0", "g1"]
        assert report.removed_by["min_cells"] == 1

    def test_mito_filter(self):
        adata = _toy_adata(np.array([[8, 2], [1, 9]]))
        adata.var_names = ["CD3D", "MT-CO1"]
        qc = QCConfig(
            min_counts=None, max_counts=None, min_genes=None, max_genes=None,
            min_cells=None, max_pct_mito=50,
        )

        filtered, _ = filter_cells_and_genes(adata, qc)

        assert list(filtered.obs_names) == ["c0"]

    def test_nothing_passes(self):
        with pytest.raises(ValueError, match="No cells pass"):
            filter_cells_and_genes(_toy_adata(np.ones((3, 3))), QCConfig(min_counts=100))

    def test_report_to_dict(self):
        report = QCReport(10, 8, 100, 90, {"min_counts": 2})
        d = report.to_dict()

        assert d["fraction_retained"] == pytest.approx(0.8)
        assert d["removed_by"] == {"min_counts": 2}


class TestSizeFactors:
    """Tests for library-size factors."""

    def test_mean_one(self):
        adata = _toy_adata(np.array([[1, 1], [3, 3], [2, 2]]))

        sf = compute_size_factors(adata)

        assert sf.shape == (3,)
        assert sf.mean() == pytest.approx(1.0)
        np.testing.assert_allclose(sf, [0.5, 1.5, 1.0])
        np.testing.assert_allclose(adata.obs["size_factor"].to_numpy(), sf)

    def test_zero_count_cell_raises(self):
        adata = _toy_adata(np.array([[1, 1], [0, 0]]))
        with pytest.raises(ValueError, match="size factors <= 0"):
            compute_size_factors(adata)

    def test_no_key(self):
        adata = _toy_adata(np.array([[1, 1], [2, 2]]))
        compute_size_factors(adata, key=None)
        assert "size_factor" not in adata.obs


class TestNormalize:
    """Tests for normalization and HVG selection."""

    def test_counts_preserved(self, sim_adata):
        pytest.importorskip("skmisc")
        raw = sim_adata.layers["counts"].copy()

        normalize_and_select_hvg(sim_adata, n_top_genes=10)

        assert (sim_adata.layers["counts"] != raw).nnz == 0
        assert int(sim_adata.var["highly_variable"].sum()) == 10
        assert not looks_like_counts(sim_adata.X)


class TestLoader:
    """Tests for dataset reading helpers."""

    def test_load_h5ad_adds_counts_layer(self, tmp_path):
        adata = ad.AnnData(X=np.array([[1.0, 2.0], [3.0, 0.0]], dtype=np.float32))
        adata.var_names = ["A", "B"]
        path = tmp_path / "data.h5ad"
        adata.write_h5ad(path)

        loaded = load_dataset(path)

        assert sp.issparse(loaded.X)
        assert "counts" in loaded.layers

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_dataset(tmp_path / "missing.h5ad")

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "data.loom"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported"):
            load_dataset(path)

    def test_looks_like_counts(self):
        assert looks_like_counts(sp.csr_matrix(np.array([[0, 3], [1, 2]])))
        assert not looks_like_counts(np.array([[0.5, 1.2]]))

    def test_map_genes_to_symbols(self, sim_adata):
        ids = sim_adata.var["gene_ids"].tolist()

        mapping, missing = map_genes_to_symbols([ids[0], "cd3d", "NOPE"], sim_adata)

        assert mapping[ids[0]] == sim_adata.var_names[0]
        assert mapping["cd3d"] == "CD3D"
        assert missing == ["NOPE"]
