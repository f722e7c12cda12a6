"""Tests for CellAssign-model count simulation."""

import numpy as np
import pytest

from annobench.data.simulate import simulate_cellassign, simulate_dataset


def _params(G=4, C=2, N=50):
    rho = np.zeros((G, C))
    rho[0, 0] = rho[1, 0] = 1
    rho[2, 1] = rho[3, 1] = 1
    return dict(
        rho=rho,
        s=np.ones(N),
        pi=np.array([0, 1] * (N // 2)),
        delta=np.full((G, C), 3.0),
        a=np.full(10, 5.0),
        beta=np.full((G, 1), 1.0),
        B=10,
        max_y=100.0,
    )


class TestSimulateCellAssign:
    """Tests for the negative binomial simulator."""

    def test_shape_and_dtype(self):
        counts = simulate_cellassign(**_params(), rng=np.random.default_rng(0))

        assert counts.shape == (50, 4)
        assert np.issubdtype(counts.dtype, np.integer)
        assert counts.min() >= 0

    def test_markers_are_overexpressed(self):
        counts = simulate_cellassign(**_params(N=400), rng=np.random.default_rng(1))
        type0 = counts[0::2]
        type1 = counts[1::2]

        # Genes 0-1 mark type 0, genes 2-3 mark type 1
        assert type0[:, :2].mean() > 3 * type1[:, :2].mean()
        assert type1[:, 2:].mean() > 3 * type0[:, 2:].mean()

    def test_reproducible(self):
        a = simulate_cellassign(**_params(), rng=np.random.default_rng(7))
        b = simulate_cellassign(**_params(), rng=np.random.default_rng(7))
        np.testing.assert_array_equal(a, b)

    def test_covariates(self):
        params = _params()
        params["beta"] = np.hstack([params["beta"], np.full((4, 1), 0.1)])
        X = np.linspace(-1, 1, 50)[:, None]

        counts = simulate_cellassign(**params, X=X, rng=np.random.default_rng(0))

        assert counts.shape == (50, 4)

    @pytest.mark.parametrize(
        "field,value,match",
        [
            ("s", np.zeros(50), "positive"),
            ("pi", np.full(50, 5), "index columns"),
            ("delta", np.ones((3, 2)), "same shape"),
            ("a", np.ones(3), "one weight per basis"),
            ("beta", np.ones((4, 2)), "one column per covariate"),
        ],
    )
    def test_invalid_inputs(self, field, value, match):
        params = _params()
        params[field] = value
        with pytest.raises(ValueError, match=match):
            simulate_cellassign(**params)


class TestSimulateDataset:
    """Tests for AnnData simulation from a marker matrix."""

    def test_structure(self, basic_markers, sim_adata):
        n_genes = basic_markers.shape[0] + 20

        assert sim_adata.shape == (300, n_genes)
        assert "counts" in sim_adata.layers
        assert set(sim_adata.obs["true_type"].cat.categories) <= set(basic_markers.columns)
        assert "BG1" in sim_adata.var_names
        assert sim_adata.var["gene_ids"].str.startswith("ENSG").all()
        assert (sim_adata.obs["true_size_factor"] > 0).all()
