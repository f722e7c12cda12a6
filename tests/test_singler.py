"""Tests for the SingleR annotator.

The R side is mocked; tests that need a real R installation with SingleR
and celldex are skipped when it is not available.
"""

from unittest.mock import patch

import numpy as np
import pytest
import scipy.sparse as sp

from annobench.pipeline import AnnotationConfig
from annobench.pipeline.components.annotators.singler import (
    SingleRAnnotator,
    is_singler_available,
    log_normalize,
    normalize_confidence,
)

MODULE = "annobench.pipeline.components.annotators.singler"


class TestHelpers:
    """Tests for normalization and confidence helpers."""

    def test_log_normalize_sparse(self):
        counts = sp.csr_matrix(np.array([[1.0, 1.0], [0.0, 0.0]]))

        out = log_normalize(counts, target_sum=2)

        np.testing.assert_allclose(out[0], np.log1p([1.0, 1.0]))
        np.testing.assert_allclose(out[1], [0.0, 0.0])

    def test_normalize_confidence(self):
        scores = np.array([[0.2, 0.6], [-1.0, -0.5]])
        np.testing.assert_allclose(normalize_confidence(scores), [0.8, 0.25])


class TestSingleRAnnotator:
    """Tests for annotator construction and result handling."""

    def test_unknown_reference(self):
        with pytest.raises(ValueError, match="Unknown SingleR reference"):
            SingleRAnnotator(reference="mouse_brain")

    def test_bad_label_level(self):
        with pytest.raises(ValueError, match="label_level"):
            SingleRAnnotator(label_level="medium")

    def test_unavailable_raises(self, sim_adata):
        with patch(f"{MODULE}.is_singler_available", return_value=False):
            with pytest.raises(RuntimeError, match="SingleR not available"):
                SingleRAnnotator().annotate(adata=sim_adata)

    def test_annotate_with_mocked_r(self, sim_adata):
        n = sim_adata.n_obs
        raw = ["T_cells", "B_cell", "Monocyte", "Neurons"] * (n // 4)
        pruned = ["T_cells", "B_cell", None, "Neurons"] * (n // 4)
        scores = np.tile([0.1, 0.5], (n, 1))

        with patch(f"{MODULE}.is_singler_available", return_value=True), patch.object(
            SingleRAnnotator, "_run_singler", return_value=(raw, pruned, scores, 120)
        ) as mock_run:
            result = SingleRAnnotator(AnnotationConfig(level="coarse")).annotate(adata=sim_adata)

        expr, genes, cells = mock_run.call_args.args
        assert expr.shape == (n, sim_adata.n_vars)
        assert genes == list(sim_adata.var_names)
        assert cells == list(sim_adata.obs_names)

        harmonized = result.annotations_df["harmonized_type"].to_list()
        assert harmonized[:4] == ["T cell", "B cell", "unassigned", "Other"]
        assert result.stats["n_pruned"] == n // 4
        assert result.stats["n_common_genes"] == 120
        np.testing.assert_allclose(result.annotations_df["confidence"].to_numpy(), 0.75)

    def test_unpruned_labels(self, sim_adata):
        n = sim_adata.n_obs
        raw = ["Monocyte"] * n
        pruned = [None] * n

        with patch(f"{MODULE}.is_singler_available", return_value=True), patch.object(
            SingleRAnnotator, "_run_singler", return_value=(raw, pruned, np.zeros((n, 2)), 100)
        ):
            result = SingleRAnnotator(use_pruned=False).annotate(adata=sim_adata)

        assert set(result.annotations_df["harmonized_type"].to_list()) == {"Monocyte"}

    @pytest.mark.skipif(not is_singler_available(), reason="R with SingleR/celldex not installed")
    def test_real_singler(self, sim_adata):
        result = SingleRAnnotator().annotate(adata=sim_adata)
        assert result.n_cells == sim_adata.n_obs
