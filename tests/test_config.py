"""Tests for the benchmark configuration model."""

import pytest
from pydantic import ValidationError

from annobench.config import (
    BenchmarkConfig,
    CellAssignSettings,
    EvaluationSettings,
    QCSettings,
    ScANVISettings,
    SingleRSettings,
)


class TestBenchmarkConfig:
    """Tests for BenchmarkConfig."""

    def test_defaults(self):
        config = BenchmarkConfig()

        assert config.method_names() == ["singler", "cellassign_basic", "cellassign_refined", "scanvi"]
        assert config.evaluation.reference == "singler"
        assert config.evaluation.level == "coarse"
        assert config.scanvi_predictions_path().name == "scanvi_predictions.csv"
        # train-scanvi seeds from the annotated AnnData a default run writes
        assert config.output.save_adata

    def test_custom_marker_file_adds_method(self):
        config = BenchmarkConfig(cellassign=CellAssignSettings(marker_file="markers.csv"))
        assert "cellassign_custom" in config.method_names()

    def test_reference_must_be_enabled(self):
        with pytest.raises(ValidationError, match="not enabled"):
            BenchmarkConfig(singler=SingleRSettings(enabled=False))

    def test_other_reference(self):
        config = BenchmarkConfig(
            singler=SingleRSettings(enabled=False),
            evaluation=EvaluationSettings(reference="scanvi"),
        )
        assert config.method_names()[-1] == "scanvi"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            BenchmarkConfig(unknown_option=1)

    def test_json_roundtrip(self, tmp_path):
        config = BenchmarkConfig(name="test", seed=3, scanvi=ScANVISettings(max_epochs_scvi=5))

        path = config.to_json(tmp_path / "cfg" / "benchmark.json")
        loaded = BenchmarkConfig.from_json(path)

        assert loaded == config

    def test_from_missing_json(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BenchmarkConfig.from_json(tmp_path / "none.json")


class TestSubSettings:
    """Tests for nested settings validation."""

    def test_qc_bounds(self):
        with pytest.raises(ValidationError, match="must not exceed"):
            QCSettings(min_counts=1000, max_counts=10)

    def test_qc_to_dataclass(self):
        qc = QCSettings(max_pct_mito=10).to_qc_config()
        assert qc.max_pct_mito == 10
        assert qc.min_counts == 500

    def test_assign_prob_range(self):
        with pytest.raises(ValidationError):
            CellAssignSettings(assign_prob=1.2)

    def test_duplicate_variants(self):
        with pytest.raises(ValidationError, match="must not repeat"):
            CellAssignSettings(marker_variants=["basic", "basic"])

    def test_unknown_variant(self):
        with pytest.raises(ValidationError):
            CellAssignSettings(marker_variants=["exhaustive"])

    def test_scanvi_train_kwargs(self):
        kwargs = ScANVISettings(n_latent=8).train_kwargs()
        assert kwargs["n_latent"] == 8
        assert "predictions_path" not in kwargs
        assert "labels_key" not in kwargs
