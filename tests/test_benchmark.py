"""Tests for the end-to-end benchmark runner.

Annotators are replaced by stubs that label cells from the simulated ground
truth, so the runner's ordering, timing, failure handling, scoring and
output writing are exercised without R or scvi-tools.
"""

import json

import anndata as ad
import numpy as np
import polars as pl
import pytest
import scanpy as sc

from annobench.benchmark import BenchmarkRunner
from annobench.config import (
    BenchmarkConfig,
    DatasetConfig,
    EmbeddingSettings,
    OutputSettings,
    QCSettings,
)
from annobench.evaluation.metrics import SUMMARY_METRICS
from annobench.pipeline import AnnotationResult, build_annotations_df
from annobench.pipeline.components.annotators.cellassign import CellAssignAnnotator
from annobench.pipeline.components.annotators.mapping import harmonize_labels
from annobench.pipeline.components.annotators.scanvi import ScANVIAnnotator
from annobench.pipeline.components.annotators.singler import SingleRAnnotator


class StubAnnotator:
    """Labels cells from obs['true_type'], optionally corrupting some."""

    def __init__(self, name, error_rate=0.0, runtime=None, fail=False, requires_obs=None):
        self.name = name
        self.error_rate = error_rate
        self.runtime = runtime
        self.fail = fail
        self.requires_obs = requires_obs
        self.calls = 0

    def annotate(self, config=None, adata=None, expression_path=None):
        self.calls += 1
        if self.fail:
            raise RuntimeError(f"{self.name} exploded")
        if self.requires_obs is not None:
            assert self.requires_obs in adata.obs

        labels = np.asarray(adata.obs["true_type"].astype(str), dtype=object)
        n_wrong = int(self.error_rate * labels.size)
        labels[:n_wrong] = "unassigned"
        labels = labels.tolist()
        return AnnotationResult(
            annotations_df=build_annotations_df(
                cell_ids=list(adata.obs_names),
                predicted=labels,
                harmonized=harmonize_labels(labels, source="markers"),
            ),
            external_runtime=self.runtime,
        )


def _fake_normalize(adata, n_top_genes=2000, target_sum=1e4):
    adata.X = adata.layers["counts"].copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    return adata


@pytest.fixture(autouse=True)
def no_hvg(monkeypatch):
    monkeypatch.setattr("annobench.benchmark.normalize_and_select_hvg", _fake_normalize)


@pytest.fixture
def config(tmp_path):
    return BenchmarkConfig(
        name="test",
        qc=QCSettings(min_counts=None, max_counts=None, min_genes=None, max_genes=None, min_cells=None),
        embedding=EmbeddingSettings(run_umap=False, run_tsne=False),
        output=OutputSettings(output_dir=str(tmp_path / "out"), save_figures=False),
    )


@pytest.fixture
def stubs():
    return {
        "cellassign_basic": StubAnnotator("cellassign_basic", error_rate=0.2),
        "singler": StubAnnotator("singler"),
        "scanvi": StubAnnotator("scanvi", runtime=50.0, requires_obs="singler_label"),
    }


class TestBenchmarkRunner:
    """Tests for BenchmarkRunner.run()."""

    def test_scores_against_reference(self, config, stubs, sim_adata):
        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        assert result.methods == ["singler", "cellassign_basic", "scanvi"]
        assert set(result.metrics["method"].unique()) == {"cellassign_basic", "scanvi"}
        assert set(result.metrics["metric"].unique()) == set(SUMMARY_METRICS)

        scanvi_acc = result.full_metrics["scanvi"]["accuracy"]
        cellassign_acc = result.full_metrics["cellassign_basic"]["accuracy"]
        assert scanvi_acc == pytest.approx(1.0)
        assert cellassign_acc == pytest.approx(0.8)

    def test_reference_runs_first(self, config, stubs, sim_adata):
        """scANVI's stub asserts the reference labels are already in obs."""
        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        assert result.failures == {}
        assert all(s.calls == 1 for s in stubs.values())

    def test_runtime_table(self, config, stubs, sim_adata):
        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        runtime = {r["method"]: r for r in result.runtime.iter_rows(named=True)}
        assert set(runtime) == {"singler", "cellassign_basic", "scanvi"}
        assert runtime["scanvi"]["seconds"] == pytest.approx(50.0)
        assert runtime["scanvi"]["source"] == "external"
        assert runtime["singler"]["source"] == "measured"

    def test_outputs_written(self, config, stubs, sim_adata):
        BenchmarkRunner(config, annotators=stubs).run(sim_adata)
        out = config.output_dir

        for name in (
            "predictions.parquet",
            "raw_predictions.parquet",
            "metrics.csv",
            "metrics_wide.csv",
            "runtime.csv",
            "agreement.csv",
            "qc_report.json",
            "summary.json",
            "config.json",
            "benchmark.log",
            "adata_annotated.h5ad",
        ):
            assert (out / name).exists(), name

        predictions = pl.read_parquet(out / "predictions.parquet")
        assert predictions.columns == ["cell_id", "singler", "cellassign_basic", "scanvi"]
        assert predictions.height == sim_adata.n_obs

        summary = json.loads((out / "summary.json").read_text())
        assert summary["n_cells"] == sim_adata.n_obs
        assert summary["failures"] == {}
        assert BenchmarkConfig.from_json(out / "config.json") == config

        annotated = ad.read_h5ad(out / "adata_annotated.h5ad")
        assert "singler_label" in annotated.obs
        assert annotated.n_obs == sim_adata.n_obs

    def test_failing_method_skipped(self, config, stubs, sim_adata):
        stubs["cellassign_basic"] = StubAnnotator("cellassign_basic", fail=True)

        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        assert "cellassign_basic" in result.failures
        assert "exploded" in result.failures["cellassign_basic"]
        assert "cellassign_basic" not in result.methods
        failed = result.runtime.filter(pl.col("method") == "cellassign_basic")
        assert failed["succeeded"].to_list() == [False]

    def test_fail_fast(self, config, stubs, sim_adata):
        config.fail_fast = True
        stubs["cellassign_basic"] = StubAnnotator("cellassign_basic", fail=True)

        with pytest.raises(RuntimeError, match="exploded"):
            BenchmarkRunner(config, annotators=stubs).run(sim_adata)

    def test_reference_failure_aborts(self, config, stubs, sim_adata):
        stubs["singler"] = StubAnnotator("singler", fail=True)

        with pytest.raises(RuntimeError, match="singler exploded"):
            BenchmarkRunner(config, annotators=stubs).run(sim_adata)

    def test_max_cells(self, config, stubs, sim_adata):
        config.dataset = DatasetConfig(max_cells=100)

        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        assert result.predictions.height == 100

    def test_figures(self, config, stubs, sim_adata):
        config.output.save_figures = True

        result = BenchmarkRunner(config, annotators=stubs).run(sim_adata)

        names = {p.name for p in result.figures}
        assert {"metric_comparison.png", "runtime.png"} <= names
        assert {"confusion_cellassign_basic.png", "confusion_scanvi.png"} <= names
        assert all(p.exists() for p in result.figures)


class TestBuildAnnotators:
    """Tests for constructing annotators from configuration."""

    def test_from_default_config(self, config):
        annotators = BenchmarkRunner(config).build_annotators()

        assert list(annotators) == config.method_names()
        assert isinstance(annotators["singler"], SingleRAnnotator)
        assert isinstance(annotators["cellassign_refined"], CellAssignAnnotator)
        assert annotators["cellassign_basic"].config.marker_variant == "basic"
        assert annotators["cellassign_refined"].config.marker_variant == "refined"
        assert isinstance(annotators["scanvi"], ScANVIAnnotator)
        assert annotators["scanvi"].predictions_path == config.scanvi_predictions_path()

    def test_custom_marker_file(self, config, tmp_path, basic_markers):
        path = tmp_path / "custom.csv"
        basic_markers.to_csv(path)
        config.cellassign.marker_file = str(path)

        annotators = BenchmarkRunner(config).build_annotators()

        assert annotators["cellassign_custom"].marker_matrix.shape == basic_markers.shape
