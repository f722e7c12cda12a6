"""Tests for scANVI seed labels, prediction export and the annotator."""

import json

import numpy as np
import polars as pl
import pytest

from annobench.pipeline import AnnotationConfig
from annobench.pipeline.components.annotators.scanvi import (
    UNLABELED_CATEGORY,
    ScANVIAnnotator,
    ScANVITrainingResult,
    export_predictions,
    load_predictions,
    make_seed_labels,
    sidecar_path,
)


@pytest.fixture
def training_result(sim_adata):
    cells = [str(c) for c in sim_adata.obs_names]
    labels = ["T cell", "B cell", "NK cell"] * (len(cells) // 3)
    return ScANVITrainingResult(
        predictions_df=pl.DataFrame(
            {"cell_id": cells, "predicted_type": labels, "confidence": [0.9] * len(cells)}
        ),
        runtime_seconds=42.5,
        params={"labels_key": "singler_label", "labelled_fraction": 0.1},
    )


class TestMakeSeedLabels:
    """Tests for choosing the labelled subset."""

    def test_fraction_and_unlabeled(self):
        labels = ["A"] * 50 + ["B"] * 50

        seeds = make_seed_labels(labels, labelled_fraction=0.2, seed=0)

        assert (seeds == "A").sum() == 10
        assert (seeds == "B").sum() == 10
        assert (seeds == UNLABELED_CATEGORY).sum() == 80

    def test_at_least_one_per_class(self):
        labels = ["A"] * 100 + ["rare"]

        seeds = make_seed_labels(labels, labelled_fraction=0.01, seed=0)

        assert seeds[-1] == "rare"

    def test_excluded_labels_never_seed(self):
        labels = ["A"] * 10 + ["unassigned"] * 10 + ["Other"] * 10 + [None] * 5

        seeds = make_seed_labels(labels, labelled_fraction=1.0)

        assert set(seeds[:10]) == {"A"}
        assert set(seeds[10:]) == {UNLABELED_CATEGORY}

    def test_reproducible(self):
        labels = ["A", "B"] * 100
        a = make_seed_labels(labels, 0.3, seed=5)
        b = make_seed_labels(labels, 0.3, seed=5)
        np.testing.assert_array_equal(a, b)

    def test_bad_fraction(self):
        with pytest.raises(ValueError, match="labelled_fraction"):
            make_seed_labels(["A"], labelled_fraction=0.0)

    def test_no_eligible_labels(self):
        with pytest.raises(ValueError, match="No eligible seed labels"):
            make_seed_labels(["unassigned", "Other"])


class TestPredictionFiles:
    """Tests for exporting and reading predictions."""

    @pytest.mark.parametrize("suffix", [".csv", ".tsv", ".parquet"])
    def test_export_and_load(self, tmp_path, training_result, suffix):
        path = export_predictions(training_result, tmp_path / f"scanvi{suffix}")

        df, meta = load_predictions(path)

        assert df.columns == ["cell_id", "predicted_type", "confidence"]
        assert df.height == training_result.predictions_df.height
        assert meta["runtime_seconds"] == pytest.approx(42.5)
        assert meta["params"]["labels_key"] == "singler_label"

    def test_sidecar_name(self, tmp_path):
        assert sidecar_path(tmp_path / "pred.csv").name == "pred.csv.json"

    def test_load_without_sidecar_or_confidence(self, tmp_path):
        path = tmp_path / "pred.csv"
        path.write_text("cell_id,predicted_type\nc1,B cell\n")

        df, meta = load_predictions(path)

        assert meta == {}
        assert df["confidence"].null_count() == 1

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "pred.csv"
        path.write_text("barcode,label\nc1,B cell\n")
        with pytest.raises(ValueError, match="missing columns"):
            load_predictions(path)

    def test_unsupported_suffix(self, tmp_path, training_result):
        with pytest.raises(ValueError, match="Unsupported"):
            export_predictions(training_result, tmp_path / "pred.xlsx")


class TestScANVIAnnotator:
    """Tests for consuming exported predictions."""

    def test_reads_predictions_and_runtime(self, tmp_path, sim_adata, training_result):
        path = export_predictions(training_result, tmp_path / "scanvi.csv")

        result = ScANVIAnnotator(AnnotationConfig(), predictions_path=path).annotate(adata=sim_adata)

        assert result.n_cells == sim_adata.n_obs
        assert result.external_runtime == pytest.approx(42.5)
        assert result.annotations_df["harmonized_type"].to_list()[:3] == ["T cell", "B cell", "NK cell"]

    def test_missing_cells_unassigned(self, tmp_path, sim_adata, training_result):
        partial = ScANVITrainingResult(
            predictions_df=training_result.predictions_df.head(100),
            runtime_seconds=1.0,
        )
        path = export_predictions(partial, tmp_path / "scanvi.parquet")

        result = ScANVIAnnotator(predictions_path=path).annotate(adata=sim_adata)

        assert result.n_cells == sim_adata.n_obs
        assert result.n_annotated == 100
        assert result.annotations_df["cell_id"].to_list() == [str(c) for c in sim_adata.obs_names]

    def test_no_file_no_training(self, tmp_path, sim_adata):
        annotator = ScANVIAnnotator(predictions_path=tmp_path / "absent.csv")
        with pytest.raises(FileNotFoundError, match="train-scanvi"):
            annotator.annotate(adata=sim_adata)

    def test_train_if_missing(self, tmp_path, sim_adata, training_result, monkeypatch):
        calls = {}

        def fake_train(adata, labels_key, seed, **kwargs):
            calls.update(labels_key=labels_key, seed=seed, **kwargs)
            return training_result

        monkeypatch.setattr(
            "annobench.pipeline.components.annotators.scanvi.train_scanvi", fake_train
        )
        path = tmp_path / "scanvi.csv"
        annotator = ScANVIAnnotator(
            AnnotationConfig(seed=7),
            predictions_path=path,
            train_if_missing=True,
            labelled_fraction=0.2,
        )

        result = annotator.annotate(adata=sim_adata)

        assert calls == {"labels_key": "singler_label", "seed": 7, "labelled_fraction": 0.2}
        assert path.exists()
        assert json.loads(sidecar_path(path).read_text())["runtime_seconds"] == pytest.approx(42.5)
        assert result.external_runtime == pytest.approx(42.5)

    def test_train_scanvi_requires_labels(self, sim_adata):
        pytest.importorskip("scvi")
        from annobench.pipeline.components.annotators.scanvi import train_scanvi

        with pytest.raises(ValueError, match="not found in adata.obs"):
            train_scanvi(sim_adata, labels_key="missing")

    def test_repeated_rows_counted_once(self, tmp_path, sim_adata, training_result):
        df = training_result.predictions_df
        repeated = ScANVITrainingResult(predictions_df=pl.concat([df, df.head(5)]), runtime_seconds=1.0)
        path = export_predictions(repeated, tmp_path / "scanvi.csv")

        result = ScANVIAnnotator(predictions_path=path).annotate(adata=sim_adata)

        assert result.n_cells == sim_adata.n_obs
        assert result.annotations_df["cell_id"].to_list() == [str(c) for c in sim_adata.obs_names]

    def test_conflicting_rows_rejected(self, tmp_path, training_result):
        df = training_result.predictions_df
        relabelled = df.head(2).with_columns(pl.lit("Megakaryocyte").alias("predicted_type"))
        conflicting = ScANVITrainingResult(predictions_df=pl.concat([df, relabelled]), runtime_seconds=1.0)
        path = export_predictions(conflicting, tmp_path / "scanvi.parquet")

        with pytest.raises(ValueError, match="conflicting rows for 2 cells"):
            load_predictions(path)
