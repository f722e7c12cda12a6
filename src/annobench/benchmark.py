"""End-to-end annotation benchmark.

BenchmarkRunner executes the whole analysis:

1. Load the dataset and apply QC filters
2. Normalize, select HVGs and compute PCA/UMAP/t-SNE (figures only)
3. Build marker matrices (basic, refined, optional custom file)
4. Run SingleR, CellAssign (one run per marker matrix) and scANVI
5. Harmonize labels and score every method against the reference method
6. Write tables, figures and a JSON summary

Usage:
    from annobench.benchmark import BenchmarkRunner
    from annobench.config import BenchmarkConfig

    result = BenchmarkRunner(BenchmarkConfig.from_json("benchmark.json")).run()
    print(result.metrics)
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import anndata as ad
import pandas as pd
import polars as pl
import scanpy as sc
from loguru import logger

from annobench.config import BenchmarkConfig
from annobench.data.loader import load_pbmc68k
from annobench.data.preprocessing import (
    QCReport,
    compute_embeddings,
    compute_size_factors,
    filter_cells_and_genes,
    normalize_and_select_hvg,
)
from annobench.evaluation.metrics import (
    agreement_table,
    compare_methods,
    metrics_wide,
    plot_confusion_matrix,
    print_metrics,
)
from annobench.evaluation.timing import TimingRecorder
from annobench.markers import load_marker_matrix
from annobench.pipeline import AnnotationConfig, AnnotationResult, AnnotatorProtocol, get_annotator
from annobench.pipeline.base import UNASSIGNED


@dataclass
class BenchmarkResult:
    """Everything a benchmark run produces."""

    predictions: pl.DataFrame  # cell_id + harmonized label per method
    raw_predictions: pl.DataFrame  # cell_id + tool-specific label per method
    metrics: pl.DataFrame  # long: method, metric, value, n_cells
    full_metrics: dict[str, dict[str, Any]]
    runtime: pl.DataFrame
    agreement: pl.DataFrame
    qc_report: QCReport | None
    failures: dict[str, str] = field(default_factory=dict)
    figures: list[Path] = field(default_factory=list)
    output_dir: Path | None = None

    @property
    def methods(self) -> list[str]:
        return [c for c in self.predictions.columns if c != "cell_id"]

    def summary(self) -> dict[str, Any]:
        """JSON-serializable run summary."""
        wide = metrics_wide(self.metrics) if self.metrics.height else pl.DataFrame()
        return {
            "methods": self.methods,
            "n_cells": self.predictions.height,
            "metrics": wide.to_dicts(),
            "runtime": self.runtime.to_dicts(),
            "failures": self.failures,
            "qc": self.qc_report.to_dict() if self.qc_report else None,
        }


class BenchmarkRunner:
    """Run every configured annotator on one dataset and compare them.

    Args:
        config: Benchmark configuration
        annotators: Optional pre-built annotators by method name; when
            given, they replace the ones built from the configuration
    """

    def __init__(
        self,
        config: BenchmarkConfig | None = None,
        annotators: dict[str, AnnotatorProtocol] | None = None,
    ):
        self.config = config or BenchmarkConfig()
        self._annotators = annotators
        self.timer = TimingRecorder()

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def load_data(self) -> ad.AnnData:
        """Step 1a: load the dataset (downloading PBMC68k if no path is set)."""
        ds = self.config.dataset
        return load_pbmc68k(ds.path, cache_dir=ds.cache_dir)

    def preprocess(self, adata: ad.AnnData) -> tuple[ad.AnnData, QCReport]:
        """Steps 1b-2: QC filtering, size factors, normalization, embeddings."""
        adata, report = filter_cells_and_genes(adata, self.config.qc.to_qc_config())

        max_cells = self.config.dataset.max_cells
        if max_cells is not None and adata.n_obs > max_cells:
            logger.info(f"Subsampling {adata.n_obs} -> {max_cells} cells")
            sc.pp.subsample(adata, n_obs=max_cells, random_state=self.config.seed)

        # Size factors from the full gene set, before any gene subsetting
        compute_size_factors(adata, layer="counts", key="size_factor")

        emb = self.config.embedding
        normalize_and_select_hvg(adata, n_top_genes=emb.n_top_genes, target_sum=emb.target_sum)
        if emb.run_umap or emb.run_tsne:
            compute_embeddings(
                adata,
                n_pcs=emb.n_pcs,
                n_neighbors=emb.n_neighbors,
                run_umap=emb.run_umap,
                run_tsne=emb.run_tsne,
                seed=self.config.seed,
            )
        return adata, report

    def build_annotators(self) -> dict[str, AnnotatorProtocol]:
        """Step 3-4a: instantiate annotators (and marker matrices) from config."""
        if self._annotators is not None:
            return dict(self._annotators)

        cfg = self.config
        annotators: dict[str, AnnotatorProtocol] = {}

        if cfg.singler.enabled:
            annotators["singler"] = get_annotator(
                "singler",
                self._annotation_config(),
                reference=cfg.singler.reference,
                label_level=cfg.singler.label_level,
                use_pruned=cfg.singler.use_pruned,
            )

        if cfg.cellassign.enabled:
            ca = cfg.cellassign
            ca_kwargs = dict(
                assign_prob=ca.assign_prob,
                num_runs=ca.num_runs,
                max_epochs=ca.max_epochs,
                learning_rate=ca.learning_rate,
                batch_size=ca.batch_size,
                write_back=False,
            )
            for variant in ca.marker_variants:
                annotators[f"cellassign_{variant}"] = get_annotator(
                    "cellassign",
                    self._annotation_config(marker_variant=variant),
                    **ca_kwargs,
                )
            if ca.marker_file:
                annotators["cellassign_custom"] = get_annotator(
                    "cellassign",
                    self._annotation_config(),
                    marker_matrix=load_marker_matrix(ca.marker_file),
                    **ca_kwargs,
                )

        if cfg.scanvi.enabled:
            annotators["scanvi"] = get_annotator(
                "scanvi",
                self._annotation_config(),
                predictions_path=cfg.scanvi_predictions_path(),
                train_if_missing=cfg.scanvi.train_if_missing,
                labels_key=cfg.scanvi.labels_key,
                **cfg.scanvi.train_kwargs(),
            )

        return annotators

    def run_annotators(
        self,
        adata: ad.AnnData,
        annotators: dict[str, AnnotatorProtocol],
    ) -> tuple[dict[str, AnnotationResult], dict[str, str]]:
        """Step 4b: run each annotator, timing it and collecting failures.

        The reference method runs first so its labels are available in
        adata.obs["<reference>_label"] to later methods (scANVI seeds).
        """
        reference = self.config.evaluation.reference
        order = sorted(annotators, key=lambda name: name != reference)

        results: dict[str, AnnotationResult] = {}
        failures: dict[str, str] = {}
        for name in order:
            logger.info(f"Running {name}...")
            try:
                with self.timer.time(name):
                    result = annotators[name].annotate(adata=adata)
            except Exception as e:
                if self.config.fail_fast or name == reference:
                    raise
                logger.error(f"{name} failed: {e}")
                failures[name] = f"{type(e).__name__}: {e}"
                continue

            if result.external_runtime is not None:
                self.timer.add(name, result.external_runtime, source="external")

            results[name] = result
            self._store_labels(adata, name, result)

        return results, failures

    def collect_predictions(
        self,
        cell_ids: list[str],
        results: dict[str, AnnotationResult],
    ) -> tuple[pl.DataFrame, pl.DataFrame]:
        """Step 5a: wide tables of harmonized and raw labels, one column per method."""
        harmonized = pl.DataFrame({"cell_id": [str(c) for c in cell_ids]})
        raw = harmonized.clone()
        for name, result in results.items():
            df = result.annotations_df
            harmonized = harmonized.join(
                df.select("cell_id", pl.col("harmonized_type").alias(name)),
                on="cell_id",
                how="left",
            )
            raw = raw.join(
                df.select("cell_id", pl.col("predicted_type").alias(name)),
                on="cell_id",
                how="left",
            )
        methods = list(results)
        harmonized = harmonized.with_columns([pl.col(m).fill_null(UNASSIGNED) for m in methods])
        raw = raw.with_columns([pl.col(m).fill_null(UNASSIGNED) for m in methods])
        return harmonized, raw

    def evaluate(
        self,
        predictions: pl.DataFrame,
    ) -> tuple[pl.DataFrame, dict[str, dict[str, Any]], pl.DataFrame]:
        """Step 5b: metrics against the reference and pairwise agreement."""
        ev = self.config.evaluation
        metrics_long, full = compare_methods(
            predictions,
            reference=ev.reference,
            exclude_labels=tuple(ev.exclude_labels),
        )
        for method, metrics in full.items():
            print_metrics(metrics, title=f"{method} vs {ev.reference}")
        return metrics_long, full, agreement_table(predictions)

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self, adata: ad.AnnData | None = None) -> BenchmarkResult:
        """Run the full benchmark.

        Args:
            adata: Raw-count dataset; loaded from config when None

        Returns:
            Benchmark result (also written to config.output.output_dir)
        """
        output_dir = self.config.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        sink_id = logger.add(
            output_dir / "benchmark.log",
            level=self.config.output.log_level,
            enqueue=False,
        )
        try:
            logger.info(f"Benchmark '{self.config.name}' -> {output_dir}")
            self.config.to_json(output_dir / "config.json")

            if adata is None:
                adata = self.load_data()
            adata, qc_report = self.preprocess(adata)

            annotators = self.build_annotators()
            results, failures = self.run_annotators(adata, annotators)

            predictions, raw_predictions = self.collect_predictions(list(adata.obs_names), results)
            metrics_long, full_metrics, agreement = self.evaluate(predictions)

            result = BenchmarkResult(
                predictions=predictions,
                raw_predictions=raw_predictions,
                metrics=metrics_long,
                full_metrics=full_metrics,
                runtime=self.timer.to_frame(),
                agreement=agreement,
                qc_report=qc_report,
                failures=failures,
                output_dir=output_dir,
            )

            if self.config.output.save_figures:
                result.figures = self.make_figures(adata, result)
            self.write_outputs(adata, result)
            return result
        finally:
            logger.remove(sink_id)

    def make_figures(self, adata: ad.AnnData, result: BenchmarkResult) -> list[Path]:
        """Step 6: metric bars, runtime bars, embeddings and confusion matrices."""
        from annobench.evaluation.plots import plot_embeddings, plot_metric_comparison, plot_runtime

        fig_dir = self.config.output_dir / "figures"
        fig_dir.mkdir(parents=True, exist_ok=True)
        reference = self.config.evaluation.reference
        figures: list[Path] = []

        if result.metrics.height:
            figures.append(
                plot_metric_comparison(
                    result.metrics,
                    fig_dir / "metric_comparison.png",
                    title=f"Agreement with {reference} ({self.config.evaluation.level} labels)",
                )
            )
        if result.runtime.height:
            figures.append(plot_runtime(result.runtime, fig_dir / "runtime.png"))

        label_keys = [f"{m}_label" for m in result.methods if f"{m}_label" in adata.obs]
        if label_keys:
            figures.extend(plot_embeddings(adata, label_keys, fig_dir))

        excluded = set(self.config.evaluation.exclude_labels)
        scored = result.predictions.filter(~pl.col(reference).is_in(list(excluded)))
        for method in result.methods:
            if method == reference or scored.height == 0:
                continue
            path = fig_dir / f"confusion_{method}.png"
            plot_confusion_matrix(
                scored[reference].to_numpy(),
                scored[method].to_numpy(),
                save_path=path,
                title=f"{method} vs {reference}",
            )
            figures.append(path)

        return figures

    def write_outputs(self, adata: ad.AnnData, result: BenchmarkResult) -> None:
        """Write tables and the JSON summary into the output directory."""
        out = self.config.output_dir
        result.predictions.write_parquet(out / "predictions.parquet")
        result.raw_predictions.write_parquet(out / "raw_predictions.parquet")
        result.metrics.write_csv(out / "metrics.csv")
        if result.metrics.height:
            metrics_wide(result.metrics).write_csv(out / "metrics_wide.csv")
        result.runtime.write_csv(out / "runtime.csv")
        result.agreement.write_csv(out / "agreement.csv")

        if result.qc_report is not None:
            (out / "qc_report.json").write_text(json.dumps(result.qc_report.to_dict(), indent=2))
        (out / "summary.json").write_text(json.dumps(result.summary(), indent=2, default=str))

        if self.config.output.save_adata:
            adata.write_h5ad(out / "adata_annotated.h5ad")

        logger.info(f"Results written to {out}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _annotation_config(self, **overrides: Any) -> AnnotationConfig:
        return AnnotationConfig(
            level=self.config.evaluation.level,
            seed=self.config.seed,
            **overrides,
        )

    @staticmethod
    def _store_labels(adata: ad.AnnData, name: str, result: AnnotationResult) -> None:
        labels = dict(
            zip(
                result.annotations_df["cell_id"].to_list(),
                result.annotations_df["harmonized_type"].to_list(),
            )
        )
        adata.obs[f"{name}_label"] = pd.Categorical(
            [labels.get(str(c), UNASSIGNED) for c in adata.obs_names]
        )
