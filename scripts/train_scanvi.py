#!/usr/bin/env python3
"""
Train scANVI on PBMC68k and export predictions for the benchmark report.

scANVI is trained outside the benchmark run (it benefits from a GPU). The
benchmark then reads the exported predictions file and its <file>.json
sidecar, which carries the training wall-clock time.

Seed labels come from SingleR: either an obs column of an existing .h5ad
(e.g. results/adata_annotated.h5ad, written by `annobench run`) or a
fresh SingleR run on the QC-filtered data.

Usage:
    # Reuse SingleR labels from a previous benchmark run
    python scripts/train_scanvi.py --adata results/adata_annotated.h5ad \
        --output results/scanvi_predictions.csv

    # Start from raw PBMC68k (downloads it) and run SingleR first
    python scripts/train_scanvi.py --output results/scanvi_predictions.csv --max-epochs-scvi 50
"""

from pathlib import Path

from loguru import logger

from annobench.config import BenchmarkConfig
from annobench.data.loader import load_dataset, load_pbmc68k
from annobench.data.preprocessing import filter_cells_and_genes
from annobench.pipeline import AnnotationConfig, get_annotator
from annobench.pipeline.components.annotators.scanvi import export_predictions, train_scanvi


def seed_labels_from_singler(adata, config: BenchmarkConfig, labels_key: str) -> None:
    """Run SingleR and store harmonized labels in adata.obs[labels_key]."""
    annotator = get_annotator(
        "singler",
        AnnotationConfig(level=config.evaluation.level, seed=config.seed),
        reference=config.singler.reference,
        label_level=config.singler.label_level,
        use_pruned=config.singler.use_pruned,
    )
    result = annotator.annotate(adata=adata)
    labels = dict(
        zip(
            result.annotations_df["cell_id"].to_list(),
            result.annotations_df["harmonized_type"].to_list(),
        )
    )
    adata.obs[labels_key] = [labels[str(c)] for c in adata.obs_names]


def main():
    import argparse

    parser = argparse.ArgumentParser(
        description="Train scANVI and export predictions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--adata", type=Path, default=None, help=".h5ad with seed labels in --labels-key")
    parser.add_argument("--data", type=Path, default=None, help="Raw dataset (default: download PBMC68k)")
    parser.add_argument("--config", type=Path, default=None, help="Benchmark config JSON")
    parser.add_argument("--output", type=Path, required=True, help="Predictions file (.csv/.tsv/.parquet)")
    parser.add_argument("--labels-key", default="singler_label")
    parser.add_argument("--labelled-fraction", type=float, default=None)
    parser.add_argument("--max-epochs-scvi", type=int, default=None)
    parser.add_argument("--max-epochs-scanvi", type=int, default=None)
    parser.add_argument("--batch-key", default=None)
    args = parser.parse_args()

    config = BenchmarkConfig.from_json(args.config) if args.config else BenchmarkConfig()

    if args.adata is not None:
        adata = load_dataset(args.adata)
        if args.labels_key not in adata.obs:
            logger.info(f"'{args.labels_key}' not in {args.adata}, running SingleR")
            seed_labels_from_singler(adata, config, args.labels_key)
    else:
        adata = load_pbmc68k(args.data or config.dataset.path, cache_dir=config.dataset.cache_dir)
        adata, report = filter_cells_and_genes(adata, config.qc.to_qc_config())
        logger.info(f"QC kept {report.n_cells_after}/{report.n_cells_before} cells")
        seed_labels_from_singler(adata, config, args.labels_key)

    train_kwargs = config.scanvi.train_kwargs()
    for key in ("labelled_fraction", "max_epochs_scvi", "max_epochs_scanvi"):
        value = getattr(args, key)
        if value is not None:
            train_kwargs[key] = value

    result = train_scanvi(
        adata,
        labels_key=args.labels_key,
        batch_key=args.batch_key,
        seed=config.seed,
        **train_kwargs,
    )
    path = export_predictions(result, args.output)
    logger.info(f"Exported {result.predictions_df.height} predictions to {path}")


if __name__ == "__main__":
    main()
