"""annobench Command Line Interface."""

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from annobench import __version__

console = Console()


def _configure_logging(verbose: bool) -> None:
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
def main(verbose: bool) -> None:
    """annobench: benchmark CellAssign, SingleR and scANVI on PBMC data."""
    _configure_logging(verbose)


@main.command(name="list-annotators")
def list_annotators_cmd() -> None:
    """List registered annotation methods."""
    from annobench.pipeline import get_annotator_class, list_annotators

    table = Table(title="Registered Annotators")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description", style="white")

    for name in list_annotators():
        doc = (get_annotator_class(name).__doc__ or "").strip().splitlines()
        table.add_row(name, doc[0] if doc else "")

    console.print(table)


@main.command(name="init-config")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("benchmark.json"),
    help="Where to write the default configuration",
)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file")
def init_config(output: Path, force: bool) -> None:
    """Write a default benchmark configuration as JSON."""
    from annobench.config import BenchmarkConfig

    if output.exists() and not force:
        console.print(f"[red]{output} already exists (use --force to overwrite)[/red]")
        raise click.Abort()

    BenchmarkConfig().to_json(output)
    console.print(f"[green]✓ Wrote default configuration to {output}[/green]")


@main.command()
@click.option(
    "--variant",
    type=click.Choice(["basic", "refined"]),
    default="refined",
    help="Built-in marker list",
)
@click.option(
    "--export",
    "export_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the binary gene x cell-type matrix as CSV",
)
@click.option("--include-other", is_flag=True, default=False, help="Add an 'other' column")
def markers(variant: str, export_path: Path | None, include_other: bool) -> None:
    """Show (and optionally export) a marker gene matrix."""
    from annobench.markers import get_marker_matrix, marker_summary

    mat = get_marker_matrix(variant, include_other=include_other)
    summary = marker_summary(mat)

    table = Table(title=f"{variant.capitalize()} markers: {mat.shape[0]} genes, {mat.shape[1]} cell types")
    table.add_column("Cell type", style="cyan", no_wrap=True)
    table.add_column("Genes", style="yellow", justify="right")
    table.add_column("Markers", style="white")
    for row in summary.itertuples(index=False):
        table.add_row(str(row.cell_type), str(row.n_markers), row.markers)
    console.print(table)

    if export_path is not None:
        export_path.parent.mkdir(parents=True, exist_ok=True)
        mat.to_csv(export_path)
        console.print(f"[green]✓ Marker matrix saved to {export_path}[/green]")


@main.command()
@click.option(
    "--data",
    "-d",
    "data_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="10x directory, .h5 or .h5ad (default: download PBMC68k)",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Benchmark config JSON (QC thresholds are taken from it)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Write the QC report as JSON",
)
def qc(data_path: Path | None, config_path: Path | None, output: Path | None) -> None:
    """Apply QC filters and report how many cells and genes survive."""
    import json

    from annobench.config import BenchmarkConfig
    from annobench.data.loader import load_pbmc68k
    from annobench.data.preprocessing import filter_cells_and_genes

    config = BenchmarkConfig.from_json(config_path) if config_path else BenchmarkConfig()
    path = data_path or config.dataset.path

    console.print("[yellow]Loading dataset...[/yellow]")
    adata = load_pbmc68k(path, cache_dir=config.dataset.cache_dir)
    _, report = filter_cells_and_genes(adata, config.qc.to_qc_config())

    table = Table(title="Quality control")
    table.add_column("Step", style="cyan")
    table.add_column("Value", style="green", justify="right")
    table.add_row("Cells before", str(report.n_cells_before))
    table.add_row("Cells after", str(report.n_cells_after))
    table.add_row("Genes before", str(report.n_genes_before))
    table.add_row("Genes after", str(report.n_genes_after))
    for criterion, n in report.removed_by.items():
        table.add_row(f"  removed by {criterion}", str(n))
    table.add_row("Retained", f"{100 * report.fraction_retained:.1f}%")
    console.print(table)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(report.to_dict(), indent=2))
        console.print(f"[green]✓ QC report saved to {output}[/green]")


@main.command(name="train-scanvi")
@click.option(
    "--data",
    "-d",
    "data_path",
    type=click.Path(exists=True, path_type=Path),
    required=True,
    help="Dataset (.h5ad) with seed labels in --labels-key",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    required=True,
    help="Predictions file (.csv, .tsv or .parquet); metadata goes to <output>.json",
)
@click.option("--labels-key", default="singler_label", show_default=True, help="obs column with seed labels")
@click.option("--labelled-fraction", type=float, default=0.1, show_default=True)
@click.option("--n-top-genes", type=int, default=2000, show_default=True)
@click.option("--n-latent", type=int, default=30, show_default=True)
@click.option("--max-epochs-scvi", type=int, default=100, show_default=True)
@click.option("--max-epochs-scanvi", type=int, default=50, show_default=True)
@click.option("--batch-key", default=None, help="obs column for batch correction")
@click.option("--seed", type=int, default=0, show_default=True)
def train_scanvi_cmd(
    data_path: Path,
    output: Path,
    labels_key: str,
    labelled_fraction: float,
    n_top_genes: int,
    n_latent: int,
    max_epochs_scvi: int,
    max_epochs_scanvi: int,
    batch_key: str | None,
    seed: int,
) -> None:
    """Train scANVI and export predictions for the benchmark.

    Examples:
        # Seed from SingleR labels saved by a previous run
        annobench train-scanvi -d results/adata_annotated.h5ad \\
            -o results/scanvi_predictions.csv
    """
    from annobench.data.loader import load_dataset
    from annobench.pipeline.components.annotators.scanvi import export_predictions, train_scanvi

    adata = load_dataset(data_path)
    if labels_key not in adata.obs:
        console.print(f"[red]Column '{labels_key}' not in adata.obs. Have: {list(adata.obs.columns)}[/red]")
        raise click.Abort()

    console.print(f"[yellow]Training scANVI on {adata.n_obs} cells...[/yellow]")
    result = train_scanvi(
        adata,
        labels_key=labels_key,
        labelled_fraction=labelled_fraction,
        n_top_genes=n_top_genes,
        n_latent=n_latent,
        max_epochs_scvi=max_epochs_scvi,
        max_epochs_scanvi=max_epochs_scanvi,
        batch_key=batch_key,
        seed=seed,
    )
    export_predictions(result, output)
    console.print(
        f"[green]✓ {result.predictions_df.height} predictions saved to {output} "
        f"({result.runtime_seconds:.1f}s)[/green]"
    )


@main.command()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Benchmark config JSON (default: built-in defaults)",
)
@click.option(
    "--data",
    "-d",
    "data_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Override dataset path",
)
@click.option(
    "--output-dir",
    "-o",
    type=click.Path(path_type=Path),
    default=None,
    help="Override output directory",
)
@click.option(
    "--max-cells",
    type=int,
    default=None,
    help="Subsample to this many cells after QC",
)
@click.option("--fail-fast", is_flag=True, default=False, help="Stop at the first failing method")
def run(
    config_path: Path | None,
    data_path: Path | None,
    output_dir: Path | None,
    max_cells: int | None,
    fail_fast: bool,
) -> None:
    """Run the full annotation benchmark.

    Examples:
        # Defaults: download PBMC68k, write to ./results
        annobench run

        # Reuse a saved config on a local copy
        annobench run -c benchmark.json -d data/pbmc68k -o results/pbmc68k
    """
    from annobench.benchmark import BenchmarkRunner
    from annobench.config import BenchmarkConfig

    config = BenchmarkConfig.from_json(config_path) if config_path else BenchmarkConfig()
    if data_path is not None:
        config.dataset.path = str(data_path)
    if max_cells is not None:
        config.dataset.max_cells = max_cells
    if output_dir is not None:
        config.output.output_dir = str(output_dir)
    if fail_fast:
        config.fail_fast = True

    console.print(f"[bold blue]annobench: {config.name}[/bold blue]")
    console.print(f"Methods:    {', '.join(config.method_names())}")
    console.print(f"Reference:  {config.evaluation.reference} ({config.evaluation.level} labels)")
    console.print(f"Output:     {config.output_dir}")
    console.print()

    result = BenchmarkRunner(config).run()

    table = Table(title=f"Agreement with {config.evaluation.reference}")
    table.add_column("Method", style="cyan")
    for label in ("Accuracy", "Macro F1", "Micro F1", "Macro P", "Macro R"):
        table.add_column(label, style="green", justify="right")
    table.add_column("Time (s)", style="yellow", justify="right")

    if result.metrics.height:
        from annobench.evaluation.metrics import SUMMARY_METRICS, metrics_wide

        for row in metrics_wide(result.metrics).iter_rows(named=True):
            seconds = next(
                (r["seconds"] for r in result.runtime.iter_rows(named=True) if r["method"] == row["method"]),
                None,
            )
            table.add_row(
                row["method"],
                *[f"{row[m]:.3f}" for m in SUMMARY_METRICS],
                f"{seconds:.1f}" if seconds is not None else "-",
            )
    console.print(table)

    for method, error in result.failures.items():
        console.print(f"[red]✗ {method} failed: {error}[/red]")
    console.print(f"[green]✓ Results saved to {result.output_dir}[/green]")


if __name__ == "__main__":
    main()
