"""Benchmark run configuration.

A single pydantic model tree describes a full benchmark run: which dataset
to load, how to filter and embed it, which annotators to run with which
parameters, and how to score them. It round-trips through JSON so a run can
be reproduced from its saved config.

Example:
    ```python
    config = BenchmarkConfig(
        dataset=DatasetConfig(path="data/pbmc68k"),
        scanvi=ScANVISettings(predictions_path="results/scanvi_predictions.csv"),
    )
    config.to_json("benchmark.json")
    config = BenchmarkConfig.from_json("benchmark.json")
    ```
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from annobench.data.preprocessing import QCConfig


# ============================================================================
# Data
# ============================================================================


class DatasetConfig(BaseModel):
    """Where the count matrix comes from."""

    model_config = ConfigDict(extra="forbid")

    path: str | None = Field(
        default=None,
        description="10x mtx directory, 10x .h5 or .h5ad; None downloads PBMC68k",
    )
    cache_dir: str | None = Field(
        default=None,
        description="Download cache (default ~/.cache/annobench/datasets)",
    )
    max_cells: int | None = Field(
        default=None,
        ge=1,
        description="Randomly subsample to this many cells after QC (for quick runs)",
    )


class QCSettings(BaseModel):
    """Quality control thresholds (None disables a bound)."""

    model_config = ConfigDict(extra="forbid")

    min_counts: int | None = Field(default=500, ge=0)
    max_counts: int | None = Field(default=20000, ge=0)
    min_genes: int | None = Field(default=200, ge=0)
    max_genes: int | None = Field(default=2500, ge=0)
    min_cells: int | None = Field(default=3, ge=0, description="Minimum cells expressing a gene")
    max_pct_mito: float | None = Field(default=None, ge=0, le=100)
    mito_prefix: str = "MT-"

    @model_validator(mode="after")
    def check_bounds(self) -> "QCSettings":
        for low, high in (("min_counts", "max_counts"), ("min_genes", "max_genes")):
            lo, hi = getattr(self, low), getattr(self, high)
            if lo is not None and hi is not None and lo > hi:
                raise ValueError(f"{low} ({lo}) must not exceed {high} ({hi})")
        return self

    def to_qc_config(self) -> QCConfig:
        return QCConfig(**self.model_dump())


class EmbeddingSettings(BaseModel):
    """Normalization, HVG selection and visualization embeddings."""

    model_config = ConfigDict(extra="forbid")

    n_top_genes: int = Field(default=2000, ge=10)
    target_sum: float = Field(default=1e4, gt=0)
    n_pcs: int = Field(default=50, ge=2)
    n_neighbors: int = Field(default=15, ge=2)
    run_umap: bool = True
    run_tsne: bool = True


# ============================================================================
# Annotators
# ============================================================================


class CellAssignSettings(BaseModel):
    """CellAssign runs, one per marker matrix variant."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    marker_variants: list[Literal["basic", "refined"]] = Field(
        default_factory=lambda: ["basic", "refined"],
    )
    marker_file: str | None = Field(
        default=None,
        description="Custom gene x cell-type CSV/TSV; run as 'cellassign_custom'",
    )
    assign_prob: float = Field(default=0.95, ge=0, le=1)
    num_runs: int = Field(default=1, ge=1)
    max_epochs: int = Field(default=400, ge=1)
    learning_rate: float = Field(default=3e-3, gt=0)
    batch_size: int = Field(default=1024, ge=1)

    @field_validator("marker_variants")
    @classmethod
    def unique_variants(cls, v: list[str]) -> list[str]:
        if len(set(v)) != len(v):
            raise ValueError("marker_variants must not repeat")
        return v

    def method_names(self) -> list[str]:
        if not self.enabled:
            return []
        names = [f"cellassign_{variant}" for variant in self.marker_variants]
        if self.marker_file:
            names.append("cellassign_custom")
        return names


class SingleRSettings(BaseModel):
    """SingleR reference annotation (pseudo ground truth by default)."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    reference: Literal["hpca", "blueprint", "monaco", "novershtern"] = "hpca"
    label_level: Literal["main", "fine"] = "main"
    use_pruned: bool = True


class ScANVISettings(BaseModel):
    """scANVI predictions consumed by the report, and training parameters."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    predictions_path: str | None = Field(
        default=None,
        description="Exported predictions (default <output_dir>/scanvi_predictions.csv)",
    )
    train_if_missing: bool = False
    labels_key: str = Field(
        default="singler_label",
        description="obs column with seed labels for training",
    )
    labelled_fraction: float = Field(default=0.1, gt=0, le=1)
    n_top_genes: int = Field(default=2000, ge=10)
    n_latent: int = Field(default=30, ge=2)
    n_layers: int = Field(default=2, ge=1)
    max_epochs_scvi: int = Field(default=100, ge=1)
    max_epochs_scanvi: int = Field(default=50, ge=1)

    def train_kwargs(self) -> dict[str, Any]:
        return self.model_dump(
            include={
                "labelled_fraction",
                "n_top_genes",
                "n_latent",
                "n_layers",
                "max_epochs_scvi",
                "max_epochs_scanvi",
            }
        )


# ============================================================================
# Evaluation and output
# ============================================================================


class EvaluationSettings(BaseModel):
    """How predictions are aligned and scored."""

    model_config = ConfigDict(extra="forbid")

    reference: str = Field(default="singler", description="Method used as pseudo ground truth")
    level: Literal["coarse", "fine"] = "coarse"
    exclude_labels: list[str] = Field(
        default_factory=lambda: ["unassigned", "Other"],
        description="Cells with these reference labels are not scored",
    )


class OutputSettings(BaseModel):
    """What the run writes."""

    model_config = ConfigDict(extra="forbid")

    output_dir: str = "results"
    save_figures: bool = True
    save_adata: bool = True
    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"] = "INFO"


# ============================================================================
# Main configuration
# ============================================================================


class BenchmarkConfig(BaseModel):
    """Configuration for one benchmark run."""

    model_config = ConfigDict(extra="forbid", validate_default=True)

    name: str = "pbmc68k-annotation-benchmark"
    seed: int = 0
    fail_fast: bool = Field(
        default=False,
        description="Abort on the first failing method instead of skipping it",
    )

    dataset: DatasetConfig = Field(default_factory=DatasetConfig)
    qc: QCSettings = Field(default_factory=QCSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    cellassign: CellAssignSettings = Field(default_factory=CellAssignSettings)
    singler: SingleRSettings = Field(default_factory=SingleRSettings)
    scanvi: ScANVISettings = Field(default_factory=ScANVISettings)
    evaluation: EvaluationSettings = Field(default_factory=EvaluationSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)

    @model_validator(mode="after")
    def check_reference(self) -> "BenchmarkConfig":
        methods = self.method_names()
        if not methods:
            raise ValueError("At least one annotation method must be enabled")
        if self.evaluation.reference not in methods:
            raise ValueError(
                f"Reference method '{self.evaluation.reference}' is not enabled. "
                f"Enabled: {', '.join(methods)}"
            )
        return self

    def method_names(self) -> list[str]:
        """Names of every enabled method, in run order."""
        names = []
        if self.singler.enabled:
            names.append("singler")
        names.extend(self.cellassign.method_names())
        if self.scanvi.enabled:
            names.append("scanvi")
        return names

    @property
    def output_dir(self) -> Path:
        return Path(self.output.output_dir)

    def scanvi_predictions_path(self) -> Path:
        if self.scanvi.predictions_path:
            return Path(self.scanvi.predictions_path)
        return self.output_dir / "scanvi_predictions.csv"

    def to_json(self, path: str | Path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2))
        return path

    @classmethod
    def from_json(cls, path: str | Path) -> "BenchmarkConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return cls.model_validate(json.loads(path.read_text()))
