"""Base classes and protocols for the annotation benchmark.

This module defines the core abstractions shared by every annotator:
- AnnotationConfig: Per-run annotator parameters
- AnnotationResult: Standardized annotator output
- AnnotatorProtocol: Structural interface for annotators

Protocols are used for annotators to enable structural subtyping -
components just need to implement the required methods without
inheriting from a base class.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import numpy as np
import pandas as pd
import polars as pl


# Columns every annotations_df carries
ANNOTATION_COLUMNS = ["cell_id", "predicted_type", "harmonized_type", "confidence"]

UNASSIGNED = "unassigned"


# =============================================================================
# Annotation Types
# =============================================================================


@dataclass
class AnnotationConfig:
    """Configuration shared by all annotators.

    Method-specific options live on the annotator constructors; this holds
    what the benchmark sets uniformly across methods.
    """

    # Label harmonization level: "coarse" or "fine"
    level: str = "coarse"

    # Marker matrix variant used by marker-based methods
    marker_variant: str = "refined"

    # Layer holding raw counts (None = use X)
    counts_layer: str | None = "counts"

    # Column in adata.obs with size factors (computed if missing)
    size_factor_key: str = "size_factor"

    seed: int = 0


@dataclass
class AnnotationResult:
    """Output from cell type annotation.

    Contains per-cell predictions in a method-specific vocabulary, the same
    labels mapped onto the shared benchmark vocabulary, and a confidence.
    """

    # Annotations (cell_id, predicted_type, harmonized_type, confidence)
    annotations_df: pl.DataFrame

    # Cell x label probability matrix (CellAssign gamma, scANVI soft predictions)
    probabilities: pd.DataFrame | None = None

    # Wall-clock seconds measured outside this process (e.g. scANVI training)
    external_runtime: float | None = None

    # Statistics
    stats: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        missing = [c for c in ANNOTATION_COLUMNS if c not in self.annotations_df.columns]
        if missing:
            raise ValueError(f"annotations_df is missing columns: {missing}")
        n_dup = self.annotations_df.height - self.annotations_df["cell_id"].n_unique()
        if n_dup:
            raise ValueError(f"annotations_df has {n_dup} duplicated cell_id rows")

    @property
    def n_annotated(self) -> int:
        """Number of cells with an assigned label."""
        return self.annotations_df.filter(
            pl.col("predicted_type") != UNASSIGNED
        ).height

    @property
    def n_cells(self) -> int:
        """Number of cells in the result."""
        return self.annotations_df.height

    def get_class_distribution(self, harmonized: bool = True) -> dict[str, int]:
        """Return counts per class."""
        col = "harmonized_type" if harmonized else "predicted_type"
        counts = self.annotations_df.group_by(col).len()
        return dict(zip(counts[col].to_list(), counts["len"].to_list()))


def build_annotations_df(
    cell_ids: list[str],
    predicted: list[str],
    harmonized: list[str],
    confidence: np.ndarray | list[float] | None = None,
) -> pl.DataFrame:
    """Assemble an annotations DataFrame with the standard columns."""
    if confidence is None:
        confidence = [float("nan")] * len(cell_ids)
    if not (len(cell_ids) == len(predicted) == len(harmonized) == len(confidence)):
        raise ValueError("cell_ids, predicted, harmonized and confidence must align")

    return pl.DataFrame(
        {
            "cell_id": [str(c) for c in cell_ids],
            "predicted_type": [str(p) for p in predicted],
            "harmonized_type": [str(h) for h in harmonized],
            "confidence": np.asarray(confidence, dtype=float).tolist(),
        }
    )


@runtime_checkable
class AnnotatorProtocol(Protocol):
    """Protocol for annotator implementations.

    Annotators assign cell type labels using various methods:
    - CellAssign: Marker-based probabilistic assignment
    - SingleR: Reference correlation
    - scANVI: Semi-supervised label transfer (predictions file)
    """

    name: str

    def annotate(
        self,
        config: AnnotationConfig | None = None,
        adata: Any | None = None,  # AnnData object
        expression_path: Path | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels.

        At least one of adata or expression_path must be provided.

        Args:
            config: Annotation parameters
            adata: AnnData object with expression data
            expression_path: Path to expression matrix (h5, h5ad)

        Returns:
            Annotation results with cell types and confidence
        """
        ...
