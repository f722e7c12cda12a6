"""SingleR-based cell type annotation component.

This module wraps SingleR (R-based reference annotation) via rpy2,
providing a pipeline-compatible interface with standard AnnotationResult output.

SingleR is an R package that uses correlation-based assignment to annotate
cells against reference datasets. In this benchmark its labels serve as the
pseudo ground truth the other methods are scored against.

Requires R with SingleR and celldex packages installed:
    R -e 'BiocManager::install(c("SingleR", "celldex"))'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import scipy.sparse as sp
from loguru import logger

from annobench.data.loader import get_counts
from annobench.pipeline.base import (
    UNASSIGNED,
    AnnotationConfig,
    AnnotationResult,
    build_annotations_df,
)
from annobench.pipeline.components.annotators.mapping import harmonize_labels, is_unassigned
from annobench.pipeline.registry import register_annotator


# Available SingleR reference datasets
SINGLER_REFERENCES = {
    "hpca": "HumanPrimaryCellAtlasData",  # General human cell atlas
    "blueprint": "BlueprintEncodeData",  # Blood and stroma
    "monaco": "MonacoImmuneData",  # Detailed immune subtypes (PBMC)
    "novershtern": "NovershternHematopoieticData",  # Hematopoietic lineages
}

LABEL_COLUMNS = {
    "main": "label.main",
    "fine": "label.fine",
}

MIN_COMMON_GENES = 50


def is_singler_available() -> bool:
    """Check if rpy2 and SingleR R packages are available."""
    try:
        from rpy2.robjects.packages import importr

        importr("SingleR")
        importr("celldex")
        return True
    except Exception as e:
        logger.debug(f"SingleR not available: {e}")
        return False


def log_normalize(counts: Any, target_sum: float = 1e4) -> np.ndarray:
    """log1p(counts / library size * target_sum) as a dense cells x genes array."""
    if sp.issparse(counts):
        counts = counts.toarray()
    counts = np.asarray(counts, dtype=float)
    lib_sizes = counts.sum(axis=1, keepdims=True)
    lib_sizes[lib_sizes == 0] = 1  # Avoid division by zero
    return np.log1p(counts / lib_sizes * target_sum)


def normalize_confidence(scores: np.ndarray) -> np.ndarray:
    """Max correlation per cell rescaled from [-1, 1] to [0, 1]."""
    scores = np.asarray(scores, dtype=float)
    best = scores if scores.ndim == 1 else scores.max(axis=1)
    return (best + 1) / 2


@register_annotator
class SingleRAnnotator:
    """Cell type annotation using SingleR via rpy2.

    SingleR is an R-based reference-based annotation method that uses
    correlation to assign cell types. Supports multiple reference datasets
    from the celldex package.
    """

    name = "singler"

    def __init__(
        self,
        config: AnnotationConfig | None = None,
        reference: str = "hpca",
        label_level: str = "main",
        use_pruned: bool = True,
        de_method: str = "classic",
    ):
        """Initialize the SingleR annotator.

        Args:
            config: Annotation configuration. If None, uses defaults.
            reference: celldex reference key (see SINGLER_REFERENCES)
            label_level: "main" or "fine" reference labels
            use_pruned: Report SingleR's pruned labels (low-quality calls
                become "unassigned")
            de_method: Marker detection method passed to SingleR
        """
        if reference not in SINGLER_REFERENCES:
            available = ", ".join(SINGLER_REFERENCES.keys())
            raise ValueError(f"Unknown SingleR reference '{reference}'. Available: {available}")
        if label_level not in LABEL_COLUMNS:
            raise ValueError(f"label_level must be 'main' or 'fine', got '{label_level}'")

        self.config = config or AnnotationConfig()
        self.reference = reference
        self.label_level = label_level
        self.use_pruned = use_pruned
        self.de_method = de_method

    def annotate(
        self,
        config: AnnotationConfig | None = None,
        adata: ad.AnnData | None = None,
        expression_path: Path | None = None,
    ) -> AnnotationResult:
        """Annotate cells with type labels using SingleR.

        Args:
            config: Override config for this call
            adata: AnnData object with expression data
            expression_path: Path to expression matrix (h5, h5ad)

        Returns:
            Annotation results with cell types and confidence
        """
        cfg = config or self.config

        if adata is None and expression_path is None:
            raise ValueError(
                "SingleRAnnotator requires either adata or expression_path"
            )

        if adata is None and expression_path is not None:
            from annobench.data.loader import load_dataset

            adata = load_dataset(expression_path)

        if not is_singler_available():
            raise RuntimeError(
                "SingleR not available. Requires rpy2 and R with SingleR and celldex packages. "
                "Install with: R -e 'BiocManager::install(c(\"SingleR\", \"celldex\"))'"
            )

        expr_norm = log_normalize(get_counts(adata, cfg.counts_layer))
        raw_labels, pruned_labels, scores, n_common = self._run_singler(
            expr_norm, list(adata.var_names), list(adata.obs_names)
        )

        labels = pruned_labels if self.use_pruned else raw_labels
        labels = [UNASSIGNED if is_unassigned(label) else label for label in labels]
        harmonized = harmonize_labels(labels, source="singler", level=cfg.level)

        annotations_df = build_annotations_df(
            cell_ids=list(adata.obs_names),
            predicted=labels,
            harmonized=harmonized,
            confidence=normalize_confidence(scores),
        )

        result = AnnotationResult(
            annotations_df=annotations_df,
            stats={
                "method": "singler",
                "reference": self.reference,
                "label_level": self.label_level,
                "n_common_genes": n_common,
                "n_pruned": sum(label == UNASSIGNED for label in labels),
            },
        )
        result.stats["n_annotated"] = result.n_annotated
        result.stats["class_distribution"] = result.get_class_distribution(harmonized=False)

        logger.info(f"SingleR annotation complete: {result.n_cells} cells")
        for label, count in sorted(result.stats["class_distribution"].items(), key=lambda x: -x[1]):
            logger.info(f"  {label}: {count} ({100 * count / result.n_cells:.1f}%)")

        return result

    def _run_singler(
        self,
        expr_norm: np.ndarray,
        genes: list[str],
        cell_names: list[str],
    ) -> tuple[list[str], list[str | None], np.ndarray, int]:
        """Run SingleR annotation via rpy2.

        Args:
            expr_norm: Log-normalized cells x genes matrix
            genes: Gene symbols (columns of expr_norm)
            cell_names: Cell barcodes (rows of expr_norm)

        Returns:
            (labels, pruned labels with None for NA, score matrix, n common genes)
        """
        import rpy2.robjects as ro
        from rpy2.robjects.packages import importr

        logger.info(f"Running SingleR annotation with {self.reference} reference...")

        singler = importr("SingleR")
        celldex = importr("celldex")

        ref_func_name = SINGLER_REFERENCES[self.reference]
        logger.info(f"Loading reference: {ref_func_name}")
        ref_data = getattr(celldex, ref_func_name)()

        ref_genes = set(ro.r.rownames(ref_data))
        common_genes = [g for g in genes if g in ref_genes]
        logger.info(
            f"Common genes: {len(common_genes)} / {len(genes)} "
            f"({100 * len(common_genes) / max(len(genes), 1):.1f}%)"
        )
        if not common_genes:
            raise ValueError("No genes shared between the dataset and the SingleR reference")
        if len(common_genes) < MIN_COMMON_GENES:
            logger.warning(
                f"Low gene overlap ({len(common_genes)} genes). Results may be unreliable."
            )

        gene_index = {g: i for i, g in enumerate(genes)}
        gene_indices = [gene_index[g] for g in common_genes]

        # Genes as rows, cells as columns
        dimnames = ro.r.list(ro.StrVector(common_genes), ro.StrVector(cell_names))
        # R fills matrices column-major, so each cell's genes are contiguous
        expr_subset = ro.r.matrix(
            ro.FloatVector(expr_norm[:, gene_indices].flatten()),
            nrow=len(common_genes),
            ncol=expr_norm.shape[0],
            dimnames=dimnames,
        )

        ref_subset = ro.r["["](ref_data, ro.StrVector(common_genes), True)
        label_col = LABEL_COLUMNS[self.label_level]
        labels = ro.r(f"function(x) x${label_col}")(ref_data)

        logger.info("Running SingleR prediction...")
        results = singler.SingleR(
            test=expr_subset,
            ref=ref_subset,
            labels=labels,
            de_method=self.de_method,
        )

        pred_labels = [str(x) for x in ro.r("function(x) x$labels")(results)]
        pruned = ro.r("function(x) ifelse(is.na(x$pruned.labels), '', x$pruned.labels)")(results)
        pruned_labels = [str(x) or None for x in pruned]
        scores = np.array(ro.r("function(x) x$scores")(results))

        return pred_labels, pruned_labels, scores, len(common_genes)
