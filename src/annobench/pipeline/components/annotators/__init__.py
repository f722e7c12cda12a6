"""Cell type annotation components.

Available annotators:
- CellAssignAnnotator: Marker-based probabilistic assignment (scvi-tools)
- SingleRAnnotator: Reference correlation via rpy2 (pseudo ground truth)
- ScANVIAnnotator: Semi-supervised label transfer from exported predictions

Usage:
    from annobench.pipeline import get_annotator

    annotator = get_annotator("cellassign", config)
    result = annotator.annotate(config, adata=adata)
"""

from annobench.pipeline.components.annotators.cellassign import (
    CellAssignAnnotator,
    celltypes_from_probabilities,
)
from annobench.pipeline.components.annotators.mapping import (
    COARSE_CLASS_NAMES,
    FINE_CLASS_NAMES,
    get_class_names,
    harmonize_label,
    harmonize_labels,
)
from annobench.pipeline.components.annotators.scanvi import (
    ScANVIAnnotator,
    export_predictions,
    load_predictions,
    train_scanvi,
)
from annobench.pipeline.components.annotators.singler import (
    SingleRAnnotator,
    is_singler_available,
)

__all__ = [
    "CellAssignAnnotator",
    "SingleRAnnotator",
    "ScANVIAnnotator",
    "celltypes_from_probabilities",
    "is_singler_available",
    "train_scanvi",
    "export_predictions",
    "load_predictions",
    "COARSE_CLASS_NAMES",
    "FINE_CLASS_NAMES",
    "get_class_names",
    "harmonize_label",
    "harmonize_labels",
]
