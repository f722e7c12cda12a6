"""Annotation pipeline: shared types, registry and annotator components.

Usage:
    from annobench.pipeline import AnnotationConfig, get_annotator

    annotator = get_annotator("singler", AnnotationConfig(level="coarse"))
    result = annotator.annotate(adata=adata)
"""

from annobench.pipeline.base import (
    UNASSIGNED,
    AnnotationConfig,
    AnnotationResult,
    AnnotatorProtocol,
    build_annotations_df,
)
from annobench.pipeline.registry import (
    get_annotator,
    get_annotator_class,
    list_annotators,
    register_annotator,
)

# Register built-in annotators
from annobench.pipeline import components  # noqa: E402,F401

__all__ = [
    "UNASSIGNED",
    "AnnotationConfig",
    "AnnotationResult",
    "AnnotatorProtocol",
    "build_annotations_df",
    "get_annotator",
    "get_annotator_class",
    "list_annotators",
    "register_annotator",
]
