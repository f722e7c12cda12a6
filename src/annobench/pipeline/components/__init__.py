"""Swappable benchmark components.

Components are registered with the pipeline registry and can be
selected at runtime via configuration:

Annotators (cell type labeling):
- cellassign: Marker-based probabilistic assignment
- singler: Reference correlation (pseudo ground truth)
- scanvi: Semi-supervised label transfer
"""

# Import subpackages to trigger registration
from annobench.pipeline.components import annotators

__all__ = ["annotators"]
