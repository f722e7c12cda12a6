"""Cell type label harmonization across annotation tools.

Each tool speaks its own vocabulary: marker-list names for CellAssign,
celldex reference labels for SingleR, training labels for scANVI. This
module defines:
- FINE_CLASS_NAMES / COARSE_CLASS_NAMES: Shared benchmark vocabulary
- MARKER_TO_FINE, SINGLER_TO_FINE, SCANVI_TO_FINE: Fixed per-tool tables
- FINE_TO_COARSE: Collapse CD4/CD8 and monocyte subsets
- harmonize_label(): Resolve any label onto the shared vocabulary

Exact table lookups come first; labels not in any table fall back to
ordered keyword rules. More specific rules come first.
"""

from __future__ import annotations

import math
import re
from functools import lru_cache

from annobench.pipeline.base import UNASSIGNED

OTHER = "Other"

LEVELS = ("coarse", "fine")

# Shared vocabulary (fine). "T cell" and "Monocyte" hold labels that a tool
# does not split further.
FINE_CLASS_NAMES = [
    "B cell",
    "CD4 T cell",
    "CD8 T cell",
    "T cell",
    "NK cell",
    "CD14 monocyte",
    "FCGR3A monocyte",
    "Monocyte",
    "Dendritic cell",
    "Megakaryocyte",
]

COARSE_CLASS_NAMES = [
    "B cell",
    "Dendritic cell",
    "Megakaryocyte",
    "Monocyte",
    "NK cell",
    "T cell",
]

FINE_TO_COARSE: dict[str, str] = {
    "B cell": "B cell",
    "CD4 T cell": "T cell",
    "CD8 T cell": "T cell",
    "T cell": "T cell",
    "NK cell": "NK cell",
    "CD14 monocyte": "Monocyte",
    "FCGR3A monocyte": "Monocyte",
    "Monocyte": "Monocyte",
    "Dendritic cell": "Dendritic cell",
    "Megakaryocyte": "Megakaryocyte",
}


# =============================================================================
# Marker list names (annobench.markers)
# =============================================================================

MARKER_TO_FINE: dict[str, str] = {
    "B cells": "B cell",
    "T cells": "T cell",
    "CD4 T cells": "CD4 T cell",
    "CD8 T cells": "CD8 T cell",
    "NK cells": "NK cell",
    "Monocytes": "Monocyte",
    "CD14+ Monocytes": "CD14 monocyte",
    "FCGR3A+ Monocytes": "FCGR3A monocyte",
    "Dendritic cells": "Dendritic cell",
    "Megakaryocytes": "Megakaryocyte",
    "other": OTHER,
}


# =============================================================================
# SingleR / celldex reference labels (label.main and PBMC label.fine)
# =============================================================================

SINGLER_TO_FINE: dict[str, str] = {
    # HumanPrimaryCellAtlasData
    "B_cell": "B cell",
    "Pre-B_cell_CD34-": "B cell",
    "Pro-B_cell_CD34+": "B cell",
    "T_cells": "T cell",
    "NK_cell": "NK cell",
    "Monocyte": "Monocyte",
    "DC": "Dendritic cell",
    "Platelets": "Megakaryocyte",
    # BlueprintEncodeData
    "B-cells": "B cell",
    "CD4+ T-cells": "CD4 T cell",
    "CD8+ T-cells": "CD8 T cell",
    "Monocytes": "Monocyte",
    "Megakaryocytes": "Megakaryocyte",
    # MonacoImmuneData / NovershternHematopoieticData
    "B cells": "B cell",
    "CD4+ T cells": "CD4 T cell",
    "CD8+ T cells": "CD8 T cell",
    "T cells": "T cell",
    "NK cells": "NK cell",
    "NK T cells": "T cell",
    "Dendritic cells": "Dendritic cell",
    "Classical monocytes": "CD14 monocyte",
    "Non classical monocytes": "FCGR3A monocyte",
    "Intermediate monocytes": "Monocyte",
    # HumanPrimaryCellAtlasData (label.fine)
    "Monocyte:CD14+": "CD14 monocyte",
    "Monocyte:CD16-": "CD14 monocyte",
    "Monocyte:CD16+": "FCGR3A monocyte",
    "T_cell:CD4+": "CD4 T cell",
    "T_cell:CD4+_Naive": "CD4 T cell",
    "T_cell:CD4+_central_memory": "CD4 T cell",
    "T_cell:CD4+_effector_memory": "CD4 T cell",
    "T_cell:Treg:Naive": "CD4 T cell",
    "T_cell:CD8+": "CD8 T cell",
    "T_cell:CD8+_naive": "CD8 T cell",
    "T_cell:CD8+_Central_memory": "CD8 T cell",
    "T_cell:CD8+_effector_memory": "CD8 T cell",
    "T_cell:CD8+_effector_memory_RA": "CD8 T cell",
    "T_cell:gamma-delta": "T cell",
    "B_cell:Naive": "B cell",
    "B_cell:Memory": "B cell",
    "B_cell:immature": "B cell",
    "B_cell:Plasma_cell": "B cell",
    "NK_cell:CD56hiCD62L+": "NK cell",
    "NK_cell:IL2": "NK cell",
    "Macrophage:monocyte-derived": OTHER,
    # MonacoImmuneData (label.fine)
    "Naive CD4 T cells": "CD4 T cell",
    "T regulatory cells": "CD4 T cell",
    "Th1 cells": "CD4 T cell",
    "Th1/Th17 cells": "CD4 T cell",
    "Th17 cells": "CD4 T cell",
    "Th2 cells": "CD4 T cell",
    "Follicular helper T cells": "CD4 T cell",
    "Terminal effector CD4 T cells": "CD4 T cell",
    "Naive CD8 T cells": "CD8 T cell",
    "Central memory CD8 T cells": "CD8 T cell",
    "Effector memory CD8 T cells": "CD8 T cell",
    "Terminal effector CD8 T cells": "CD8 T cell",
    "MAIT cells": "T cell",
    "Vd2 gd T cells": "T cell",
    "Non-Vd2 gd T cells": "T cell",
    "Naive B cells": "B cell",
    "Non-switched memory B cells": "B cell",
    "Switched memory B cells": "B cell",
    "Exhausted B cells": "B cell",
    "Plasmablasts": "B cell",
    "Natural killer cells": "NK cell",
    "Plasmacytoid dendritic cells": "Dendritic cell",
    "Myeloid dendritic cells": "Dendritic cell",
    "Progenitor cells": OTHER,
    "Low-density neutrophils": OTHER,
    "Low-density basophils": OTHER,
    # NovershternHematopoieticData (label.fine)
    "CD4+ Central Memory": "CD4 T cell",
    "CD4+ Effector Memory": "CD4 T cell",
    "Naïve CD4+ T cells": "CD4 T cell",
    "CD8+ Central Memory": "CD8 T cell",
    "CD8+ Effector Memory": "CD8 T cell",
    "CD8+ Effector Memory RA": "CD8 T cell",
    "Naïve CD8+ T cells": "CD8 T cell",
    "Early B cells": "B cell",
    "Pro B cells": "B cell",
    "Mature B cells": "B cell",
    "Mature B cells class able to switch": "B cell",
    "Mature B cells class switched": "B cell",
    "Mature NK cells_CD56- CD16+ CD3-": "NK cell",
    "Mature NK cells_CD56+ CD16+ CD3-": "NK cell",
    "Mature NK cells_CD56- CD16- CD3-": "NK cell",
    "Myeloid Dendritic Cells": "Dendritic cell",
    "Plasmacytoid Dendritic Cells": "Dendritic cell",
    "Granulocyte/monocyte progenitors": OTHER,
    "Megakaryocyte/erythroid progenitors": OTHER,
    "Common myeloid progenitors": OTHER,
    "Colony Forming Unit-Monocytes": OTHER,
    "Colony Forming Unit-Megakaryocytic": OTHER,
}


# =============================================================================
# scANVI labels (trained on harmonized labels, or 10x PBMC label names)
# =============================================================================

SCANVI_TO_FINE: dict[str, str] = {
    **{name: name for name in FINE_CLASS_NAMES},
    "B cells": "B cell",
    "CD4 T cells": "CD4 T cell",
    "CD8 T cells": "CD8 T cell",
    "NK cells": "NK cell",
    "CD14+ Monocytes": "CD14 monocyte",
    "FCGR3A+ Monocytes": "FCGR3A monocyte",
    "Dendritic Cells": "Dendritic cell",
    "Megakaryocytes": "Megakaryocyte",
    OTHER: OTHER,
}

SOURCE_TABLES: dict[str, dict[str, str]] = {
    "markers": MARKER_TO_FINE,
    "cellassign": MARKER_TO_FINE,
    "singler": SINGLER_TO_FINE,
    "scanvi": SCANVI_TO_FINE,
}

# Labels that mean "no call"
_UNASSIGNED_TOKENS = {"", "unassigned", "unknown", "na", "nan", "none", "<na>"}

# Keyword fallback rules, checked in order against the lowercased label
_KEYWORD_RULES: list[tuple[re.Pattern[str], str]] = [
    # Progenitors and tissue myeloid cells share names with mature PBMC types
    (
        re.compile(r"macrophage|progenitor|precursor|colony forming|stem cell|\bhscs?\b|\bgmps?\b|\bmeps?\b|\bcmps?\b"),
        OTHER,
    ),
    (re.compile(r"nk[ _-]?t\b|nkt|mait|gamma.?delta|gd[ _]t"), "T cell"),
    (re.compile(r"cd4|treg|regulatory t|\bth\d+|t follicular|tfh"), "CD4 T cell"),
    (re.compile(r"cd8"), "CD8 T cell"),
    (re.compile(r"dendritic|\bdc\b|dc:|\bp?dc|\bcdc|\bmdc"), "Dendritic cell"),
    (re.compile(r"non[ _-]?classical|cd16\+?[ _]mono|monocyte:cd16\+|fcgr3a"), "FCGR3A monocyte"),
    (re.compile(r"classical mono|cd14"), "CD14 monocyte"),
    (re.compile(r"mono"), "Monocyte"),
    (re.compile(r"natural killer|\bnk\b|nk[ _]cell"), "NK cell"),
    (re.compile(r"\bb[ _-]?cell|plasmablast|\bb cells"), "B cell"),
    (re.compile(r"megakaryocyte|platelet"), "Megakaryocyte"),
    (re.compile(r"t[ _-]?cell|\bt cells|\btcm\b|\btem\b|thymocyte"), "T cell"),
]


def is_unassigned(label: object) -> bool:
    """Whether a label represents a missing or rejected call."""
    if label is None:
        return True
    if isinstance(label, float) and math.isnan(label):
        return True
    return str(label).strip().lower() in _UNASSIGNED_TOKENS


def _keyword_match(label: str) -> str | None:
    label_lower = label.lower()
    for pattern, fine in _KEYWORD_RULES:
        if pattern.search(label_lower):
            return fine
    return None


@lru_cache(maxsize=4096)
def _resolve_fine(label: str, source: str | None) -> str:
    if source is not None:
        table = SOURCE_TABLES.get(source)
        if table is not None and label in table:
            return table[label]

    # Exact match against any table
    for table in SOURCE_TABLES.values():
        if label in table:
            return table[label]

    return _keyword_match(label) or OTHER


def harmonize_label(
    label: object,
    source: str | None = None,
    level: str = "coarse",
) -> str:
    """Map a tool-specific label onto the shared benchmark vocabulary.

    Args:
        label: Label as emitted by the tool
        source: Tool vocabulary ("markers", "cellassign", "singler", "scanvi").
            None tries every table.
        level: "fine" keeps CD4/CD8 and monocyte subsets, "coarse" collapses them

    Returns:
        Shared label, "unassigned" for missing calls, or "Other"
    """
    if level not in LEVELS:
        raise ValueError(f"Unknown harmonization level '{level}'. Available: {', '.join(LEVELS)}")

    if is_unassigned(label):
        return UNASSIGNED

    fine = _resolve_fine(str(label).strip(), source)
    if fine == OTHER or level == "fine":
        return fine
    return FINE_TO_COARSE[fine]


def harmonize_labels(
    labels: list[object],
    source: str | None = None,
    level: str = "coarse",
) -> list[str]:
    """Vectorized harmonize_label()."""
    return [harmonize_label(label, source=source, level=level) for label in labels]


def get_class_names(level: str = "coarse") -> list[str]:
    """Get the list of shared class names for a harmonization level."""
    if level not in LEVELS:
        raise ValueError(f"Unknown harmonization level '{level}'. Available: {', '.join(LEVELS)}")
    return FINE_CLASS_NAMES if level == "fine" else COARSE_CLASS_NAMES


def mapping_table(source: str, level: str = "coarse") -> dict[str, str]:
    """Return the full label table for a source at the given level."""
    if source not in SOURCE_TABLES:
        available = ", ".join(SOURCE_TABLES.keys())
        raise ValueError(f"Unknown label source '{source}'. Available: {available}")
    return {
        label: harmonize_label(label, source=source, level=level)
        for label in SOURCE_TABLES[source]
    }
