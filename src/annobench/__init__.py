"""annobench: Benchmark of automatic cell type annotation tools on PBMC68k.

Compares CellAssign, SingleR and scANVI after harmonizing their label
vocabularies, using SingleR as the pseudo ground truth.
"""

__version__ = "0.1.0"
