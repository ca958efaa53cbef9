"""heterocell: batch-aware clustering of single-cell expression data.

This package provides tools for:
- Parsing cell identifiers into metadata and joining external annotations
- Cell-level quality control with per-cell removal reasons
- Per-batch normalization and variable feature selection
- PCA, anchor-based CCA integration across batches and graph clustering
- Per-gene expression centiles with group listings
- Checkpointing the full analysis state to ``.h5ad``

Example usage:
    >>> from heterocell.io import load_count_table
    >>> from heterocell.pipeline import AnalysisConfig, AnalysisPipeline
    >>>
    >>> counts = load_count_table("counts.tsv.gz")
    >>> state = AnalysisPipeline(AnalysisConfig()).run(counts)
    >>> state.registry.latest_clustering().sizes()
"""

__version__ = "0.1.0"
