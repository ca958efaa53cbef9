"""Core computational modules for heterocell.

This package contains the analysis stages:
- preprocessing: metadata, QC, batch views, normalization, feature selection
- reduction: PCA and canonical-correlation integration
- clustering: SNN graph Leiden clustering and 2D projections
- centiles: per-gene expression centiles and threshold extraction

Shared data containers live in ``matrix`` (ExpressionMatrix) and
``registry`` (typed embeddings and cluster assignments).
"""

from .matrix import ExpressionMatrix, DEFAULT_MITO_PATTERN
from .registry import (
    ClusterAssignment,
    ClusterKey,
    Embedding,
    EmbeddingKey,
    ResultRegistry,
)

__all__ = [
    "ExpressionMatrix",
    "DEFAULT_MITO_PATTERN",
    "ClusterAssignment",
    "ClusterKey",
    "Embedding",
    "EmbeddingKey",
    "ResultRegistry",
]
