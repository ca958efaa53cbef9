"""Dimensionality reduction and batch integration.

Example Usage
-------------
>>> from heterocell.core.reduction import PCAReducer, CCAIntegrator
>>> pca = PCAReducer().fit(normalized, features.selected)
>>> integrated = CCAIntegrator().integrate(pca.embedding, partition.cell_batches())
"""

from .config import PCAConfig, IntegrationConfig
from .pca import PCAReducer, PCAResult, scale_features, suggest_elbow
from .integration import (
    CCAIntegrator,
    IntegrationResult,
    PairAnchors,
    anchor_weights,
    find_pair_anchors,
    mutual_nearest_neighbors,
    reduction_order,
)

__all__ = [
    "PCAConfig",
    "IntegrationConfig",
    "PCAReducer",
    "PCAResult",
    "scale_features",
    "suggest_elbow",
    "CCAIntegrator",
    "IntegrationResult",
    "PairAnchors",
    "anchor_weights",
    "find_pair_anchors",
    "mutual_nearest_neighbors",
    "reduction_order",
]
