"""Graph-based clustering and descriptive projections.

Example Usage
-------------
>>> from heterocell.core.clustering import GraphClusterer, ClusteringConfig
>>> result = GraphClusterer(ClusteringConfig(resolution=0.5)).cluster(embedding)
>>> result.assignment.labels.head()
"""

from .config import ClusteringConfig, ProjectionConfig
from .graph import knn_indices, snn_graph, to_igraph
from .engine import ClusteringResult, GraphClusterer, renumber_by_size, run_leiden
from .projection import EmbeddingProjector, PROJECTION_METHODS

__all__ = [
    # Config
    "ClusteringConfig",
    "ProjectionConfig",
    # Graph
    "knn_indices",
    "snn_graph",
    "to_igraph",
    # Engine
    "GraphClusterer",
    "ClusteringResult",
    "renumber_by_size",
    "run_leiden",
    # Projection
    "EmbeddingProjector",
    "PROJECTION_METHODS",
]
