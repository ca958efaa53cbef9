"""Configuration classes for graph clustering and embedding projection."""

from dataclasses import dataclass


@dataclass
class ClusteringConfig:
    """Configuration for shared-nearest-neighbor Leiden clustering.

    Attributes
    ----------
    n_dims : int
        Leading embedding dimensions used for the neighbor graph
    k : int
        Neighbors per cell, the cell itself included
    prune_snn : float
        Jaccard weights below this value are removed from the graph
    resolution : float
        Modularity resolution parameter
    n_iterations : int
        Leiden iterations (negative runs until convergence)
    seed : int
        Seed for community detection
    """

    n_dims: int = 15
    k: int = 20
    prune_snn: float = 1.0 / 15.0
    resolution: float = 0.5
    n_iterations: int = 2
    seed: int = 1337


@dataclass
class ProjectionConfig:
    """Configuration for the descriptive 2D projection.

    Attributes
    ----------
    enabled : bool
        Run the projection stage in the pipeline
    method : str
        ``umap`` or ``tsne``
    n_dims : int
        Leading embedding dimensions fed to the projection
    n_neighbors : int
        Neighborhood size of the UMAP graph
    min_dist : float
        UMAP minimum distance
    perplexity : float
        t-SNE perplexity
    seed : int
        Random seed
    """

    enabled: bool = False
    method: str = "umap"
    n_dims: int = 15
    n_neighbors: int = 30
    min_dist: float = 0.3
    perplexity: float = 30.0
    seed: int = 1337
