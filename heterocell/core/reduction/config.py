"""Configuration classes for dimensionality reduction and integration."""

from dataclasses import dataclass


@dataclass
class PCAConfig:
    """Configuration for PCA on scaled selected features.

    Attributes
    ----------
    n_components : int
        Number of components to keep
    scale_clip : float
        Scaled values are clipped to [-scale_clip, scale_clip]
    min_eigenvalue : float
        Components with eigenvalue at or below this value are excluded as
        degenerate
    """

    n_components: int = 30
    scale_clip: float = 10.0
    min_eigenvalue: float = 1e-10


@dataclass
class IntegrationConfig:
    """Configuration for canonical-correlation batch integration.

    Attributes
    ----------
    n_canonical : int
        Canonical directions computed per batch pair
    k_anchor : int
        Neighbors searched for mutual nearest-neighbor anchors
    k_weight : int
        Anchors used to weight each query cell's correction
    sd_weight : float
        Gaussian kernel bandwidth for anchor weights
    min_canonical_rank : int
        Minimum numerical rank of the cross-batch structure; below this the
        pair fails with InsufficientOverlap
    min_anchors : int
        Minimum anchors a pair must share
    tolerate_partial : bool
        Keep failed batches uncorrected instead of aborting
    n_jobs : int
        Workers for pairwise anchor search (1 = sequential)
    """

    n_canonical: int = 20
    k_anchor: int = 5
    k_weight: int = 100
    sd_weight: float = 1.0
    min_canonical_rank: int = 5
    min_anchors: int = 10
    tolerate_partial: bool = False
    n_jobs: int = 1
