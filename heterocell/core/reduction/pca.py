"""Principal component analysis on scaled selected features.

Components come from an exact eigendecomposition of whichever covariance is
smaller: gene x gene when there are fewer selected genes than cells,
otherwise cell x cell. Both routes give the same scores up to sign, and the
sign is fixed by making each component's largest-magnitude loading positive.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import pandas as pd

from ...errors import DegenerateInput
from ..preprocessing.normalization import NormalizedMatrix
from ..registry import Embedding, EmbeddingKey
from .config import PCAConfig


@dataclass
class PCAResult:
    """Result from PCA.

    Attributes
    ----------
    embedding : Embedding
        Cell scores with gene loadings and variance explained attached
    eigenvalues : np.ndarray
        Covariance eigenvalues of the kept components
    solver : str
        ``gene_covariance`` or ``cell_covariance``
    excluded : pd.DataFrame
        Genes and components excluded as degenerate
    """

    embedding: Embedding
    eigenvalues: np.ndarray
    solver: str
    excluded: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["name", "reason"])
    )

    @property
    def n_components(self) -> int:
        return self.embedding.n_components

    def variance_table(self) -> pd.DataFrame:
        ratio = np.asarray(self.embedding.variance_explained)
        return pd.DataFrame(
            {
                "component": list(self.embedding.component_names),
                "eigenvalue": self.eigenvalues,
                "variance_explained": ratio,
                "cumulative": np.cumsum(ratio),
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_components": self.n_components,
            "solver": self.solver,
            "n_excluded": int(len(self.excluded)),
            "variance_explained_total": float(np.sum(self.embedding.variance_explained)),
            "suggested_elbow": suggest_elbow(self.embedding.variance_explained),
        }


def scale_features(
    values: np.ndarray, clip: Optional[float] = 10.0
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Center each column and scale it to unit variance.

    Columns with zero standard deviation are centered but left unscaled.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        Scaled values, column means, column standard deviations
    """
    values = np.asarray(values, dtype=np.float64)
    means = values.mean(axis=0)
    stds = values.std(axis=0, ddof=1) if values.shape[0] > 1 else np.zeros(values.shape[1])
    divisor = np.where(stds > 0, stds, 1.0)
    scaled = (values - means) / divisor
    if clip is not None:
        np.clip(scaled, -clip, clip, out=scaled)
    return scaled, means, stds


def fix_signs(loadings: np.ndarray, scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Flip components so each has a positive largest-magnitude loading."""
    if loadings.size == 0:
        return loadings, scores
    idx = np.argmax(np.abs(loadings), axis=0)
    signs = np.sign(loadings[idx, np.arange(loadings.shape[1])])
    signs[signs == 0] = 1.0
    return loadings * signs, scores * signs


def suggest_elbow(variance_explained: Sequence[float]) -> int:
    """Number of leading components at the elbow of a variance curve.

    The elbow is the point farthest from the straight line joining the first
    and last points of the curve. Reported for inspection only; the number
    of dimensions used downstream is always configured explicitly.
    """
    y = np.asarray(variance_explained, dtype=float)
    n = len(y)
    if n < 3:
        return n
    x = np.arange(n, dtype=float)
    start = np.array([x[0], y[0]])
    end = np.array([x[-1], y[-1]])
    direction = (end - start) / np.linalg.norm(end - start)
    points = np.column_stack([x, y]) - start
    projection = np.outer(points @ direction, direction)
    distance = np.linalg.norm(points - projection, axis=1)
    return int(np.argmax(distance)) + 1


class PCAReducer:
    """Linear reduction of scaled selected features.

    Parameters
    ----------
    config : PCAConfig, optional
        PCA configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> reducer = PCAReducer(PCAConfig(n_components=30))
    >>> result = reducer.fit(normalized, features.selected)
    >>> result.embedding.leading(15).shape
    """

    def __init__(
        self,
        config: Optional[PCAConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or PCAConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _decompose(self, scaled: np.ndarray):
        n_cells, n_genes = scaled.shape
        denom = max(n_cells - 1, 1)
        if n_genes <= n_cells:
            solver = "gene_covariance"
            cov = scaled.T @ scaled / denom
            eigvals, eigvecs = np.linalg.eigh(cov)
            order = np.argsort(eigvals)[::-1]
            eigvals = eigvals[order]
            loadings = eigvecs[:, order]
            scores = scaled @ loadings
        else:
            solver = "cell_covariance"
            gram = scaled @ scaled.T / denom
            eigvals, eigvecs = np.linalg.eigh(gram)
            order = np.argsort(eigvals)[::-1]
            eigvals = eigvals[order]
            eigvecs = eigvecs[:, order]
            singular = np.sqrt(np.clip(eigvals, 0.0, None) * denom)
            scores = eigvecs * singular
            safe = np.where(singular > 0, singular, 1.0)
            loadings = (scaled.T @ eigvecs) / safe
        return solver, eigvals, loadings, scores

    def fit(
        self,
        normalized: NormalizedMatrix,
        genes: Sequence[str],
        scope: str = "all",
    ) -> PCAResult:
        """Compute the PCA embedding of ``genes`` across all cells.

        Parameters
        ----------
        normalized : NormalizedMatrix
            Normalized expression
        genes : Sequence[str]
            Selected features, in rank order
        scope : str
            Scope label recorded in the embedding key

        Returns
        -------
        PCAResult
            Embedding of rank at most ``n_components``

        Raises
        ------
        DegenerateInput
            If no component has nonzero variance
        """
        genes = list(genes)
        values = normalized.dense(genes)
        scaled, _, stds = scale_features(values, self.config.scale_clip)

        excluded: List[Dict[str, str]] = [
            {"name": g, "reason": "zero_variance"} for g, s in zip(genes, stds) if s <= 0
        ]
        if excluded:
            keep = stds > 0
            self.logger.warning(
                "Dropping %d zero-variance genes before PCA", len(excluded)
            )
            scaled = scaled[:, keep]
            genes = [g for g, k in zip(genes, keep) if k]
        if not genes:
            raise DegenerateInput(
                "No selected gene has nonzero variance",
                stage="pca",
                params={"n_components": self.config.n_components},
                counts_before=len(excluded),
                counts_after=0,
            )

        solver, eigvals, loadings, scores = self._decompose(scaled)
        total_variance = float(np.sum(np.clip(eigvals, 0.0, None)))

        max_rank = min(scaled.shape[0] - 1, scaled.shape[1])
        n_keep = min(self.config.n_components, max(max_rank, 0))
        eigvals = eigvals[:n_keep]
        loadings = loadings[:, :n_keep]
        scores = scores[:, :n_keep]

        valid = eigvals > self.config.min_eigenvalue
        for i in np.flatnonzero(~valid):
            excluded.append({"name": f"PC{i + 1}", "reason": "zero_variance"})
            self.logger.warning("Excluding degenerate component PC%d", i + 1)
        if not valid.any():
            raise DegenerateInput(
                "PCA produced no component with nonzero variance",
                stage="pca",
                params={"n_components": self.config.n_components, "n_genes": len(genes)},
                counts_before=n_keep,
                counts_after=0,
            )
        eigvals = eigvals[valid]
        loadings, scores = fix_signs(loadings[:, valid], scores[:, valid])

        names = [f"PC{i + 1}" for i in range(len(eigvals))]
        ratio = eigvals / total_variance if total_variance > 0 else np.zeros_like(eigvals)
        key = EmbeddingKey.create(
            "pca",
            scope,
            n_components=self.config.n_components,
            n_genes=len(genes),
            scale_clip=self.config.scale_clip,
        )
        embedding = Embedding(
            key=key,
            values=scores,
            cell_ids=normalized.cell_ids,
            component_names=names,
            loadings=pd.DataFrame(loadings, index=pd.Index(genes, name="gene"), columns=names),
            variance_explained=ratio,
        )

        self.logger.info(
            "PCA (%s): %d cells x %d genes -> %d components (%.1f%% variance)",
            solver,
            scaled.shape[0],
            scaled.shape[1],
            embedding.n_components,
            100.0 * float(np.sum(ratio)),
        )
        return PCAResult(
            embedding=embedding,
            eigenvalues=eigvals,
            solver=solver,
            excluded=pd.DataFrame(excluded, columns=["name", "reason"]),
        )
