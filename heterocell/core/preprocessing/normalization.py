"""Per-batch log normalization.

``normalized = ln(1 + count / total_count(cell) * scale_factor)``, computed
independently inside each batch view. Totals come from the view's own
count rows only.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from .batch import BatchPartition, BatchView
from .config import NormalizationConfig


@dataclass
class NormalizationResult:
    """Normalization state of a single batch view.

    Attributes
    ----------
    label : str
        Batch label
    positions : np.ndarray
        Row positions of the view in the parent matrix
    normalized : sparse.csr_matrix
        Log-normalized values for the view's cells
    size_factors : np.ndarray
        Total count per cell used as denominator
    scale_factor : float
        Target total before the log transform
    log_base : float
        Base of the logarithm (e)
    """

    label: str
    positions: np.ndarray
    normalized: sparse.csr_matrix
    size_factors: np.ndarray
    scale_factor: float
    log_base: float = float(np.e)

    def to_dict(self) -> Dict[str, float]:
        return {
            "batch": self.label,
            "n_cells": int(len(self.positions)),
            "scale_factor": self.scale_factor,
            "log_base": self.log_base,
            "median_size_factor": float(np.median(self.size_factors))
            if len(self.size_factors)
            else float("nan"),
        }


@dataclass
class NormalizedMatrix:
    """Normalized expression for all retained cells, in parent row order.

    Attributes
    ----------
    values : sparse.csr_matrix
        Cells x genes normalized values
    cell_ids : pd.Index
        Row identities
    gene_symbols : pd.Index
        Column identities
    per_batch : Dict[str, NormalizationResult]
        Per-view normalization state, never shared across views
    """

    values: sparse.csr_matrix
    cell_ids: pd.Index
    gene_symbols: pd.Index
    per_batch: Dict[str, NormalizationResult] = field(default_factory=dict)

    @property
    def shape(self):
        return self.values.shape

    def gene_positions(self, genes: Sequence[str]) -> np.ndarray:
        positions = self.gene_symbols.get_indexer(pd.Index(list(genes)))
        if (positions < 0).any():
            missing = [g for g, p in zip(genes, positions) if p < 0]
            raise KeyError(f"Genes not in matrix: {missing[:5]}")
        return positions

    def dense(self, genes: Optional[Sequence[str]] = None) -> np.ndarray:
        if genes is None:
            return self.values.toarray()
        return self.values[:, self.gene_positions(genes)].toarray()

    def to_frame(self, genes: Sequence[str]) -> pd.DataFrame:
        return pd.DataFrame(self.dense(genes), index=self.cell_ids, columns=list(genes))


def log_normalize(counts: sparse.csr_matrix, scale_factor: float):
    """Log-normalize CSR counts row-wise.

    Returns
    -------
    Tuple[sparse.csr_matrix, np.ndarray]
        Normalized matrix and per-row totals. Rows with zero total stay zero.
    """
    counts = sparse.csr_matrix(counts, dtype=np.float64, copy=True)
    totals = np.asarray(counts.sum(axis=1)).ravel()
    row_of_entry = np.repeat(np.arange(counts.shape[0]), np.diff(counts.indptr))
    denom = totals[row_of_entry]
    scaled = np.zeros_like(counts.data)
    nonzero = denom > 0
    scaled[nonzero] = counts.data[nonzero] / denom[nonzero] * scale_factor
    counts.data = np.log1p(scaled)
    counts.eliminate_zeros()
    return counts, totals


def _normalize_view(label: str, positions: np.ndarray, counts, scale_factor: float) -> NormalizationResult:
    normalized, totals = log_normalize(counts, scale_factor)
    return NormalizationResult(
        label=label,
        positions=positions,
        normalized=normalized,
        size_factors=totals,
        scale_factor=scale_factor,
    )


class Normalizer:
    """Per-batch log normalizer.

    Parameters
    ----------
    config : NormalizationConfig
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> normalizer = Normalizer(NormalizationConfig(scale_factor=1e4))
    >>> normalized = normalizer.normalize(partition)
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def normalize_view(self, view: BatchView) -> NormalizationResult:
        """Normalize one batch view using only its own cell totals."""
        return _normalize_view(
            view.label, view.positions, view.counts, float(self.config.scale_factor)
        )

    def normalize(self, partition: BatchPartition) -> NormalizedMatrix:
        """Normalize every view and reassemble rows in parent order.

        Parameters
        ----------
        partition : BatchPartition
            Batch views over the retained matrix

        Returns
        -------
        NormalizedMatrix
            Combined normalized values with per-batch state
        """
        views = list(partition)
        n_jobs = self.config.n_jobs
        scale_factor = float(self.config.scale_factor)

        if n_jobs == 1 or len(views) == 1:
            results = [self.normalize_view(v) for v in views]
        else:
            from joblib import Parallel, delayed

            results = Parallel(n_jobs=n_jobs)(
                delayed(_normalize_view)(v.label, v.positions, v.counts, scale_factor)
                for v in views
            )

        parent = views[0].parent
        order = np.concatenate([r.positions for r in results])
        stacked = sparse.vstack([r.normalized for r in results], format="csr")
        inverse = np.empty_like(order)
        inverse[order] = np.arange(len(order))
        values = stacked[inverse, :]

        for r in results:
            self.logger.info(
                "Normalized batch %s: %d cells (median total %.0f)",
                r.label,
                len(r.positions),
                float(np.median(r.size_factors)) if len(r.size_factors) else float("nan"),
            )

        return NormalizedMatrix(
            values=sparse.csr_matrix(values),
            cell_ids=parent.cell_ids,
            gene_symbols=parent.gene_symbols,
            per_batch={r.label: r for r in results},
        )

    def summary(self, normalized: NormalizedMatrix) -> pd.DataFrame:
        records: List[Dict[str, float]] = [r.to_dict() for r in normalized.per_batch.values()]
        return pd.DataFrame(records)
