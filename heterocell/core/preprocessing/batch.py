"""Batch partitioning of retained cells.

Views hold row positions into the parent matrix rather than copies of its
counts. Membership is fixed when the partition is computed.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ..matrix import ExpressionMatrix


@dataclass(frozen=True)
class BatchView:
    """Non-owning view of the cells sharing one batch label.

    Attributes
    ----------
    label : str
        Batch label
    parent : ExpressionMatrix
        Matrix the view reads from
    positions : np.ndarray
        Read-only row positions into ``parent``
    """

    label: str
    parent: ExpressionMatrix
    positions: np.ndarray

    def __post_init__(self):
        positions = np.array(self.positions, dtype=np.int64, copy=True)
        positions.setflags(write=False)
        object.__setattr__(self, "positions", positions)

    @property
    def n_cells(self) -> int:
        return len(self.positions)

    @property
    def cell_ids(self) -> pd.Index:
        return self.parent.cell_ids[self.positions]

    @property
    def counts(self) -> sparse.csr_matrix:
        """Count rows of this batch (sliced on access)."""
        return self.parent.counts[self.positions, :]

    def total_counts(self) -> np.ndarray:
        return np.asarray(self.counts.sum(axis=1)).ravel()


@dataclass(frozen=True)
class BatchPartition:
    """Disjoint cover of a matrix by batch views, ordered by label."""

    batch_col: str
    views: Tuple[BatchView, ...]

    @property
    def labels(self) -> List[str]:
        return [v.label for v in self.views]

    def view(self, label: str) -> BatchView:
        for v in self.views:
            if v.label == label:
                return v
        raise KeyError(f"Unknown batch: {label}")

    def cell_batches(self) -> pd.Series:
        """Batch label per cell, in parent row order."""
        parent = self.views[0].parent
        labels = np.empty(parent.n_cells, dtype=object)
        for v in self.views:
            labels[v.positions] = v.label
        return pd.Series(labels, index=parent.cell_ids, name=self.batch_col)

    def sizes(self) -> Dict[str, int]:
        return {v.label: v.n_cells for v in self.views}

    def __iter__(self) -> Iterator[BatchView]:
        return iter(self.views)

    def __len__(self) -> int:
        return len(self.views)


class BatchPartitioner:
    """Groups cells into per-batch views by a metadata column.

    Parameters
    ----------
    batch_col : str
        Metadata column holding the batch label
    logger : logging.Logger, optional
        Logger instance
    """

    def __init__(self, batch_col: str = "donor", logger: Optional[logging.Logger] = None):
        self.batch_col = batch_col
        self.logger = logger or logging.getLogger(__name__)

    def partition(self, matrix: ExpressionMatrix) -> BatchPartition:
        """Split ``matrix`` into one view per distinct batch label.

        Raises
        ------
        KeyError
            If the batch column is missing from obs
        ValueError
            If any cell has no batch label
        """
        if self.batch_col not in matrix.obs.columns:
            raise KeyError(f"Batch column '{self.batch_col}' not found in cell metadata")

        labels = matrix.obs[self.batch_col]
        if labels.isna().any():
            raise ValueError(
                f"{int(labels.isna().sum())} cells have no '{self.batch_col}' label"
            )
        labels = labels.astype(str).to_numpy()

        views = []
        for label in sorted(set(labels)):
            positions = np.flatnonzero(labels == label)
            views.append(BatchView(label=label, parent=matrix, positions=positions))

        partition = BatchPartition(batch_col=self.batch_col, views=tuple(views))
        self.logger.info(
            "Partitioned %d cells into %d batches: %s",
            matrix.n_cells,
            len(partition),
            ", ".join(f"{k}={v}" for k, v in partition.sizes().items()),
        )
        return partition
