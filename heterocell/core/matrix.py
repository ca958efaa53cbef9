"""Sparse expression container shared by all pipeline stages.

Counts are stored cells x genes (AnnData orientation). The boundary table
is gene x cell and is transposed on the way in by ``from_gene_by_cell``.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Union
import re

import numpy as np
import pandas as pd
from scipy import sparse


DEFAULT_MITO_PATTERN = r"^MT-"

CellSelector = Union[np.ndarray, Sequence[int], Sequence[str], pd.Index, pd.Series]


@dataclass(frozen=True)
class ExpressionMatrix:
    """Immutable cells x genes count matrix with joined metadata tables.

    Attributes
    ----------
    counts : sparse.csr_matrix
        Raw counts, shape (n_cells, n_genes)
    obs : pd.DataFrame
        Per-cell metadata indexed by cell identity
    var : pd.DataFrame
        Per-gene metadata indexed by gene symbol

    Every derivation (QC metrics, subsetting, column joins) returns a new
    ExpressionMatrix; row and column index sets stay in lockstep with the
    count tensor.
    """

    counts: sparse.csr_matrix
    obs: pd.DataFrame
    var: pd.DataFrame

    def __post_init__(self):
        if not sparse.isspmatrix_csr(self.counts):
            object.__setattr__(self, "counts", sparse.csr_matrix(self.counts))
        n_cells, n_genes = self.counts.shape
        if len(self.obs) != n_cells:
            raise ValueError(
                f"obs has {len(self.obs)} rows but counts has {n_cells} cells"
            )
        if len(self.var) != n_genes:
            raise ValueError(
                f"var has {len(self.var)} rows but counts has {n_genes} genes"
            )
        if not self.obs.index.is_unique:
            raise ValueError("Cell identifiers must be unique")
        if not self.var.index.is_unique:
            raise ValueError("Gene symbols must be unique")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_gene_by_cell(
        cls,
        table: pd.DataFrame,
        obs: Optional[pd.DataFrame] = None,
    ) -> "ExpressionMatrix":
        """Build from a gene x cell table (genes as index, cells as columns).

        Raises
        ------
        ValueError
            If any entry is missing or not numeric
        """
        values = table.apply(pd.to_numeric, errors="coerce")
        bad = values.isna().to_numpy()
        if bad.any():
            gene_pos, cell_pos = np.argwhere(bad)[0]
            raise ValueError(
                f"{int(bad.sum())} count entries are missing or non-numeric "
                f"(first at gene {table.index[gene_pos]!r}, cell {table.columns[cell_pos]!r})"
            )
        counts = sparse.csr_matrix(values.to_numpy(dtype=np.float64).T)
        cell_ids = pd.Index(table.columns.astype(str), name="cell_id")
        gene_ids = pd.Index(table.index.astype(str), name="gene")
        if obs is None:
            obs = pd.DataFrame(index=cell_ids)
        else:
            obs = obs.reindex(cell_ids)
        return cls(counts=counts, obs=obs, var=pd.DataFrame(index=gene_ids))

    @classmethod
    def from_arrays(
        cls,
        counts,
        cell_ids: Iterable[str],
        gene_symbols: Iterable[str],
        obs: Optional[pd.DataFrame] = None,
    ) -> "ExpressionMatrix":
        """Build from a cells x genes array-like plus identifiers."""
        cell_index = pd.Index([str(c) for c in cell_ids], name="cell_id")
        gene_index = pd.Index([str(g) for g in gene_symbols], name="gene")
        if obs is None:
            obs = pd.DataFrame(index=cell_index)
        else:
            obs = obs.copy()
            obs.index = cell_index
        return cls(
            counts=sparse.csr_matrix(counts, dtype=np.float64),
            obs=obs,
            var=pd.DataFrame(index=gene_index),
        )

    # ------------------------------------------------------------------
    # Shape and identity
    # ------------------------------------------------------------------

    @property
    def n_cells(self) -> int:
        return self.counts.shape[0]

    @property
    def n_genes(self) -> int:
        return self.counts.shape[1]

    @property
    def cell_ids(self) -> pd.Index:
        return self.obs.index

    @property
    def gene_symbols(self) -> pd.Index:
        return self.var.index

    # ------------------------------------------------------------------
    # Derived statistics
    # ------------------------------------------------------------------

    def total_counts(self) -> np.ndarray:
        """Total UMI count per cell."""
        return np.asarray(self.counts.sum(axis=1)).ravel()

    def detected_features(self) -> np.ndarray:
        """Number of genes with a nonzero count per cell."""
        return np.diff(self.counts.indptr) - _explicit_zeros_per_row(self.counts)

    def mito_mask(self, pattern: str = DEFAULT_MITO_PATTERN) -> np.ndarray:
        """Boolean mask of genes matching the mitochondrial naming pattern."""
        regex = re.compile(pattern, flags=re.IGNORECASE)
        return np.array([bool(regex.search(g)) for g in self.gene_symbols], dtype=bool)

    def percent_mitochondrial(self, pattern: str = DEFAULT_MITO_PATTERN) -> np.ndarray:
        """Percent of each cell's counts on mitochondrial genes.

        Cells with zero total counts report 0.0, keeping the value in [0, 100].
        """
        totals = self.total_counts()
        mask = self.mito_mask(pattern)
        if mask.any():
            mito = np.asarray(self.counts[:, mask].sum(axis=1)).ravel()
        else:
            mito = np.zeros(self.n_cells)
        pct = np.zeros(self.n_cells, dtype=float)
        nonzero = totals > 0
        pct[nonzero] = mito[nonzero] / totals[nonzero] * 100.0
        return np.clip(pct, 0.0, 100.0)

    def with_qc_metrics(self, mito_pattern: str = DEFAULT_MITO_PATTERN) -> "ExpressionMatrix":
        """Return a copy with ``total_counts``, ``n_features`` and ``percent_mito`` in obs."""
        obs = self.obs.copy()
        obs["total_counts"] = self.total_counts()
        obs["n_features"] = self.detected_features().astype(np.int64)
        obs["percent_mito"] = self.percent_mitochondrial(mito_pattern)
        return ExpressionMatrix(counts=self.counts, obs=obs, var=self.var)

    # ------------------------------------------------------------------
    # Derivations
    # ------------------------------------------------------------------

    def cell_positions(self, selector: CellSelector) -> np.ndarray:
        """Resolve a mask, positions, or cell identifiers to row positions."""
        if isinstance(selector, pd.Series) and selector.dtype == bool:
            selector = selector.reindex(self.cell_ids).fillna(False).to_numpy()
        arr = np.asarray(selector)
        if arr.dtype == bool:
            if arr.shape[0] != self.n_cells:
                raise ValueError(
                    f"Boolean mask has length {arr.shape[0]}, expected {self.n_cells}"
                )
            return np.flatnonzero(arr)
        if arr.size == 0:
            return np.array([], dtype=np.int64)
        if np.issubdtype(arr.dtype, np.integer):
            return arr.astype(np.int64)
        positions = self.cell_ids.get_indexer(arr.astype(str))
        if (positions < 0).any():
            missing = arr[positions < 0][:5].tolist()
            raise KeyError(f"Unknown cell identifiers: {missing}")
        return positions.astype(np.int64)

    def subset_cells(self, selector: CellSelector) -> "ExpressionMatrix":
        """Return a new matrix restricted to the selected cells, in selector order."""
        positions = self.cell_positions(selector)
        return ExpressionMatrix(
            counts=self.counts[positions, :],
            obs=self.obs.iloc[positions].copy(),
            var=self.var,
        )

    def with_obs(self, columns: pd.DataFrame) -> "ExpressionMatrix":
        """Return a copy with ``columns`` joined onto obs by cell identity."""
        obs = self.obs.copy()
        aligned = columns.reindex(self.cell_ids)
        for col in aligned.columns:
            obs[col] = aligned[col].to_numpy()
        return ExpressionMatrix(counts=self.counts, obs=obs, var=self.var)

    def with_var(self, columns: pd.DataFrame) -> "ExpressionMatrix":
        """Return a copy with ``columns`` joined onto var by gene symbol."""
        var = self.var.copy()
        aligned = columns.reindex(self.gene_symbols)
        for col in aligned.columns:
            var[col] = aligned[col].to_numpy()
        return ExpressionMatrix(counts=self.counts, obs=self.obs, var=var)


def _explicit_zeros_per_row(matrix: sparse.csr_matrix) -> np.ndarray:
    """Count explicitly stored zeros per row of a CSR matrix."""
    zero_mask = matrix.data == 0
    if not zero_mask.any():
        return np.zeros(matrix.shape[0], dtype=np.int64)
    rows = np.repeat(np.arange(matrix.shape[0]), np.diff(matrix.indptr))
    return np.bincount(rows[zero_mask], minlength=matrix.shape[0])
