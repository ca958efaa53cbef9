"""Cell-level quality control.

Threshold filtering on detected features, mitochondrial fraction and
total counts. The filter only selects cells; it never changes values.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import pandas as pd

from ...errors import EmptyAfterFilter
from ..matrix import ExpressionMatrix
from .config import QCConfig


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "low_features",
    "high_mito",
    "high_counts",
]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    matrix : ExpressionMatrix
        Retained cells, with QC metric columns in obs
    cells_total : int
        Cells before filtering
    cells_removed : int
        Cells removed
    reasons : pd.DataFrame
        Boolean reason flags for every input cell
    cell_metrics : pd.DataFrame
        Metadata and QC metrics for every input cell
    reason_counts : Dict[str, int]
        Number of cells flagged per reason (a cell can count for several)
    removal_records : List[Dict]
        One record per removed cell
    """

    matrix: ExpressionMatrix
    cells_total: int = 0
    cells_removed: int = 0
    reasons: Optional[pd.DataFrame] = None
    cell_metrics: Optional[pd.DataFrame] = None
    reason_counts: Dict[str, int] = field(default_factory=dict)
    removal_records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def cells_retained(self) -> int:
        return self.cells_total - self.cells_removed

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_retained": self.cells_retained,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result

    def removal_table(self) -> pd.DataFrame:
        return pd.DataFrame(self.removal_records, columns=["cell_id", "reasons"])


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> qc = CellQC(QCConfig(min_features=500))
    >>> result = qc.filter(matrix)
    >>> result.matrix.n_cells
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    def flag_cells(self, matrix: ExpressionMatrix) -> pd.DataFrame:
        """Compute one boolean column per failed predicate.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Matrix with QC metrics in obs (computed if missing)

        Returns
        -------
        pd.DataFrame
            Reason flags indexed by cell identity
        """
        obs = matrix.obs
        reasons = pd.DataFrame(index=obs.index)
        reasons["low_features"] = ~(obs["n_features"] > self.config.min_features)
        reasons["high_mito"] = ~(obs["percent_mito"] < self.config.max_percent_mito)
        reasons["high_counts"] = ~(obs["total_counts"] < self.config.max_total_counts)
        return reasons

    def filter(self, matrix: ExpressionMatrix) -> QCResult:
        """Filter cells failing any QC predicate.

        Parameters
        ----------
        matrix : ExpressionMatrix
            Unfiltered matrix

        Returns
        -------
        QCResult
            Filtering result with the retained matrix

        Raises
        ------
        EmptyAfterFilter
            If no cell passes every predicate
        """
        metrics = {"total_counts", "n_features", "percent_mito"}
        if not metrics.issubset(matrix.obs.columns):
            matrix = matrix.with_qc_metrics(self.config.mito_pattern)

        reasons = self.flag_cells(matrix)
        flagged = reasons.any(axis=1).to_numpy()

        result = QCResult(
            matrix=matrix,
            cells_total=matrix.n_cells,
            reasons=reasons,
            cell_metrics=matrix.obs.copy(),
        )
        result.cells_removed = int(flagged.sum())
        for reason in REASON_COLUMNS:
            result.reason_counts[reason] = int(reasons[reason].sum())

        for cell_id, row in reasons.loc[flagged].iterrows():
            cell_reasons = [name for name in REASON_COLUMNS if bool(row[name])]
            result.removal_records.append(
                {"cell_id": cell_id, "reasons": ";".join(cell_reasons)}
            )

        self.logger.info(
            "QC: %d -> %d cells (low_features=%d, high_mito=%d, high_counts=%d)",
            result.cells_total,
            result.cells_retained,
            result.reason_counts["low_features"],
            result.reason_counts["high_mito"],
            result.reason_counts["high_counts"],
        )

        if result.cells_retained == 0:
            raise EmptyAfterFilter(
                "QC removed all cells",
                stage="qc",
                params={
                    "min_features": self.config.min_features,
                    "max_percent_mito": self.config.max_percent_mito,
                    "max_total_counts": self.config.max_total_counts,
                },
                counts_before=result.cells_total,
                counts_after=0,
            )

        result.matrix = matrix.subset_cells(~flagged)
        return result

    def summarize_by(self, result: QCResult, column: str) -> pd.DataFrame:
        """Per-group retained/removed counts.

        Parameters
        ----------
        result : QCResult
            Output of ``filter``
        column : str
            Metadata column to group by (e.g. ``donor``)

        Returns
        -------
        pd.DataFrame
            One row per group
        """
        table = result.reasons.copy()
        table["removed"] = table[REASON_COLUMNS].any(axis=1)
        table[column] = result.cell_metrics[column].to_numpy()
        summary = table.groupby(column, sort=True).agg(
            cells_total=("removed", "size"),
            cells_removed=("removed", "sum"),
            **{f"removed_{r}": (r, "sum") for r in REASON_COLUMNS},
        )
        summary["cells_retained"] = summary["cells_total"] - summary["cells_removed"]
        return summary.reset_index()
