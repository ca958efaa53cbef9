"""Variable-feature selection by variance excess over a mean-variance trend.

Per gene mean and variance are computed on normalized expression pooled
across batches. A LOWESS trend of log10 variance on log10 mean is fitted,
and genes are ranked by their standardized residual.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ...errors import DegenerateInput
from .config import FeatureSelectionConfig
from .normalization import NormalizedMatrix


def sparse_mean_var(values: sparse.spmatrix, ddof: int = 1):
    """Column means and variances of a sparse matrix without densifying."""
    values = sparse.csr_matrix(values)
    n = values.shape[0]
    mean = np.asarray(values.mean(axis=0)).ravel()
    sq = values.copy()
    sq.data = sq.data ** 2
    mean_sq = np.asarray(sq.mean(axis=0)).ravel()
    var = mean_sq - mean ** 2
    var = np.maximum(var, 0.0)
    if n > ddof:
        var = var * n / (n - ddof)
    return mean, var


@dataclass
class FeatureSelectionResult:
    """Result from feature selection.

    Attributes
    ----------
    table : pd.DataFrame
        Per-gene statistics indexed by gene symbol, including the
        ``selected`` flag. Every gene of the matrix is present.
    selected : List[str]
        Selected genes in rank order
    excluded : pd.DataFrame
        Genes excluded as degenerate, with a reason
    """

    table: pd.DataFrame
    selected: List[str] = field(default_factory=list)
    excluded: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["name", "reason"])
    )

    @property
    def n_selected(self) -> int:
        return len(self.selected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_genes": int(len(self.table)),
            "n_selected": self.n_selected,
            "n_excluded": int(len(self.excluded)),
        }


class FeatureSelector:
    """Selects the top-N genes by standardized variance excess.

    Parameters
    ----------
    config : FeatureSelectionConfig
        Feature selection configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> selector = FeatureSelector(FeatureSelectionConfig(n_top_genes=2000))
    >>> result = selector.select(normalized)
    >>> result.selected[:3]
    """

    def __init__(
        self,
        config: Optional[FeatureSelectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or FeatureSelectionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def fit_trend(self, log_mean: np.ndarray, log_var: np.ndarray) -> np.ndarray:
        """Fitted log variance at each gene's log mean."""
        if len(log_mean) < 3 or np.ptp(log_mean) == 0:
            return np.full_like(log_var, float(np.mean(log_var)) if len(log_var) else 0.0)

        from statsmodels.nonparametric.smoothers_lowess import lowess

        return lowess(
            log_var,
            log_mean,
            frac=self.config.lowess_frac,
            it=self.config.lowess_iterations,
            return_sorted=False,
        )

    def select(self, normalized: NormalizedMatrix) -> FeatureSelectionResult:
        """Rank genes and flag the top ``n_top_genes``.

        Ties in variance excess are broken by gene symbol, ascending.

        Raises
        ------
        DegenerateInput
            If every gene has zero variance
        """
        genes = normalized.gene_symbols
        mean, var = sparse_mean_var(normalized.values)

        table = pd.DataFrame({"mean": mean, "variance": var}, index=genes)
        table.index.name = "gene"
        valid = (table["variance"] > self.config.min_variance) & (table["mean"] > 0)

        excluded_genes = table.index[~valid].tolist()
        excluded = pd.DataFrame(
            {"name": excluded_genes, "reason": ["zero_variance"] * len(excluded_genes)}
        )
        if excluded_genes:
            self.logger.warning(
                "Excluding %d degenerate genes from feature selection (e.g. %s)",
                len(excluded_genes),
                ", ".join(excluded_genes[:5]),
            )
        if not valid.any():
            raise DegenerateInput(
                "No gene has nonzero variance",
                stage="feature_selection",
                params={"min_variance": self.config.min_variance},
                counts_before=len(table),
                counts_after=0,
            )

        log_mean = np.log10(table.loc[valid, "mean"].to_numpy())
        log_var = np.log10(table.loc[valid, "variance"].to_numpy())
        fitted = self.fit_trend(log_mean, log_var)
        residual = log_var - fitted
        spread = float(np.std(residual, ddof=1)) if len(residual) > 1 else 0.0
        excess = residual / spread if spread > 0 else residual

        table["log_mean"] = np.nan
        table["log_variance"] = np.nan
        table["fitted_log_variance"] = np.nan
        table["variance_excess"] = np.nan
        table.loc[valid, "log_mean"] = log_mean
        table.loc[valid, "log_variance"] = log_var
        table.loc[valid, "fitted_log_variance"] = fitted
        table.loc[valid, "variance_excess"] = excess

        ranked = (
            table.loc[valid, ["variance_excess"]]
            .reset_index()
            .sort_values(["variance_excess", "gene"], ascending=[False, True], kind="mergesort")
        )
        ranked["rank"] = np.arange(1, len(ranked) + 1)
        table["rank"] = ranked.set_index("gene")["rank"].reindex(table.index)

        n_select = min(self.config.n_top_genes, len(ranked))
        selected = ranked["gene"].iloc[:n_select].tolist()
        table["selected"] = table.index.isin(selected)

        self.logger.info(
            "Selected %d of %d genes by variance excess (%d excluded)",
            n_select,
            len(table),
            len(excluded_genes),
        )
        return FeatureSelectionResult(table=table, selected=selected, excluded=excluded)
