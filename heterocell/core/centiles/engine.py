"""Per-gene expression centiles and threshold extraction.

Cells are ranked per gene by normalized expression, ascending, with equal
values ordered by a fixed tie-break so every cell gets a distinct rank.
The centile of rank ``r`` among ``N`` cells is ``ceil(r / N * 100)``,
computed in integer arithmetic. Subsets, group counts and listings are
read-side views over a ``CentileTable``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..preprocessing.normalization import NormalizedMatrix
from .config import CentileConfig


TIE_BREAKS = ("cell_id", "position")


def rank_values(values: np.ndarray, cell_ids: Sequence[str], tie_break: str = "cell_id") -> np.ndarray:
    """Distinct 1-based ascending ranks; ties ordered by ``tie_break``."""
    values = np.asarray(values, dtype=np.float64)
    if tie_break == "cell_id":
        secondary = np.asarray([str(c) for c in cell_ids])
    elif tie_break == "position":
        secondary = np.arange(len(values))
    else:
        raise ValueError(f"Unknown tie break: {tie_break}")
    order = np.lexsort((secondary, values))
    ranks = np.empty(len(values), dtype=np.int64)
    ranks[order] = np.arange(1, len(values) + 1)
    return ranks


def centile_bins(ranks: np.ndarray) -> np.ndarray:
    """Map 1..N ranks onto centile bins 1..100."""
    ranks = np.asarray(ranks, dtype=np.int64)
    n = len(ranks)
    if n == 0:
        return ranks
    return (ranks * 100 + n - 1) // n


@dataclass
class CentileTable:
    """Centiles of each analyzed gene across all retained cells.

    Attributes
    ----------
    centiles : pd.DataFrame
        Cells x genes integer centiles in [1, 100]
    expression : pd.DataFrame
        Cells x genes normalized values the centiles were computed from
    excluded : pd.DataFrame
        Requested genes that could not be analyzed, with a reason
    tie_break : str
        Tie-break used for ranking
    """

    centiles: pd.DataFrame
    expression: pd.DataFrame
    excluded: pd.DataFrame = field(
        default_factory=lambda: pd.DataFrame(columns=["name", "reason"])
    )
    tie_break: str = "cell_id"

    @property
    def genes(self) -> List[str]:
        return list(self.centiles.columns)

    @property
    def n_cells(self) -> int:
        return len(self.centiles)

    def _check_gene(self, gene: str) -> None:
        if gene not in self.centiles.columns:
            raise KeyError(f"Gene '{gene}' has no centiles")

    def mask(self, gene: str, threshold: int, inclusive: bool = False) -> pd.Series:
        self._check_gene(gene)
        col = self.centiles[gene]
        return col >= threshold if inclusive else col > threshold

    def above(self, gene: str, threshold: int, inclusive: bool = False) -> pd.DataFrame:
        """Cells whose centile for ``gene`` crosses ``threshold``.

        The comparison is strict (``centile > threshold``) unless
        ``inclusive`` is True, in which case cells at the threshold are kept
        as well. With 100 equally spaced values and ``threshold=95`` the
        strict default keeps 5 cells and the inclusive form keeps 6.
        """
        selected = self.mask(gene, threshold, inclusive)
        return pd.DataFrame(
            {
                "expression": self.expression.loc[selected, gene],
                "centile": self.centiles.loc[selected, gene],
            }
        )

    def long_format(self) -> pd.DataFrame:
        """One row per (cell, gene)."""
        centiles = self.centiles.stack().rename("centile")
        expression = self.expression.stack().rename("expression")
        table = pd.concat([expression, centiles], axis=1).reset_index()
        table.columns = ["cell_id", "gene", "expression", "centile"]
        return table

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_cells": self.n_cells,
            "genes": self.genes,
            "n_excluded": int(len(self.excluded)),
            "tie_break": self.tie_break,
        }


class CentileAnalyzer:
    """Computes centile tables and group-wise threshold extracts.

    Parameters
    ----------
    config : CentileConfig, optional
        Centile configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> analyzer = CentileAnalyzer(CentileConfig(genes=["CD3E"], threshold=95))
    >>> table = analyzer.compute(normalized)
    >>> analyzer.group_counts(table, groups)
    """

    def __init__(
        self,
        config: Optional[CentileConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or CentileConfig()
        self.logger = logger or logging.getLogger(__name__)
        if self.config.tie_break not in TIE_BREAKS:
            raise ValueError(f"Unknown tie break: {self.config.tie_break}")

    def compute(
        self,
        normalized: NormalizedMatrix,
        genes: Optional[Iterable[str]] = None,
    ) -> CentileTable:
        """Centiles for ``genes`` (default: configured genes).

        Genes absent from the matrix are excluded and recorded.
        """
        requested = list(dict.fromkeys(genes if genes is not None else self.config.genes))
        present = [g for g in requested if g in normalized.gene_symbols]
        missing = [g for g in requested if g not in normalized.gene_symbols]
        if missing:
            self.logger.warning(
                "Skipping %d genes not in matrix: %s", len(missing), ", ".join(missing[:10])
            )

        expression = normalized.to_frame(present)
        cell_ids = normalized.cell_ids
        centiles = pd.DataFrame(index=cell_ids)
        for gene in present:
            ranks = rank_values(expression[gene].to_numpy(), cell_ids, self.config.tie_break)
            centiles[gene] = centile_bins(ranks)

        self.logger.info(
            "Computed centiles for %d genes over %d cells", len(present), len(cell_ids)
        )
        return CentileTable(
            centiles=centiles,
            expression=expression,
            excluded=pd.DataFrame(
                {"name": missing, "reason": ["not_in_matrix"] * len(missing)}
            ),
            tie_break=self.config.tie_break,
        )

    def group_counts(
        self,
        table: CentileTable,
        groups: pd.Series,
        threshold: Optional[int] = None,
    ) -> pd.DataFrame:
        """Per-group number of cells crossing ``threshold``, one column per gene."""
        threshold = self.config.threshold if threshold is None else threshold
        aligned = groups.reindex(table.centiles.index).astype(str)
        counts = {}
        for gene in table.genes:
            mask = table.mask(gene, threshold, self.config.inclusive)
            counts[gene] = aligned[mask].value_counts()
        frame = pd.DataFrame(counts).reindex(sorted(aligned.unique())).fillna(0).astype(int)
        frame.index.name = groups.name or "group"
        return frame

    def listings(
        self,
        table: CentileTable,
        groups: pd.Series,
        thresholds: Optional[Sequence[int]] = None,
    ) -> pd.DataFrame:
        """Cells crossing each threshold, per gene and group.

        Returns
        -------
        pd.DataFrame
            Columns gene, threshold, group, cell_id, expression, centile,
            sorted by gene, threshold, group, then descending centile
        """
        thresholds = list(thresholds or self.config.listing_thresholds)
        aligned = groups.reindex(table.centiles.index).astype(str)
        frames = []
        for gene in table.genes:
            for threshold in thresholds:
                subset = table.above(gene, threshold, self.config.inclusive)
                frames.append(
                    pd.DataFrame(
                        {
                            "gene": gene,
                            "threshold": threshold,
                            "group": aligned.loc[subset.index].to_numpy(),
                            "cell_id": subset.index.to_numpy(),
                            "expression": subset["expression"].to_numpy(),
                            "centile": subset["centile"].to_numpy(),
                        }
                    )
                )
        columns = ["gene", "threshold", "group", "cell_id", "expression", "centile"]
        if not frames:
            return pd.DataFrame(columns=columns)
        listing = pd.concat(frames, ignore_index=True)
        listing = listing.sort_values(
            ["gene", "threshold", "group", "centile", "cell_id"],
            ascending=[True, True, True, False, True],
            kind="mergesort",
        )
        return listing.reset_index(drop=True)[columns]
