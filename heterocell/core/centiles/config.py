"""Configuration for expression centile analysis."""

from dataclasses import dataclass, field
from typing import List


@dataclass
class CentileConfig:
    """Configuration for centile binning and threshold extraction.

    Attributes
    ----------
    genes : List[str]
        Genes of interest
    threshold : int
        Default centile threshold for subsets
    inclusive : bool
        Subsets keep ``centile >= threshold`` when True, otherwise
        ``centile > threshold``
    tie_break : str
        Order among equal values: ``cell_id`` (lexical identity) or
        ``position`` (matrix row order)
    listing_thresholds : List[int]
        Thresholds used for per-group listings
    group_col : str
        Cell metadata column holding the group label
    """

    genes: List[str] = field(default_factory=list)
    threshold: int = 95
    inclusive: bool = False
    tie_break: str = "cell_id"
    listing_thresholds: List[int] = field(default_factory=lambda: [90, 95, 99])
    group_col: str = "cluster"
