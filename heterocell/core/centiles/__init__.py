"""Gene-expression centile analysis.

Example Usage
-------------
>>> from heterocell.core.centiles import CentileAnalyzer, CentileConfig
>>> analyzer = CentileAnalyzer(CentileConfig(genes=["CD3E", "MS4A1"]))
>>> table = analyzer.compute(normalized)
>>> table.above("CD3E", 95)
"""

from .config import CentileConfig
from .engine import (
    CentileAnalyzer,
    CentileTable,
    TIE_BREAKS,
    centile_bins,
    rank_values,
)
from .export import (
    centile_rows,
    cluster_rows,
    export_centile_table,
    export_cluster_table,
    export_group_counts,
    export_listings,
)

__all__ = [
    "CentileConfig",
    "CentileAnalyzer",
    "CentileTable",
    "TIE_BREAKS",
    "centile_bins",
    "rank_values",
    "centile_rows",
    "cluster_rows",
    "export_centile_table",
    "export_cluster_table",
    "export_group_counts",
    "export_listings",
]
