"""Export functions for centile and cluster tables.

Output tables carry one row per cell (or per cell and gene) with the cell
identity, the numeric fields and the group label.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from ..registry import ClusterAssignment
from .engine import CentileTable


def centile_rows(table: CentileTable, groups: Optional[pd.Series] = None) -> pd.DataFrame:
    """Long centile table with an optional group column."""
    rows = table.long_format()
    if groups is not None:
        rows["group"] = groups.reindex(rows["cell_id"]).astype(str).to_numpy()
    return rows


def export_centile_table(
    table: CentileTable,
    output_path: Path,
    logger: logging.Logger,
    groups: Optional[pd.Series] = None,
) -> Path:
    """Write the long centile table to CSV.

    Args:
        table: Centile table.
        output_path: Path to save the CSV file.
        logger: Logger instance.
        groups: Optional per-cell group labels.

    Returns:
        Path to the generated CSV file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    centile_rows(table, groups).to_csv(output_path, index=False)
    logger.info("Wrote centile table: %s", output_path)
    return output_path


def export_listings(listing: pd.DataFrame, output_path: Path, logger: logging.Logger) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    listing.to_csv(output_path, index=False)
    logger.info("Wrote %d listing rows: %s", len(listing), output_path)
    return output_path


def export_group_counts(counts: pd.DataFrame, output_path: Path, logger: logging.Logger) -> Path:
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    counts.to_csv(output_path)
    logger.info("Wrote group counts: %s", output_path)
    return output_path


def cluster_rows(
    assignment: ClusterAssignment, metadata: Optional[pd.DataFrame] = None
) -> pd.DataFrame:
    """One row per cell: cell_id, cluster and any requested metadata columns."""
    rows = assignment.labels.rename("cluster").reset_index()
    if metadata is not None:
        aligned = metadata.reindex(assignment.labels.index)
        for col in aligned.columns:
            rows[col] = aligned[col].to_numpy()
    return rows


def export_cluster_table(
    assignment: ClusterAssignment,
    output_path: Path,
    logger: logging.Logger,
    metadata: Optional[pd.DataFrame] = None,
) -> Path:
    """Write per-cell cluster assignments to CSV.

    Args:
        assignment: Cluster assignment.
        output_path: Path to save the CSV file.
        logger: Logger instance.
        metadata: Optional cell metadata columns to include.

    Returns:
        Path to the generated CSV file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    cluster_rows(assignment, metadata).to_csv(output_path, index=False)
    logger.info(
        "Wrote %d cluster assignments (%s): %s",
        len(assignment.labels),
        assignment.key.label,
        output_path,
    )
    return output_path
