"""Synthetic count tables for testing.

Provides functions to create small gene x cell count tables with donor
structure, cell-type marker blocks and mitochondrial genes, without
requiring real data.
"""

from typing import List, Optional

import numpy as np
import pandas as pd

BASES = "ACGT"


def make_barcode(index: int, length: int = 8) -> str:
    """Encode ``index`` as a fixed-length nucleotide barcode."""
    chars = []
    for _ in range(length):
        index, remainder = divmod(index, 4)
        chars.append(BASES[remainder])
    return "".join(chars)


def create_cell_ids(
    n_donors: int = 3,
    n_cells_per_donor: int = 60,
    replicate: int = 1,
) -> List[str]:
    """Cell identifiers ``D<k>.<barcode>.<replicate>``, grouped by donor."""
    return [
        f"D{d + 1}.{make_barcode(d * n_cells_per_donor + i)}.{replicate}"
        for d in range(n_donors)
        for i in range(n_cells_per_donor)
    ]


def create_mock_counts(
    n_donors: int = 3,
    n_cells_per_donor: int = 60,
    n_genes: int = 200,
    n_types: int = 3,
    n_markers: int = 15,
    n_mito: int = 3,
    n_high_count: int = 0,
    seed: int = 42,
) -> pd.DataFrame:
    """Create a gene x cell Poisson count table.

    Parameters
    ----------
    n_donors : int
        Number of donors (batches)
    n_cells_per_donor : int
        Cells per donor
    n_genes : int
        Total genes, including ``n_mito`` genes named ``MT-*``
    n_types : int
        Cell types; each has a block of ``n_markers`` up-regulated genes
    n_markers : int
        Marker genes per cell type
    n_mito : int
        Mitochondrial genes
    n_high_count : int
        Cells per donor whose counts are inflated 50-fold
    seed : int
        Random seed for reproducibility

    Returns
    -------
    pd.DataFrame
        Counts with gene symbols as index and cell identifiers as columns
    """
    rng = np.random.default_rng(seed)
    n_cells = n_donors * n_cells_per_donor

    genes = [f"MT-{i + 1}" for i in range(n_mito)]
    genes += [f"GENE{i:04d}" for i in range(n_genes - n_mito)]

    base = rng.gamma(shape=2.0, scale=0.5, size=n_genes)
    types = np.arange(n_cells) % n_types
    donors = np.repeat(np.arange(n_donors), n_cells_per_donor)

    rates = np.tile(base, (n_cells, 1))
    for t in range(n_types):
        start = n_mito + t * n_markers
        rates[types == t, start:start + n_markers] *= 8.0

    donor_effect = rng.lognormal(mean=0.0, sigma=0.2, size=(n_donors, n_genes))
    rates *= donor_effect[donors]
    rates *= rng.uniform(0.7, 1.3, size=(n_cells, 1))

    counts = rng.poisson(rates)
    if n_high_count:
        for d in range(n_donors):
            first = d * n_cells_per_donor
            counts[first:first + n_high_count] *= 50

    cell_ids = create_cell_ids(n_donors, n_cells_per_donor)
    return pd.DataFrame(counts.T, index=pd.Index(genes, name="gene"), columns=cell_ids)


def create_mock_annotations(
    cell_ids: List[str],
    separator: str = "_",
    n_types: int = 3,
    extra_rows: Optional[List[str]] = None,
) -> pd.DataFrame:
    """Annotation table keyed by cell identifiers written with another separator."""
    keys = [c.replace(".", separator) for c in cell_ids]
    labels = [f"type_{i % n_types}" for i in range(len(cell_ids))]
    if extra_rows:
        keys += list(extra_rows)
        labels += ["unknown"] * len(extra_rows)
    return pd.DataFrame({"cell_id": keys, "cell_type": labels})
