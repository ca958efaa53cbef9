"""Delimited-table I/O at the pipeline boundary.

The count table is gene x cell: a header row of cell identifiers and a
first column of gene symbols. The annotation table is keyed by a cell
identifier that is separator-normalized before joining.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def ensure_output_dir(path: PathLike) -> Path:
    """Create ``path`` if needed and return it."""
    directory = Path(path)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _infer_sep(path: Path, sep: Optional[str]) -> str:
    if sep is not None:
        return sep
    return "\t" if path.suffix.lower() in (".tsv", ".txt", ".tab") else ","


def load_count_table(path: PathLike, sep: Optional[str] = None) -> pd.DataFrame:
    """Read a gene x cell count table.

    Parameters
    ----------
    path : PathLike
        Delimited file; compressed files are read transparently
    sep : str, optional
        Delimiter. Inferred from the suffix when omitted (tab for
        ``.tsv``/``.txt``, comma otherwise).

    Returns
    -------
    pd.DataFrame
        Numeric table indexed by gene symbol, one column per cell

    Raises
    ------
    FileNotFoundError
        If the file does not exist
    ValueError
        If the table is empty, has duplicate genes or cells, or holds
        non-numeric or missing counts
    """
    table_path = Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"Count table not found: {table_path}")
    name = table_path.name[: -len(".gz")] if table_path.name.endswith(".gz") else table_path.name
    df = pd.read_csv(table_path, sep=_infer_sep(Path(name), sep), index_col=0)
    if df.empty:
        raise ValueError(f"Count table {table_path} is empty")

    df.index = df.index.astype(str)
    df.index.name = "gene"
    df.columns = df.columns.astype(str)
    if not df.index.is_unique:
        dupes = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate gene symbols in {table_path}: {dupes[:5]}")
    if not df.columns.is_unique:
        raise ValueError(f"Duplicate cell identifiers in {table_path}")

    numeric = df.apply(pd.to_numeric, errors="coerce")
    if numeric.isna().to_numpy().any():
        raise ValueError(f"Count table {table_path} has non-numeric or missing values")
    logger.info("Loaded count table %s: %d genes x %d cells", table_path, *numeric.shape)
    return numeric


def load_annotation_table(
    path: PathLike,
    key_column: Optional[str] = None,
    sep: Optional[str] = None,
) -> pd.DataFrame:
    """Read an external per-cell annotation table.

    Parameters
    ----------
    path : PathLike
        Delimited file
    key_column : str, optional
        Column holding the cell key; when absent from the file the first
        column is renamed to it
    sep : str, optional
        Delimiter (inferred from the suffix when omitted)

    Returns
    -------
    pd.DataFrame
        Annotation rows with the key column as strings
    """
    table_path = Path(path)
    if not table_path.exists():
        raise FileNotFoundError(f"Annotation table not found: {table_path}")
    df = pd.read_csv(table_path, sep=_infer_sep(table_path, sep))
    if df.empty:
        raise ValueError(f"Annotation table {table_path} is empty")
    if key_column is not None and key_column not in df.columns:
        df = df.rename(columns={df.columns[0]: key_column})
    key = key_column or df.columns[0]
    df[key] = df[key].astype(str)
    logger.info("Loaded annotation table %s: %d rows", table_path, len(df))
    return df


def write_dataframe(df: pd.DataFrame, path: PathLike, *, index: bool = False) -> Path:
    """Write ``df`` as CSV, creating the parent directory."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=index)
    return output_path
