"""I/O utilities for heterocell.

Provides run-record helpers, delimited-table I/O and state checkpoints.
"""

from .logging import (
    log_json,
    log_yaml,
    to_serializable,
)
from .csv import (
    ensure_output_dir,
    load_annotation_table,
    load_count_table,
    write_dataframe,
)
from .checkpoint import (
    anndata_to_state,
    load_checkpoint,
    save_checkpoint,
    state_to_anndata,
)

__all__ = [
    # Logging
    "log_json",
    "log_yaml",
    "to_serializable",
    # CSV I/O
    "ensure_output_dir",
    "load_annotation_table",
    "load_count_table",
    "write_dataframe",
    # Checkpoints
    "anndata_to_state",
    "load_checkpoint",
    "save_checkpoint",
    "state_to_anndata",
]
