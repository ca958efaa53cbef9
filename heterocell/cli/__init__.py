"""Command-line interface for heterocell.

Example Usage
-------------
    # From command line:
    heterocell --help
    heterocell run --counts counts.tsv.gz --annotations cells.csv --out out/
    heterocell centiles --checkpoint out/state.h5ad --gene CD3E --out out/centiles/
    heterocell recluster --checkpoint out/state.h5ad --resolution 1.0 --out out/res1/
"""

from .main import cli, main

__all__ = [
    "cli",
    "main",
]
