"""Test fixtures for heterocell.

Provides synthetic count tables and annotation generators.
"""

from .mock_counts import (
    create_cell_ids,
    create_mock_annotations,
    create_mock_counts,
    make_barcode,
)

__all__ = [
    "create_cell_ids",
    "create_mock_annotations",
    "create_mock_counts",
    "make_barcode",
]
