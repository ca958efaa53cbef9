"""Per-cell metadata derived from encoded cell identifiers.

Cell identifiers are encoded as ``<donor>.<barcode>.<replicate>``. The
builder decomposes them, then left-joins an external annotation table on a
separator-normalized key.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import re

import pandas as pd

from ...errors import DuplicateAnnotationKey, MalformedIdentifier
from .config import MetadataConfig


DERIVED_COLUMNS = ["donor", "barcode", "replicate", "replicate_name"]


@dataclass
class MetadataResult:
    """Result from metadata derivation.

    Attributes
    ----------
    metadata : pd.DataFrame
        One row per cell, indexed by the raw identifier, in input order
    annotation_columns : List[str]
        Columns contributed by the annotation table
    n_annotated : int
        Cells that matched an annotation row
    duplicate_keys : List[str]
        Normalized keys that appeared more than once in the annotation table
    unmatched_cells : List[str]
        Cells with no annotation row (annotation fields left empty)
    """

    metadata: pd.DataFrame
    annotation_columns: List[str] = field(default_factory=list)
    n_annotated: int = 0
    duplicate_keys: List[str] = field(default_factory=list)
    unmatched_cells: List[str] = field(default_factory=list)

    @property
    def n_cells(self) -> int:
        return len(self.metadata)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        return {
            "n_cells": self.n_cells,
            "n_annotated": self.n_annotated,
            "n_unmatched": len(self.unmatched_cells),
            "n_duplicate_keys": len(self.duplicate_keys),
            "annotation_columns": list(self.annotation_columns),
        }


class MetadataBuilder:
    """Derives donor/barcode/replicate metadata and merges external annotations.

    Parameters
    ----------
    config : MetadataConfig, optional
        Metadata configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> builder = MetadataBuilder()
    >>> result = builder.build(["D1.ACGT.1", "D2.TTGA.2"], annotations)
    >>> result.metadata["donor"].tolist()
    ['D1', 'D2']
    """

    def __init__(
        self,
        config: Optional[MetadataConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MetadataConfig()
        self.logger = logger or logging.getLogger(__name__)
        self._pattern = re.compile(self.config.id_pattern)
        self._translation = str.maketrans(
            {c: self.config.canonical_separator for c in self.config.separator_chars}
        )

    def parse_identifier(self, identifier: str, position: Optional[int] = None) -> Dict[str, str]:
        """Split one identifier into its donor, barcode and replicate fields.

        Raises
        ------
        MalformedIdentifier
            If the identifier does not match the configured pattern
        """
        match = self._pattern.match(str(identifier))
        if match is None:
            raise MalformedIdentifier(str(identifier), position=position)
        donor = match.group("donor")
        replicate = match.group("replicate")
        return {
            "donor": donor,
            "barcode": match.group("barcode"),
            "replicate": replicate,
            "replicate_name": f"{donor}_{replicate}",
        }

    def parse_identifiers(self, identifiers: Iterable[str]) -> pd.DataFrame:
        """Parse every identifier; the first malformed one aborts the run."""
        identifiers = [str(i) for i in identifiers]
        records = [
            self.parse_identifier(ident, position=i) for i, ident in enumerate(identifiers)
        ]
        frame = pd.DataFrame.from_records(records, columns=DERIVED_COLUMNS)
        frame.index = pd.Index(identifiers, name="cell_id")
        if not frame.index.is_unique:
            dupes = frame.index[frame.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate cell identifiers: {dupes[:5]}")
        return frame

    def normalize_key(self, key: Any) -> str:
        """Map every configured separator character to the canonical one."""
        return str(key).strip().translate(self._translation)

    def prepare_annotations(
        self, annotations: pd.DataFrame
    ) -> Tuple[pd.DataFrame, List[str]]:
        """Index the annotation table by normalized key and apply the duplicate policy.

        Returns
        -------
        Tuple[pd.DataFrame, List[str]]
            De-duplicated table indexed by normalized key, and the duplicated keys
        """
        key_col = self.config.annotation_key_col
        table = annotations.copy()
        if key_col in table.columns:
            keys = table.pop(key_col)
        else:
            keys = pd.Series(table.index, index=table.index)
        table.index = pd.Index([self.normalize_key(k) for k in keys], name="_key")

        duplicated = table.index.duplicated(keep="first")
        duplicate_keys = sorted(set(table.index[duplicated]))
        if duplicate_keys:
            policy = self.config.duplicate_policy
            if policy == "reject":
                raise DuplicateAnnotationKey(duplicate_keys)
            if policy != "first":
                raise ValueError(f"Unknown duplicate policy: {policy}")
            self.logger.warning(
                "Annotation table has %d duplicate key(s); keeping first match",
                len(duplicate_keys),
            )
            table = table[~duplicated]

        renamed = {c: f"{c}_annotation" for c in table.columns if c in DERIVED_COLUMNS}
        if renamed:
            table = table.rename(columns=renamed)
        return table, duplicate_keys

    def build(
        self,
        identifiers: Iterable[str],
        annotations: Optional[pd.DataFrame] = None,
    ) -> MetadataResult:
        """Derive metadata for every identifier and left-join annotations.

        Parameters
        ----------
        identifiers : Iterable[str]
            Raw cell identifiers in matrix column order
        annotations : pd.DataFrame, optional
            External per-cell annotation table

        Returns
        -------
        MetadataResult
            Metadata with one row per identifier
        """
        metadata = self.parse_identifiers(identifiers)
        self.logger.info("Parsed %d cell identifiers", len(metadata))

        if annotations is None or annotations.empty:
            return MetadataResult(
                metadata=metadata,
                unmatched_cells=metadata.index.tolist() if annotations is not None else [],
            )

        table, duplicate_keys = self.prepare_annotations(annotations)
        keys = pd.Index([self.normalize_key(c) for c in metadata.index])
        joined = table.reindex(keys)
        joined.index = metadata.index
        matched = keys.isin(table.index)

        merged = pd.concat([metadata, joined], axis=1)
        if len(merged) != len(metadata):
            raise RuntimeError("Annotation join changed the number of cells")

        result = MetadataResult(
            metadata=merged,
            annotation_columns=list(table.columns),
            n_annotated=int(matched.sum()),
            duplicate_keys=duplicate_keys,
            unmatched_cells=metadata.index[~matched].tolist(),
        )
        self.logger.info(
            "Annotation join: %d/%d cells matched (%d columns)",
            result.n_annotated,
            result.n_cells,
            len(result.annotation_columns),
        )
        if result.unmatched_cells:
            self.logger.warning(
                "%d cells have no annotation row; fields left empty",
                len(result.unmatched_cells),
            )
        return result
