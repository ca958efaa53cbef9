"""Immutable pipeline state passed from stage to stage."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

import pandas as pd

from .matrix import ExpressionMatrix
from .preprocessing.batch import BatchPartition
from .preprocessing.features import FeatureSelectionResult
from .preprocessing.normalization import NormalizedMatrix
from .preprocessing.qc import QCResult
from .registry import ResultRegistry


@dataclass(frozen=True)
class PipelineState:
    """Artifacts of a completed (or partially completed) analysis.

    Attributes
    ----------
    matrix : ExpressionMatrix
        Retained cells with metadata and QC metrics in obs
    normalized : NormalizedMatrix, optional
        Per-batch log-normalized expression
    registry : ResultRegistry
        Embeddings and cluster assignments
    batch_col : str
        Metadata column used for batch views
    partition : BatchPartition, optional
        Batch views over ``matrix``
    features : FeatureSelectionResult, optional
        Per-gene variance statistics and selected features
    qc : QCResult, optional
        QC outcome (not restored from checkpoints)
    summaries : Dict[str, Dict]
        Per-stage summary records
    config : Dict[str, Any]
        Configuration the state was produced with
    """

    matrix: ExpressionMatrix
    normalized: Optional[NormalizedMatrix] = None
    registry: ResultRegistry = field(default_factory=ResultRegistry)
    batch_col: str = "donor"
    partition: Optional[BatchPartition] = None
    features: Optional[FeatureSelectionResult] = None
    qc: Optional[QCResult] = None
    summaries: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    config: Mapping[str, Any] = field(default_factory=dict)

    @property
    def n_cells(self) -> int:
        return self.matrix.n_cells

    def cell_batches(self) -> pd.Series:
        if self.partition is not None:
            return self.partition.cell_batches()
        return self.matrix.obs[self.batch_col].astype(str).rename(self.batch_col)

    def evolve(self, **changes) -> "PipelineState":
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    def with_summary(self, stage: str, summary: Dict[str, Any]) -> "PipelineState":
        summaries = dict(self.summaries)
        summaries[stage] = dict(summary)
        return replace(self, summaries=summaries)
