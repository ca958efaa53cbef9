"""Preprocessing stages: metadata, QC, batch views, normalization, features.

Example Usage
-------------
>>> from heterocell.core.preprocessing import (
...     MetadataBuilder, CellQC, BatchPartitioner, Normalizer, FeatureSelector,
... )
>>> metadata = MetadataBuilder().build(table.columns, annotations)
>>> qc = CellQC().filter(matrix)
>>> partition = BatchPartitioner("donor").partition(qc.matrix)
>>> normalized = Normalizer().normalize(partition)
>>> features = FeatureSelector().select(normalized)
"""

from .config import (
    MetadataConfig,
    QCConfig,
    NormalizationConfig,
    FeatureSelectionConfig,
)

from .metadata import MetadataBuilder, MetadataResult, DERIVED_COLUMNS
from .qc import CellQC, QCResult, REASON_COLUMNS
from .batch import BatchPartitioner, BatchPartition, BatchView
from .normalization import (
    Normalizer,
    NormalizedMatrix,
    NormalizationResult,
    log_normalize,
)
from .features import FeatureSelector, FeatureSelectionResult, sparse_mean_var

__all__ = [
    # Config
    "MetadataConfig",
    "QCConfig",
    "NormalizationConfig",
    "FeatureSelectionConfig",
    # Metadata
    "MetadataBuilder",
    "MetadataResult",
    "DERIVED_COLUMNS",
    # QC
    "CellQC",
    "QCResult",
    "REASON_COLUMNS",
    # Batches
    "BatchPartitioner",
    "BatchPartition",
    "BatchView",
    # Normalization
    "Normalizer",
    "NormalizedMatrix",
    "NormalizationResult",
    "log_normalize",
    # Features
    "FeatureSelector",
    "FeatureSelectionResult",
    "sparse_mean_var",
]
