"""Configuration classes for preprocessing stages.

All preprocessing parameters are configurable via YAML through
``heterocell.pipeline.AnalysisConfig``.
"""

from dataclasses import dataclass


@dataclass
class MetadataConfig:
    """Configuration for metadata derivation from cell identifiers.

    Attributes
    ----------
    id_pattern : str
        Regular expression with named groups ``donor``, ``barcode`` and
        ``replicate``
    annotation_key_col : str
        Column of the annotation table holding the cell key. If absent,
        the annotation table index is used.
    separator_chars : str
        Characters normalized to ``canonical_separator`` in both keys
        before joining
    canonical_separator : str
        Separator used in normalized keys
    duplicate_policy : str
        ``first`` (first match wins, duplicates reported) or ``reject``
    batch_col : str
        Metadata column used as the batch label downstream
    """

    id_pattern: str = r"^(?P<donor>[^.]+)\.(?P<barcode>[ACGT]+)\.(?P<replicate>\d)$"
    annotation_key_col: str = "cell_id"
    separator_chars: str = "-_:."
    canonical_separator: str = "."
    duplicate_policy: str = "first"
    batch_col: str = "donor"


@dataclass
class QCConfig:
    """Configuration for cell QC.

    All bounds are strict: a cell is retained iff
    ``n_features > min_features`` and ``percent_mito < max_percent_mito``
    and ``total_counts < max_total_counts``.

    Attributes
    ----------
    min_features : int
        Detected-feature lower bound (exclusive)
    max_percent_mito : float
        Mitochondrial percentage upper bound (exclusive)
    max_total_counts : float
        Total UMI upper bound (exclusive)
    mito_pattern : str
        Case-insensitive regex identifying mitochondrial genes
    """

    min_features: int = 500
    max_percent_mito: float = 15.0
    max_total_counts: float = 100000
    mito_pattern: str = r"^MT-"


@dataclass
class NormalizationConfig:
    """Configuration for per-batch log normalization.

    Attributes
    ----------
    scale_factor : float
        Target total per cell before log transform
    n_jobs : int
        Workers for per-batch normalization (1 = sequential)
    """

    scale_factor: float = 10000.0
    n_jobs: int = 1


@dataclass
class FeatureSelectionConfig:
    """Configuration for variance-excess feature selection.

    Attributes
    ----------
    n_top_genes : int
        Number of genes to flag as selected
    lowess_frac : float
        Span of the local regression of log variance on log mean
    lowess_iterations : int
        Robustifying iterations of the local regression
    min_variance : float
        Genes with variance at or below this value are excluded as degenerate
    """

    n_top_genes: int = 5000
    lowess_frac: float = 0.3
    lowess_iterations: int = 3
    min_variance: float = 0.0
