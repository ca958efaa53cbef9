"""Master configuration for an analysis run.

Example YAML::

    analysis:
      qc:
        min_features: 500
        max_percent_mito: 15.0
      features:
        n_top_genes: 5000
      integration:
        tolerate_partial: true
      clustering:
        resolution: 0.5
      centiles:
        genes: [CD3E, MS4A1]
"""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..core.centiles.config import CentileConfig
from ..core.clustering.config import ClusteringConfig, ProjectionConfig
from ..core.preprocessing.config import (
    FeatureSelectionConfig,
    MetadataConfig,
    NormalizationConfig,
    QCConfig,
)
from ..core.reduction.config import IntegrationConfig, PCAConfig


SECTIONS = {
    "metadata": MetadataConfig,
    "qc": QCConfig,
    "normalization": NormalizationConfig,
    "features": FeatureSelectionConfig,
    "pca": PCAConfig,
    "integration": IntegrationConfig,
    "clustering": ClusteringConfig,
    "projection": ProjectionConfig,
    "centiles": CentileConfig,
}


@dataclass
class AnalysisConfig:
    """Configuration of every analysis stage.

    Attributes
    ----------
    metadata, qc, normalization, features, pca, integration, clustering,
    projection, centiles
        Per-stage configurations
    """

    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    features: FeatureSelectionConfig = field(default_factory=FeatureSelectionConfig)
    pca: PCAConfig = field(default_factory=PCAConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    clustering: ClusteringConfig = field(default_factory=ClusteringConfig)
    projection: ProjectionConfig = field(default_factory=ProjectionConfig)
    centiles: CentileConfig = field(default_factory=CentileConfig)

    @property
    def batch_col(self) -> str:
        return self.metadata.batch_col

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisConfig":
        """Build from a mapping of section name to section fields.

        Raises
        ------
        ValueError
            On an unknown section
        TypeError
            On an unknown field inside a section
        """
        data = dict(data or {})
        if "analysis" in data:
            data = dict(data["analysis"] or {})
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ValueError(f"Unknown configuration sections: {unknown}")
        return cls(**{name: SECTIONS[name](**(data.get(name) or {})) for name in SECTIONS})

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AnalysisConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def default(cls) -> "AnalysisConfig":
        """Create default configuration."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {name: asdict(getattr(self, name)) for name in SECTIONS}

    def to_yaml(self, path: Union[str, Path]) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            yaml.safe_dump({"analysis": self.to_dict()}, f, sort_keys=False)
        return output_path
