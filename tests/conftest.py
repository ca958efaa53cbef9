"""Pytest configuration and shared fixtures for heterocell tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tests.fixtures import (
    create_cell_ids,
    create_mock_annotations,
    create_mock_counts,
)


# ============================================================================
# Count Table Fixtures
# ============================================================================


@pytest.fixture
def counts() -> pd.DataFrame:
    """Gene x cell counts: 3 donors x 60 cells, 200 genes, 3 cell types."""
    return create_mock_counts()


@pytest.fixture
def counts_with_outliers() -> pd.DataFrame:
    """Like ``counts`` but the first 5 cells of each donor have inflated totals."""
    return create_mock_counts(n_high_count=5)


@pytest.fixture
def annotations(counts) -> pd.DataFrame:
    """Annotation table keyed with ``_`` separators instead of ``.``."""
    return create_mock_annotations(list(counts.columns))


@pytest.fixture
def tiny_counts() -> pd.DataFrame:
    """Hand-written 4-gene x 4-cell table."""
    cells = create_cell_ids(n_donors=2, n_cells_per_donor=2)
    return pd.DataFrame(
        [
            [10, 0, 3, 1],
            [0, 5, 2, 0],
            [4, 4, 0, 2],
            [6, 1, 5, 7],
        ],
        index=pd.Index(["MT-CO1", "ACTB", "CD3E", "MS4A1"], name="gene"),
        columns=cells,
    )


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def small_config():
    """Analysis configuration sized for the synthetic tables."""
    from heterocell.pipeline import AnalysisConfig

    return AnalysisConfig.from_dict(
        {
            "qc": {"min_features": 20, "max_percent_mito": 15.0, "max_total_counts": 5000},
            "features": {"n_top_genes": 100},
            "pca": {"n_components": 20},
            "integration": {
                "n_canonical": 10,
                "k_anchor": 5,
                "k_weight": 30,
                "min_canonical_rank": 5,
                "min_anchors": 10,
            },
            "clustering": {"n_dims": 10, "k": 10, "resolution": 0.5},
            "projection": {"n_dims": 10, "n_neighbors": 10},
        }
    )


@pytest.fixture
def config_file(tmp_path, small_config) -> Path:
    """``small_config`` written as YAML, with centile genes set."""
    small_config.centiles.genes = ["GENE0000", "GENE0020", "NOT_A_GENE"]
    return small_config.to_yaml(tmp_path / "analysis.yaml")


# ============================================================================
# Pipeline Fixtures
# ============================================================================


@pytest.fixture
def pipeline_state(counts, annotations, small_config):
    """Final state of a full run on the synthetic counts."""
    from heterocell.pipeline import AnalysisPipeline

    return AnalysisPipeline(small_config).run(counts, annotations)


@pytest.fixture
def random_embedding():
    """Embedding of 3 well-separated Gaussian blobs (90 cells x 12 dims)."""
    from heterocell.core.registry import Embedding, EmbeddingKey

    rng = np.random.default_rng(7)
    centers = rng.normal(0, 10, size=(3, 12))
    values = np.vstack([c + rng.normal(0, 0.5, size=(30, 12)) for c in centers])
    return Embedding(
        key=EmbeddingKey.create("pca", n_components=12),
        values=values,
        cell_ids=[f"c{i:03d}" for i in range(90)],
        component_names=[f"PC{i + 1}" for i in range(12)],
    )
