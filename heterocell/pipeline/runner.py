"""End-to-end analysis pipeline.

Stages are registered with an ``InMemoryExecutor``; each consumes the
``PipelineState`` returned by the stage it depends on and returns a new
state. No stage modifies its input.

    metadata -> qc -> partition -> normalize -> features -> pca
             -> integration -> clustering [-> projection]
"""

from typing import Any, Dict, Optional
import logging

import pandas as pd

from ..core.centiles import CentileAnalyzer, CentileTable
from ..core.clustering import ClusteringResult, EmbeddingProjector, GraphClusterer
from ..core.matrix import ExpressionMatrix
from ..core.preprocessing import (
    BatchPartitioner,
    CellQC,
    FeatureSelector,
    MetadataBuilder,
    Normalizer,
)
from ..core.reduction import CCAIntegrator, PCAReducer
from ..core.state import PipelineState
from .config import AnalysisConfig
from .executor import InMemoryExecutor
from .logger import PipelineLogger


STAGES = [
    ("metadata", "Cell metadata", []),
    ("qc", "Cell quality control", ["metadata"]),
    ("partition", "Batch partition", ["qc"]),
    ("normalize", "Per-batch normalization", ["partition"]),
    ("features", "Variable features", ["normalize"]),
    ("pca", "PCA", ["features"]),
    ("integration", "CCA integration", ["pca"]),
    ("clustering", "Graph clustering", ["integration"]),
    ("projection", "2D projection", ["clustering"]),
]


class AnalysisPipeline:
    """Runs the full analysis from a count table to cluster assignments.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Run configuration
    logger : PipelineLogger, optional
        Stage event logger

    Attributes
    ----------
    reports : Dict[str, Any]
        Detailed stage results of the last run (QCResult, PCAResult,
        IntegrationResult, ClusteringResult, ...)

    Example
    -------
    >>> pipeline = AnalysisPipeline(AnalysisConfig.from_yaml("analysis.yaml"))
    >>> state = pipeline.run(counts, annotations)
    >>> state.registry.latest_clustering().sizes()
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        logger: Optional[PipelineLogger] = None,
    ):
        self.config = config or AnalysisConfig()
        self.stage_logger = logger
        self.logger = logger.logger if logger is not None else logging.getLogger(__name__)
        self.reports: Dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _metadata(self, table, annotations=None, stage_results=None, **_) -> PipelineState:
        result = MetadataBuilder(self.config.metadata, self.logger).build(
            table.columns, annotations
        )
        self.reports["metadata"] = result
        matrix = ExpressionMatrix.from_gene_by_cell(table, obs=result.metadata)
        state = PipelineState(
            matrix=matrix,
            batch_col=self.config.batch_col,
            config=self.config.to_dict(),
        )
        return state.with_summary("metadata", result.to_dict())

    def _qc(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["metadata"]
        qc = CellQC(self.config.qc, self.logger).filter(state.matrix)
        self.reports["qc"] = qc
        return state.evolve(matrix=qc.matrix, qc=qc).with_summary("qc", qc.to_dict())

    def _partition(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["qc"]
        partition = BatchPartitioner(state.batch_col, self.logger).partition(state.matrix)
        return state.evolve(partition=partition).with_summary(
            "partition", {"n_batches": len(partition), "sizes": partition.sizes()}
        )

    def _normalize(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["partition"]
        normalizer = Normalizer(self.config.normalization, self.logger)
        normalized = normalizer.normalize(state.partition)
        self.reports["normalize"] = normalizer.summary(normalized)
        return state.evolve(normalized=normalized).with_summary(
            "normalize",
            {"scale_factor": self.config.normalization.scale_factor, "n_batches": len(normalized.per_batch)},
        )

    def _features(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["normalize"]
        features = FeatureSelector(self.config.features, self.logger).select(state.normalized)
        self.reports["features"] = features
        return state.evolve(features=features).with_summary("features", features.to_dict())

    def _pca(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["features"]
        result = PCAReducer(self.config.pca, self.logger).fit(
            state.normalized, state.features.selected
        )
        self.reports["pca"] = result
        return state.evolve(registry=state.registry.with_embedding(result.embedding)).with_summary(
            "pca", result.to_dict()
        )

    def _integration(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["pca"]
        source = state.registry.latest_embedding("pca")
        result = CCAIntegrator(self.config.integration, self.logger).integrate(
            source, state.cell_batches()
        )
        self.reports["integration"] = result
        matrix = state.matrix.with_obs(result.integrated.to_frame())
        return state.evolve(
            matrix=matrix,
            registry=state.registry.with_embedding(result.embedding),
        ).with_summary("integration", result.to_dict())

    def _clustering(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["integration"]
        return self.recluster(state)

    def _projection(self, stage_results, **_) -> PipelineState:
        state: PipelineState = stage_results["clustering"]
        cfg = self.config.projection
        if not cfg.enabled:
            self.logger.info("Projection disabled; skipping")
            return state
        source = state.registry.latest_embedding("cca_integrated")
        projection = EmbeddingProjector(cfg, self.logger).project(source)
        return state.evolve(registry=state.registry.with_embedding(projection)).with_summary(
            "projection", {"method": cfg.method, "key": projection.key.label}
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_executor(self) -> InMemoryExecutor:
        executor = InMemoryExecutor(self.stage_logger)
        for stage_id, name, depends_on in STAGES:
            executor.register_stage(
                stage_id, getattr(self, f"_{stage_id}"), depends_on=depends_on, name=name
            )
        return executor

    def run(
        self,
        table: pd.DataFrame,
        annotations: Optional[pd.DataFrame] = None,
    ) -> PipelineState:
        """Run every stage on a gene x cell count table.

        Parameters
        ----------
        table : pd.DataFrame
            Counts with gene symbols as index and cell identifiers as columns
        annotations : pd.DataFrame, optional
            External per-cell annotations

        Returns
        -------
        PipelineState
            Final state with embeddings and cluster assignments registered
        """
        self.reports = {}
        executor = self.build_executor()
        results = executor.run(table=table, annotations=annotations)
        state: PipelineState = results[executor.completed_stages[-1]]
        self.logger.info(
            "Analysis complete: %d cells, %d embeddings, %d clusterings",
            state.n_cells,
            len(state.registry.embeddings),
            len(state.registry.clusterings),
        )
        return state

    def recluster(
        self,
        state: PipelineState,
        resolution: Optional[float] = None,
        seed: Optional[int] = None,
        embedding_method: str = "cca_integrated",
    ) -> PipelineState:
        """Cluster the latest ``embedding_method`` embedding and register the result.

        Earlier clusterings stay in the registry; the input state is unchanged.
        """
        source = state.registry.latest_embedding(embedding_method)
        clusterer = GraphClusterer(self.config.clustering, self.logger)
        result: ClusteringResult = clusterer.cluster(source, resolution=resolution, seed=seed)
        composition = clusterer.composition(result.assignment, state.cell_batches())
        self.reports["clustering"] = result
        self.reports["composition"] = composition
        return state.evolve(
            registry=state.registry.with_clustering(result.assignment)
        ).with_summary("clustering", result.to_dict())

    def centiles(
        self,
        state: PipelineState,
        genes=None,
    ) -> CentileTable:
        """Centile table for ``genes`` (default: configured genes) on ``state``."""
        analyzer = CentileAnalyzer(self.config.centiles, self.logger)
        return analyzer.compute(state.normalized, genes)
