"""Descriptive 2D projection of an embedding (UMAP or t-SNE).

Projections never feed clustering; they are registered beside the source
embedding for downstream display.
"""

from typing import Optional
import logging

import numpy as np
import pandas as pd

from ..registry import Embedding, EmbeddingKey
from .config import ProjectionConfig


PROJECTION_METHODS = ("umap", "tsne")


class EmbeddingProjector:
    """Runs scanpy UMAP or t-SNE on the leading dims of an embedding.

    Parameters
    ----------
    config : ProjectionConfig, optional
        Projection configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> projector = EmbeddingProjector(ProjectionConfig(method="umap"))
    >>> umap = projector.project(integrated.embedding)
    >>> umap.component_names
    ('UMAP1', 'UMAP2')
    """

    def __init__(
        self,
        config: Optional[ProjectionConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ProjectionConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _to_anndata(self, embedding: Embedding, n_dims: int):
        from anndata import AnnData

        rep = np.array(embedding.leading(n_dims), dtype=np.float32)
        adata = AnnData(
            X=np.zeros((embedding.n_cells, 1), dtype=np.float32),
            obs=pd.DataFrame(index=embedding.cell_ids.astype(str)),
        )
        adata.obsm["X_rep"] = rep
        return adata

    def project(self, embedding: Embedding, method: Optional[str] = None) -> Embedding:
        """Compute a 2D projection of ``embedding``.

        Raises
        ------
        ValueError
            If the method is not ``umap`` or ``tsne``
        """
        import scanpy as sc

        cfg = self.config
        method = (method or cfg.method).lower()
        if method not in PROJECTION_METHODS:
            raise ValueError(f"Unknown projection method: {method}")

        n_dims = min(cfg.n_dims, embedding.n_components)
        adata = self._to_anndata(embedding, n_dims)
        self.logger.info(
            "Computing %s for %d cells from %s (%d dims)",
            method.upper(),
            embedding.n_cells,
            embedding.key.label,
            n_dims,
        )

        if method == "umap":
            n_neighbors = min(cfg.n_neighbors, embedding.n_cells - 1)
            sc.pp.neighbors(
                adata, use_rep="X_rep", n_neighbors=n_neighbors, random_state=cfg.seed
            )
            sc.tl.umap(adata, min_dist=cfg.min_dist, random_state=cfg.seed)
            coords = np.asarray(adata.obsm["X_umap"])
            params = {"n_neighbors": n_neighbors, "min_dist": cfg.min_dist}
            names = ["UMAP1", "UMAP2"]
        else:
            sc.tl.tsne(
                adata, use_rep="X_rep", perplexity=cfg.perplexity, random_state=cfg.seed
            )
            coords = np.asarray(adata.obsm["X_tsne"])
            params = {"perplexity": cfg.perplexity}
            names = ["tSNE1", "tSNE2"]

        key = EmbeddingKey.create(
            method,
            embedding.key.scope,
            source=embedding.key.label,
            n_dims=n_dims,
            seed=cfg.seed,
            **params,
        )
        return Embedding(
            key=key,
            values=coords,
            cell_ids=embedding.cell_ids,
            component_names=names,
        )
