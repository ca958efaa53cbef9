"""Checkpointing of the pipeline state to an AnnData ``.h5ad`` file.

Layout of the file:

- ``X``: raw counts of retained cells, ``obs``/``var``: cell and gene tables
  (the feature selection table is stored as ``var`` columns)
- ``layers["normalized"]``: log-normalized values
- ``uns["embeddings"]``, ``uns["clusterings"]``: registry entries in
  registration order, with their keys
- ``uns["normalization"]``: per-batch scale factors and size factors
- ``uns["heterocell"]``: batch column, summaries, configuration and the
  names of string columns that must be restored from categoricals

Reload reproduces an equal in-memory state; equality is checked on
content, not on file bytes.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..core.matrix import ExpressionMatrix
from ..core.preprocessing.batch import BatchPartitioner
from ..core.preprocessing.features import FeatureSelectionResult
from ..core.preprocessing.normalization import NormalizationResult, NormalizedMatrix
from ..core.registry import (
    ClusterAssignment,
    ClusterKey,
    Embedding,
    EmbeddingKey,
    ResultRegistry,
)
from ..core.state import PipelineState
from .logging import to_serializable

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

FORMAT_VERSION = 1


def _string_columns(frame: pd.DataFrame) -> List[str]:
    return [
        c
        for c in frame.columns
        if frame[c].dtype == object or isinstance(frame[c].dtype, pd.StringDtype)
    ]


def _encode_frame(frame: pd.DataFrame) -> pd.DataFrame:
    """Strings to categoricals, index name dropped (it may clash with a column)."""
    out = frame.copy()
    for col in _string_columns(out):
        out[col] = pd.Categorical(out[col].map(lambda v: v if pd.isna(v) else str(v)))
    out.index = out.index.astype(str)
    out.index.name = None
    return out


def _decode_frame(frame: pd.DataFrame, string_columns: List[str], index_name: str) -> pd.DataFrame:
    out = frame.copy()
    for col in string_columns:
        if col in out.columns:
            values = out[col].astype(object)
            out[col] = values.where(values.notna(), np.nan)
    out.index = pd.Index(out.index.astype(str), name=index_name)
    return out


def _embedding_record(embedding: Embedding) -> Dict[str, Any]:
    record = dict(embedding.key.to_dict())
    record["values"] = np.asarray(embedding.values, dtype=np.float64)
    record["cell_ids"] = np.asarray(embedding.cell_ids.astype(str), dtype=object)
    record["components"] = np.asarray(embedding.component_names, dtype=object)
    if embedding.loadings is not None:
        record["loadings"] = embedding.loadings.to_numpy(dtype=np.float64)
        record["loading_genes"] = np.asarray(embedding.loadings.index.astype(str), dtype=object)
    if embedding.variance_explained is not None:
        record["variance_explained"] = np.asarray(embedding.variance_explained, dtype=np.float64)
    return record


def _embedding_from_record(record: Dict[str, Any]) -> Embedding:
    components = [str(c) for c in record["components"]]
    loadings = None
    if "loadings" in record:
        loadings = pd.DataFrame(
            np.asarray(record["loadings"]),
            index=pd.Index([str(g) for g in record["loading_genes"]], name="gene"),
            columns=components,
        )
    variance = record.get("variance_explained")
    return Embedding(
        key=EmbeddingKey.from_dict(
            {"method": record["method"], "scope": record["scope"], "params": record["params"]}
        ),
        values=np.asarray(record["values"]),
        cell_ids=[str(c) for c in record["cell_ids"]],
        component_names=components,
        loadings=loadings,
        variance_explained=None if variance is None else np.asarray(variance),
    )


def _clustering_record(assignment: ClusterAssignment) -> Dict[str, Any]:
    return {
        "key": json.dumps(assignment.key.to_dict(), sort_keys=True),
        "labels": assignment.labels.to_numpy(dtype=np.int64),
        "cell_ids": np.asarray(assignment.labels.index.astype(str), dtype=object),
        "modularity": float(assignment.modularity),
    }


def _clustering_from_record(record: Dict[str, Any]) -> ClusterAssignment:
    return ClusterAssignment(
        key=ClusterKey.from_dict(json.loads(str(record["key"]))),
        labels=pd.Series(
            np.asarray(record["labels"], dtype=np.int64),
            index=[str(c) for c in record["cell_ids"]],
        ),
        modularity=float(record["modularity"]),
    )


def _ordered(records: Dict[str, Any]) -> List[Any]:
    return [records[k] for k in sorted(records)]


def state_to_anndata(state: PipelineState):
    """Convert a pipeline state to an AnnData object."""
    from anndata import AnnData

    matrix = state.matrix
    var = matrix.var.copy()
    feature_columns: List[str] = []
    if state.features is not None:
        table = state.features.table.reindex(matrix.gene_symbols)
        feature_columns = [c for c in table.columns if c not in var.columns]
        for col in feature_columns:
            var[col] = table[col].to_numpy()

    adata = AnnData(X=matrix.counts.copy(), obs=_encode_frame(matrix.obs), var=_encode_frame(var))
    if state.normalized is not None:
        adata.layers["normalized"] = state.normalized.values.copy()
        adata.uns["normalization"] = {
            label: {
                "positions": np.asarray(r.positions, dtype=np.int64),
                "size_factors": np.asarray(r.size_factors, dtype=np.float64),
                "scale_factor": float(r.scale_factor),
                "log_base": float(r.log_base),
            }
            for label, r in state.normalized.per_batch.items()
        }

    adata.uns["embeddings"] = {
        f"{i:04d}": _embedding_record(e)
        for i, e in enumerate(state.registry.embeddings.values())
    }
    adata.uns["clusterings"] = {
        f"{i:04d}": _clustering_record(a)
        for i, a in enumerate(state.registry.clusterings.values())
    }

    features_meta: Dict[str, Any] = {"present": state.features is not None}
    if state.features is not None:
        features_meta.update(
            {
                "columns": feature_columns,
                "selected": list(state.features.selected),
                "excluded": state.features.excluded.to_dict(orient="records"),
            }
        )
    adata.uns["heterocell"] = {
        "format_version": FORMAT_VERSION,
        "batch_col": state.batch_col,
        "obs_strings": json.dumps(_string_columns(matrix.obs)),
        "var_strings": json.dumps(_string_columns(var)),
        "features": json.dumps(to_serializable(features_meta)),
        "summaries": json.dumps(to_serializable(dict(state.summaries)), default=str),
        "config": json.dumps(to_serializable(dict(state.config)), default=str),
    }
    return adata


def anndata_to_state(adata) -> PipelineState:
    """Rebuild a pipeline state from an AnnData written by ``state_to_anndata``."""
    meta = adata.uns["heterocell"]
    obs = _decode_frame(adata.obs, json.loads(str(meta["obs_strings"])), "cell_id")
    var_full = _decode_frame(adata.var, json.loads(str(meta["var_strings"])), "gene")

    features = None
    features_meta = json.loads(str(meta["features"]))
    var = var_full
    if features_meta.get("present"):
        columns = features_meta["columns"]
        var = var_full.drop(columns=columns)
        table = var_full[columns].copy()
        if "selected" in table.columns:
            table["selected"] = table["selected"].astype(bool)
        features = FeatureSelectionResult(
            table=table,
            selected=list(features_meta["selected"]),
            excluded=pd.DataFrame(features_meta["excluded"], columns=["name", "reason"]),
        )

    matrix = ExpressionMatrix(counts=sparse.csr_matrix(adata.X), obs=obs, var=var)

    normalized = None
    if "normalized" in adata.layers:
        values = sparse.csr_matrix(adata.layers["normalized"])
        per_batch = {}
        for label, rec in adata.uns.get("normalization", {}).items():
            positions = np.asarray(rec["positions"], dtype=np.int64)
            per_batch[str(label)] = NormalizationResult(
                label=str(label),
                positions=positions,
                normalized=values[positions, :],
                size_factors=np.asarray(rec["size_factors"], dtype=np.float64),
                scale_factor=float(rec["scale_factor"]),
                log_base=float(rec["log_base"]),
            )
        normalized = NormalizedMatrix(
            values=values,
            cell_ids=matrix.cell_ids,
            gene_symbols=matrix.gene_symbols,
            per_batch=dict(sorted(per_batch.items())),
        )

    registry = ResultRegistry()
    for record in _ordered(dict(adata.uns.get("embeddings", {}))):
        registry = registry.with_embedding(_embedding_from_record(record))
    for record in _ordered(dict(adata.uns.get("clusterings", {}))):
        registry = registry.with_clustering(_clustering_from_record(record))

    batch_col = str(meta["batch_col"])
    partition = None
    if batch_col in matrix.obs.columns:
        partition = BatchPartitioner(batch_col, logger=logger).partition(matrix)

    return PipelineState(
        matrix=matrix,
        normalized=normalized,
        registry=registry,
        batch_col=batch_col,
        partition=partition,
        features=features,
        summaries=json.loads(str(meta["summaries"])),
        config=json.loads(str(meta["config"])),
    )


def save_checkpoint(state: PipelineState, path: PathLike) -> Path:
    """Write ``state`` to an ``.h5ad`` checkpoint."""
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    adata = state_to_anndata(state)
    adata.write_h5ad(output_path)
    logger.info(
        "Saved checkpoint %s (%d cells, %d embeddings, %d clusterings)",
        output_path,
        state.n_cells,
        len(state.registry.embeddings),
        len(state.registry.clusterings),
    )
    return output_path


def load_checkpoint(path: PathLike) -> PipelineState:
    """Read a checkpoint written by ``save_checkpoint``."""
    import anndata

    input_path = Path(path)
    if not input_path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {input_path}")
    state = anndata_to_state(anndata.read_h5ad(input_path))
    logger.info("Loaded checkpoint %s (%d cells)", input_path, state.n_cells)
    return state
