"""Typed registry of embeddings and cluster assignments.

Results are keyed by (method, input scope, parameters) rather than by a
free-form label, so a second result computed with different parameters is
stored beside the first instead of replacing it.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
import json

import numpy as np
import pandas as pd

from ..errors import RegistryConflict


ParamTuple = Tuple[Tuple[str, Any], ...]


def _normalize_params(params: Mapping[str, Any]) -> ParamTuple:
    normalized = []
    for name in sorted(params):
        value = params[name]
        if isinstance(value, np.generic):
            value = value.item()
        if isinstance(value, (list, tuple)):
            value = tuple(value)
        normalized.append((str(name), value))
    return tuple(normalized)


def _readonly(values: np.ndarray) -> np.ndarray:
    arr = np.array(values, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class EmbeddingKey:
    """Identity of an embedding: method, input scope and parameters.

    Attributes
    ----------
    method : str
        Producing method (``pca``, ``cca_integrated``, ``umap``, ``tsne``)
    scope : str
        Cells the embedding was computed on (``all`` or ``batch:<label>``)
    params : ParamTuple
        Sorted (name, value) pairs
    """

    method: str
    scope: str = "all"
    params: ParamTuple = ()

    @classmethod
    def create(cls, method: str, scope: str = "all", **params) -> "EmbeddingKey":
        return cls(method=method, scope=scope, params=_normalize_params(params))

    @property
    def label(self) -> str:
        args = ",".join(f"{k}={v}" for k, v in self.params)
        return f"{self.method}[{self.scope}]({args})"

    def param(self, name: str, default: Any = None) -> Any:
        return dict(self.params).get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "scope": self.scope,
            "params": json.dumps(dict(self.params), sort_keys=True),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EmbeddingKey":
        params = json.loads(str(data.get("params", "{}")))
        return cls.create(str(data["method"]), str(data.get("scope", "all")), **params)


@dataclass(frozen=True)
class Embedding:
    """Per-cell coordinates on a list of named components.

    Attributes
    ----------
    key : EmbeddingKey
        Registry identity
    values : np.ndarray
        Read-only array of shape (n_cells, n_components)
    cell_ids : pd.Index
        Row identities
    component_names : Tuple[str, ...]
        Column names
    loadings : pd.DataFrame, optional
        Gene x component weights (PCA only)
    variance_explained : np.ndarray, optional
        Fraction of variance explained per component (PCA only)
    """

    key: EmbeddingKey
    values: np.ndarray
    cell_ids: pd.Index
    component_names: Tuple[str, ...]
    loadings: Optional[pd.DataFrame] = None
    variance_explained: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "values", _readonly(self.values))
        object.__setattr__(self, "cell_ids", pd.Index(self.cell_ids, name="cell_id"))
        object.__setattr__(self, "component_names", tuple(self.component_names))
        if self.values.ndim != 2:
            raise ValueError("Embedding values must be two-dimensional")
        if self.values.shape[0] != len(self.cell_ids):
            raise ValueError(
                f"Embedding has {self.values.shape[0]} rows for {len(self.cell_ids)} cells"
            )
        if self.values.shape[1] != len(self.component_names):
            raise ValueError(
                f"Embedding has {self.values.shape[1]} columns for "
                f"{len(self.component_names)} component names"
            )
        if self.variance_explained is not None:
            object.__setattr__(
                self, "variance_explained", _readonly(self.variance_explained)
            )

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_components(self) -> int:
        return self.values.shape[1]

    def restrict(self, cell_ids: Iterable[str]) -> "Embedding":
        """Rows for ``cell_ids``, in the given order."""
        positions = self.cell_ids.get_indexer(pd.Index(list(cell_ids)))
        if (positions < 0).any():
            raise KeyError("Embedding does not cover all requested cells")
        return Embedding(
            key=self.key,
            values=self.values[positions],
            cell_ids=self.cell_ids[positions],
            component_names=self.component_names,
            loadings=self.loadings,
            variance_explained=self.variance_explained,
        )

    def leading(self, n: int) -> np.ndarray:
        """Values on the first ``n`` components."""
        if n > self.n_components:
            raise ValueError(
                f"Requested {n} dimensions but embedding {self.key.label} "
                f"has {self.n_components}"
            )
        return self.values[:, :n]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            np.asarray(self.values), index=self.cell_ids, columns=list(self.component_names)
        )


@dataclass(frozen=True)
class ClusterKey:
    """Identity of a clustering: source embedding plus graph/partition parameters."""

    embedding: EmbeddingKey
    resolution: float
    n_dims: int
    k: int
    seed: int
    algorithm: str = "leiden"

    @property
    def label(self) -> str:
        return (
            f"{self.algorithm}(res={self.resolution},dims={self.n_dims},"
            f"k={self.k},seed={self.seed})@{self.embedding.label}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "embedding": self.embedding.to_dict(),
            "resolution": float(self.resolution),
            "n_dims": int(self.n_dims),
            "k": int(self.k),
            "seed": int(self.seed),
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClusterKey":
        return cls(
            embedding=EmbeddingKey.from_dict(data["embedding"]),
            resolution=float(data["resolution"]),
            n_dims=int(data["n_dims"]),
            k=int(data["k"]),
            seed=int(data["seed"]),
            algorithm=str(data.get("algorithm", "leiden")),
        )


@dataclass(frozen=True)
class ClusterAssignment:
    """Cell to community id mapping for one (embedding, resolution, algorithm) triple.

    Community ids are only stable for a fixed key; recomputation may renumber.
    """

    key: ClusterKey
    labels: pd.Series
    modularity: float = float("nan")

    def __post_init__(self):
        labels = pd.Series(
            np.asarray(self.labels, dtype=np.int64),
            index=pd.Index(self.labels.index, name="cell_id"),
            name="cluster",
        )
        object.__setattr__(self, "labels", labels)

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    def sizes(self) -> Dict[int, int]:
        counts = self.labels.value_counts().sort_index()
        return {int(k): int(v) for k, v in counts.items()}


@dataclass(frozen=True)
class ResultRegistry:
    """Immutable mapping of typed keys to embeddings and cluster assignments.

    ``with_embedding`` and ``with_clustering`` return a new registry; the
    receiver is never modified. Insertion order is preserved so ``latest``
    lookups return the most recently registered result.
    """

    _embeddings: Mapping[EmbeddingKey, Embedding] = field(
        default_factory=lambda: MappingProxyType({})
    )
    _clusterings: Mapping[ClusterKey, ClusterAssignment] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def with_embedding(self, embedding: Embedding) -> "ResultRegistry":
        if embedding.key in self._embeddings:
            raise RegistryConflict(
                f"Embedding already registered: {embedding.key.label}", stage="registry"
            )
        updated = dict(self._embeddings)
        updated[embedding.key] = embedding
        return ResultRegistry(MappingProxyType(updated), self._clusterings)

    def with_clustering(self, assignment: ClusterAssignment) -> "ResultRegistry":
        if assignment.key in self._clusterings:
            raise RegistryConflict(
                f"Clustering already registered: {assignment.key.label}", stage="registry"
            )
        updated = dict(self._clusterings)
        updated[assignment.key] = assignment
        return ResultRegistry(self._embeddings, MappingProxyType(updated))

    @property
    def embeddings(self) -> Mapping[EmbeddingKey, Embedding]:
        return self._embeddings

    @property
    def clusterings(self) -> Mapping[ClusterKey, ClusterAssignment]:
        return self._clusterings

    def embedding(self, key: EmbeddingKey) -> Embedding:
        return self._embeddings[key]

    def clustering(self, key: ClusterKey) -> ClusterAssignment:
        return self._clusterings[key]

    def find_embeddings(self, method: str) -> List[Embedding]:
        return [e for k, e in self._embeddings.items() if k.method == method]

    def latest_embedding(self, method: str) -> Embedding:
        matches = self.find_embeddings(method)
        if not matches:
            raise KeyError(f"No embedding registered for method '{method}'")
        return matches[-1]

    def latest_clustering(self) -> ClusterAssignment:
        if not self._clusterings:
            raise KeyError("No clustering registered")
        return list(self._clusterings.values())[-1]

    def __contains__(self, key) -> bool:
        return key in self._embeddings or key in self._clusterings

    def __len__(self) -> int:
        return len(self._embeddings) + len(self._clusterings)
