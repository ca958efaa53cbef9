"""Canonical-correlation integration of per-batch embeddings.

Batches are aligned in two phases:

1. For every batch pair (in parallel), canonical directions of the
   cross-batch structure ``Z_a @ Z_b.T`` are computed and mutual nearest
   neighbors in the L2-normalized canonical space become anchors.
2. A serial reduction starts from the batch with the most successful
   pairs. Each later batch is corrected toward every already-integrated
   batch it shares anchors with, using anchor correction vectors weighted
   by each cell's distance to the anchors. See ``reduction_order``.

The cross-batch matrix is never formed: with thin QR factors
``Z_a = Q_a R_a`` and ``Z_b = Q_b R_b`` its singular vectors are
``Q_a U`` and ``Q_b V`` where ``U S V^T`` is the SVD of ``R_a R_b^T``.
The decomposition is exact, so no random starting vector is involved.
"""

from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Dict, List, Optional, Tuple
import logging
import time

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.spatial import cKDTree

from ...errors import InsufficientOverlap
from ..registry import Embedding, EmbeddingKey
from .config import IntegrationConfig


RANK_TOLERANCE = 1e-8


@dataclass
class PairAnchors:
    """Anchors between two batches.

    Anchor positions index rows of each batch's own embedding block.
    """

    batch_a: str
    batch_b: str
    anchors_a: np.ndarray
    anchors_b: np.ndarray
    canonical_rank: int = 0
    success: bool = True
    error: Optional[str] = None
    timing_seconds: float = 0.0

    @property
    def n_anchors(self) -> int:
        return int(len(self.anchors_a))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_a": self.batch_a,
            "batch_b": self.batch_b,
            "canonical_rank": self.canonical_rank,
            "n_anchors": self.n_anchors,
            "status": "ok" if self.success else "failed",
            "error": self.error or "",
        }


@dataclass
class IntegrationResult:
    """Result from batch integration.

    Attributes
    ----------
    embedding : Embedding
        Integrated embedding covering every input cell
    order : List[str]
        Integrated batches in correction order, reference first
    pairs : List[PairAnchors]
        Anchor search outcome for every batch pair
    failed_batches : List[str]
        Batches left uncorrected (only with ``tolerate_partial``)
    integrated : pd.Series
        Per-cell flag, False for cells of failed batches
    """

    embedding: Embedding
    order: List[str] = field(default_factory=list)
    pairs: List[PairAnchors] = field(default_factory=list)
    failed_batches: List[str] = field(default_factory=list)
    integrated: Optional[pd.Series] = None

    def pair_report(self) -> pd.DataFrame:
        return pd.DataFrame(
            [p.to_dict() for p in self.pairs],
            columns=["batch_a", "batch_b", "canonical_rank", "n_anchors", "status", "error"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_batches": len(self.order) + len(self.failed_batches),
            "order": list(self.order),
            "n_pairs": len(self.pairs),
            "n_failed_pairs": sum(1 for p in self.pairs if not p.success),
            "failed_batches": list(self.failed_batches),
        }


def standardize_columns(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=np.float64)
    centered = values - values.mean(axis=0)
    stds = centered.std(axis=0, ddof=1) if values.shape[0] > 1 else np.zeros(values.shape[1])
    return centered / np.where(stds > 0, stds, 1.0)


def l2_normalize_rows(values: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(values, axis=1, keepdims=True)
    return values / np.where(norms > 0, norms, 1.0)


def canonical_vectors(
    values_a: np.ndarray, values_b: np.ndarray, n_canonical: int
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Leading singular vectors of ``standardize(a) @ standardize(b).T``.

    Returns
    -------
    Tuple[np.ndarray, np.ndarray, np.ndarray]
        Canonical cell vectors for batch a, for batch b, and all singular values
    """
    za = standardize_columns(values_a)
    zb = standardize_columns(values_b)
    qa, ra = np.linalg.qr(za)
    qb, rb = np.linalg.qr(zb)
    u, s, vt = np.linalg.svd(ra @ rb.T)
    k = min(n_canonical, len(s))
    return qa @ u[:, :k], qb @ vt[:k].T, s


def numerical_rank(singular_values: np.ndarray, tol: float = RANK_TOLERANCE) -> int:
    if len(singular_values) == 0 or singular_values[0] <= 0:
        return 0
    return int(np.sum(singular_values > singular_values[0] * tol))


def _knn(tree_points: np.ndarray, queries: np.ndarray, k: int) -> np.ndarray:
    k = min(k, len(tree_points))
    _, idx = cKDTree(tree_points).query(queries, k=k)
    return np.asarray(idx).reshape(len(queries), k)


def mutual_nearest_neighbors(
    points_a: np.ndarray, points_b: np.ndarray, k: int
) -> Tuple[np.ndarray, np.ndarray]:
    """Pairs (i, j) where j is among i's k nearest in b and i among j's in a.

    Pairs are returned sorted by (i, j).
    """
    na, nb = len(points_a), len(points_b)
    nn_ab = _knn(points_b, points_a, k)
    nn_ba = _knn(points_a, points_b, k)
    a_to_b = sparse.csr_matrix(
        (np.ones(nn_ab.size), (np.repeat(np.arange(na), nn_ab.shape[1]), nn_ab.ravel())),
        shape=(na, nb),
    )
    b_to_a = sparse.csr_matrix(
        (np.ones(nn_ba.size), (nn_ba.ravel(), np.repeat(np.arange(nb), nn_ba.shape[1]))),
        shape=(na, nb),
    )
    mutual = a_to_b.multiply(b_to_a).tocoo()
    order = np.lexsort((mutual.col, mutual.row))
    return mutual.row[order].astype(np.int64), mutual.col[order].astype(np.int64)


def find_pair_anchors(
    label_a: str,
    values_a: np.ndarray,
    label_b: str,
    values_b: np.ndarray,
    config: IntegrationConfig,
) -> PairAnchors:
    """Anchor search for one batch pair.

    Designed to run in a worker process. Overlap failures are returned as
    an unsuccessful ``PairAnchors`` rather than raised.
    """
    start_time = time.time()
    empty = np.array([], dtype=np.int64)
    rank = 0
    try:
        cca_a, cca_b, singular = canonical_vectors(values_a, values_b, config.n_canonical)
        rank = numerical_rank(singular)
        if rank < config.min_canonical_rank:
            raise InsufficientOverlap(
                f"Canonical rank {rank} below minimum {config.min_canonical_rank}",
                pair=(label_a, label_b),
                params={"min_canonical_rank": config.min_canonical_rank},
            )

        anchors_a, anchors_b = mutual_nearest_neighbors(
            l2_normalize_rows(cca_a), l2_normalize_rows(cca_b), config.k_anchor
        )
        if len(anchors_a) < config.min_anchors:
            raise InsufficientOverlap(
                f"Found {len(anchors_a)} anchors, minimum is {config.min_anchors}",
                pair=(label_a, label_b),
                params={"min_anchors": config.min_anchors, "k_anchor": config.k_anchor},
            )
        return PairAnchors(
            batch_a=label_a,
            batch_b=label_b,
            anchors_a=anchors_a,
            anchors_b=anchors_b,
            canonical_rank=rank,
            timing_seconds=time.time() - start_time,
        )
    except (InsufficientOverlap, np.linalg.LinAlgError) as e:
        return PairAnchors(
            batch_a=label_a,
            batch_b=label_b,
            anchors_a=empty,
            anchors_b=empty,
            canonical_rank=rank,
            success=False,
            error=str(e),
            timing_seconds=time.time() - start_time,
        )


def anchor_weights(
    query: np.ndarray,
    anchor_cells: np.ndarray,
    k_weight: int,
    sd_weight: float = 1.0,
) -> sparse.csr_matrix:
    """Row-normalized weights of each query cell on its nearest anchors.

    Parameters
    ----------
    query : np.ndarray
        Query batch coordinates (n_cells x n_dims)
    anchor_cells : np.ndarray
        Query-side row position of every anchor
    k_weight : int
        Anchors considered per cell
    sd_weight : float
        Kernel bandwidth

    Returns
    -------
    sparse.csr_matrix
        (n_cells x n_anchors) weights; every row sums to 1
    """
    n_cells, n_anchors = len(query), len(anchor_cells)
    k = min(k_weight, n_anchors)
    dists, idx = cKDTree(query[anchor_cells]).query(query, k=k)
    dists = np.asarray(dists, dtype=float).reshape(n_cells, k)
    idx = np.asarray(idx).reshape(n_cells, k)

    kth = dists[:, -1:]
    scaled = np.where(kth > 0, 1.0 - dists / np.where(kth > 0, kth, 1.0), 1.0)
    weights = 1.0 - np.exp(-scaled / (2.0 * (1.0 / sd_weight)) ** 2)
    totals = weights.sum(axis=1, keepdims=True)
    # Cells whose kernel weights all vanish fall back to uniform weights.
    weights = np.where(totals > 0, weights / np.where(totals > 0, totals, 1.0), 1.0 / k)

    rows = np.repeat(np.arange(n_cells), k)
    return sparse.csr_matrix(
        (weights.ravel(), (rows, idx.ravel())), shape=(n_cells, n_anchors)
    )


def _pair_anchors_for(
    by_pair: Dict[Tuple[str, str], PairAnchors], query: str, ref: str
) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Anchor positions as (query side, reference side), or None."""
    pair = by_pair.get((ref, query))
    if pair is not None:
        return pair.anchors_b, pair.anchors_a
    pair = by_pair.get((query, ref))
    if pair is not None:
        return pair.anchors_a, pair.anchors_b
    return None


def reduction_order(
    labels: List[str], pairs: List[PairAnchors]
) -> Tuple[List[str], List[str]]:
    """Order in which batches are corrected, and batches that cannot be.

    The reference is the batch with the most successful pairs (ties go to
    the smaller label). Each following batch is the smallest label that
    shares anchors with a batch already in the order. Batches never reached
    this way are returned as failed, in sorted order.
    """
    ok_counts = {b: 0 for b in labels}
    linked = {b: set() for b in labels}
    for p in pairs:
        if p.success:
            ok_counts[p.batch_a] += 1
            ok_counts[p.batch_b] += 1
            linked[p.batch_a].add(p.batch_b)
            linked[p.batch_b].add(p.batch_a)

    remaining = sorted(b for b in labels if ok_counts[b] > 0)
    if not remaining:
        return [], sorted(labels)
    reference = min(remaining, key=lambda b: (-ok_counts[b], b))
    order = [reference]
    remaining.remove(reference)
    while remaining:
        reachable = [b for b in remaining if linked[b] & set(order)]
        if not reachable:
            break
        order.append(reachable[0])
        remaining.remove(reachable[0])
    failed = sorted(b for b in labels if b not in order)
    return order, failed


class CCAIntegrator:
    """Aligns per-batch blocks of an embedding into one shared space.

    Parameters
    ----------
    config : IntegrationConfig, optional
        Integration configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> integrator = CCAIntegrator(IntegrationConfig(k_anchor=5))
    >>> result = integrator.integrate(pca_result.embedding, partition.cell_batches())
    >>> result.pair_report()
    """

    def __init__(
        self,
        config: Optional[IntegrationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or IntegrationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _output_key(self, source: Embedding) -> EmbeddingKey:
        return EmbeddingKey.create(
            "cca_integrated",
            source.key.scope,
            source=source.key.label,
            n_canonical=self.config.n_canonical,
            k_anchor=self.config.k_anchor,
            k_weight=self.config.k_weight,
            sd_weight=self.config.sd_weight,
        )

    def find_anchors(self, blocks: Dict[str, np.ndarray]) -> List[PairAnchors]:
        """Run anchor search for all batch pairs in sorted label order."""
        labels = sorted(blocks)
        pairs = list(combinations(labels, 2))
        if self.config.n_jobs == 1 or len(pairs) <= 1:
            results = [
                find_pair_anchors(a, blocks[a], b, blocks[b], self.config) for a, b in pairs
            ]
        else:
            from joblib import Parallel, delayed

            self.logger.info(
                "Searching anchors for %d pairs with %d workers", len(pairs), self.config.n_jobs
            )
            results = Parallel(n_jobs=self.config.n_jobs)(
                delayed(find_pair_anchors)(a, blocks[a], b, blocks[b], self.config)
                for a, b in pairs
            )

        for r in results:
            if r.success:
                self.logger.info(
                    "Pair %s/%s: rank %d, %d anchors (%.2fs)",
                    r.batch_a,
                    r.batch_b,
                    r.canonical_rank,
                    r.n_anchors,
                    r.timing_seconds,
                )
            else:
                self.logger.warning("Pair %s/%s failed: %s", r.batch_a, r.batch_b, r.error)
        return results

    def integrate(self, embedding: Embedding, batches: pd.Series) -> IntegrationResult:
        """Integrate ``embedding`` across the batches given per cell.

        Parameters
        ----------
        embedding : Embedding
            Source embedding (typically PCA over all cells)
        batches : pd.Series
            Batch label per cell, indexed by cell identity

        Returns
        -------
        IntegrationResult
            Integrated embedding over every input cell

        Raises
        ------
        InsufficientOverlap
            If a pair fails and ``tolerate_partial`` is False, or if no
            pair succeeds at all
        """
        labels = batches.reindex(embedding.cell_ids)
        if labels.isna().any():
            raise KeyError("Batch labels do not cover every embedding cell")
        labels = labels.astype(str).to_numpy()
        labels_sorted = sorted(set(labels))
        positions = {b: np.flatnonzero(labels == b) for b in labels_sorted}
        values = np.asarray(embedding.values, dtype=np.float64)
        blocks = {b: values[positions[b]] for b in labels_sorted}
        key = self._output_key(embedding)

        if len(labels_sorted) == 1:
            self.logger.info("Single batch %s; integration is the identity", labels_sorted[0])
            return IntegrationResult(
                embedding=Embedding(
                    key=key,
                    values=values,
                    cell_ids=embedding.cell_ids,
                    component_names=embedding.component_names,
                ),
                order=labels_sorted,
                integrated=pd.Series(True, index=embedding.cell_ids, name="integrated"),
            )

        pairs = self.find_anchors(blocks)
        failed_pairs = [p for p in pairs if not p.success]
        if failed_pairs and not self.config.tolerate_partial:
            first = failed_pairs[0]
            raise InsufficientOverlap(
                f"Batches {first.batch_a} and {first.batch_b} cannot be aligned: {first.error}",
                pair=(first.batch_a, first.batch_b),
                params={
                    "min_canonical_rank": self.config.min_canonical_rank,
                    "min_anchors": self.config.min_anchors,
                },
                counts_before=len(pairs),
                counts_after=len(pairs) - len(failed_pairs),
            )

        order, failed_batches = reduction_order(labels_sorted, pairs)
        if not order:
            raise InsufficientOverlap(
                "No batch pair could be aligned",
                pair=(pairs[0].batch_a, pairs[0].batch_b),
                params={
                    "min_canonical_rank": self.config.min_canonical_rank,
                    "min_anchors": self.config.min_anchors,
                },
                counts_before=len(pairs),
                counts_after=0,
            )
        for batch in failed_batches:
            self.logger.warning(
                "Batch %s shares no anchors with integrated batches; left uncorrected", batch
            )
        self.logger.info("Reference batch %s; correction order %s", order[0], order)

        by_pair = {(p.batch_a, p.batch_b): p for p in pairs if p.success}
        corrected = {b: blocks[b] for b in failed_batches}
        corrected[order[0]] = blocks[order[0]]
        for i, query in enumerate(order[1:], start=1):
            references = {b: corrected[b] for b in order[:i]}
            corrected[query] = self._correct_query(query, blocks, references, by_pair)

        out = np.empty_like(values)
        for b in labels_sorted:
            out[positions[b]] = corrected[b]
        flags = ~np.isin(labels, failed_batches)

        self.logger.info(
            "Integrated %d cells across %d batches (%d failed)",
            len(values),
            len(labels_sorted),
            len(failed_batches),
        )
        return IntegrationResult(
            embedding=Embedding(
                key=key,
                values=out,
                cell_ids=embedding.cell_ids,
                component_names=embedding.component_names,
            ),
            order=order,
            pairs=pairs,
            failed_batches=failed_batches,
            integrated=pd.Series(flags, index=embedding.cell_ids, name="integrated"),
        )

    def _correct_query(
        self,
        query: str,
        blocks: Dict[str, np.ndarray],
        corrected: Dict[str, np.ndarray],
        by_pair: Dict[Tuple[str, str], PairAnchors],
    ) -> np.ndarray:
        """Correct one query batch toward every integrated batch it shares anchors with."""
        anchor_cells: List[np.ndarray] = []
        vectors: List[np.ndarray] = []
        block = blocks[query]
        for ref, ref_values in corrected.items():
            found = _pair_anchors_for(by_pair, query, ref)
            if found is None:
                continue
            query_cells, ref_cells = found
            anchor_cells.append(query_cells)
            vectors.append(ref_values[ref_cells] - block[query_cells])

        anchor_cells_all = np.concatenate(anchor_cells)
        weights = anchor_weights(
            block, anchor_cells_all, self.config.k_weight, self.config.sd_weight
        )
        correction = weights @ np.vstack(vectors)
        return block + np.asarray(correction)
