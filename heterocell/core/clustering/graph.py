"""Shared-nearest-neighbor graph construction.

Every cell's k nearest neighbors (itself included) are found with a
KD-tree. Two cells are connected with weight equal to the Jaccard index of
their neighbor sets, ``shared / (2k - shared)``; weights below the pruning
threshold are dropped.
"""

from typing import Tuple

import numpy as np
from scipy import sparse
from scipy.spatial import cKDTree


def knn_indices(values: np.ndarray, k: int) -> np.ndarray:
    """Indices of the k nearest cells of every cell, the cell itself included."""
    values = np.asarray(values, dtype=np.float64)
    k = min(k, len(values))
    _, idx = cKDTree(values).query(values, k=k)
    return np.asarray(idx).reshape(len(values), k)


def snn_graph(neighbors: np.ndarray, prune: float = 1.0 / 15.0) -> sparse.csr_matrix:
    """Symmetric Jaccard-weighted SNN adjacency without self loops.

    Parameters
    ----------
    neighbors : np.ndarray
        (n_cells, k) neighbor indices from ``knn_indices``
    prune : float
        Minimum weight kept

    Returns
    -------
    sparse.csr_matrix
        (n_cells, n_cells) weights
    """
    n, k = neighbors.shape
    membership = sparse.csr_matrix(
        (np.ones(n * k), (np.repeat(np.arange(n), k), neighbors.ravel())),
        shape=(n, n),
    )
    shared = (membership @ membership.T).tocoo()
    weights = shared.data / (2.0 * k - shared.data)
    keep = (weights >= prune) & (shared.row != shared.col)
    graph = sparse.csr_matrix(
        (weights[keep], (shared.row[keep], shared.col[keep])), shape=(n, n)
    )
    graph.sort_indices()
    return graph


def graph_edges(graph: sparse.csr_matrix) -> Tuple[np.ndarray, np.ndarray]:
    """Undirected edge list (upper triangle) and weights of a symmetric graph."""
    upper = sparse.triu(graph, k=1).tocoo()
    order = np.lexsort((upper.col, upper.row))
    edges = np.column_stack([upper.row[order], upper.col[order]])
    return edges, upper.data[order]


def to_igraph(graph: sparse.csr_matrix):
    """Weighted undirected igraph Graph from a symmetric adjacency."""
    import igraph as ig

    edges, weights = graph_edges(graph)
    g = ig.Graph(n=graph.shape[0], edges=edges.tolist(), directed=False)
    g.es["weight"] = weights.tolist()
    return g
