# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import pandas as pd

from anndata import AnnData
from harmonypy import run_harmony
from scipy.sparse import issparse
from sklearn.decomposition import PCA
from sklearn.metrics.pairwise import euclidean_distances
from sklearn.neighbors import NearestNeighbors

from .errors import (
    InvalidInputError,
    NoMutualNeighborsError,
    NumericalInstabilityError,
)

logger = logging.getLogger("fastmnnpy")


@dataclass
class PCAResult:
    # one [N_b, d] array per batch
    embeddings: list
    # [genes, d]
    rotation: np.ndarray
    # [genes] mean of the batch means
    center: np.ndarray
    variance_ratio: np.ndarray


def _no_ties() -> tuple:
    return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)


@dataclass
class NeighborResult:
    # [N_query, k], ordered by (distance, index)
    indices: np.ndarray
    distances: np.ndarray
    # (query rows, data indices) at exactly the k-th distance but cut from ``indices``
    tied: tuple = field(default_factory=_no_ties)

    @property
    def k(self) -> int:
        return self.indices.shape[1]

    def memberships(self) -> tuple:
        """All (query row, data index) neighbour relations, ties at the k-th distance included."""
        rows = np.repeat(np.arange(self.indices.shape[0]), self.k)
        return (
            np.concatenate([rows, self.tied[0]]).astype(np.int64),
            np.concatenate([self.indices.ravel(), self.tied[1]]).astype(np.int64),
        )


class MNNPairs:
    """Mutual nearest neighbour pairs between batch A (``first``) and batch B (``second``).

    Pairs are sorted by ``(first, second)`` and contain no duplicates.
    """

    def __init__(self, first: np.ndarray, second: np.ndarray):
        first = np.asarray(first, dtype=np.int64)
        second = np.asarray(second, dtype=np.int64)
        if first.shape != second.shape:
            raise InvalidInputError("both sides of the MNN pairs must have equal length")
        order = np.lexsort((second, first))
        self.first = first[order]
        self.second = second[order]

    def __len__(self) -> int:
        return self.first.shape[0]

    def __iter__(self):
        return zip(self.first.tolist(), self.second.tolist())

    def __eq__(self, other) -> bool:
        if not isinstance(other, MNNPairs):
            return NotImplemented
        return np.array_equal(self.first, other.first) and np.array_equal(
            self.second, other.second
        )

    def __repr__(self) -> str:
        return f"MNNPairs(n_pairs={len(self)})"

    def swapped(self) -> MNNPairs:
        """The same relation seen from batch B."""
        return MNNPairs(self.second, self.first)

    def as_set(self) -> set:
        return set(iter(self))


@dataclass
class Correction:
    # [N_target, d] cell-specific offsets, target minus reference
    vectors: np.ndarray
    n_pairs: int
    # effective Gaussian bandwidth, in units of the smoothing space
    bandwidth: float

    @property
    def average(self) -> np.ndarray:
        return self.vectors.mean(axis=0)


def _to_dense(X) -> np.ndarray:
    X = X.toarray() if issparse(X) else X
    return np.asarray(X, dtype=np.float64)


def _cosine_normalize(X) -> np.ndarray:
    X = _to_dense(X)
    norms = np.linalg.norm(X, ord=2, axis=1, keepdims=True)
    # all-zero cells stay at the origin
    norms[norms == 0] = 1.0
    return X / norms


def _multi_batch_pca(
    batches: Sequence,
    n_comps: int = 50,
    weighted: bool = True,
    svd_solver: str = "randomized",
    random_state: int | None = 0,
) -> PCAResult:
    if n_comps < 1:
        raise InvalidInputError(f"n_comps must be >= 1, got {n_comps}")
    if len(batches) == 0:
        raise InvalidInputError("no batches supplied")

    batches = [_to_dense(X) for X in batches]
    if any(X.ndim != 2 for X in batches):
        raise InvalidInputError("each batch must be a 2D cells x genes matrix")

    n_genes = batches[0].shape[1]
    if n_genes == 0:
        raise InvalidInputError("feature set is empty")
    if any(X.shape[1] != n_genes for X in batches):
        raise InvalidInputError(
            "all batches must have the same number of genes, got "
            f"{[X.shape[1] for X in batches]}"
        )
    if any(X.shape[0] == 0 for X in batches):
        raise InvalidInputError("every batch must contain at least one cell")

    n_cells = sum(X.shape[0] for X in batches)
    if n_cells < n_comps:
        raise InvalidInputError(
            f"{n_cells} cells supplied, fewer than n_comps={n_comps} components"
        )
    if n_genes < n_comps:
        raise InvalidInputError(
            f"{n_genes} genes supplied, fewer than n_comps={n_comps} components"
        )
    if not all(np.isfinite(X).all() for X in batches):
        raise NumericalInstabilityError("expression matrix contains non-finite values")

    # [genes] per batch
    means = [X.mean(axis=0) for X in batches]

    # each batch is centred on itself and, if weighted, contributes equally
    # [N, genes]
    stacked = np.vstack(
        [
            (X - mu) / (np.sqrt(X.shape[0]) if weighted else 1.0)
            for X, mu in zip(batches, means)
        ]
    )
    if not np.any(stacked):
        raise NumericalInstabilityError(
            "zero within-batch variance, the projection is undefined"
        )

    try:
        pca = PCA(n_components=n_comps, svd_solver=svd_solver, random_state=random_state)
        pca.fit(stacked)
    except np.linalg.LinAlgError as exc:
        raise NumericalInstabilityError(f"PCA did not converge: {exc}") from exc

    n_degenerate = int(np.sum(pca.explained_variance_ <= 1e-12))
    if n_degenerate:
        logger.warning(
            "%i out of %i components carry no variance, input is rank-deficient",
            n_degenerate,
            n_comps,
        )

    # [genes, d]
    rotation = pca.components_.T
    center = np.mean(means, axis=0)

    # [N_b, d] = [N_b, genes] x [genes, d]
    embeddings = [(X - center) @ rotation for X in batches]

    return PCAResult(
        embeddings=embeddings,
        rotation=rotation,
        center=center,
        variance_ratio=pca.explained_variance_ratio_,
    )


def _check_k(k) -> None:
    if isinstance(k, (bool, np.bool_)) or not isinstance(k, (int, np.integer)):
        raise InvalidInputError(f"k must be an integer, got {k!r}")
    if k < 1:
        raise InvalidInputError(f"k must be >= 1, got {k}")


def _find_knn(
    data,
    query,
    k: int,
    n_jobs: int | None = None,
    cos_norm: bool = False,
) -> NeighborResult:
    _check_k(k)

    data = _to_dense(data)
    query = _to_dense(query)
    if data.ndim != 2 or query.ndim != 2:
        raise InvalidInputError("neighbour search expects 2D cells x dims matrices")
    if data.shape[1] != query.shape[1]:
        raise InvalidInputError(
            f"dimension mismatch: {data.shape[1]} (target) vs {query.shape[1]} (query)"
        )

    n_data = data.shape[0]
    if k > n_data:
        raise InvalidInputError(
            f"k={k} exceeds the number of cells ({n_data}) in the target batch"
        )
    if query.shape[0] == 0:
        empty = np.empty((0, k))
        return NeighborResult(empty.astype(np.int64), empty)

    if cos_norm:
        data = _cosine_normalize(data)
        query = _cosine_normalize(query)

    # one extra neighbour to detect ties at the k-th position
    n_neighbors = min(k + 1, n_data)
    nn = NearestNeighbors(n_neighbors=n_neighbors, algorithm="kd_tree", n_jobs=n_jobs)
    nn.fit(data)
    dist, ind = nn.kneighbors(query)

    order = np.lexsort((ind, dist))
    dist = np.take_along_axis(dist, order, axis=1)
    ind = np.take_along_axis(ind, order, axis=1)

    tied = _no_ties()
    if n_neighbors > k:
        ties = np.flatnonzero(dist[:, k - 1] >= dist[:, k])
        if ties.size:
            tied = _resolve_ties(nn, query, ties, dist[ties, k - 1], k, dist, ind)

    return NeighborResult(indices=ind[:, :k], distances=dist[:, :k], tied=tied)


def _resolve_ties(nn, query, rows, radii, k, dist, ind) -> tuple:
    """Re-reads every row tied at the k-th distance with radius queries.

    Rows sharing a radius go through one query. The first ``k`` hits of each row by
    (distance, index) overwrite ``dist`` and ``ind`` in place, the rest are returned
    as (row, index) pairs.
    """
    hit_rows, hit_dist, hit_ind = [], [], []
    for radius in np.unique(radii):
        group = rows[radii == radius]
        r_dist, r_ind = nn.radius_neighbors(
            query[group], radius=radius * (1 + 1e-9) + 1e-12
        )
        lengths = np.fromiter((len(r) for r in r_ind), dtype=np.int64, count=len(r_ind))
        hit_rows.append(np.repeat(group, lengths))
        hit_dist.append(np.concatenate(r_dist))
        hit_ind.append(np.concatenate(r_ind).astype(np.int64))

    hit_rows = np.concatenate(hit_rows)
    hit_dist = np.concatenate(hit_dist)
    hit_ind = np.concatenate(hit_ind)

    order = np.lexsort((hit_ind, hit_dist, hit_rows))
    hit_rows, hit_dist, hit_ind = hit_rows[order], hit_dist[order], hit_ind[order]

    # position of every hit within its row
    starts = np.flatnonzero(np.r_[True, hit_rows[1:] != hit_rows[:-1]])
    counts = np.diff(np.r_[starts, hit_rows.shape[0]])
    rank = np.arange(hit_rows.shape[0]) - np.repeat(starts, counts)

    kept = rank < k
    dist[hit_rows[kept], rank[kept]] = hit_dist[kept]
    ind[hit_rows[kept], rank[kept]] = hit_ind[kept]

    return hit_rows[~kept], hit_ind[~kept]


def _memberships(knn) -> tuple:
    if isinstance(knn, NeighborResult):
        return knn.memberships()
    ind = np.asarray(knn, dtype=np.int64)
    if ind.ndim != 2:
        raise InvalidInputError("neighbour relations must be 2D index arrays")
    return np.repeat(np.arange(ind.shape[0]), ind.shape[1]), ind.ravel()


def _find_mutual_nn(knn_a_to_b, knn_b_to_a) -> MNNPairs:
    # a cell tied with the k-th distance counts as a neighbour, so duplicates pair too
    rows_ab, ind_ab = _memberships(knn_a_to_b)
    rows_ba, ind_ba = _memberships(knn_b_to_a)

    n_a = len(getattr(knn_a_to_b, "indices", knn_a_to_b))
    n_b = len(getattr(knn_b_to_a, "indices", knn_b_to_a))
    if n_a == 0 or n_b == 0:
        return MNNPairs(np.empty(0), np.empty(0))
    if ind_ab.size and (ind_ab.min() < 0 or ind_ab.max() >= n_b):
        raise InvalidInputError("A -> B neighbour indices fall outside of batch B")
    if ind_ba.size and (ind_ba.min() < 0 or ind_ba.max() >= n_a):
        raise InvalidInputError("B -> A neighbour indices fall outside of batch A")

    # encode every (a, b) as a * N_b + b
    codes_ab = rows_ab * n_b + ind_ab
    codes_ba = ind_ba * n_b + rows_ba
    mutual = np.intersect1d(codes_ab, codes_ba)

    return MNNPairs(mutual // n_b, mutual % n_b)


def _rms_radius(X: np.ndarray) -> float:
    centered = X - X.mean(axis=0)
    return float(np.sqrt(np.mean(np.sum(centered**2, axis=1))))


def _biological_basis(X: np.ndarray, n_components: int | None) -> np.ndarray | None:
    """Top principal directions of within-batch variation, ``[dims, n_components]``."""
    if not n_components:
        return None

    centered = X - X.mean(axis=0)
    try:
        _, s, Vt = np.linalg.svd(centered, full_matrices=False)
    except np.linalg.LinAlgError as exc:
        raise NumericalInstabilityError(
            f"SVD of the within-batch variation failed: {exc}"
        ) from exc

    # only directions that carry variance
    rank = int(np.sum(s > s.max() * 1e-10)) if s.size and s.max() > 0 else 0
    n_components = min(n_components, rank)
    if n_components == 0:
        return None

    return Vt[:n_components].T


def _orthogonalize(vectors: np.ndarray, basis: np.ndarray | None) -> np.ndarray:
    if basis is None:
        return vectors
    # [N, d] - ([N, d] x [d, c]) x [c, d]
    return vectors - (vectors @ basis) @ basis.T


def _compute_correction(
    reference,
    target,
    pairs: MNNPairs,
    sigma: float = 0.1,
    target_space=None,
    bio_basis: np.ndarray | None = None,
    batch_size: int = 1024,
) -> Correction:
    if len(pairs) == 0:
        raise NoMutualNeighborsError(
            "no mutual nearest neighbour pairs, cannot estimate a correction; "
            "consider increasing k"
        )
    if sigma is None or sigma <= 0:
        raise InvalidInputError(f"sigma must be positive, got {sigma}")

    reference = _to_dense(reference)
    target = _to_dense(target)
    if reference.shape[1] != target.shape[1]:
        raise InvalidInputError(
            f"dimension mismatch: {reference.shape[1]} (reference) vs {target.shape[1]} (target)"
        )
    space = target if target_space is None else _to_dense(target_space)
    if space.shape[0] != target.shape[0]:
        raise InvalidInputError("target_space must have one row per target cell")
    if (
        min(pairs.first.min(), pairs.second.min()) < 0
        or pairs.first.max() >= reference.shape[0]
        or pairs.second.max() >= target.shape[0]
    ):
        raise InvalidInputError("MNN pair indices fall outside of the supplied batches")

    # [P, d] per-pair batch vectors
    diffs = target[pairs.second] - reference[pairs.first]

    # average per paired target cell, keep the pair counts as weights
    anchors, inverse, counts = np.unique(
        pairs.second, return_inverse=True, return_counts=True
    )
    # [A, d]
    anchor_vectors = np.zeros((anchors.shape[0], diffs.shape[1]))
    np.add.at(anchor_vectors, inverse.ravel(), diffs)
    anchor_vectors /= counts[:, np.newaxis]
    log_counts = np.log(counts)

    radius = _rms_radius(space)
    bandwidth = sigma * radius if radius > 0 else sigma

    # [N_t, d]
    vectors = np.empty_like(target)
    anchor_coords = space[anchors]
    for start in range(0, target.shape[0], batch_size):
        stop = min(start + batch_size, target.shape[0])
        # [n, A]
        d2 = euclidean_distances(space[start:stop], anchor_coords, squared=True)
        log_w = -d2 / bandwidth**2 + log_counts
        # every cell keeps a finite weight on its closest anchors
        log_w -= log_w.max(axis=1, keepdims=True)
        w = np.exp(log_w)
        w /= w.sum(axis=1, keepdims=True)
        # [n, d] = [n, A] x [A, d]
        vectors[start:stop] = w @ anchor_vectors

    if bio_basis is not None:
        mean = vectors.mean(axis=0)
        vectors = mean + _orthogonalize(vectors - mean, bio_basis)

    if not np.isfinite(vectors).all():
        raise NumericalInstabilityError("correction vectors are not finite")

    return Correction(vectors=vectors, n_pairs=len(pairs), bandwidth=float(bandwidth))


def _total_variance(X: np.ndarray) -> float:
    if X.shape[0] == 0:
        return 0.0
    return float(np.sum(np.var(X, axis=0)))


def _lost_variance(before: np.ndarray, after: np.ndarray) -> float:
    var_before = _total_variance(before)
    if var_before <= 0:
        return 0.0
    lost = (var_before - _total_variance(after)) / var_before
    return float(np.clip(lost, 0.0, 1.0))


def _harmony_converged(ho, epsilon: float = 1e-4) -> bool:
    # relative change of the last two Harmony objectives, as harmonypy checks it
    objective = np.asarray(
        [float(value) for value in np.ravel(ho.objective_harmony)], dtype=float
    )
    if objective.shape[0] < 2:
        return False
    old, new = objective[-2], objective[-1]
    if old == 0:
        return bool(new == 0)
    return bool((old - new) / abs(old) < epsilon)


def _harmony_integrate_python(
    adata: AnnData,
    key: list[str] | str,
    basis: str = "X_pca",
    adjusted_basis: str = "X_pca_harmony",
    verbose: bool = False,
    **harmony_kwargs,
) -> None:
    ho = run_harmony(
        adata.obsm[basis],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        **harmony_kwargs,
    )

    # [N, d]
    Z_corr = np.asarray(ho.Z_corr)
    if Z_corr.shape[0] != adata.n_obs:
        Z_corr = Z_corr.T
    adata.obsm[adjusted_basis] = Z_corr

    converged = _harmony_converged(
        ho, harmony_kwargs.get("epsilon_harmony", 1e-4)
    )

    adata.uns["harmony"] = {
        "basis": basis,
        "adjusted_basis": adjusted_basis,
        "vars_use": key,
        "harmony_kwargs": harmony_kwargs,
        "converged": converged,
        "K": ho.K,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )


def _batch_labels(adata: AnnData, batch_key: str) -> pd.Series:
    assert (
        batch_key in adata.obs
    ), f"Column `{batch_key}` not found in adata.obs. Set `batch_key` parameter properly"
    labels = adata.obs[batch_key]
    if labels.isna().any():
        raise InvalidInputError(f"adata.obs['{batch_key}'] contains missing batch labels")
    return labels.astype(str)


def _batch_order(labels: pd.Series, original: pd.Series | None = None) -> list[str]:
    """Batches in category order if categorical, else order of appearance."""
    source = labels if original is None else original
    if isinstance(source.dtype, pd.CategoricalDtype):
        present = set(labels)
        return [str(c) for c in source.cat.categories if str(c) in present]
    return list(pd.unique(labels))


def _mutual_pairs(
    data_a,
    data_b,
    k: int,
    k_b: int | None = None,
    n_jobs: int | None = None,
    cos_norm: bool = False,
) -> MNNPairs:
    k_b = k if k_b is None else k_b
    # for every A cell, its k nearest B cells, and the other way round
    knn_ab = _find_knn(data_b, data_a, k, n_jobs=n_jobs, cos_norm=cos_norm)
    knn_ba = _find_knn(data_a, data_b, k_b, n_jobs=n_jobs, cos_norm=cos_norm)
    return _find_mutual_nn(knn_ab, knn_ba)


def _indices_by_batch(labels: pd.Series, names: Sequence[str]) -> dict:
    values = labels.to_numpy()
    return {name: np.flatnonzero(values == name) for name in names}
