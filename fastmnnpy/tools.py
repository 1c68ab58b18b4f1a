# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Sequence

import numpy as np
import pandas as pd
import scanpy as sc

from anndata import AnnData
from scipy.stats import chisquare
from sklearn.metrics import adjusted_rand_score

from ._utils import (
    MNNPairs,
    NeighborResult,
    _batch_labels,
    _batch_order,
    _find_knn,
    _indices_by_batch,
    _mutual_pairs,
)
from .errors import InvalidInputError
from .merging import MNNMerger
from .preprocessing import multi_batch_pca


logger = logging.getLogger("fastmnnpy")


def find_neighbors(
    data,
    query,
    k: int,
    n_jobs: int | None = None,
    cos_norm: bool = False,
) -> NeighborResult:
    """For every row of ``query``, its ``k`` nearest rows of ``data`` by Euclidean distance.

    Equal distances are ordered by index. ``k`` larger than the number of rows
    of ``data`` raises ``InvalidInputError``, it is never clamped.

    :param data: ``[N_data, d]`` coordinates searched in
    :param query: ``[N_query, d]`` coordinates searched for
    :param k: number of neighbours, at least 1
    :type k: int
    :param n_jobs: number of parallel jobs for the search, defaults to None
    :type n_jobs: int | None, optional
    :param cos_norm: if to L2-normalise rows first (cosine distance), defaults to False
    :type cos_norm: bool, optional
    :return: neighbour indices and distances, ``[N_query, k]`` each
    """
    return _find_knn(data, query, k, n_jobs=n_jobs, cos_norm=cos_norm)


def find_mutual_nn(
    data_a,
    data_b,
    k: int = 20,
    k_b: int | None = None,
    n_jobs: int | None = None,
    cos_norm: bool = False,
) -> MNNPairs:
    """Mutual nearest neighbour pairs between two batches.

    ``(a, b)`` is a pair if ``b`` is among the ``k`` nearest B cells of ``a``
    and ``a`` is among the ``k_b`` nearest A cells of ``b``. Large ``k`` relative
    to the batch sizes pairs nearly every cell and makes the pairs less specific.

    :param data_a: ``[N_a, d]`` coordinates of batch A
    :param data_b: ``[N_b, d]`` coordinates of batch B
    :param k: neighbours of A cells searched in B, defaults to 20
    :type k: int, optional
    :param k_b: neighbours of B cells searched in A, defaults to ``k``
    :type k_b: int | None, optional
    :param n_jobs: number of parallel jobs for the search, defaults to None
    :type n_jobs: int | None, optional
    :param cos_norm: if to L2-normalise rows first (cosine distance), defaults to False
    :type cos_norm: bool, optional
    :return: pairs with A indices in ``first`` and B indices in ``second``
    """
    return _mutual_pairs(data_a, data_b, k, k_b=k_b, n_jobs=n_jobs, cos_norm=cos_norm)


def fast_mnn(
    adata: AnnData,
    batch_key: str,
    k: int = 20,
    sigma: float = 0.1,
    n_bio_components: int = 2,
    merge_order: Sequence[str] | None = None,
    auto_merge: bool = False,
    correct_in: str = "embedding",
    use_rep: str = "X_pca",
    adjusted_basis: str = "X_mnn",
    cos_norm: bool = False,
    n_jobs: int | None = None,
    batch_size: int = 1024,
    uns_key: str = "mnn",
    n_comps: int = 50,
    use_genes_column: str | None = "highly_variable",
) -> None:
    """Mutual nearest neighbours batch correction.

    Batches are merged one by one into a growing reference: MNN pairs between
    the reference and the next batch define smoothed correction vectors, which
    are subtracted from that batch before it joins the reference.
    Needs the embedding of ``pp.multi_batch_pca``; runs it first if not found.

    :param adata: AnnData object with batches
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param k: number of nearest neighbours for MNN pairs, defaults to 20
    :type k: int, optional
    :param sigma: bandwidth of the Gaussian smoothing kernel relative to the batch's RMS radius, defaults to 0.1
    :type sigma: float, optional
    :param n_bio_components: number of within-batch principal directions the cell-specific corrections are orthogonalized against, defaults to 2
    :type n_bio_components: int, optional
    :param merge_order: order of batches to merge in. Every batch is corrected towards the batches merged before it, so the order changes the result. Defaults to category order (or order of appearance) of ``adata.obs[batch_key]``
    :type merge_order: Sequence[str] | None, optional
    :param auto_merge: if to start from the largest batch and, at every step, merge the batch with the most MNN pairs to the reference, defaults to False
    :type auto_merge: bool, optional
    :param correct_in: "embedding" corrects the PCA coordinates, "expression" corrects expression values of the genes used for PCA, defaults to "embedding"
    :type correct_in: str, optional
    :param use_rep: ``adata.obsm[use_rep]`` is the multi-batch PCA embedding, defaults to "X_pca"
    :type use_rep: str, optional
    :param adjusted_basis: corrected coordinates are saved to ``adata.obsm[adjusted_basis]`` and reconstructed expression to ``adata.obsm[f"{adjusted_basis}_reconstructed"]``, defaults to "X_mnn"
    :type adjusted_basis: str, optional
    :param cos_norm: if to search neighbours by cosine distance, defaults to False
    :type cos_norm: bool, optional
    :param n_jobs: number of parallel jobs for neighbour search, defaults to None
    :type n_jobs: int | None, optional
    :param batch_size: number of cells smoothed at once, defaults to 1024
    :type batch_size: int, optional
    :param uns_key: merge diagnostics are saved to ``adata.uns[uns_key]``, defaults to "mnn"
    :type uns_key: str, optional
    :param n_comps: number of components if PCA has to be run, defaults to 50
    :type n_comps: int, optional
    :param use_genes_column: genes to use if PCA has to be run, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    """
    labels = _batch_labels(adata, batch_key)

    pca_info = adata.uns.get("multi_batch_pca")
    if pca_info is None or use_rep not in adata.obsm or pca_info["key_added"] != use_rep:
        if use_genes_column is not None and use_genes_column not in adata.var:
            use_genes_column = None
        warnings.warn(
            f"Not found multi-batch PCA in adata.obsm['{use_rep}'].\n"
            f"Running symmetric multi-batch PCA on "
            f"{'all genes' if use_genes_column is None else repr(use_genes_column) + ' genes'} "
            f"with n_comps={n_comps}.\n"
            f"Otherwise, firstly run fastmnnpy.pp.multi_batch_pca."
        )
        multi_batch_pca(
            adata,
            batch_key=batch_key,
            n_comps=n_comps,
            use_genes_column=use_genes_column,
            key_added=use_rep,
        )
        pca_info = adata.uns["multi_batch_pca"]
    elif pca_info["batch_key"] != batch_key:
        warnings.warn(
            f"adata.obsm['{use_rep}'] was computed with batch_key "
            f"'{pca_info['batch_key']}', not '{batch_key}'"
        )

    names = _batch_order(labels, adata.obs[batch_key])
    if len(names) < 2:
        raise InvalidInputError(
            f"MNN correction needs at least 2 batches in adata.obs['{batch_key}'], got {names}"
        )
    indices = _indices_by_batch(labels, names)

    use_genes = np.asarray(pca_info["use_genes"], dtype=bool)
    # [genes used, d]
    rotation = np.asarray(adata.varm[pca_info["loadings_key"]])[use_genes]
    center = np.asarray(pca_info["center"])

    embedding = np.asarray(adata.obsm[use_rep])
    expressions = None
    if correct_in == "expression":
        layer = pca_info["params"].get("layer")
        X = adata.X if layer is None else adata.layers[layer]
        X = X[:, use_genes]
        expressions = [X[indices[name]] for name in names]

    merger = MNNMerger(
        k=k,
        sigma=sigma,
        n_bio_components=n_bio_components,
        correct_in=correct_in,
        cos_norm=cos_norm,
        n_jobs=n_jobs,
        batch_size=batch_size,
    )
    merger.fit(
        [embedding[indices[name]] for name in names],
        expressions=expressions,
        names=names,
        rotation=rotation,
        center=center,
        merge_order=merge_order,
        auto_merge=auto_merge,
    )
    result = merger.merge_all().result()

    # back to adata order
    corrected = np.empty((adata.n_obs, embedding.shape[1]))
    reconstructed = np.empty((adata.n_obs, int(use_genes.sum())))
    for name, E, X_rec in zip(names, result.embeddings, result.reconstructed):
        corrected[indices[name]] = E
        reconstructed[indices[name]] = X_rec

    adata.obsm[adjusted_basis] = corrected
    adata.obsm[f"{adjusted_basis}_reconstructed"] = pd.DataFrame(
        reconstructed,
        index=adata.obs_names,
        columns=adata.var_names[use_genes],
    )

    params = {
        "batch_key": batch_key,
        "k": k,
        "sigma": sigma,
        "n_bio_components": n_bio_components,
        "auto_merge": auto_merge,
        "correct_in": correct_in,
        "use_rep": use_rep,
        "adjusted_basis": adjusted_basis,
        "cos_norm": cos_norm,
    }
    adata.uns[uns_key] = {
        "merge_order": np.array(result.merge_order),
        "batches": np.array(result.names),
        # [batches] in merge order, 0 for the batch seeding the reference
        "n_pairs": np.array([result.n_pairs[name] for name in result.merge_order]),
        # [steps, batches]
        "lost_variance": result.lost_variance.to_numpy(),
        "params": params,
    }
    logger.info(
        "%i batches merged in order %s, corrected coordinates saved to adata.obsm['%s']",
        len(names),
        result.merge_order,
        adjusted_basis,
    )


def mnn_correct(
    adata: AnnData,
    batch_key: str,
    adjusted_basis: str = "X_mnn",
    **kwargs,
) -> None:
    """Same as ``fast_mnn`` but corrects expression values instead of PCA coordinates.

    Corrected expression of the genes used for PCA is saved to
    ``adata.obsm[f"{adjusted_basis}_reconstructed"]``, its projection
    to ``adata.obsm[adjusted_basis]``.
    """
    fast_mnn(
        adata,
        batch_key=batch_key,
        adjusted_basis=adjusted_basis,
        correct_in="expression",
        **kwargs,
    )


def lost_variance(adata: AnnData, uns_key: str = "mnn") -> pd.DataFrame:
    """Fraction of each batch's variance removed at every merge step.

    Large values suggest that the correction removed biological heterogeneity
    along with the batch effect.

    :param adata: AnnData object after ``tl.fast_mnn``
    :type adata: AnnData
    :param uns_key: ``adata.uns[uns_key]`` holds merge diagnostics, defaults to "mnn"
    :type uns_key: str, optional
    :return: merge steps (indexed by the merged batch) x batches
    :rtype: pd.DataFrame
    """
    assert (
        uns_key in adata.uns
    ), f"MNN results not found in adata.uns['{uns_key}']. First, run fastmnnpy.tl.fast_mnn."

    mnn = adata.uns[uns_key]
    return pd.DataFrame(
        np.asarray(mnn["lost_variance"], dtype=float),
        index=pd.Index([str(name) for name in mnn["merge_order"][1:]], name="merged_batch"),
        columns=[str(name) for name in mnn["batches"]],
    )


def _leiden(
    adata: AnnData,
    use_rep: str,
    n_neighbors: int,
    resolution: float,
    random_state: int,
) -> np.ndarray:
    rep = np.asarray(adata.obsm[use_rep])
    if rep.shape[0] < 3:
        return np.zeros(rep.shape[0], dtype=int).astype(str)

    tmp = AnnData(
        X=np.zeros((rep.shape[0], 1), dtype=np.float32),
        obs=pd.DataFrame(index=adata.obs_names.copy()),
    )
    tmp.obsm["rep"] = rep
    sc.pp.neighbors(
        tmp,
        use_rep="rep",
        n_neighbors=min(n_neighbors, rep.shape[0] - 1),
        random_state=random_state,
    )
    sc.tl.leiden(
        tmp,
        resolution=resolution,
        random_state=random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    return tmp.obs["leiden"].astype(str).to_numpy()


def cluster(
    adata: AnnData,
    use_rep: str = "X_mnn",
    key_added: str = "mnn_clusters",
    groupby: str | None = None,
    n_neighbors: int = 15,
    resolution: float = 1.0,
    random_state: int = 0,
) -> None:
    """
    Graph-based clustering: nearest neighbour graph on ``adata.obsm[use_rep]``
    and Leiden community detection, as in ``scanpy``.

    :param adata: AnnData object
    :type adata: AnnData
    :param use_rep: representation to build the neighbour graph on, defaults to "X_mnn"
    :type use_rep: str, optional
    :param key_added: cluster labels are saved to ``adata.obs[key_added]``, defaults to "mnn_clusters"
    :type key_added: str, optional
    :param groupby: if set, every group of ``adata.obs[groupby]`` (e.g. every batch) is clustered separately and labels are prefixed with the group, defaults to None
    :type groupby: str | None, optional
    :param n_neighbors: size of the neighbourhood, defaults to 15
    :type n_neighbors: int, optional
    :param resolution: Leiden resolution, higher gives more clusters, defaults to 1.0
    :type resolution: float, optional
    :param random_state: random seed, defaults to 0
    :type random_state: int, optional
    """
    assert use_rep in adata.obsm, f"`{use_rep}` not found in adata.obsm"

    if groupby is None:
        labels = _leiden(adata, use_rep, n_neighbors, resolution, random_state)
    else:
        group_labels = _batch_labels(adata, groupby)
        labels = np.empty(adata.n_obs, dtype=object)
        for name, idx in _indices_by_batch(
            group_labels, _batch_order(group_labels, adata.obs[groupby])
        ).items():
            sub = _leiden(adata[idx], use_rep, n_neighbors, resolution, random_state)
            labels[idx] = [f"{name}_{label}" for label in sub]

    adata.obs[key_added] = pd.Categorical(labels)


def batch_mixing(
    adata: AnnData,
    batch_key: str,
    cluster_key: str,
    uns_key: str | None = None,
) -> pd.DataFrame:
    """
    Number of cells of every batch in every cluster, with a chi-square test of the
    cluster's batch composition against the overall batch proportions.
    Low p-values mark clusters that are dominated by some batches, i.e. poorly mixed
    (or genuinely batch-specific populations).

    :param adata: AnnData object
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param cluster_key: column of ``adata.obs`` with cluster labels
    :type cluster_key: str
    :param uns_key: if set, the table is also saved to ``adata.uns[uns_key]``, defaults to None
    :type uns_key: str | None, optional
    :return: clusters x batches counts with a "pvalue" column
    :rtype: pd.DataFrame
    """
    labels = _batch_labels(adata, batch_key)
    assert cluster_key in adata.obs, f"Column `{cluster_key}` not found in adata.obs"

    table = pd.crosstab(adata.obs[cluster_key].astype(str), labels)
    if table.shape[1] < 2:
        raise InvalidInputError(
            f"batch mixing needs at least 2 batches in adata.obs['{batch_key}']"
        )

    # [B] overall batch proportions
    proportions = table.sum(axis=0).to_numpy() / table.to_numpy().sum()

    pvalues = []
    for _, counts in table.iterrows():
        counts = counts.to_numpy().astype(float)
        expected = counts.sum() * proportions
        pvalues.append(chisquare(counts, f_exp=expected).pvalue)

    result = table.copy()
    result.columns = result.columns.astype(str)
    result["pvalue"] = pvalues
    result.index.name = cluster_key

    if uns_key is not None:
        adata.uns[uns_key] = result
    return result


def cluster_agreement(
    adata: AnnData,
    batch_key: str,
    before_key: str,
    after_key: str,
) -> pd.Series:
    """
    Adjusted Rand index, per batch, between clusters computed before correction
    (usually within each batch, see ``cluster(groupby=...)``) and clusters of the
    corrected data. Values close to 1 mean the correction preserved the batch's
    own population structure.

    :param adata: AnnData object
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param before_key: column of ``adata.obs`` with clusters before correction
    :type before_key: str
    :param after_key: column of ``adata.obs`` with clusters after correction
    :type after_key: str
    :return: ARI per batch
    :rtype: pd.Series
    """
    labels = _batch_labels(adata, batch_key)
    assert before_key in adata.obs, f"Column `{before_key}` not found in adata.obs"
    assert after_key in adata.obs, f"Column `{after_key}` not found in adata.obs"

    names = _batch_order(labels, adata.obs[batch_key])
    before = adata.obs[before_key].astype(str).to_numpy()
    after = adata.obs[after_key].astype(str).to_numpy()

    ari = {
        name: adjusted_rand_score(before[idx], after[idx])
        for name, idx in _indices_by_batch(labels, names).items()
    }
    return pd.Series(ari, name="ARI", dtype=float)
