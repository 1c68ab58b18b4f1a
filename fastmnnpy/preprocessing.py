# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

import numpy as np
import pandas as pd

from anndata import AnnData

from ._utils import (
    _batch_labels,
    _batch_order,
    _cosine_normalize,
    _harmony_integrate_python,
    _indices_by_batch,
    _multi_batch_pca,
    _to_dense,
)
from .errors import InvalidInputError


logger = logging.getLogger("fastmnnpy")


def _get_matrix(adata: AnnData, layer: str | None):
    if layer is None:
        return adata.X
    assert layer in adata.layers, f"Layer `{layer}` not found in adata.layers"
    return adata.layers[layer]


def multi_batch_pca(
    adata: AnnData,
    batch_key: str,
    n_comps: int = 50,
    use_genes_column: str | None = "highly_variable",
    layer: str | None = None,
    weighted: bool = True,
    key_added: str = "X_pca",
    loadings_key: str = "PCs",
    svd_solver: str = "randomized",
    random_state: int | None = 0,
) -> None:
    """
    PCA fitted jointly across batches. Every batch is centred on its own mean and,
    if ``weighted``, contributes equally to the rotation regardless of its size.
    All cells are then projected after centring on the mean of the batch means.

    :param adata: AnnData object with log-expression in ``adata.X`` (or ``layer``)
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param n_comps: number of principal components, defaults to 50
    :type n_comps: int, optional
    :param use_genes_column: ``adata.var[use_genes_column]`` genes will be used, all genes if None, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param layer: ``adata.layers[layer]`` is used instead of ``adata.X`` if set, defaults to None
    :type layer: str | None, optional
    :param weighted: if to give every batch equal weight, defaults to True
    :type weighted: bool, optional
    :param key_added: coordinates are saved to ``adata.obsm[key_added]``, defaults to "X_pca"
    :type key_added: str, optional
    :param loadings_key: gene loadings are saved to ``adata.varm[loadings_key]`` (zeros for unused genes), defaults to "PCs"
    :type loadings_key: str, optional
    :param svd_solver: ``sklearn.decomposition.PCA`` solver, defaults to "randomized"
    :type svd_solver: str, optional
    :param random_state: random seed of the solver, defaults to 0
    :type random_state: int | None, optional
    """
    labels = _batch_labels(adata, batch_key)

    if use_genes_column is not None:
        assert (
            use_genes_column in adata.var
        ), f"Column `{use_genes_column}` not found in adata.var. Set `use_genes_column` parameter properly"
        use_genes = adata.var[use_genes_column].to_numpy().astype(bool)
    else:
        use_genes = np.ones(adata.n_vars, dtype=bool)

    if "log1p" not in adata.uns:
        warnings.warn("Gene expressions in adata should be log1p-transformed")

    X = _get_matrix(adata, layer)[:, use_genes]
    names = _batch_order(labels, adata.obs[batch_key])
    indices = _indices_by_batch(labels, names)

    res = _multi_batch_pca(
        [X[indices[name]] for name in names],
        n_comps=n_comps,
        weighted=weighted,
        svd_solver=svd_solver,
        random_state=random_state,
    )

    # [N, d], rows back in adata order
    embedding = np.empty((adata.n_obs, n_comps))
    for name, E in zip(names, res.embeddings):
        embedding[indices[name]] = E
    adata.obsm[key_added] = embedding

    # [genes, d]
    loadings = np.zeros((adata.n_vars, n_comps))
    loadings[use_genes] = res.rotation
    adata.varm[loadings_key] = loadings

    params = {
        "n_comps": n_comps,
        "weighted": weighted,
        "svd_solver": svd_solver,
    }
    if layer is not None:
        params["layer"] = layer
    if random_state is not None:
        params["random_state"] = random_state

    adata.uns["multi_batch_pca"] = {
        "batch_key": batch_key,
        "key_added": key_added,
        "loadings_key": loadings_key,
        # [genes used]
        "center": res.center,
        "use_genes": use_genes,
        "variance_ratio": res.variance_ratio,
        "params": params,
    }


def cosine_norm(
    adata: AnnData,
    layer: str | None = None,
    key_added: str | None = "cosine",
) -> None:
    """
    Scales every cell to unit L2 norm, so that Euclidean distances between cells
    behave like cosine distances. Removes cell-specific scaling biases
    between batches, e.g. from different sequencing depths.

    :param adata: AnnData object
    :type adata: AnnData
    :param layer: ``adata.layers[layer]`` is normalized instead of ``adata.X`` if set, defaults to None
    :type layer: str | None, optional
    :param key_added: result is saved to ``adata.layers[key_added]``, overwrites the input if None, defaults to "cosine"
    :type key_added: str | None, optional
    """
    X = _cosine_normalize(_get_matrix(adata, layer))

    if key_added is not None:
        adata.layers[key_added] = X
    elif layer is not None:
        adata.layers[layer] = X
    else:
        adata.X = X


def regress_batches(
    adata: AnnData,
    batch_key: str,
    layer: str | None = None,
    key_added: str | None = "regressed",
) -> None:
    """
    Linear regression batch correction: fits a one-hot batch design to each gene
    with least squares and removes the batch terms, keeping the grand mean.
    Assumes the composition of cell populations is the same across batches.

    :param adata: AnnData object with log-expression values
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param layer: ``adata.layers[layer]`` is corrected instead of ``adata.X`` if set, defaults to None
    :type layer: str | None, optional
    :param key_added: result is saved to ``adata.layers[key_added]``, overwrites ``adata.X`` if None, defaults to "regressed"
    :type key_added: str | None, optional
    """
    labels = _batch_labels(adata, batch_key)
    X = _to_dense(_get_matrix(adata, layer))

    # [N, B]
    phi = pd.get_dummies(labels).to_numpy().astype(float)
    if phi.shape[1] < 2:
        logger.warning("Only one batch in adata.obs['%s'], nothing to regress", batch_key)

    # [B, genes] per-batch coefficients
    coefs, *_ = np.linalg.lstsq(phi, X, rcond=None)
    X_corr = X - phi @ coefs + X.mean(axis=0, keepdims=True)

    if key_added is not None:
        adata.layers[key_added] = X_corr
    else:
        adata.X = X_corr


def rescale_batches(
    adata: AnnData,
    batch_key: str,
    layer: str | None = None,
    log_base: float = 2,
    pseudo_count: float = 1,
    key_added: str | None = "rescaled",
) -> None:
    """
    Scales the un-logged expression of each gene in each batch down to the lowest
    batch average, then re-logs. Removes multiplicative batch effects
    without inflating the variance of the low-coverage batches.

    :param adata: AnnData object with log-expression values
    :type adata: AnnData
    :param batch_key: column of ``adata.obs`` with batch labels
    :type batch_key: str
    :param layer: ``adata.layers[layer]`` is rescaled instead of ``adata.X`` if set, defaults to None
    :type layer: str | None, optional
    :param log_base: base of the log-transformation, defaults to 2
    :type log_base: float, optional
    :param pseudo_count: pseudo count added before log-transformation, defaults to 1
    :type pseudo_count: float, optional
    :param key_added: result is saved to ``adata.layers[key_added]``, overwrites ``adata.X`` if None, defaults to "rescaled"
    :type key_added: str | None, optional
    """
    if log_base <= 0 or log_base == 1:
        raise InvalidInputError(f"log_base must be positive and not 1, got {log_base}")

    labels = _batch_labels(adata, batch_key)
    names = _batch_order(labels, adata.obs[batch_key])
    indices = _indices_by_batch(labels, names)

    counts = np.power(log_base, _to_dense(_get_matrix(adata, layer))) - pseudo_count

    # [B, genes]
    means = np.vstack([counts[indices[name]].mean(axis=0) for name in names])
    lowest = means.min(axis=0)

    rescaled = np.empty_like(counts)
    for name, mean in zip(names, means):
        scale = np.divide(lowest, mean, out=np.zeros_like(mean), where=mean > 0)
        rescaled[indices[name]] = counts[indices[name]] * scale

    X_corr = np.log(rescaled + pseudo_count) / np.log(log_base)

    if key_added is not None:
        adata.layers[key_added] = X_corr
    else:
        adata.X = X_corr


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    basis: str = "X_pca",
    adjusted_basis: str = "X_pca_harmony",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
) -> None:
    """
    Run Harmony batch correction on adata, save corrected output to ``adata.obsm``.
    Useful as a point of comparison for MNN correction on the same embedding.

    :param adata: adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (``vars_use`` parameter of Harmony)
    :type key: list[str] | str
    :param basis: ``adata.obsm[basis]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type basis: str, optional
    :param adjusted_basis: slot where to put corrected coordinates, defaults to "X_pca_harmony"
    :type adjusted_basis: str, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param random_seed: random seed, defaults to 1
    :type random_seed: int, optional
    """
    assert basis in adata.obsm, f"`{basis}` not found in adata.obsm. Run PCA first"

    if verbose:
        logger.info("Harmony integration with harmonypy is performing.")
    _harmony_integrate_python(
        adata=adata,
        key=key,
        basis=basis,
        adjusted_basis=adjusted_basis,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )
