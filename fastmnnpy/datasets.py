from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

import anndata as ad
import numpy as np
import pandas as pd

from scanpy import read, AnnData

from .errors import InvalidInputError


def read_batches(
    paths: Mapping[str, str | Path],
    batch_key: str = "batch",
    join: str = "inner",
    **read_kwargs,
) -> AnnData:
    """
    Reads one file per batch with ``scanpy.read`` (h5ad, loom, csv, mtx, ...)
    and concatenates them into one AnnData object.

    :param paths: batch name -> file path, in the order the batches should appear
    :type paths: Mapping[str, str | Path]
    :param batch_key: batch names are saved to ``adata.obs[batch_key]``, defaults to "batch"
    :type batch_key: str, optional
    :param join: "inner" keeps genes shared by all batches, "outer" keeps all of them, defaults to "inner"
    :type join: str, optional
    :return: concatenated AnnData with unique ``obs_names``
    :rtype: AnnData
    """
    if len(paths) == 0:
        raise InvalidInputError("no files supplied")

    adatas = {str(name): read(path, **read_kwargs) for name, path in paths.items()}
    adata = ad.concat(adatas, join=join, label=batch_key, index_unique="-")
    adata.obs[batch_key] = pd.Categorical(
        adata.obs[batch_key], categories=list(adatas.keys())
    )
    return adata


def simulate_batches(
    n_cells: Sequence[int] = (300, 300, 300),
    n_genes: int = 100,
    n_celltypes: int = 3,
    composition: np.ndarray | None = None,
    celltype_scale: float = 2.0,
    batch_effect: float = 1.0,
    noise: float = 0.5,
    random_state: int = 0,
) -> AnnData:
    """
    Synthetic log-expression-like data with cell types and batch effects.
    Every cell type has a random mean profile, every batch a random shift
    of all genes, and every cell Gaussian noise.

    :param n_cells: number of cells per batch, defaults to (300, 300, 300)
    :type n_cells: Sequence[int], optional
    :param n_genes: number of genes, defaults to 100
    :type n_genes: int, optional
    :param n_celltypes: number of cell types, defaults to 3
    :type n_celltypes: int, optional
    :param composition: ``[batches, celltypes]`` cell type proportions of every batch, equal proportions if None
    :type composition: np.ndarray | None, optional
    :param celltype_scale: standard deviation of cell type mean profiles, defaults to 2.0
    :type celltype_scale: float, optional
    :param batch_effect: standard deviation of the per-gene batch shifts, defaults to 1.0
    :type batch_effect: float, optional
    :param noise: standard deviation of the per-cell noise, defaults to 0.5
    :type noise: float, optional
    :param random_state: random seed, defaults to 0
    :type random_state: int, optional
    :return: AnnData with ``obs["batch"]`` and ``obs["celltype"]``
    :rtype: AnnData
    """
    n_batches = len(n_cells)
    if composition is None:
        composition = np.full((n_batches, n_celltypes), 1.0 / n_celltypes)
    composition = np.asarray(composition, dtype=float)
    if composition.shape != (n_batches, n_celltypes):
        raise InvalidInputError(
            f"composition must be of shape {(n_batches, n_celltypes)}, got {composition.shape}"
        )
    composition = composition / composition.sum(axis=1, keepdims=True)

    rng = np.random.default_rng(random_state)
    # [T, G]
    celltype_means = rng.normal(0, celltype_scale, (n_celltypes, n_genes))
    # [B, G]
    batch_shifts = rng.normal(0, batch_effect, (n_batches, n_genes))

    X, batches, celltypes = [], [], []
    for b, n in enumerate(n_cells):
        types = rng.choice(n_celltypes, size=n, p=composition[b])
        X.append(celltype_means[types] + batch_shifts[b] + rng.normal(0, noise, (n, n_genes)))
        batches += [f"batch{b + 1}"] * n
        celltypes += [f"type{t + 1}" for t in types]

    obs = pd.DataFrame(
        {
            "batch": pd.Categorical(
                batches, categories=[f"batch{b + 1}" for b in range(n_batches)]
            ),
            "celltype": pd.Categorical(celltypes),
        },
        index=[f"cell{i}" for i in range(len(batches))],
    )
    var = pd.DataFrame(
        {"highly_variable": np.ones(n_genes, dtype=bool)},
        index=[f"gene{g}" for g in range(n_genes)],
    )

    adata = AnnData(X=np.vstack(X), obs=obs, var=var)
    adata.uns["log1p"] = {"base": None}
    return adata
