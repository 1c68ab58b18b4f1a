# pylint: disable=E1123, W0621, C0116, W0511, E1121

from __future__ import annotations

import logging

import scanpy as sc
from anndata import AnnData

import fastmnnpy as fm


def run_fast_mnn(
    adata: AnnData,
    batch_key: str,
    raw_counts: bool,
    n_top_genes: int,
    n_comps: int,
    k: int,
    merge_order: list[str] | None = None,
    cluster_resolution: float = 1.0,
) -> None:
    """
    This function is supposed to be used mostly for debugging
    1. preprocessing
        - normalization, log1p, HVG (if raw counts)
        - multi_batch_pca(adata)
             -> adata.obsm["X_pca"]
    2. MNN correction
        - per-batch clustering before correction
        - fast_mnn(adata)
             -> adata.obsm["X_mnn"], adata.uns["mnn"]
    3. diagnostics
        - lost variance
        - batch mixing per cluster
        - per-batch cluster agreement
    """
    if raw_counts:
        sc.pp.highly_variable_genes(
            adata,
            batch_key=batch_key,
            n_top_genes=n_top_genes,
            flavor="seurat_v3",
        )
        sc.pp.normalize_total(adata, target_sum=1e4)
        sc.pp.log1p(adata)
    elif "highly_variable" not in adata.var:
        sc.pp.highly_variable_genes(adata, batch_key=batch_key, n_top_genes=n_top_genes)

    fm.pp.multi_batch_pca(adata, batch_key=batch_key, n_comps=n_comps)
    fm.tl.cluster(adata, use_rep="X_pca", key_added="clusters_per_batch", groupby=batch_key)

    fm.tl.fast_mnn(adata, batch_key=batch_key, k=k, merge_order=merge_order)

    fm.tl.cluster(adata, use_rep="X_mnn", key_added="mnn_clusters", resolution=cluster_resolution)

    print(fm.tl.lost_variance(adata))
    print(
        fm.tl.batch_mixing(
            adata, batch_key=batch_key, cluster_key="mnn_clusters", uns_key="mnn_batch_mixing"
        )
    )
    print(
        fm.tl.cluster_agreement(
            adata,
            batch_key=batch_key,
            before_key="clusters_per_batch",
            after_key="mnn_clusters",
        )
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    # adata = fm.datasets.read_batches(
    #     {"pbmc3k": "data/pbmc3k.h5ad", "pbmc4k": "data/pbmc4k.h5ad"},
    #     batch_key="batch",
    # )
    # raw_counts = True

    adata = fm.datasets.simulate_batches(
        n_cells=(400, 300, 200),
        n_genes=200,
        n_celltypes=4,
        composition=[[0.4, 0.3, 0.2, 0.1], [0.1, 0.4, 0.3, 0.2], [0.25, 0.25, 0.25, 0.25]],
        random_state=42,
    )
    raw_counts = False

    run_fast_mnn(
        adata=adata,
        batch_key="batch",
        raw_counts=raw_counts,
        n_top_genes=2000,
        n_comps=20,
        k=20,
    )
