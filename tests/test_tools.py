import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.sparse import csr_matrix

import fastmnnpy as fm


def make_adata(**kwargs):
    params = dict(n_cells=(100, 80, 60), n_genes=50, random_state=0)
    params.update(kwargs)
    return fm.datasets.simulate_batches(**params)


def centroid_gap(X, obs, first, second):
    gaps = []
    for celltype in obs["celltype"].cat.categories:
        a = ((obs["batch"] == first) & (obs["celltype"] == celltype)).to_numpy()
        b = ((obs["batch"] == second) & (obs["celltype"] == celltype)).to_numpy()
        gaps.append(np.linalg.norm(X[a].mean(axis=0) - X[b].mean(axis=0)))
    return max(gaps)


class TestTools:
    batch_key = "batch"

    @staticmethod
    def assert_equals(f, s, threshold=1e-7):
        assert (abs(f - s) < threshold).all()

    def test_fast_mnn(self):
        adata = make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
        fm.tl.fast_mnn(adata, batch_key=self.batch_key, k=10)

        assert adata.obsm["X_mnn"].shape == (240, 10)
        reconstructed = adata.obsm["X_mnn_reconstructed"]
        assert isinstance(reconstructed, pd.DataFrame)
        assert reconstructed.shape == (240, 50)
        assert list(reconstructed.columns) == list(adata.var_names)

        mnn = adata.uns["mnn"]
        assert list(mnn["merge_order"]) == ["batch1", "batch2", "batch3"]
        assert mnn["n_pairs"][0] == 0
        assert (mnn["n_pairs"][1:] > 0).all()
        assert mnn["lost_variance"].shape == (2, 3)
        assert mnn["params"]["correct_in"] == "embedding"

        # the first batch seeds the reference and is not corrected
        first = (adata.obs[self.batch_key] == "batch1").to_numpy()
        self.assert_equals(adata.obsm["X_mnn"][first], adata.obsm["X_pca"][first])

    def test_fast_mnn_removes_batch_effect(self):
        adata = make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
        fm.tl.fast_mnn(adata, batch_key=self.batch_key, k=10)

        for batch in ("batch2", "batch3"):
            before = centroid_gap(adata.obsm["X_pca"], adata.obs, "batch1", batch)
            after = centroid_gap(adata.obsm["X_mnn"], adata.obs, "batch1", batch)
            assert after < 0.5 * before

    def test_fast_mnn_runs_pca(self):
        adata = make_adata()

        with pytest.warns(UserWarning, match="multi-batch PCA"):
            fm.tl.fast_mnn(adata, batch_key=self.batch_key, k=10, n_comps=10)

        assert "multi_batch_pca" in adata.uns
        assert adata.obsm["X_pca"].shape == (240, 10)
        assert adata.obsm["X_mnn"].shape == (240, 10)

    def test_merge_order(self):
        adata = make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
        fm.tl.fast_mnn(
            adata,
            batch_key=self.batch_key,
            k=10,
            merge_order=["batch3", "batch2", "batch1"],
            uns_key="mnn_reversed",
            adjusted_basis="X_mnn_reversed",
        )

        lost = fm.tl.lost_variance(adata, uns_key="mnn_reversed")
        assert list(lost.index) == ["batch2", "batch1"]
        assert list(lost.columns) == ["batch1", "batch2", "batch3"]
        assert ((lost.to_numpy() >= 0) & (lost.to_numpy() <= 1)).all()
        assert lost.loc["batch2", "batch1"] == 0

        last = (adata.obs[self.batch_key] == "batch3").to_numpy()
        self.assert_equals(
            adata.obsm["X_mnn_reversed"][last], adata.obsm["X_pca"][last]
        )

    def test_mnn_correct(self):
        adata = make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
        fm.tl.mnn_correct(adata, batch_key=self.batch_key, k=10)

        assert adata.uns["mnn"]["params"]["correct_in"] == "expression"
        reconstructed = adata.obsm["X_mnn_reconstructed"].to_numpy()
        assert reconstructed.shape == (240, 50)

        center = adata.uns["multi_batch_pca"]["center"]
        rotation = adata.varm["PCs"]
        np.testing.assert_allclose(
            adata.obsm["X_mnn"], (reconstructed - center) @ rotation, atol=1e-8
        )

        for batch in ("batch2", "batch3"):
            before = centroid_gap(np.asarray(adata.X), adata.obs, "batch1", batch)
            after = centroid_gap(reconstructed, adata.obs, "batch1", batch)
            assert after < 0.5 * before

    @pytest.mark.parametrize("correct", [fm.tl.fast_mnn, fm.tl.mnn_correct])
    def test_sparse_matrix(self, correct):
        dense = make_adata()
        sparse = dense.copy()
        sparse.X = csr_matrix(sparse.X)

        for adata in (dense, sparse):
            fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
            correct(adata, batch_key=self.batch_key, k=10)

        np.testing.assert_allclose(sparse.obsm["X_pca"], dense.obsm["X_pca"], atol=1e-6)
        np.testing.assert_allclose(sparse.obsm["X_mnn"], dense.obsm["X_mnn"], atol=1e-6)
        np.testing.assert_allclose(
            sparse.obsm["X_mnn_reconstructed"].to_numpy(),
            dense.obsm["X_mnn_reconstructed"].to_numpy(),
            atol=1e-6,
        )
        np.testing.assert_array_equal(sparse.uns["mnn"]["n_pairs"], dense.uns["mnn"]["n_pairs"])

    def test_single_batch(self):
        adata = make_adata(n_cells=(100,))
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)

        with pytest.raises(fm.InvalidInputError):
            fm.tl.fast_mnn(adata, batch_key=self.batch_key, k=10)

    def test_missing_batch_key(self):
        adata = make_adata()
        with pytest.raises(AssertionError):
            fm.tl.fast_mnn(adata, batch_key="sample")

    def test_lost_variance_needs_results(self):
        adata = make_adata()
        with pytest.raises(AssertionError):
            fm.tl.lost_variance(adata)

    def test_cluster(self):
        adata = make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)

        fm.tl.cluster(adata, use_rep="X_pca", key_added="clusters")
        assert isinstance(adata.obs["clusters"].dtype, pd.CategoricalDtype)
        assert adata.obs["clusters"].nunique() >= 2

        fm.tl.cluster(
            adata, use_rep="X_pca", key_added="clusters_per_batch", groupby=self.batch_key
        )
        prefixes = adata.obs["clusters_per_batch"].astype(str).str.split("_").str[0]
        assert (prefixes == adata.obs[self.batch_key].astype(str)).all()

    def test_batch_mixing(self):
        obs = pd.DataFrame(
            {
                "batch": ["a"] * 40 + ["b"] * 40,
                "cluster": ["x"] * 20 + ["y"] * 20 + ["x"] * 20 + ["z"] * 20,
            },
            index=[f"cell{i}" for i in range(80)],
        )
        adata = AnnData(X=np.zeros((80, 1)), obs=obs)

        table = fm.tl.batch_mixing(
            adata, batch_key="batch", cluster_key="cluster", uns_key="mixing"
        )

        assert list(table.columns) == ["a", "b", "pvalue"]
        assert table.loc["x", "a"] == 20 and table.loc["x", "b"] == 20
        assert table.loc["x", "pvalue"] == pytest.approx(1.0)
        assert table.loc["y", "pvalue"] < 0.01
        assert table.loc["z", "pvalue"] < 0.01
        assert "mixing" in adata.uns

        one_batch = AnnData(X=np.zeros((80, 1)), obs=obs.assign(batch="a"))
        with pytest.raises(fm.InvalidInputError):
            fm.tl.batch_mixing(one_batch, batch_key="batch", cluster_key="cluster")

    def test_cluster_agreement(self):
        before = ["0", "0", "1", "1", "2", "2"] * 2
        obs = pd.DataFrame(
            {
                "batch": ["a"] * 6 + ["b"] * 6,
                "before": before,
                # same partition, other names
                "after": [{"0": "7", "1": "3", "2": "5"}[label] for label in before],
                "merged": ["0"] * 12,
            },
            index=[f"cell{i}" for i in range(12)],
        )
        adata = AnnData(X=np.zeros((12, 1)), obs=obs)

        ari = fm.tl.cluster_agreement(adata, "batch", "before", "after")
        assert list(ari.index) == ["a", "b"]
        np.testing.assert_allclose(ari.to_numpy(), [1.0, 1.0])

        ari = fm.tl.cluster_agreement(adata, "batch", "before", "merged")
        np.testing.assert_allclose(ari.to_numpy(), [0.0, 0.0])

    def test_find_neighbors(self):
        rng = np.random.default_rng(0)
        data, query = rng.normal(size=(20, 3)), rng.normal(size=(5, 3))

        res = fm.tl.find_neighbors(data, query, k=3)
        assert res.k == 3
        assert res.indices.shape == res.distances.shape == (5, 3)

        with pytest.raises(fm.InvalidInputError):
            fm.tl.find_neighbors(data, query, k=0)
        with pytest.raises(fm.InvalidInputError):
            fm.tl.find_neighbors(data, query, k=21)
