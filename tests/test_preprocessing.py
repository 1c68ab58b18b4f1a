from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from anndata import AnnData

import fastmnnpy as fm


class TestPreprocessing:
    batch_key = "batch"

    @staticmethod
    def make_adata():
        return fm.datasets.simulate_batches(n_cells=(120, 80), n_genes=40, random_state=1)

    def assert_harmony_object(self, adata):
        assert "X_pca_harmony" in adata.obsm
        assert "harmony" in adata.uns
        assert "K" in adata.uns["harmony"]
        assert "vars_use" in adata.uns["harmony"]
        assert "harmony_kwargs" in adata.uns["harmony"]
        assert "converged" in adata.uns["harmony"]

    def test_multi_batch_pca(self):
        adata = self.make_adata()
        adata.var["highly_variable"] = np.arange(40) < 30
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=5)

        assert adata.obsm["X_pca"].shape == (200, 5)
        assert adata.varm["PCs"].shape == (40, 5)
        assert (adata.varm["PCs"][30:] == 0).all()

        info = adata.uns["multi_batch_pca"]
        assert info["batch_key"] == self.batch_key
        assert info["center"].shape == (30,)
        assert info["use_genes"].sum() == 30
        assert info["params"]["n_comps"] == 5

        # coordinates are the centred expression of the used genes times the loadings
        X = np.asarray(adata.X)[:, :30]
        np.testing.assert_allclose(
            adata.obsm["X_pca"], (X - info["center"]) @ adata.varm["PCs"][:30], atol=1e-8
        )

    def test_multi_batch_pca_warns_without_log1p(self):
        adata = self.make_adata()
        del adata.uns["log1p"]

        with pytest.warns(UserWarning, match="log1p"):
            fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=5)

    def test_multi_batch_pca_missing_genes_column(self):
        adata = self.make_adata()
        with pytest.raises(AssertionError):
            fm.pp.multi_batch_pca(
                adata, batch_key=self.batch_key, n_comps=5, use_genes_column="hvg"
            )

    def test_multi_batch_pca_missing_labels(self):
        adata = self.make_adata()
        adata.obs[self.batch_key] = adata.obs[self.batch_key].astype(object)
        adata.obs.iloc[0, adata.obs.columns.get_loc(self.batch_key)] = np.nan

        with pytest.raises(fm.InvalidInputError):
            fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=5)

    def test_cosine_norm(self):
        adata = self.make_adata()
        X = np.asarray(adata.X).copy()

        fm.pp.cosine_norm(adata)
        np.testing.assert_allclose(np.linalg.norm(adata.layers["cosine"], axis=1), 1.0)
        np.testing.assert_array_equal(adata.X, X)

        fm.pp.cosine_norm(adata, key_added=None)
        np.testing.assert_allclose(adata.X, adata.layers["cosine"])

    def test_regress_batches(self):
        adata = self.make_adata()
        fm.pp.regress_batches(adata, batch_key=self.batch_key)

        X = adata.layers["regressed"]
        batches = adata.obs[self.batch_key].to_numpy()
        np.testing.assert_allclose(
            X[batches == "batch1"].mean(axis=0),
            X[batches == "batch2"].mean(axis=0),
            atol=1e-8,
        )
        np.testing.assert_allclose(X.mean(axis=0), np.asarray(adata.X).mean(axis=0))

    def test_rescale_batches(self):
        rng = np.random.default_rng(2)
        counts = rng.poisson(5, size=(60, 10)).astype(float)
        # the second batch is sequenced twice as deep
        counts[30:] *= 2
        obs = pd.DataFrame(
            {"batch": ["a"] * 30 + ["b"] * 30},
            index=[f"cell{i}" for i in range(60)],
        )
        adata = AnnData(X=np.log2(counts + 1), obs=obs)

        fm.pp.rescale_batches(adata, batch_key="batch")

        rescaled = 2 ** adata.layers["rescaled"] - 1
        np.testing.assert_allclose(
            rescaled[:30].mean(axis=0), rescaled[30:].mean(axis=0), rtol=1e-8
        )
        # the lower-coverage batch is kept as is
        np.testing.assert_allclose(rescaled[:30], counts[:30], rtol=1e-8)

        with pytest.raises(fm.InvalidInputError):
            fm.pp.rescale_batches(adata, batch_key="batch", log_base=1)

    def test_harmony_integrate(self):
        adata = self.make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)
        fm.pp.harmony_integrate(adata, key=self.batch_key, max_iter_harmony=20)

        self.assert_harmony_object(adata)
        assert adata.obsm["X_pca_harmony"].shape == (200, 10)

    @pytest.mark.parametrize(
        "objective, converged",
        [([10.0, 5.0, 4.9999], True), ([10.0, 5.0], False), ([10.0], False)],
    )
    def test_harmony_convergence_from_objective(self, monkeypatch, objective, converged):
        adata = self.make_adata()
        fm.pp.multi_batch_pca(adata, batch_key=self.batch_key, n_comps=10)

        # only the attributes harmonypy 2.x exposes, Z_corr as [d, N]
        def fake_run_harmony(data_mat, meta_data, vars_use, **kwargs):
            return SimpleNamespace(
                Z_corr=np.asarray(data_mat).T,
                K=3,
                objective_harmony=objective,
            )

        monkeypatch.setattr("fastmnnpy._utils.run_harmony", fake_run_harmony)
        fm.pp.harmony_integrate(adata, key=self.batch_key)

        self.assert_harmony_object(adata)
        assert adata.uns["harmony"]["converged"] is converged
        np.testing.assert_allclose(adata.obsm["X_pca_harmony"], adata.obsm["X_pca"])

    def test_harmony_needs_basis(self):
        adata = self.make_adata()
        with pytest.raises(AssertionError):
            fm.pp.harmony_integrate(adata, key=self.batch_key)
