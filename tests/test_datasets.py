import numpy as np
import pytest

import fastmnnpy as fm


class TestDatasets:
    def test_simulate_batches(self):
        adata = fm.datasets.simulate_batches(
            n_cells=(50, 30), n_genes=20, n_celltypes=4, random_state=3
        )

        assert adata.shape == (80, 20)
        assert list(adata.obs["batch"].cat.categories) == ["batch1", "batch2"]
        assert (adata.obs["batch"].value_counts().sort_index().to_numpy() == [50, 30]).all()
        assert set(adata.obs["celltype"]) <= {"type1", "type2", "type3", "type4"}
        assert adata.var["highly_variable"].all()
        assert "log1p" in adata.uns

    def test_simulate_batches_deterministic(self):
        first = fm.datasets.simulate_batches(n_cells=(20, 20), n_genes=10, random_state=5)
        second = fm.datasets.simulate_batches(n_cells=(20, 20), n_genes=10, random_state=5)
        np.testing.assert_array_equal(first.X, second.X)

    def test_composition(self):
        adata = fm.datasets.simulate_batches(
            n_cells=(100, 100),
            n_genes=10,
            n_celltypes=2,
            composition=[[1.0, 0.0], [0.0, 1.0]],
        )
        first = adata.obs["batch"] == "batch1"
        assert (adata.obs["celltype"][first] == "type1").all()
        assert (adata.obs["celltype"][~first] == "type2").all()

        with pytest.raises(fm.InvalidInputError):
            fm.datasets.simulate_batches(n_cells=(10, 10), composition=[[0.5, 0.5]])

    def test_read_batches(self, tmp_path):
        adata = fm.datasets.simulate_batches(n_cells=(20, 15), n_genes=10)
        paths = {}
        for name in ("second", "first"):
            batch = "batch1" if name == "first" else "batch2"
            part = adata[adata.obs["batch"] == batch].copy()
            paths[name] = tmp_path / f"{name}.h5ad"
            part.write_h5ad(paths[name])

        merged = fm.datasets.read_batches(paths, batch_key="sample")

        assert merged.shape == (35, 10)
        assert list(merged.obs["sample"].cat.categories) == ["second", "first"]
        assert merged.obs_names.is_unique
        assert merged.obs_names[0].endswith("-second")

    def test_read_batches_empty(self):
        with pytest.raises(fm.InvalidInputError):
            fm.datasets.read_batches({})
