import numpy as np
import pytest

import scpredpy as sp

from conftest import N_COMPS, N_GENES, blobs, embed_reference, simulate_adata


class TestPreprocessing:
    label_key = "cell_type"
    batch_key = "batch"

    def assert_harmony_object(self, adata):
        assert "X_pca_harmony" in adata.obsm
        assert "harmony" in adata.uns
        for key in ("Nr", "C", "K", "sigma", "R", "converged", "ref_basis_adjusted", "vars_use"):
            assert key in adata.uns["harmony"]
        K = adata.uns["harmony"]["K"]
        assert adata.uns["harmony"]["C"].shape == (K, N_COMPS)
        assert adata.uns["harmony"]["R"].shape == (K, adata.n_obs)

    def test_get_feature_space(self, adata_ref):
        model = sp.pp.get_feature_space(adata_ref, self.label_key)

        assert model.categories == ("Bcell", "Monocyte", "Tcell")
        assert model.embedding.n_genes == N_GENES
        assert model.embedding.n_dims == N_COMPS
        assert model.embedding.explained_variance is not None
        assert not model.is_trained

        scores = model.feature_space.scores
        assert scores.shape[0] == N_COMPS * 3
        assert {"statistic", "p_value", "p_adj", "explained_variance"} <= set(scores.columns)
        assert (scores["p_adj"] >= scores["p_value"]).all()
        for category in model.categories:
            assert model.feature_space.features(category) == tuple(
                f"PC_{i + 1}" for i in range(N_COMPS)
            )

    def test_feature_space_significance_cutoff(self, adata_ref):
        model = sp.pp.get_feature_space(adata_ref, self.label_key, sig=0.05)

        for category in model.categories:
            features = model.feature_space.features(category)
            assert 1 <= len(features) <= N_COMPS
            # marker blocks drive the first components
            assert "PC_1" in features or "PC_2" in features

    def test_missing_label_key(self, adata_ref):
        with pytest.raises(KeyError):
            sp.pp.get_feature_space(adata_ref, "not_a_column")

    def test_missing_scaling(self):
        adata = simulate_adata({"A": 10, "B": 10})
        adata.obsm["X_pca"] = np.random.default_rng(0).normal(size=(adata.n_obs, 3))
        adata.varm["PCs"] = np.ones((adata.n_vars, 3))

        with pytest.raises(KeyError, match="mean"):
            sp.pp.get_feature_space(adata, self.label_key)

    def test_insufficient_samples(self):
        coords, labels = blobs({"A": 10, "B": 10, "C": 1})

        with pytest.raises(sp.InsufficientDataError) as err:
            sp.FeatureSpace.build(coords, labels)
        assert err.value.categories == ["C"]

    def test_single_category(self):
        coords, labels = blobs({"A": 10})

        with pytest.raises(sp.InsufficientDataError):
            sp.FeatureSpace.build(coords, labels)

    def test_degenerate_embedding(self):
        _, labels = blobs({"A": 5, "B": 5})

        with pytest.raises(sp.DegenerateEmbeddingError):
            sp.FeatureSpace.build(np.ones((10, 4)), labels)

    def test_constant_dimension_is_not_tested(self):
        coords, labels = blobs({"A": 10, "B": 10}, n_dims=3)
        coords[:, 2] = 0
        feature_space = sp.FeatureSpace.build(coords, labels)

        constant = feature_space.scores[feature_space.scores["dimension"] == "PC_3"]
        assert (constant["p_value"] == 1).all()

    def test_harmony_integrate(self):
        adata = simulate_adata({"A": 30, "B": 30, "C": 30}, seed=3)
        adata.obs[self.batch_key] = ["b1", "b2"] * (adata.n_obs // 2)
        embed_reference(adata)

        sp.pp.harmony_integrate(adata, key=self.batch_key, max_iter_harmony=5)

        self.assert_harmony_object(adata)
        assert adata.obsm["X_pca_harmony"].shape == (adata.n_obs, N_COMPS)

    def test_default_selects_all_dimensions(self):
        coords, labels = blobs({"A": 10, "B": 10}, n_dims=4)
        coords[:, 2] = 0
        # rank sum equal in both groups, so the test gives p = 1
        coords[:, 3] = np.r_[np.arange(10), np.arange(10)]

        feature_space = sp.FeatureSpace.build(coords, labels)

        for category in ("A", "B"):
            assert feature_space.features(category) == ("PC_1", "PC_2", "PC_3", "PC_4")
        balanced = feature_space.scores[feature_space.scores["dimension"] == "PC_4"]
        np.testing.assert_allclose(balanced["p_adj"], 1.0)

    def test_significant_scores(self):
        coords, labels = blobs({"A": 20, "B": 20}, n_dims=3)
        coords[:, 2] = 0
        feature_space = sp.FeatureSpace.build(coords, labels)

        significant = feature_space.significant(alpha=0.05)

        assert (significant["p_adj"] < 0.05).all()
        # blob centers separate A and B along PC_1 and PC_2
        assert set(significant["dimension"]) == {"PC_1", "PC_2"}
        assert list(significant["category"]) == sorted(significant["category"])
