import numpy as np
import pytest

import scpredpy as sp

from conftest import CELL_TYPES, N_COMPS, embed_reference, simulate_adata


class TestTools:
    label_key = "cell_type"
    basis = "X_scpred"

    @staticmethod
    def accuracy(adata, key="scpred_prediction"):
        return (adata.obs[key].astype(str) == adata.obs["cell_type"].astype(str)).mean()

    def test_train_model(self, trained_model):
        assert trained_model.is_trained
        assert isinstance(trained_model.aligner, sp.SymphonyAligner)
        assert sorted(trained_model.get_classifiers()) == sorted(CELL_TYPES)
        assert (trained_model.performance["ROC"] > 0.9).all()

    def test_predict_reference(self, trained_model, adata_ref_log):
        adata = adata_ref_log.copy()
        sp.tl.predict(adata, trained_model, threshold=0.55)

        assert self.accuracy(adata) > 0.9

    def test_predict_query(self, trained_model, adata_query):
        sp.tl.predict(adata_query, trained_model)

        for category in CELL_TYPES:
            probs = adata_query.obs[f"scpred_{category}"]
            assert ((probs >= 0) & (probs <= 1)).all()
        assert set(adata_query.obs["scpred_prediction"]) <= set(CELL_TYPES) | {sp.UNASSIGNED}
        assert set(adata_query.obs["scpred_no_rejection"]) <= set(CELL_TYPES)
        np.testing.assert_allclose(
            adata_query.obs["scpred_max"],
            adata_query.obs[[f"scpred_{c}" for c in CELL_TYPES]].max(axis=1),
        )
        assert adata_query.obsm[self.basis].shape == (adata_query.n_obs, N_COMPS)
        assert adata_query.obsm[f"{self.basis}_projected"].shape == (adata_query.n_obs, N_COMPS)
        assert adata_query.uns["scpred_alignment"]["strategy"] == "symphony"
        assert self.accuracy(adata_query) > 0.7

    def test_alignment_reused(self, trained_model, adata_query):
        first = sp.tl.align_query(adata_query, trained_model)
        second = sp.tl.align_query(adata_query, trained_model, recompute_alignment=False)
        third = sp.tl.align_query(adata_query, trained_model, recompute_alignment=False)

        np.testing.assert_array_equal(first.coords, second.coords)
        np.testing.assert_array_equal(second.coords, third.coords)

        # saved coords are taken as they are, without realignment
        adata_query.obsm[self.basis] = np.zeros((adata_query.n_obs, N_COMPS))
        sp.tl.predict(adata_query, trained_model, recompute_alignment=False, threshold=0.5)
        assert (adata_query.obsm[self.basis] == 0).all()

        sp.tl.predict(adata_query, trained_model, recompute_alignment=True)
        np.testing.assert_array_equal(adata_query.obsm[self.basis], first.coords)

    def test_threshold_reuses_alignment(self, trained_model, adata_query):
        sp.tl.predict(adata_query, trained_model, threshold=0.3)
        lenient = adata_query.obs["scpred_prediction"].astype(str).copy()

        sp.tl.predict(adata_query, trained_model, threshold=0.95, recompute_alignment=False)
        strict = adata_query.obs["scpred_prediction"].astype(str)

        changed = lenient != strict
        assert (strict[changed] == sp.UNASSIGNED).all()
        assert adata_query.uns["scpred"]["threshold"] == 0.95

    def test_query_without_reference_genes(self, trained_model, adata_query):
        adata_query.var_names = [f"other_{i}" for i in range(adata_query.n_vars)]

        with pytest.raises(sp.DimensionMismatchError):
            sp.tl.predict(adata_query, trained_model, dataset="renamed")
        assert self.basis not in adata_query.obsm

    def test_query_matrix_dimension_mismatch(self, trained_model):
        with pytest.raises(sp.DimensionMismatchError) as err:
            trained_model.embedding.project(np.zeros((5, 7)), dataset="matrix")
        assert err.value.expected == trained_model.embedding.n_genes

    def test_query_missing_some_genes(self, trained_model, adata_query):
        adata_query = adata_query[:, 5:].copy()

        sp.tl.predict(adata_query, trained_model)

        assert adata_query.obsm[self.basis].shape == (adata_query.n_obs, N_COMPS)

    def test_get_probabilities(self, trained_model, adata_query):
        sp.tl.predict(adata_query, trained_model)

        probs = sp.tl.get_probabilities(adata_query)

        assert list(probs.columns) == sorted(CELL_TYPES)
        assert list(probs.index) == list(adata_query.obs_names)

    def test_crosstab(self, trained_model, adata_query):
        sp.tl.predict(adata_query, trained_model)

        counts = sp.tl.crosstab(adata_query, "cell_type")
        proportions = sp.tl.crosstab(adata_query, "cell_type", mode="proportion")

        assert counts.to_numpy().sum() == adata_query.n_obs
        np.testing.assert_allclose(proportions.sum(axis=1), 1.0)

    def test_save_load(self, trained_model, adata_query, tmp_path):
        path = tmp_path / "model.pkl"
        trained_model.save(path)
        loaded = sp.ScPredModel.load(path)

        expected = adata_query.copy()
        sp.tl.predict(expected, trained_model)
        sp.tl.predict(adata_query, loaded)

        assert (
            adata_query.obs["scpred_prediction"].astype(str)
            == expected.obs["scpred_prediction"].astype(str)
        ).all()
        np.testing.assert_array_equal(adata_query.obsm[self.basis], expected.obsm[self.basis])

    def test_reclassify(self, adata_ref):
        model = sp.pp.get_feature_space(adata_ref, self.label_key)
        sp.tl.train_model(model, adata_ref, model_name="knn")
        aligner = model.aligner
        bcell = model.registry.models["Bcell"]

        sp.tl.train_model(model, adata_ref, model_name="lda", reclassify=["Tcell"])

        assert model.aligner is aligner
        assert model.registry.models["Bcell"] is bcell
        assert model.performance.loc["Tcell", "method"] == "lda"
        assert model.performance.loc["Monocyte", "method"] == "knn"

    def test_parallel_training(self, adata_ref, trained_model):
        model = sp.pp.get_feature_space(adata_ref, self.label_key)
        sp.tl.train_model(model, adata_ref, allow_parallel=True, n_jobs=2)

        np.testing.assert_array_equal(
            model.performance[["ROC", "Sens", "Spec"]].to_numpy(),
            trained_model.performance[["ROC", "Sens", "Spec"]].to_numpy(),
        )

    def test_harmony_reference(self, adata_query):
        adata_ref = simulate_adata(CELL_TYPES, seed=4, prefix="ref")
        adata_ref.obs["batch"] = ["b1", "b2"] * (adata_ref.n_obs // 2)
        embed_reference(adata_ref)
        sp.pp.harmony_integrate(adata_ref, key="batch", max_iter_harmony=5)

        model = sp.pp.get_feature_space(adata_ref, self.label_key, basis="X_pca_harmony")
        sp.tl.train_model(model, adata_ref, model_name="lda")

        assert model.aligner.K == adata_ref.uns["harmony"]["K"]

        sp.tl.predict(adata_query, model)
        assert self.accuracy(adata_query) > 0.7

    def test_harmony_aligner_not_converged(self, adata_ref, adata_query):
        model = sp.pp.get_feature_space(adata_ref, self.label_key)
        sp.tl.train_model(
            model,
            adata_ref,
            model_name="lda",
            aligner=sp.HarmonyAligner(max_iter=2, epsilon_harmony=-np.inf),
        )

        with pytest.raises(sp.AlignmentNotConvergedError):
            sp.tl.predict(adata_query, model)
