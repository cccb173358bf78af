# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from typing import Iterable

import numpy as np
import pandas as pd

from anndata import AnnData

from ._alignment import AlignmentState, Aligner, get_aligner
from ._model import ScPredModel
from ._prediction import predict_labels
from ._reporting import cross_tabulate
from ._trainers import ResamplingConfig, Trainer


logger = logging.getLogger("scpredpy")


def train_model(
    model: ScPredModel,
    adata_ref: AnnData,
    model_name: str | Trainer | object = "svmRadial",
    reclassify: Iterable[str] | None = None,
    exclude: Iterable[str] | None = None,
    allow_parallel: bool = False,
    n_jobs: int | None = -1,
    resampling: ResamplingConfig | None = None,
    aligner: str | Aligner | None = None,
    raise_on_failure: bool = True,
) -> ScPredModel:
    """
    Trains a one-vs-rest classifier for each cell type of the model's feature space
    and fits the aligner on the reference coordinates.

    Args:
        model (ScPredModel): model returned by ``scpredpy.pp.get_feature_space``
        adata_ref (AnnData): the reference the feature space was built on
        model_name (str | Trainer | estimator, optional): "svmRadial", "svmLinear", "lda", "glm", "knn",
            a Trainer or a scikit-learn classifier with predict_proba. Defaults to "svmRadial".
        reclassify (Iterable[str] | None, optional): retrain only these cell types,
            e.g. with a different ``model_name``. Defaults to None (all cell types).
        exclude (Iterable[str] | None, optional): cell types to leave without a classifier.
        allow_parallel (bool, optional): train cell types in parallel. Defaults to False.
        n_jobs (int | None, optional): number of parallel jobs if ``allow_parallel``. Defaults to -1.
        resampling (ResamplingConfig | None, optional): cross-validation protocol.
            Defaults to the registry's one (5-fold cv).
        aligner (str | Aligner | None, optional): "symphony", "harmony", "identity" or an Aligner.
            Defaults to the model's aligner, or "symphony" for a new model.
        raise_on_failure (bool, optional): raise TrainerError listing failed cell types
            after all of them were attempted. Defaults to True.

    Returns:
        ScPredModel: the same model, trained
    """
    embedding = model.embedding
    if embedding.basis not in adata_ref.obsm:
        raise KeyError(f"Reference embedding '{embedding.basis}' not found in adata_ref.obsm")
    if model.label_key not in adata_ref.obs:
        raise KeyError(f"'{model.label_key}' not found in adata_ref.obs")

    # [N_ref, d]
    X_ref = np.asarray(adata_ref.obsm[embedding.basis], dtype=np.float64)
    labels = adata_ref.obs[model.label_key].astype(str).to_numpy()

    if aligner is not None or model.aligner is None:
        harmony = adata_ref.uns.get("harmony")
        anchors = (
            harmony
            if harmony is not None and harmony.get("ref_basis_adjusted") == embedding.basis
            else None
        )
        model.aligner = get_aligner(aligner).fit_reference(X_ref, anchors=anchors)

    if resampling is not None:
        model.registry.resampling = resampling

    model.registry.train(
        model.feature_space,
        X_ref,
        labels,
        trainer=model_name,
        reclassify=reclassify,
        exclude=exclude,
        n_jobs=n_jobs if allow_parallel else 1,
        raise_on_failure=raise_on_failure,
    )

    return model


def align_query(
    adata_query: AnnData,
    model: ScPredModel,
    batch_key: str | None = None,
    recompute_alignment: bool = True,
    basis: str = "X_scpred",
    dataset: str = "query",
) -> AlignmentState:
    """
    Projects query cells into the reference embedding and aligns them to the reference.
    Saves projected coords to adata_query.obsm[basis + "_projected"]
    and aligned coords to adata_query.obsm[basis].

    Args:
        adata_query (AnnData): log-normalized query adata
        model (ScPredModel): trained model
        batch_key (str | None, optional): adata_query.obs column with query batches. Defaults to None.
        recompute_alignment (bool, optional): if False and adata_query already holds aligned
            coords in adata_query.obsm[basis], they are reused. Defaults to True.
        basis (str, optional): where to save aligned coords. Defaults to "X_scpred".
        dataset (str, optional): name of the query in logs and errors. Defaults to "query".
    """
    assert model.aligner is not None, "Model must be trained with scpredpy.tl.train_model first"

    if not recompute_alignment and basis in adata_query.obsm:
        saved = adata_query.uns.get("scpred_alignment", {})
        logger.info("Using alignment saved in adata_query.obsm['%s']", basis)
        return AlignmentState(
            coords=np.asarray(adata_query.obsm[basis]),
            strategy=saved.get("strategy", model.aligner.name),
            dataset=saved.get("dataset", dataset),
            converged=bool(saved.get("converged", True)),
            n_iter=int(saved.get("n_iter", 0)),
        )

    if "log1p" not in adata_query.uns:
        warnings.warn("Gene expressions in adata_query should be log1p-transformed")

    batch = None
    if batch_key is not None:
        batch = adata_query.obs[batch_key].astype(str).to_numpy()

    projected = model.embedding.project(adata_query, dataset=dataset)
    state = model.aligner.align(projected, batch=batch, dataset=dataset)

    adata_query.obsm[f"{basis}_projected"] = projected
    adata_query.obsm[basis] = state.coords
    adata_query.uns["scpred_alignment"] = {
        "basis": basis,
        "strategy": state.strategy,
        "dataset": state.dataset,
        "converged": state.converged,
        "n_iter": state.n_iter,
        "batch_key": batch_key,
    }

    return state


def predict(
    adata_query: AnnData,
    model: ScPredModel,
    threshold: float = 0.55,
    recompute_alignment: bool = True,
    batch_key: str | None = None,
    categories: Iterable[str] | None = None,
    basis: str = "X_scpred",
    key_added: str = "scpred",
    dataset: str = "query",
) -> None:
    """
    Classifies query cells with a trained model.

    Adds to adata_query.obs:
        - ``{key_added}_{cell type}``: probability of each cell type
        - ``{key_added}_max``: the highest probability
        - ``{key_added}_prediction``: cell type, or "unassigned" if the highest
          probability is below ``threshold``
        - ``{key_added}_no_rejection``: cell type with the highest probability

    Args:
        adata_query (AnnData): log-normalized query adata
        model (ScPredModel): trained model
        threshold (float, optional): minimal probability to assign a cell type. Defaults to 0.55.
        recompute_alignment (bool, optional): if False, reuse alignment saved in
            adata_query.obsm[basis] by a previous call. Defaults to True.
        batch_key (str | None, optional): adata_query.obs column with query batches. Defaults to None.
        categories (Iterable[str] | None, optional): use only classifiers of these cell types.
        basis (str, optional): adata_query.obsm key of aligned coords. Defaults to "X_scpred".
        key_added (str, optional): prefix of adata_query.obs columns. Defaults to "scpred".
        dataset (str, optional): name of the query in logs and errors. Defaults to "query".
    """
    assert len(model.registry) > 0, "Model must be trained with scpredpy.tl.train_model first"

    state = align_query(
        adata_query,
        model,
        batch_key=batch_key,
        recompute_alignment=recompute_alignment,
        basis=basis,
        dataset=dataset,
    )

    probs, labels, no_rejection = predict_labels(
        state.coords,
        model.registry,
        threshold=threshold,
        categories=categories,
        index=adata_query.obs_names,
    )

    previous = adata_query.uns.get(key_added, {}).get("categories", [])
    stale = [f"{key_added}_{c}" for c in previous if c not in probs.columns]
    adata_query.obs.drop(columns=[c for c in stale if c in adata_query.obs], inplace=True)

    for category in probs.columns:
        adata_query.obs[f"{key_added}_{category}"] = probs[category].to_numpy()
    adata_query.obs[f"{key_added}_max"] = probs.max(axis=1).to_numpy()
    adata_query.obs[f"{key_added}_prediction"] = pd.Categorical(labels.to_numpy())
    adata_query.obs[f"{key_added}_no_rejection"] = pd.Categorical(no_rejection.to_numpy())

    adata_query.uns[key_added] = {
        "threshold": threshold,
        "categories": list(probs.columns),
        "basis": basis,
    }


def get_probabilities(adata_query: AnnData, key_added: str = "scpred") -> pd.DataFrame:
    """
    Cell type probabilities saved by ``scpredpy.tl.predict``.

    Returns:
        pd.DataFrame: [cells, cell types]
    """
    assert key_added in adata_query.uns, f"Run scpredpy.tl.predict with key_added='{key_added}' first"

    categories = adata_query.uns[key_added]["categories"]
    probs = adata_query.obs[[f"{key_added}_{c}" for c in categories]].copy()
    probs.columns = list(categories)
    return probs


def crosstab(
    adata: AnnData,
    true_key: str,
    pred_key: str = "scpred_prediction",
    mode: str = "count",
) -> pd.DataFrame:
    """
    Contingency table of adata.obs[true_key] (rows) vs adata.obs[pred_key] (columns).

    Args:
        adata (AnnData): adata with true and predicted labels
        true_key (str): adata.obs column with true cell types
        pred_key (str, optional): adata.obs column with predictions. Defaults to "scpred_prediction".
        mode (str, optional): "count" or "proportion". Defaults to "count".
    """
    return cross_tabulate(adata.obs[true_key], adata.obs[pred_key], mode=mode)
