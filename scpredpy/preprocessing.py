# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging

from anndata import AnnData
from harmonypy import run_harmony

from ._embedding import EmbeddingAdapter
from ._features import FeatureSpace
from ._model import ScPredModel


logger = logging.getLogger("scpredpy")


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
) -> None:
    """
    Run Harmony batch correction on the reference, save corrected output to adata.obsm
    and reference clusters (alignment anchors for ``scpredpy.SymphonyAligner``) to adata.uns["harmony"].

    Args:
        adata (AnnData): reference adata object with batches
        key (list[str] | str): which columns from adata.obs
            to use as batch keys (`vars_use` parameter of Harmony)
        ref_basis_source (str, optional): adata.obsm[ref_basis_source] will be used
            as input embedding to Harmony. Defaults to "X_pca".
        ref_basis_adjusted (str, optional): at adata.obsm[ref_basis_adjusted]
            corrected embedding will be saved. Defaults to "X_pca_harmony".
        verbose (bool, optional): verbosity level of harmony. Defaults to False.
        random_seed (int, optional): random_seed for harmony. Defaults to 1.
        harmony_kwargs: will be forwarded to ``harmonypy.run_harmony``.
    """
    ref_ho = run_harmony(
        adata.obsm[ref_basis_source],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )

    adata.obsm[ref_basis_adjusted] = ref_ho.Z_corr.T

    converged = ref_ho.check_convergence(1)

    adata.uns["harmony"] = {
        # [K] the number of cells softly belonging to each cluster
        "Nr": ref_ho.R.sum(axis=1),
        # [K, d] = [K, Nref] x [d, N_ref].T
        "C": ref_ho.R @ ref_ho.Z_corr.T,
        "K": ref_ho.K,
        # [K] cluster entropy regularization coef
        "sigma": ref_ho.sigma,
        "ref_basis_source": ref_basis_source,
        "ref_basis_adjusted": ref_basis_adjusted,
        "vars_use": key,
        "converged": converged,
        # [K, Nref]
        "R": ref_ho.R,
    }

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )


def get_feature_space(
    adata: AnnData,
    label_key: str,
    basis: str = "X_pca",
    loadings: str = "PCs",
    use_genes_column: str | None = "highly_variable",
    correction: str | None = "fdr_bh",
    sig: float = 1.0,
    max_value: float | None = 10.0,
) -> ScPredModel:
    """
    Tests which reference embedding dimensions separate each cell type
    and starts a model to be trained with ``scpredpy.tl.train_model``.

    Args:
        adata (AnnData): reference adata, scaled and embedded
            (``sc.pp.scale`` saves gene means and stds, ``sc.pp.pca`` the loadings)
        label_key (str): adata.obs column with cell types
        basis (str, optional): adata.obsm[basis] is the reference embedding. Use the Harmony-adjusted
            basis if the reference was integrated with ``harmony_integrate``. Defaults to "X_pca".
        loadings (str, optional): adata.varm[loadings] holds gene loadings. Defaults to "PCs".
        use_genes_column (str | None, optional): only adata.var[use_genes_column] genes
            are used to project new datasets. Defaults to "highly_variable".
        correction (str | None, optional): multiple testing correction. Defaults to "fdr_bh".
        sig (float, optional): adjusted p-value cutoff for a dimension to be used
            by a cell type classifier. Defaults to 1 (all dimensions).
        max_value (float | None, optional): clip scaled query expressions. Defaults to 10.

    Returns:
        ScPredModel: untrained model holding the reference embedding and feature space
    """
    if label_key not in adata.obs:
        raise KeyError(f"'{label_key}' not found in adata.obs")

    embedding = EmbeddingAdapter.from_adata(
        adata,
        basis=basis,
        loadings=loadings,
        use_genes_column=use_genes_column,
        max_value=max_value,
    )

    feature_space = FeatureSpace.build(
        embedding.coords,
        adata.obs[label_key],
        dimension_names=embedding.dimension_names,
        explained_variance=embedding.explained_variance,
        correction=correction,
        sig=sig,
    )

    return ScPredModel(embedding=embedding, feature_space=feature_space, label_key=label_key)
