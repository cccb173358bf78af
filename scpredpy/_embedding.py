# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass, field

import numpy as np

from anndata import AnnData
from scipy.sparse import issparse

from ._errors import DimensionMismatchError


logger = logging.getLogger("scpredpy")


@dataclass
class EmbeddingAdapter:
    """
    Reference embedding wrapper: everything needed to put new cells
    into the reference's coordinates, without the reference expression matrix.

    Attributes:
        genes (np.array): [N_genes] names of the genes used by the embedding
        means (np.array): [N_genes] reference gene means used for scaling
        stds (np.array): [N_genes] reference gene stds used for scaling
        loadings (np.array): [N_genes, d] gene loadings of the embedding
        coords (np.array): [N_ref, d] reference cells coordinates
        basis (str): name of the reference representation the coords came from
        explained_variance (np.array | None): [d] variance ratio of each dimension
        max_value (float | None): clip scaled expressions to [-max_value, max_value]
    """

    genes: np.ndarray
    means: np.ndarray
    stds: np.ndarray
    loadings: np.ndarray
    coords: np.ndarray = field(repr=False)
    basis: str = "X_pca"
    explained_variance: np.ndarray | None = None
    max_value: float | None = 10.0

    @classmethod
    def from_adata(
        cls,
        adata: AnnData,
        basis: str = "X_pca",
        loadings: str = "PCs",
        use_genes_column: str | None = "highly_variable",
        max_value: float | None = 10.0,
    ) -> "EmbeddingAdapter":
        """
        Collects the embedding of the reference from adata slots.

        Args:
            adata (AnnData): reference adata, scaled (``sc.pp.scale``) and embedded (``sc.pp.pca``)
            basis (str, optional): adata.obsm[basis] holds reference coordinates. Defaults to "X_pca".
            loadings (str, optional): adata.varm[loadings] holds gene loadings. Defaults to "PCs".
            use_genes_column (str | None, optional): only adata.var[use_genes_column] genes
                take part in projection. If the column is absent, all genes are used.
                Defaults to "highly_variable".
            max_value (float | None, optional): clipping of scaled query expressions. Defaults to 10.
        """
        if basis not in adata.obsm:
            raise KeyError(f"Reference embedding '{basis}' not found in adata.obsm")
        if loadings not in adata.varm:
            raise KeyError(f"Gene loadings '{loadings}' not found in adata.varm")
        for column in ("mean", "std"):
            if column not in adata.var:
                raise KeyError(
                    f"Gene expression {column}s are expected to be saved in adata.var['{column}'], "
                    "run sc.pp.scale on the reference first"
                )

        if use_genes_column is not None and use_genes_column not in adata.var:
            logger.info(
                "Column '%s' not found in adata.var, all genes will be used for projection",
                use_genes_column,
            )
            use_genes_column = None

        mask = (
            np.ones(adata.n_vars, dtype=bool)
            if use_genes_column is None
            else np.asarray(adata.var[use_genes_column], dtype=bool)
        )

        coords = np.asarray(adata.obsm[basis], dtype=np.float64)

        explained_variance = None
        if "pca" in adata.uns and "variance_ratio" in adata.uns["pca"]:
            variance_ratio = np.asarray(adata.uns["pca"]["variance_ratio"])
            if variance_ratio.shape[0] == coords.shape[1]:
                explained_variance = variance_ratio

        return cls(
            genes=np.asarray(adata.var_names[mask]),
            means=np.asarray(adata.var["mean"], dtype=np.float64)[mask],
            stds=np.asarray(adata.var["std"], dtype=np.float64)[mask],
            loadings=np.asarray(adata.varm[loadings], dtype=np.float64)[mask],
            coords=coords,
            basis=basis,
            explained_variance=explained_variance,
            max_value=max_value,
        )

    @property
    def n_genes(self) -> int:
        return self.genes.shape[0]

    @property
    def n_dims(self) -> int:
        return self.loadings.shape[1]

    @property
    def dimension_names(self) -> list[str]:
        return [f"PC_{i + 1}" for i in range(self.n_dims)]

    def project(self, query: AnnData | np.ndarray, dataset: str = "query") -> np.ndarray:
        """
        Maps query cells to the reference coordinates.

        Args:
            query (AnnData | np.ndarray): query adata (genes matched by name)
                or [N_q, N_genes] matrix in the reference genes order.
            dataset (str, optional): dataset name used in error messages.

        Returns:
            np.ndarray: [N_q, d] query coordinates in the reference basis
        """
        if isinstance(query, AnnData):
            t, present = self._expression_from_adata(query, dataset)
        else:
            if query.ndim != 2 or query.shape[1] != self.n_genes:
                raise DimensionMismatchError(
                    f"Dataset '{dataset}' has {query.shape[-1]} features, "
                    f"reference embedding expects {self.n_genes}",
                    dataset=dataset,
                    expected=self.n_genes,
                    got=query.shape[-1],
                )
            t = query.toarray() if issparse(query) else np.array(query, dtype=np.float64)
            present = self.stds != 0
            t[:, ~present] = 0

        t[:, present] -= self.means[present][np.newaxis]
        t[:, present] /= self.stds[present][np.newaxis]

        if self.max_value is not None:
            t = np.clip(t, -self.max_value, self.max_value)

        # [cells, d] = [cells, genes] x [genes, d]
        return np.asarray(t @ self.loadings)

    def _expression_from_adata(self, adata: AnnData, dataset: str):
        present = np.isin(self.genes, adata.var_names) & (self.stds != 0)

        if not present.any():
            raise DimensionMismatchError(
                f"None of the {self.n_genes} reference genes were found in dataset '{dataset}'",
                dataset=dataset,
                expected=self.n_genes,
                got=0,
            )

        if not present.all():
            logger.warning(
                "%i out of %i genes from the reference are missing in the dataset '%s' "
                "or have zero std in the reference, their expressions will be set to zero",
                (~present).sum(),
                self.n_genes,
                dataset,
            )

        t = np.zeros((adata.n_obs, self.n_genes))
        X = adata[:, self.genes[present]].X
        t[:, present] = X.toarray() if issparse(X) else X

        return t, present
