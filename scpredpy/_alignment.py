# pylint: disable=C0103, C0116, C0114, C0115, W0511
"""
Alignment of query cells onto the reference embedding.

Query cells are first projected into the reference basis
(see :class:`scpredpy._embedding.EmbeddingAdapter`), then an aligner
removes the query's dataset shift relative to the reference:

- ``SymphonyAligner``: soft clustering of query cells into the reference's clusters
  and per-cluster ridge regression of the batch effect (mixture of experts),
  the reference itself is never moved
- ``HarmonyAligner``: joint Harmony integration of reference and query, re-anchored
  so that the reference keeps its original coordinates
- ``IdentityAligner``: projection only
"""
from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from harmonypy import run_harmony
from sklearn.cluster import KMeans

from ._errors import AlignmentNotConvergedError, DimensionMismatchError


logger = logging.getLogger("scpredpy")


@dataclass
class AlignmentState:
    """Aligned coordinates of one query dataset and how they were obtained."""

    coords: np.ndarray = field(repr=False)
    strategy: str
    dataset: str = "query"
    converged: bool = True
    n_iter: int = 0
    # [K, N] soft cluster memberships, if the strategy computes them
    R: np.ndarray | None = field(default=None, repr=False)


def _cosine_normalize(X: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(X, ord=2, axis=1, keepdims=True)
    norm[norm == 0] = 1
    return X / norm


def _assign_clusters(X: np.ndarray, sigma: float | np.ndarray, Y: np.ndarray) -> np.ndarray:
    """
    Soft k-means memberships with entropy regularization.

    Args:
        X (np.ndarray): [N, d] coordinates
        sigma (float | np.ndarray): regularization, single float or [K]
        Y (np.ndarray): [K, d] L2-normalized cluster centroids

    Returns:
        np.ndarray: [K, N] memberships, columns sum to 1
    """
    K = Y.shape[0]
    sigma = np.atleast_1d(np.asarray(sigma, dtype=np.float64))
    if sigma.shape[0] not in (1, K):
        raise ValueError(
            "sigma parameter must be either a single float or an array of length equal to number of clusters"
        )

    X_cos = _cosine_normalize(X)

    # [K, N] = [K, d] x [N, d].T
    R = -2 * (1 - Y @ X_cos.T) / sigma[..., np.newaxis]
    R -= np.max(R, axis=0)
    R = np.exp(R)
    R /= R.sum(axis=0, keepdims=True)

    return R


def _correct_query(
    X: np.ndarray,
    phi_: np.ndarray,
    R: np.ndarray,
    Nr: np.ndarray,
    C: np.ndarray,
    lamb: np.ndarray,
) -> np.ndarray:
    """
    Mixture of experts correction of query cells anchored to the reference clusters.

    Args:
        X (np.ndarray): [N, d] query coordinates in the reference basis
        phi_ (np.ndarray): [B + 1, N] intercept row and one-hot query batches
        R (np.ndarray): [K, N] query memberships in the reference clusters
        Nr (np.ndarray): [K] reference cells softly belonging to each cluster
        C (np.ndarray): [K, d] reference cluster sums (R_ref @ Z_ref)
        lamb (np.ndarray): [B + 1, B + 1] ridge penalty, no penalty on the intercept

    Returns:
        np.ndarray: [N, d] corrected coordinates
    """
    # [d, N] = [N, d].T
    X_corr = X.copy().T
    lamb = lamb.copy()
    lamb[0, 0] = 0

    for k in range(R.shape[0]):
        # [B + 1, N] = [B + 1, N] * [N]
        Phi_Rk = np.multiply(phi_, R[k, :])

        # [B + 1, B + 1] = [B + 1, N] x [N, B + 1]
        x = Phi_Rk @ phi_.T
        x[0, 0] += Nr[k]

        # [B + 1, d] = [B + 1, N] x [N, d]
        y = Phi_Rk @ X
        y[0, :] += C[k]

        # [B + 1, d] = [B + 1, B + 1] x [B + 1, d]
        W = np.linalg.inv(x + lamb) @ y
        W[0, :] = 0  # the intercept is the reference position

        # [d, N] -= [B + 1, d].T x [B + 1, N]
        X_corr -= W.T @ Phi_Rk

    return X_corr.T


def _batch_design(batch, n_cells: int) -> np.ndarray:
    # [B + 1, N] intercept row on top of one-hot batches
    if batch is None:
        batch = ["query"] * n_cells
    batch_data = pd.Series(np.asarray(batch)).astype(str)
    if batch_data.shape[0] != n_cells:
        raise ValueError(f"Expected {n_cells} batch labels, got {batch_data.shape[0]}")
    phi = pd.get_dummies(batch_data).to_numpy(dtype=np.float64).T
    return np.concatenate([np.ones((1, n_cells)), phi], axis=0)


class Aligner(ABC):
    """
    Aligns query coordinates onto a fitted reference.
    Implementations must be deterministic for a fixed seed,
    keep the reference dimensionality and never look at query labels.
    """

    name = "aligner"

    def __init__(self):
        self.n_dims: int | None = None

    @property
    def is_fitted(self) -> bool:
        return self.n_dims is not None

    def fit_reference(self, reference_coords: np.ndarray, anchors: dict | None = None) -> "Aligner":
        """
        Args:
            reference_coords (np.ndarray): [N_ref, d] reference coordinates, the alignment target
            anchors (dict | None, optional): precomputed reference clusters
                (``adata_ref.uns["harmony"]``, see ``scpredpy.pp.harmony_integrate``)
        """
        reference_coords = np.asarray(reference_coords, dtype=np.float64)
        self.n_dims = reference_coords.shape[1]
        self._fit(reference_coords, anchors)
        return self

    def _fit(self, reference_coords: np.ndarray, anchors: dict | None) -> None:
        pass

    def reference_state(self, reference_coords: np.ndarray) -> AlignmentState:
        """The reference is aligned to itself."""
        return AlignmentState(
            coords=np.asarray(reference_coords, dtype=np.float64),
            strategy=self.name,
            dataset="reference",
        )

    def align(self, query_coords: np.ndarray, batch=None, dataset: str = "query") -> AlignmentState:
        """
        Args:
            query_coords (np.ndarray): [N_q, d] query coordinates in the reference basis
            batch (Iterable | None, optional): [N_q] query batch labels, None for a single batch
            dataset (str, optional): dataset name used in errors and logs

        Returns:
            AlignmentState: corrected [N_q, d] coordinates
        """
        if not self.is_fitted:
            raise RuntimeError(f"{type(self).__name__} must be fitted on the reference first")

        query_coords = np.asarray(query_coords, dtype=np.float64)
        if query_coords.ndim != 2 or query_coords.shape[1] != self.n_dims:
            raise DimensionMismatchError(
                f"Dataset '{dataset}' has {query_coords.shape[-1]} dimensions, "
                f"reference has {self.n_dims}",
                dataset=dataset,
                expected=self.n_dims,
                got=query_coords.shape[-1],
            )

        logger.info("Aligning %i cells of '%s' with %s", query_coords.shape[0], dataset, self.name)
        return self._align(query_coords, batch, dataset)

    @abstractmethod
    def _align(self, query_coords: np.ndarray, batch, dataset: str) -> AlignmentState:
        ...


class IdentityAligner(Aligner):
    name = "identity"

    def _align(self, query_coords, batch, dataset):
        return AlignmentState(coords=query_coords.copy(), strategy=self.name, dataset=dataset)


class SymphonyAligner(Aligner):
    """
    Args:
        sigma (float | np.ndarray): entropy regularization for soft clustering of query cells.
            Defaults to 0.1.
        lamb (float): ridge regularization of the batch terms. Defaults to 1.
        K (int | None): number of reference clusters when no Harmony anchors are given.
            Defaults to min(N_ref / 30, 100).
        random_state (int): seed of the reference k-means. Defaults to 0.
    """

    name = "symphony"

    def __init__(
        self,
        sigma: float | np.ndarray = 0.1,
        lamb: float = 1.0,
        K: int | None = None,
        random_state: int = 0,
    ):
        super().__init__()
        self.sigma = sigma
        self.lamb = lamb
        self.K = K
        self.random_state = random_state
        # reference anchors
        self.Nr = None
        self.C = None

    def _fit(self, reference_coords, anchors):
        if anchors is not None:
            logger.info("Using reference clusters from the Harmony object")
            self.Nr = np.asarray(anchors["Nr"], dtype=np.float64)
            self.C = np.asarray(anchors["C"], dtype=np.float64)
            self.K = int(anchors["K"])
            return

        N = reference_coords.shape[0]
        K = self.K
        if K is None:
            K = int(max(1, min(np.round(N / 30.0), 100)))

        model = KMeans(n_clusters=K, init="k-means++", n_init=10, max_iter=25, random_state=self.random_state)
        model.fit(reference_coords)

        Y = _cosine_normalize(model.cluster_centers_)
        # [K, N_ref]
        R = _assign_clusters(reference_coords, self.sigma, Y)

        self.K = K
        self.Nr = R.sum(axis=1)
        # [K, d] = [K, N_ref] x [N_ref, d]
        self.C = R @ reference_coords

    def _align(self, query_coords, batch, dataset):
        N = query_coords.shape[0]
        Y = _cosine_normalize(self.C)
        R = _assign_clusters(query_coords, self.sigma, Y)

        phi_ = _batch_design(batch, N)
        n_batches = phi_.shape[0] - 1
        lamb = np.diag(np.insert(np.repeat(float(self.lamb), n_batches), 0, 0))

        coords = _correct_query(query_coords, phi_, R, self.Nr, self.C, lamb)
        return AlignmentState(
            coords=coords, strategy=self.name, dataset=dataset, converged=True, n_iter=1, R=R
        )


class HarmonyAligner(Aligner):
    """
    Args:
        max_iter (int): Harmony iterations budget. Defaults to 10.
        random_state (int): Harmony seed. Defaults to 0.
        harmony_kwargs: forwarded to ``harmonypy.run_harmony``
    """

    name = "harmony"

    def __init__(self, max_iter: int = 10, random_state: int = 0, **harmony_kwargs):
        super().__init__()
        self.max_iter = max_iter
        self.random_state = random_state
        self.harmony_kwargs = harmony_kwargs
        self.reference_coords = None

    def _fit(self, reference_coords, anchors):
        self.reference_coords = reference_coords

    def _align(self, query_coords, batch, dataset):
        N_ref = self.reference_coords.shape[0]
        N_q = query_coords.shape[0]

        if batch is None:
            batch = ["query"] * N_q
        batch = [f"query_{b}" for b in pd.Series(np.asarray(batch)).astype(str)]
        meta_data = pd.DataFrame({"dataset": ["reference"] * N_ref + batch})

        ho = run_harmony(
            np.concatenate([self.reference_coords, query_coords], axis=0),
            meta_data=meta_data,
            vars_use=["dataset"],
            max_iter_harmony=self.max_iter,
            random_state=self.random_state,
            verbose=False,
            **self.harmony_kwargs,
        )

        n_iter = len(ho.objective_harmony) - 1
        if not ho.check_convergence(1):
            raise AlignmentNotConvergedError(
                f"Harmony didn't converge aligning '{dataset}' in {self.max_iter} iterations. "
                "Consider increasing max_iter",
                dataset=dataset,
                n_iter=n_iter,
            )

        # [N, d]
        Z_corr = np.asarray(ho.Z_corr).T
        R = np.asarray(ho.R)

        # move clusters back to where the reference cells were before integration
        R_ref = R[:, :N_ref]
        # [K, d] = [K, N_ref] x [N_ref, d] / [K, 1]
        drift = R_ref @ (Z_corr[:N_ref] - self.reference_coords)
        drift /= np.maximum(R_ref.sum(axis=1, keepdims=True), np.finfo(float).eps)

        R_q = R[:, N_ref:]
        coords = Z_corr[N_ref:] - R_q.T @ drift

        return AlignmentState(
            coords=coords, strategy=self.name, dataset=dataset, converged=True, n_iter=n_iter, R=R_q
        )


ALIGNERS = {
    "symphony": SymphonyAligner,
    "harmony": HarmonyAligner,
    "identity": IdentityAligner,
}


def get_aligner(aligner: str | Aligner | None = None) -> Aligner:
    if aligner is None:
        return SymphonyAligner()
    if isinstance(aligner, Aligner):
        return aligner
    if aligner not in ALIGNERS:
        raise ValueError(f"Unknown aligner '{aligner}', available: {sorted(ALIGNERS)}")
    return ALIGNERS[aligner]()
