# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass, field
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from scipy.stats import mannwhitneyu
from statsmodels.stats.multitest import multipletests

from ._errors import DegenerateEmbeddingError, InsufficientDataError


logger = logging.getLogger("scpredpy")


@dataclass(frozen=True)
class FeatureSpace:
    """
    Which embedding dimensions each cell type classifier takes as input.

    ``scores`` has one row per (dimension, category) pair with the Mann-Whitney U
    statistic comparing the category's coordinates against the rest of the cells,
    its p-value and the adjusted p-value.
    ``selected`` maps each category to the ordered list of its input dimensions.
    Immutability is shallow: the mappings and the scores frame are shared and
    should be treated as read-only.
    """

    dimension_names: tuple
    categories: tuple
    n_samples: Mapping[str, int]
    scores: pd.DataFrame = field(repr=False, compare=False)
    selected: Mapping[str, tuple] = field(repr=False)
    correction: str | None = "fdr_bh"
    sig: float = 1.0

    @classmethod
    def build(
        cls,
        embedding: np.ndarray,
        labels: Iterable,
        dimension_names: Iterable[str] | None = None,
        explained_variance: np.ndarray | None = None,
        correction: str | None = "fdr_bh",
        sig: float = 1.0,
    ) -> "FeatureSpace":
        """
        Tests every embedding dimension for separation of every category from the rest.

        Args:
            embedding (np.ndarray): [N, d] reference coordinates
            labels (Iterable): [N] reference cell type labels
            dimension_names (Iterable[str] | None, optional): names of the d dimensions.
                Defaults to PC_1 .. PC_d.
            explained_variance (np.ndarray | None, optional): [d] variance ratio per dimension,
                reported alongside the scores.
            correction (str | None, optional): ``statsmodels`` multiple testing method,
                None for raw p-values. Defaults to "fdr_bh".
            sig (float, optional): dimensions with adjusted p-value below ``sig`` are selected
                for a category. Any value of 1 or more selects all dimensions. Defaults to 1.
        """
        X = np.asarray(embedding, dtype=np.float64)
        labels = pd.Series(np.asarray(labels)).astype(str)

        if X.ndim != 2:
            raise ValueError("Embedding must be a 2-dimensional [cells, dimensions] array")
        if X.shape[0] != labels.shape[0]:
            raise ValueError(
                f"Embedding has {X.shape[0]} cells while {labels.shape[0]} labels were given"
            )

        n_samples = labels.value_counts().sort_index()
        if len(n_samples) < 2:
            raise InsufficientDataError(
                f"At least 2 categories are needed to train classifiers, got {list(n_samples.index)}",
                categories=n_samples.index,
            )
        too_small = n_samples[n_samples < 2]
        if len(too_small):
            raise InsufficientDataError(
                f"Categories with fewer than 2 cells can't be trained: {list(too_small.index)}",
                categories=too_small.index,
            )

        variances = X.var(axis=0)
        if not (variances > 0).any():
            raise DegenerateEmbeddingError(
                "Embedding has zero variance in all dimensions", dataset="reference"
            )

        d = X.shape[1]
        if dimension_names is None:
            dimension_names = [f"PC_{i + 1}" for i in range(d)]
        dimension_names = tuple(dimension_names)
        if len(dimension_names) != d:
            raise ValueError(f"Expected {d} dimension names, got {len(dimension_names)}")

        categories = tuple(n_samples.index)
        labels = labels.to_numpy()

        records = []
        for i, dim in enumerate(dimension_names):
            coords = X[:, i]
            for category in categories:
                in_group = labels == category
                if variances[i] > 0:
                    statistic, p_value = mannwhitneyu(
                        coords[in_group], coords[~in_group], alternative="two-sided"
                    )
                else:
                    statistic, p_value = np.nan, 1.0
                records.append(
                    {
                        "dimension": dim,
                        "category": category,
                        "statistic": float(statistic),
                        "p_value": float(p_value),
                        "explained_variance": (
                            np.nan
                            if explained_variance is None
                            else float(explained_variance[i])
                        ),
                    }
                )

        scores = pd.DataFrame.from_records(records)
        if correction is None:
            scores["p_adj"] = scores["p_value"]
        else:
            _, scores["p_adj"], _, _ = multipletests(scores["p_value"], method=correction)

        selected = {}
        for category in categories:
            category_scores = scores[scores["category"] == category]
            if sig >= 1:
                passing = dimension_names
            else:
                passing = tuple(category_scores.loc[category_scores["p_adj"] < sig, "dimension"])
            if not passing:
                logger.warning(
                    "No dimension passes adjusted p-value < %s for category '%s', "
                    "all %i dimensions will be used",
                    sig,
                    category,
                    d,
                )
                passing = dimension_names
            selected[category] = passing

        logger.info(
            "Feature space built for %i categories over %i dimensions", len(categories), d
        )

        return cls(
            dimension_names=dimension_names,
            categories=categories,
            n_samples=n_samples.to_dict(),
            scores=scores,
            selected=selected,
            correction=correction,
            sig=sig,
        )

    def features(self, category: str) -> tuple:
        """Dimensions used as classifier input for ``category``."""
        return self.selected[category]

    def feature_indices(self, category: str) -> np.ndarray:
        positions = {dim: i for i, dim in enumerate(self.dimension_names)}
        return np.array([positions[dim] for dim in self.selected[category]], dtype=int)

    def significant(self, alpha: float = 0.05) -> pd.DataFrame:
        """Scores of (dimension, category) pairs with adjusted p-value below ``alpha``."""
        return self.scores[self.scores["p_adj"] < alpha].sort_values(["category", "p_adj"])
