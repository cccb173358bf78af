# pylint: disable=C0103, C0114
from __future__ import annotations

import logging

from typing import Iterable

import numpy as np
import pandas as pd

from ._registry import ClassifierRegistry


logger = logging.getLogger("scpredpy")

UNASSIGNED = "unassigned"


def predict_labels(
    aligned: np.ndarray,
    registry: ClassifierRegistry,
    threshold: float = 0.55,
    categories: Iterable[str] | None = None,
    index: Iterable | None = None,
) -> tuple[pd.DataFrame, pd.Series, pd.Series]:
    """
    Applies every trained classifier to aligned query cells.

    A cell gets the category with the highest probability
    (ties go to the alphabetically first category),
    or ``"unassigned"`` if that probability is below ``threshold``.

    Args:
        aligned (np.ndarray): [N, d] query coordinates aligned to the reference
        registry (ClassifierRegistry): trained classifiers
        threshold (float, optional): minimal probability to assign a category. Defaults to 0.55.
        categories (Iterable[str] | None, optional): only use classifiers of these categories.
            Defaults to all the registry is expected to hold.
        index (Iterable | None, optional): cell names for the returned frames.

    Returns:
        tuple[pd.DataFrame, pd.Series, pd.Series]: [N, categories] probabilities,
            [N] labels after rejection and [N] labels without rejection
    """
    if not 0 < threshold < 1:
        raise ValueError(f"`threshold` should be in (0, 1), got {threshold}")

    probs = registry.probabilities(aligned, categories=categories)
    if index is not None:
        probs.index = pd.Index(index)

    # columns are sorted, so argmax picks the alphabetically first of tied categories
    best = probs.to_numpy().argmax(axis=1)
    no_rejection = probs.columns.to_numpy()[best].astype(object)
    max_prob = probs.to_numpy()[np.arange(probs.shape[0]), best]

    labels = np.where(max_prob < threshold, UNASSIGNED, no_rejection).astype(object)

    logger.info(
        "%i of %i cells are %s at threshold %s",
        (labels == UNASSIGNED).sum(),
        len(labels),
        UNASSIGNED,
        threshold,
    )

    return (
        probs,
        pd.Series(labels, index=probs.index, name="prediction"),
        pd.Series(no_rejection, index=probs.index, name="no_rejection"),
    )
