# pylint: disable=C0103, C0114
from __future__ import annotations

from typing import Iterable

import pandas as pd

from ._prediction import UNASSIGNED


def cross_tabulate(
    true_labels: Iterable,
    predicted_labels: Iterable,
    mode: str = "count",
    categories: Iterable[str] | None = None,
) -> pd.DataFrame:
    """
    Contingency table of true (rows) vs predicted (columns) labels.

    Args:
        true_labels (Iterable): ground truth categories
        predicted_labels (Iterable): predicted categories, may contain "unassigned"
        mode (str, optional): "count" or "proportion" (rows divided by the
            number of cells of the true category). Defaults to "count".
        categories (Iterable[str] | None, optional): categories to report even if no cell
            carries them, e.g. all the trained ones. Their rows are all zeros.
    """
    if mode not in ("count", "proportion"):
        raise ValueError("`mode` argument should be `count` or `proportion`.")

    true_labels = pd.Series(list(true_labels), dtype=str, name="true")
    predicted_labels = pd.Series(list(predicted_labels), dtype=str, name="predicted")
    if true_labels.shape[0] != predicted_labels.shape[0]:
        raise ValueError(
            f"Got {true_labels.shape[0]} true and {predicted_labels.shape[0]} predicted labels"
        )

    known = set(true_labels) | set(categories or [])
    rows = sorted(known)
    columns = sorted((known | set(predicted_labels)) - {UNASSIGNED})
    if UNASSIGNED in set(predicted_labels):
        columns.append(UNASSIGNED)

    table = (
        pd.crosstab(true_labels, predicted_labels)
        .reindex(index=rows, columns=columns, fill_value=0)
        .astype(int)
    )

    if mode == "proportion":
        totals = table.sum(axis=1)
        table = table.div(totals.where(totals > 0, 1), axis=0).astype(float)

    table.index.name = "true"
    table.columns.name = "predicted"
    return table
