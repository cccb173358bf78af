# pylint: disable=C0114, C0115
from __future__ import annotations

from typing import Iterable, Mapping


class ScPredError(Exception):
    """Base class for all scpredpy errors."""


class InsufficientDataError(ScPredError):
    def __init__(self, message: str, categories: Iterable[str] = ()):
        self.categories = list(categories)
        super().__init__(message)


class DegenerateEmbeddingError(ScPredError):
    def __init__(self, message: str, dataset: str | None = None):
        self.dataset = dataset
        super().__init__(message)


class TrainerError(ScPredError):
    """
    Raised when fitting a classifier failed.

    A single-category failure carries ``category``;
    the aggregated error raised after a training pass
    carries every failure in ``failures`` (category -> TrainerError).
    """

    def __init__(
        self,
        message: str,
        category: str | None = None,
        failures: Mapping[str, "TrainerError"] | None = None,
    ):
        self.category = category
        self.failures = dict(failures or {})
        super().__init__(message)


class DimensionMismatchError(ScPredError):
    def __init__(self, message: str, dataset: str | None = None, expected=None, got=None):
        self.dataset = dataset
        self.expected = expected
        self.got = got
        super().__init__(message)


class AlignmentNotConvergedError(ScPredError):
    def __init__(self, message: str, dataset: str | None = None, n_iter: int | None = None):
        self.dataset = dataset
        self.n_iter = n_iter
        super().__init__(message)


class UnknownCategoryError(ScPredError, KeyError):
    def __init__(self, message: str, categories: Iterable[str] = ()):
        self.categories = list(categories)
        super().__init__(message)

    def __str__(self):
        return str(self.args[0])
