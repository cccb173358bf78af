# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np

from sklearn.base import clone
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.metrics import make_scorer, recall_score
from sklearn.model_selection import (
    RepeatedStratifiedKFold,
    StratifiedKFold,
    cross_validate,
)
from sklearn.neighbors import KNeighborsClassifier
from sklearn.svm import SVC

from ._errors import TrainerError


logger = logging.getLogger("scpredpy")


def _positive_probability(estimator, X: np.ndarray) -> np.ndarray:
    # [N] probability of the positive class
    positive = list(estimator.classes_).index(1)
    return estimator.predict_proba(X)[:, positive]


SCORING = {
    "ROC": "roc_auc",
    "Sens": make_scorer(recall_score, pos_label=1, zero_division=0),
    "Spec": make_scorer(recall_score, pos_label=0, zero_division=0),
}


@dataclass(frozen=True)
class ResamplingConfig:
    """
    Resampling protocol used to estimate classifier performance.

    Args:
        method (str): "cv" for k-fold or "repeatedcv" for repeated k-fold.
        number (int): number of folds.
        repeats (int): number of repeats, only for "repeatedcv".
        random_state (int): seed for fold assignment and estimators.
    """

    method: str = "cv"
    number: int = 5
    repeats: int = 1
    random_state: int = 66

    def splitter(self, y: np.ndarray):
        n_splits = min(self.number, int(np.bincount(y).min()))
        if n_splits < self.number:
            logger.warning(
                "Smallest class has %i cells, using %i folds instead of %i",
                n_splits,
                n_splits,
                self.number,
            )

        if self.method == "cv":
            return StratifiedKFold(
                n_splits=n_splits, shuffle=True, random_state=self.random_state
            )
        if self.method == "repeatedcv":
            return RepeatedStratifiedKFold(
                n_splits=n_splits, n_repeats=self.repeats, random_state=self.random_state
            )
        raise ValueError("`method` argument should be `cv` or `repeatedcv`.")


@dataclass
class TrainedModel:
    """
    A fitted one-vs-rest classifier of a single category.

    ``performance`` holds mean and SD over resampling folds of
    ROC AUC, sensitivity and specificity.
    ``trainer`` is the Trainer which fitted the model. Probabilities are
    computed by its ``predict_probability``.
    """

    category: str
    estimator: object = field(repr=False)
    method: str
    dimensions: tuple
    performance: dict
    trainer: "Trainer | None" = field(default=None, repr=False, compare=False)

    @property
    def n_features(self) -> int:
        return len(self.dimensions)

    def predict_probability(self, X: np.ndarray) -> np.ndarray:
        if self.trainer is None:
            return _positive_probability(self.estimator, X)
        return self.trainer.predict_probability(self, X)


@dataclass
class ComplementModel:
    """Second category of a binary problem: 1 - p of the first category's model."""

    category: str
    base: TrainedModel = field(repr=False)

    @property
    def method(self) -> str:
        return self.base.method

    @property
    def dimensions(self) -> tuple:
        return self.base.dimensions

    @property
    def n_features(self) -> int:
        return self.base.n_features

    @property
    def performance(self) -> dict:
        # sensitivity and specificity swap places for the complementary class
        perf = dict(self.base.performance)
        perf["Sens"], perf["Spec"] = self.base.performance["Spec"], self.base.performance["Sens"]
        perf["SensSD"], perf["SpecSD"] = (
            self.base.performance["SpecSD"],
            self.base.performance["SensSD"],
        )
        return perf

    def predict_probability(self, X: np.ndarray) -> np.ndarray:
        return 1 - self.base.predict_probability(X)


class Trainer(ABC):
    """
    Fits a binary classifier of positive vs negative cells.
    Concrete trainers adapt a particular algorithm. Trainers wrapping models
    without scikit-learn's ``classes_``/``predict_proba`` override
    ``predict_probability``.
    """

    method: str = "custom"

    @abstractmethod
    def fit(
        self,
        positive: np.ndarray,
        negative: np.ndarray,
        resampling: ResamplingConfig,
        category: str = "positive",
        n_jobs: int | None = 1,
    ) -> TrainedModel:
        ...

    def predict_probability(self, model: TrainedModel, X: np.ndarray) -> np.ndarray:
        """[N] probability that the cells of X belong to the model's category."""
        return _positive_probability(model.estimator, X)


class SklearnTrainer(Trainer):
    """
    Trainer for any scikit-learn classifier implementing ``predict_proba``.

    Args:
        estimator: unfitted scikit-learn classifier, cloned for every fit
        method (str | None): identifier reported in performance tables.
            Defaults to the estimator's class name.
    """

    def __init__(self, estimator, method: str | None = None):
        self.estimator = estimator
        self.method = method or type(estimator).__name__

    def __repr__(self):
        return f"{type(self).__name__}(method={self.method!r})"

    def _new_estimator(self, random_state: int):
        estimator = clone(self.estimator)
        if "random_state" in estimator.get_params():
            estimator.set_params(random_state=random_state)
        return estimator

    def fit(
        self,
        positive: np.ndarray,
        negative: np.ndarray,
        resampling: ResamplingConfig,
        category: str = "positive",
        n_jobs: int | None = 1,
    ) -> TrainedModel:
        X = np.concatenate([positive, negative], axis=0)
        y = np.concatenate(
            [np.ones(positive.shape[0], dtype=int), np.zeros(negative.shape[0], dtype=int)]
        )

        cv = cross_validate(
            self._new_estimator(resampling.random_state),
            X,
            y,
            cv=resampling.splitter(y),
            scoring=SCORING,
            n_jobs=n_jobs,
            error_score="raise",
        )
        performance = {}
        for metric in SCORING:
            scores = cv[f"test_{metric}"]
            performance[metric] = float(np.mean(scores))
            performance[f"{metric}SD"] = float(np.std(scores, ddof=1)) if len(scores) > 1 else 0.0

        estimator = self._new_estimator(resampling.random_state)
        with warnings.catch_warnings():
            warnings.simplefilter("error", ConvergenceWarning)
            try:
                estimator.fit(X, y)
            except ConvergenceWarning as exc:
                raise TrainerError(
                    f"{self.method} classifier for '{category}' did not converge: {exc}",
                    category=category,
                ) from exc

        return TrainedModel(
            category=category,
            estimator=estimator,
            method=self.method,
            dimensions=(),
            performance=performance,
            trainer=self,
        )


TRAINERS = {
    "svmRadial": lambda: SklearnTrainer(
        SVC(kernel="rbf", probability=True, gamma="scale"), method="svmRadial"
    ),
    "svmLinear": lambda: SklearnTrainer(
        SVC(kernel="linear", probability=True), method="svmLinear"
    ),
    "lda": lambda: SklearnTrainer(LinearDiscriminantAnalysis(), method="lda"),
    "glm": lambda: SklearnTrainer(LogisticRegression(max_iter=1000), method="glm"),
    "knn": lambda: SklearnTrainer(KNeighborsClassifier(n_neighbors=10), method="knn"),
}


def get_trainer(model: str | Trainer | object = "svmRadial") -> Trainer:
    """
    Resolves ``model`` to a Trainer.

    Args:
        model (str | Trainer | estimator): one of "svmRadial", "svmLinear",
            "lda", "glm", "knn", a Trainer, or an unfitted scikit-learn classifier.
    """
    if isinstance(model, Trainer):
        return model
    if isinstance(model, str):
        if model not in TRAINERS:
            raise ValueError(f"Unknown model '{model}', available: {sorted(TRAINERS)}")
        return TRAINERS[model]()
    if hasattr(model, "fit") and hasattr(model, "predict_proba"):
        return SklearnTrainer(model)
    raise TypeError(
        "`model` should be a model name, a Trainer or a scikit-learn classifier "
        "with predict_proba"
    )
