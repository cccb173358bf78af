# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import dataclasses
import logging

from typing import Iterable

import numpy as np
import pandas as pd

from joblib import Parallel, delayed

from ._errors import TrainerError, UnknownCategoryError
from ._features import FeatureSpace
from ._trainers import (
    ComplementModel,
    ResamplingConfig,
    Trainer,
    get_trainer,
)


logger = logging.getLogger("scpredpy")

PERFORMANCE_COLUMNS = ["ROC", "Sens", "Spec", "ROCSD", "SensSD", "SpecSD", "n_features", "method"]


def _train_category(
    trainer: Trainer,
    X: np.ndarray,
    labels: np.ndarray,
    category: str,
    dim_idx: np.ndarray,
    dimensions: tuple,
    resampling: ResamplingConfig,
    n_jobs: int | None,
):
    in_group = labels == category
    # [N, n_features] only the category's input dimensions
    X_cat = X[:, dim_idx]
    try:
        model = trainer.fit(
            X_cat[in_group],
            X_cat[~in_group],
            resampling,
            category=category,
            n_jobs=n_jobs,
        )
    except TrainerError as exc:
        return category, exc
    except Exception as exc:  # pylint: disable=W0703
        error = TrainerError(
            f"Training {trainer.method} classifier for '{category}' failed: {exc!r}",
            category=category,
        )
        error.__cause__ = exc
        return category, error

    return category, dataclasses.replace(
        model, category=category, dimensions=dimensions, trainer=trainer
    )


class ClassifierRegistry:
    """
    One trained one-vs-rest classifier per cell type.

    Models of categories not being retrained stay untouched between
    ``train`` calls, so a registry may mix classifiers of different methods.
    """

    def __init__(self, resampling: ResamplingConfig | None = None):
        self.resampling = resampling or ResamplingConfig()
        self.models: dict = {}
        self.failures: dict[str, TrainerError] = {}
        self.excluded: set[str] = set()
        self.categories: tuple = ()
        self.dimension_names: tuple = ()

    def __contains__(self, category) -> bool:
        return category in self.models

    def __len__(self) -> int:
        return len(self.models)

    def __repr__(self):
        methods = sorted({model.method for model in self.models.values()})
        return f"ClassifierRegistry(categories={sorted(self.models)}, methods={methods})"

    @property
    def is_binary(self) -> bool:
        return any(isinstance(model, ComplementModel) for model in self.models.values())

    @property
    def expected_categories(self) -> list[str]:
        """Categories which must have a classifier for prediction."""
        return [c for c in self.categories if c not in self.excluded]

    @property
    def missing_categories(self) -> list[str]:
        return [c for c in self.expected_categories if c not in self.models]

    @property
    def performance(self) -> pd.DataFrame:
        rows = {}
        for category in sorted(self.models):
            model = self.models[category]
            rows[category] = {
                **model.performance,
                "n_features": model.n_features,
                "method": model.method,
            }
        return pd.DataFrame.from_dict(rows, orient="index", columns=PERFORMANCE_COLUMNS)

    def get_classifiers(self) -> dict:
        return dict(self.models)

    def train(
        self,
        feature_space: FeatureSpace,
        embedding: np.ndarray,
        labels: Iterable,
        trainer: str | Trainer | object = "svmRadial",
        reclassify: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
        n_jobs: int | None = 1,
        raise_on_failure: bool = True,
    ) -> "ClassifierRegistry":
        """
        Trains one-vs-rest classifiers for the categories of ``feature_space``.

        Args:
            feature_space (FeatureSpace): which dimensions each category's classifier uses
            embedding (np.ndarray): [N, d] reference coordinates
            labels (Iterable): [N] reference labels
            trainer (str | Trainer | estimator, optional): classifier to train. Defaults to "svmRadial".
            reclassify (Iterable[str] | None, optional): retrain only these categories,
                keeping the other classifiers as they are. Previously excluded categories
                listed here are trained again. Defaults to None (all categories).
            exclude (Iterable[str] | None, optional): categories to drop from the registry.
            n_jobs (int | None, optional): number of categories trained in parallel. Defaults to 1.
            raise_on_failure (bool, optional): if to raise an aggregated TrainerError after
                all categories were attempted. Defaults to True.

        Returns:
            ClassifierRegistry: self
        """
        trainer = get_trainer(trainer)
        X = np.asarray(embedding, dtype=np.float64)
        labels = np.asarray(labels).astype(str)
        reclassify = None if reclassify is None else list(reclassify)
        exclude = list(exclude or [])

        if X.shape[1] != len(feature_space.dimension_names):
            raise ValueError(
                f"Embedding has {X.shape[1]} dimensions, "
                f"feature space has {len(feature_space.dimension_names)}"
            )

        self.categories = tuple(feature_space.categories)
        self.dimension_names = tuple(feature_space.dimension_names)

        unknown = [c for c in (reclassify or []) + exclude if c not in self.categories]
        if unknown:
            raise UnknownCategoryError(
                f"Categories not found in the feature space: {unknown}", categories=unknown
            )

        both = sorted(set(reclassify or []) & set(exclude))
        if both:
            raise ValueError(f"Categories both reclassified and excluded: {both}")

        # explicit retraining brings back an excluded category
        for category in reclassify or []:
            self.excluded.discard(category)

        for category in exclude:
            self.excluded.add(category)
            self.models.pop(category, None)
            self.failures.pop(category, None)

        trainable = [c for c in self.categories if c not in self.excluded]
        targets = trainable if reclassify is None else [c for c in trainable if c in set(reclassify)]

        # two categories share one binary classifier
        binary = len(self.categories) == 2 and len(trainable) == 2
        if binary:
            first, second = trainable
            targets = [first] if targets else []
        elif self.is_binary:
            self.models = {
                c: m for c, m in self.models.items() if not isinstance(m, ComplementModel)
            }

        if not targets:
            logger.info("Nothing to train")
            return self

        logger.info(
            "Training %s classifiers for %i categories: %s",
            trainer.method,
            len(targets),
            ", ".join(targets),
        )

        fold_jobs = n_jobs if len(targets) == 1 else 1
        results = Parallel(n_jobs=n_jobs if len(targets) > 1 else 1)(
            delayed(_train_category)(
                trainer,
                X,
                labels,
                category,
                feature_space.feature_indices(category),
                feature_space.features(category),
                self.resampling,
                fold_jobs,
            )
            for category in targets
        )

        failures = {}
        for category, result in sorted(results, key=lambda r: r[0]):
            if isinstance(result, TrainerError):
                logger.error("%s", result)
                failures[category] = result
                self.models.pop(category, None)
                self.failures[category] = result
            else:
                self.models[category] = result
                self.failures.pop(category, None)
                logger.info(
                    "'%s' classifier: ROC %.3f, Sens %.3f, Spec %.3f",
                    category,
                    result.performance["ROC"],
                    result.performance["Sens"],
                    result.performance["Spec"],
                )

        if binary:
            if first in self.models:
                self.models[second] = ComplementModel(second, self.models[first])
            else:
                self.models.pop(second, None)

        if failures and raise_on_failure:
            raise TrainerError(
                f"Training failed for {len(failures)} of {len(targets)} categories: "
                f"{sorted(failures)}",
                failures=failures,
            )

        return self

    def probabilities(self, X: np.ndarray, categories: Iterable[str] | None = None) -> pd.DataFrame:
        """
        Args:
            X (np.ndarray): [N, d] aligned coordinates
            categories (Iterable[str] | None, optional): restrict to these categories.

        Returns:
            pd.DataFrame: [N, categories] positive class probabilities, columns sorted by name
        """
        if categories is None:
            missing = self.missing_categories
            categories = sorted(self.models)
        else:
            categories = sorted(categories)
            missing = [c for c in categories if c not in self.models]
        if missing:
            raise UnknownCategoryError(
                f"No trained classifier for categories: {missing}", categories=missing
            )
        if not categories:
            raise UnknownCategoryError("Registry has no trained classifiers")

        X = np.asarray(X, dtype=np.float64)
        if X.shape[1] != len(self.dimension_names):
            raise ValueError(
                f"Expected {len(self.dimension_names)} dimensions, got {X.shape[1]}"
            )
        positions = {dim: i for i, dim in enumerate(self.dimension_names)}

        probs = {}
        for category in categories:
            model = self.models[category]
            dim_idx = [positions[dim] for dim in model.dimensions]
            probs[category] = model.predict_probability(X[:, dim_idx])

        return pd.DataFrame(probs, columns=categories)
