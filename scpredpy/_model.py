# pylint: disable=C0103, C0116, C0114, W0511
from __future__ import annotations

import logging
import pickle
import warnings

from pathlib import Path

from packaging import version

from ._alignment import Aligner
from ._embedding import EmbeddingAdapter
from ._features import FeatureSpace
from ._registry import ClassifierRegistry


logger = logging.getLogger("scpredpy")

MODEL_FORMAT_VERSION = version.parse("0.1")


class ScPredModel:
    """
    Everything needed to classify new datasets, detached from the reference adata:
    the reference embedding (gene loadings and scaling, no expressions),
    the feature space, the trained classifiers and the aligner fitted on the reference.

    Attributes:
        embedding (EmbeddingAdapter): reference embedding
        feature_space (FeatureSpace): classifiers' input dimensions
        label_key (str): adata_ref.obs column the model was trained on
        registry (ClassifierRegistry): trained classifiers
        aligner (Aligner | None): aligner fitted on the reference coordinates
    """

    def __init__(
        self,
        embedding: EmbeddingAdapter,
        feature_space: FeatureSpace,
        label_key: str,
        registry: ClassifierRegistry | None = None,
        aligner: Aligner | None = None,
    ):
        self.embedding = embedding
        self.feature_space = feature_space
        self.label_key = label_key
        self.registry = registry if registry is not None else ClassifierRegistry()
        self.aligner = aligner
        self.format_version = str(MODEL_FORMAT_VERSION)

    def __repr__(self):
        return (
            f"ScPredModel(label_key={self.label_key!r}, "
            f"categories={list(self.feature_space.categories)}, "
            f"n_dims={self.embedding.n_dims}, trained={sorted(self.registry.models)}, "
            f"aligner={None if self.aligner is None else self.aligner.name!r})"
        )

    @property
    def categories(self) -> tuple:
        return self.feature_space.categories

    @property
    def is_trained(self) -> bool:
        return len(self.registry) > 0 and self.aligner is not None

    @property
    def performance(self):
        return self.registry.performance

    def get_classifiers(self) -> dict:
        return self.registry.get_classifiers()

    def save(self, path: str | Path) -> None:
        with open(path, "wb") as model_file:
            pickle.dump(self, model_file, protocol=pickle.HIGHEST_PROTOCOL)
        logger.info("Model is saved in %s", path)

    @classmethod
    def load(cls, path: str | Path) -> "ScPredModel":
        with open(path, "rb") as model_file:
            model = pickle.load(model_file)

        if not isinstance(model, cls):
            raise TypeError(f"{path} does not contain a {cls.__name__}")

        saved = version.parse(getattr(model, "format_version", "0"))
        if saved.major != MODEL_FORMAT_VERSION.major or saved > MODEL_FORMAT_VERSION:
            warnings.warn(
                f"Model in {path} was saved with format {saved}, "
                f"this version of scpredpy reads {MODEL_FORMAT_VERSION}"
            )
        return model
