"""
Cell type classification in a reference embedding:

1. Reference:
    - log-normalization, HVG selection, scaling (saving μ and σ for each gene)
        and PCA (saving gene loadings) are done beforehand, e.g. with scanpy
    - optionally, Harmony integration of reference batches (pp.harmony_integrate),
        its clusters serve as alignment anchors
    - feature space: Mann-Whitney U test of every PC for every cell type vs the rest,
        FDR correction, selection of each cell type's informative PCs (pp.get_feature_space)

2. Training (tl.train_model)
    - one one-vs-rest probabilistic classifier per cell type (radial SVM by default),
        performance estimated by k-fold cross-validation
    - cell types can be retrained separately with another classifier
    - the aligner is fitted on the reference coordinates

3. Query alignment (tl.align_query)
    - scale query genes with reference μ and σ, project onto reference loadings
    - correct the dataset shift anchored to the reference (Symphony mixture of experts
        by default, or joint Harmony re-anchored to the reference)

4. Prediction (tl.predict)
    - probabilities of every cell type classifier
    - the most probable cell type, "unassigned" if its probability is below the threshold

5*. Evaluation: contingency table of true vs predicted labels (tl.crosstab)
"""

from . import preprocessing as pp
from . import tools as tl
from ._alignment import (
    Aligner,
    AlignmentState,
    HarmonyAligner,
    IdentityAligner,
    SymphonyAligner,
)
from ._embedding import EmbeddingAdapter
from ._errors import (
    AlignmentNotConvergedError,
    DegenerateEmbeddingError,
    DimensionMismatchError,
    InsufficientDataError,
    ScPredError,
    TrainerError,
    UnknownCategoryError,
)
from ._features import FeatureSpace
from ._model import ScPredModel
from ._prediction import UNASSIGNED, predict_labels
from ._registry import ClassifierRegistry
from ._reporting import cross_tabulate
from ._trainers import (
    ResamplingConfig,
    SklearnTrainer,
    TrainedModel,
    Trainer,
    get_trainer,
)

__version__ = "0.1.0"
