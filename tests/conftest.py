import numpy as np
import pandas as pd
import pytest
import scanpy as sc

from anndata import AnnData

import scpredpy as sp


CELL_TYPES = {"Bcell": 40, "Monocyte": 40, "Tcell": 40}
N_GENES = 100
N_MARKERS = 10
N_COMPS = 10


def simulate_adata(
    n_per_type: dict,
    n_genes: int = N_GENES,
    n_markers: int = N_MARKERS,
    shift: float = 0.0,
    seed: int = 0,
    prefix: str = "cell",
) -> AnnData:
    """log1p-normalized expressions with a block of marker genes per cell type"""
    rng = np.random.default_rng(seed)
    blocks, labels = [], []
    for i, cell_type in enumerate(sorted(n_per_type)):
        n = n_per_type[cell_type]
        counts = rng.gamma(2.0, 0.5, size=(n, n_genes))
        counts[:, i * n_markers : (i + 1) * n_markers] += 3.0
        blocks.append(counts)
        labels += [cell_type] * n

    X = np.log1p(np.concatenate(blocks, axis=0)) + shift
    adata = AnnData(
        X=X.astype(np.float32),
        obs=pd.DataFrame(
            {"cell_type": pd.Categorical(labels)},
            index=[f"{prefix}_{i}" for i in range(len(labels))],
        ),
        var=pd.DataFrame(index=[f"gene_{j}" for j in range(n_genes)]),
    )
    adata.uns["log1p"] = {"base": None}
    return adata


def embed_reference(adata: AnnData) -> AnnData:
    sc.pp.scale(adata, max_value=10)
    sc.pp.pca(adata, n_comps=N_COMPS, random_state=0)
    return adata


def blobs(n_per_type: dict, n_dims: int = 5, seed: int = 0, spread: float = 4.0):
    """Gaussian blobs standing for a reference embedding"""
    rng = np.random.default_rng(seed)
    coords, labels = [], []
    for i, cell_type in enumerate(sorted(n_per_type)):
        center = np.zeros(n_dims)
        center[i % n_dims] = spread
        coords.append(rng.normal(size=(n_per_type[cell_type], n_dims)) + center)
        labels += [cell_type] * n_per_type[cell_type]
    return np.concatenate(coords, axis=0), np.array(labels)


@pytest.fixture(scope="session")
def adata_ref_log():
    return simulate_adata(CELL_TYPES, seed=0, prefix="ref")


@pytest.fixture(scope="session")
def adata_ref(adata_ref_log):
    return embed_reference(adata_ref_log.copy())


@pytest.fixture
def adata_query():
    return simulate_adata(
        {"Bcell": 20, "Monocyte": 20, "Tcell": 20}, shift=0.3, seed=1, prefix="query"
    )


@pytest.fixture(scope="session")
def trained_model(adata_ref):
    model = sp.pp.get_feature_space(adata_ref, "cell_type")
    sp.tl.train_model(model, adata_ref)
    return model


@pytest.fixture(scope="session")
def blob_data():
    return blobs(CELL_TYPES)


@pytest.fixture(scope="session")
def blob_feature_space(blob_data):
    coords, labels = blob_data
    return sp.FeatureSpace.build(coords, labels)
