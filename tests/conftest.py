# tests/conftest.py

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

from scrnaseq_workflow.analysis.qc import calculate_qc_metrics
from scrnaseq_workflow.analysis.preprocess import normalize_log1p, select_hvg, scale_data
from scrnaseq_workflow.analysis.dimred import reduce_dimensionality
from scrnaseq_workflow.analysis.clustering import perform_clustering
from scrnaseq_workflow.analysis.dge import find_marker_genes

# --- Synthetic data layout ---
# 190 ordinary genes + 10 mitochondrial genes; each cell type over-expresses
# its own block of 15 marker genes.
N_GENES = 200
N_MITO = 10
N_MARKERS = 15
CELL_TYPES = ('T', 'B', 'Mono')
GENE_NAMES = [f"G{i:03d}" for i in range(N_GENES - N_MITO)] + [f"MT-{i}" for i in range(1, N_MITO + 1)]
MARKER_GENES = {
    cell_type: GENE_NAMES[i * N_MARKERS:(i + 1) * N_MARKERS] for i, cell_type in enumerate(CELL_TYPES)
}


def _type_means() -> np.ndarray:
    """Mean counts per (cell type, gene); fixed across all simulated datasets."""
    rng = np.random.default_rng(12345)
    base = rng.gamma(2.0, 1.0, size=N_GENES)
    means = np.tile(base, (len(CELL_TYPES), 1))
    for i in range(len(CELL_TYPES)):
        block = slice(i * N_MARKERS, (i + 1) * N_MARKERS)
        means[i, block] = base[block] * 8 + 4
    return means


def simulate_counts(n_per_type: int = 100, seed: int = 0) -> ad.AnnData:
    """Negative-binomial counts for `n_per_type` cells of every cell type."""
    rng = np.random.default_rng(seed)
    means = _type_means()
    dispersion = 5.0
    blocks, labels = [], []
    for i, cell_type in enumerate(CELL_TYPES):
        mu = np.broadcast_to(means[i], (n_per_type, N_GENES))
        blocks.append(rng.negative_binomial(dispersion, dispersion / (dispersion + mu)))
        labels += [cell_type] * n_per_type
    counts = np.vstack(blocks).astype(np.float32)

    obs = pd.DataFrame(
        {'cell_type': pd.Categorical(labels, categories=list(CELL_TYPES))},
        index=[f"cell_{i}" for i in range(counts.shape[0])],
    )
    return ad.AnnData(X=sparse.csr_matrix(counts), obs=obs, var=pd.DataFrame(index=GENE_NAMES))


def simulate_reference(n_per_type: int = 20, seed: int = 1) -> ad.AnnData:
    """Log-normalized labelled reference drawn from the same model."""
    ref = simulate_counts(n_per_type, seed=seed)
    sc.pp.normalize_total(ref, target_sum=1e4)
    sc.pp.log1p(ref)
    ref.X = ref.X.toarray()
    ref.obs = ref.obs.rename(columns={'cell_type': 'label'})
    ref.obs_names = [f"ref_{i}" for i in range(ref.n_obs)]
    return ref


# --- Fixtures (module scope: each test module builds its own chain) ---

@pytest.fixture(scope="module")
def counts_adata() -> ad.AnnData:
    """Raw counts: 300 cells x 200 genes, three planted cell types."""
    return simulate_counts(100, seed=0)


@pytest.fixture(scope="module")
def qc_adata(counts_adata) -> ad.AnnData:
    adata = counts_adata.copy()
    calculate_qc_metrics(adata, mito_gene_prefix="MT-", inplace=True)
    return adata


@pytest.fixture(scope="module")
def normalized_adata(qc_adata) -> ad.AnnData:
    """Log-normalized data with .raw holding all genes."""
    adata = qc_adata.copy()
    normalize_log1p(adata, target_sum=1e4, inplace=True)
    adata.raw = adata
    return adata


@pytest.fixture(scope="module")
def scaled_adata(normalized_adata) -> ad.AnnData:
    adata = normalized_adata.copy()
    select_hvg(adata, n_top_genes=100, flavor='seurat', subset=True, inplace=True)
    scale_data(adata, max_value=10, inplace=True)
    return adata


@pytest.fixture(scope="module")
def pca_adata(scaled_adata) -> ad.AnnData:
    adata = scaled_adata.copy()
    reduce_dimensionality(adata, n_comps=20, random_state=0, inplace=True)
    return adata


@pytest.fixture(scope="module")
def clustered_adata(pca_adata) -> ad.AnnData:
    """Leiden clusters (key 'leiden') on the kNN graph, no UMAP."""
    adata = pca_adata.copy()
    perform_clustering(
        adata, n_neighbors=15, resolution=0.5, random_state=0,
        method='leiden', calculate_umap=False, inplace=True
    )
    return adata


@pytest.fixture(scope="module")
def dge_adata(clustered_adata) -> ad.AnnData:
    """Wilcoxon markers of the planted cell types (groupby 'cell_type') on .raw."""
    adata = clustered_adata.copy()
    find_marker_genes(adata, groupby='cell_type', method='wilcoxon', use_raw=True)
    return adata


@pytest.fixture(scope="module")
def reference_adata() -> ad.AnnData:
    return simulate_reference(20, seed=1)
