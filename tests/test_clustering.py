# tests/test_clustering.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
import random

from scrnaseq_workflow.analysis.clustering import (
    build_neighbor_graph,
    perform_clustering,
    resolution_sweep,
    _labels_by_size,
)


def _purity(clusters: pd.Series, truth: pd.Series) -> float:
    """Fraction of cells whose cluster's majority cell type matches their own."""
    table = pd.crosstab(clusters, truth)
    return table.max(axis=1).sum() / table.to_numpy().sum()


# --- build_neighbor_graph ---

def test_neighbor_graph(pca_adata):
    adata = build_neighbor_graph(pca_adata, n_neighbors=10, inplace=False)
    assert 'neighbors' in adata.uns
    assert 'connectivities' in adata.obsp
    assert 'distances' in adata.obsp
    assert adata.uns['neighbors']['params']['n_neighbors'] == 10
    assert 'connectivities' not in pca_adata.obsp


def test_neighbor_graph_too_many_neighbors(pca_adata):
    with pytest.raises(ValueError, match="must be smaller than the number of cells"):
        build_neighbor_graph(pca_adata, n_neighbors=pca_adata.n_obs, inplace=False)


# --- perform_clustering ---

def test_clustering_leiden_inplace(pca_adata):
    """Leiden clustering and UMAP with inplace=True."""
    adata = pca_adata.copy()
    random_seed = 42
    key_added = 'leiden_test'

    result = perform_clustering(
        adata, use_rep='X_pca', n_neighbors=15, resolution=0.5, random_state=random_seed,
        method='leiden', key_added=key_added, calculate_umap=True, inplace=True
    )

    assert result is None, "Should return None when inplace=True"
    assert 'connectivities' in adata.obsp
    assert key_added in adata.obs
    assert isinstance(adata.obs[key_added].dtype, pd.CategoricalDtype)
    assert adata.uns[key_added]['params']['resolution'] == 0.5
    assert adata.uns[key_added]['params']['method'] == 'leiden'
    assert 'X_umap' in adata.obsm, "'X_umap' should be added to .obsm"
    assert adata.obsm['X_umap'].shape == (adata.n_obs, 2)
    assert adata.uns['umap']['params']['random_state'] == random_seed


def test_clustering_recovers_planted_types(clustered_adata):
    clusters = clustered_adata.obs['leiden']
    assert clusters.nunique() >= 2
    assert _purity(clusters, clustered_adata.obs['cell_type']) > 0.9


def test_clustering_louvain_not_inplace(pca_adata):
    adata_new = perform_clustering(
        pca_adata, n_neighbors=15, resolution=0.5, random_state=0,
        method='louvain', calculate_umap=False, inplace=False
    )
    assert isinstance(adata_new, ad.AnnData)
    assert 'louvain' in adata_new.obs, "Key defaults to the method name"
    assert 'louvain' not in pca_adata.obs
    assert 'X_umap' not in adata_new.obsm
    assert _purity(adata_new.obs['louvain'], adata_new.obs['cell_type']) > 0.9


def test_cluster_labels_ordered_by_size(clustered_adata):
    counts = clustered_adata.obs['leiden'].value_counts()
    sizes = [counts[c] for c in clustered_adata.obs['leiden'].cat.categories]
    assert sizes == sorted(sizes, reverse=True)


def test_louvain_reproducible(pca_adata):
    kwargs = dict(n_neighbors=15, resolution=1.0, random_state=7, method='louvain', calculate_umap=False, inplace=False)
    first = perform_clustering(pca_adata, **kwargs)
    second = perform_clustering(pca_adata, **kwargs)
    pd.testing.assert_series_equal(first.obs['louvain'], second.obs['louvain'])


def test_louvain_leaves_global_random_state(pca_adata):
    random.seed(123)
    expected = [random.random() for _ in range(3)]
    random.seed(123)
    perform_clustering(
        pca_adata, n_neighbors=15, resolution=1.0, random_state=7,
        method='louvain', calculate_umap=False, inplace=False
    )
    assert [random.random() for _ in range(3)] == expected


def test_labels_by_size():
    labels = _labels_by_size(np.array([5, 5, 2, 2, 2, 9]))
    assert list(labels) == ['1', '1', '0', '0', '0', '2']
    assert list(labels.categories) == ['0', '1', '2']


@pytest.mark.parametrize("kwargs, error, message", [
    ({'use_rep': 'X_missing'}, KeyError, "Representation 'X_missing' not found"),
    ({'n_neighbors': 0}, ValueError, "'n_neighbors' must be a positive integer"),
    ({'n_neighbors': 10.5}, ValueError, "'n_neighbors' must be a positive integer"),
    ({'resolution': 0}, ValueError, "'resolution' must be a positive number"),
    ({'method': 'kmeans'}, ValueError, "Unknown clustering method"),
])
def test_clustering_invalid_args(pca_adata, kwargs, error, message):
    with pytest.raises(error, match=message):
        perform_clustering(pca_adata, calculate_umap=False, inplace=False, **kwargs)


def test_clustering_invalid_input_type():
    with pytest.raises(TypeError):
        perform_clustering(np.zeros((10, 10)))


# --- resolution_sweep ---

def test_resolution_sweep(clustered_adata):
    adata = clustered_adata.copy()
    summary = resolution_sweep(adata, [1.5, 0.1, 0.5], method='leiden')

    assert list(summary['resolution']) == [0.1, 0.5, 1.5], "Resolutions are reported in ascending order"
    assert list(summary['key']) == ['leiden_res0.1', 'leiden_res0.5', 'leiden_res1.5']
    for key in summary['key']:
        assert key in adata.obs
    assert summary['n_clusters'].is_monotonic_increasing
    multi = summary[summary['n_clusters'] > 1]
    assert multi['silhouette'].between(-1, 1).all()
    assert 'leiden_sweep' in adata.uns


def test_resolution_sweep_requires_graph(pca_adata):
    with pytest.raises(KeyError, match="Neighbor graph not found"):
        resolution_sweep(pca_adata.copy(), [0.5])


def test_resolution_sweep_invalid(clustered_adata):
    with pytest.raises(ValueError, match="non-empty list of positive numbers"):
        resolution_sweep(clustered_adata.copy(), [])
    with pytest.raises(ValueError):
        resolution_sweep(clustered_adata.copy(), [0.5, -1])
