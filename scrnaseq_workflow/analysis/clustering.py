# scrnaseq_workflow/analysis/clustering.py

import scanpy as sc
import anndata as ad
import igraph as ig
import logging
import numpy as np
import pandas as pd
import random
from scipy import sparse
from sklearn.metrics import silhouette_score

from .dimred import compute_embedding

log = logging.getLogger(__name__)

CLUSTER_METHODS = ('leiden', 'louvain')


def build_neighbor_graph(
    adata: ad.AnnData,
    use_rep: str = 'X_pca',
    n_neighbors: int = 15,
    n_pcs: int | None = None,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Computes the k-nearest-neighbor graph used by clustering and UMAP.

    Results go to adata.uns['neighbors'] and adata.obsp['distances'/'connectivities'].

    Raises:
        KeyError: If `use_rep` is not found in adata.obsm.
        ValueError: If `n_neighbors` is not a positive integer below n_obs.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm. Run dimensionality reduction first.")
    if not isinstance(n_neighbors, int) or isinstance(n_neighbors, bool) or n_neighbors <= 0:
        raise ValueError("Argument 'n_neighbors' must be a positive integer.")
    if n_neighbors >= adata.n_obs:
        raise ValueError(f"Argument 'n_neighbors' ({n_neighbors}) must be smaller than the number of cells ({adata.n_obs}).")

    adata_work = adata if inplace else adata.copy()
    log.info(f"Computing neighborhood graph using '{use_rep}' with {n_neighbors} neighbors (n_pcs={n_pcs})...")
    try:
        sc.pp.neighbors(
            adata_work,
            n_neighbors=n_neighbors,
            n_pcs=n_pcs,
            use_rep=use_rep,
            random_state=random_state,
        )
    except Exception as e:
        log.error(f"Error while computing neighbors: {e}", exc_info=True)
        raise RuntimeError(f"Failed to compute neighbor graph: {e}") from e

    if 'connectivities' not in adata_work.obsp:
        raise RuntimeError("scanpy.pp.neighbors finished but 'connectivities' not found in adata.obsp.")
    log.info("Neighborhood graph computed. Results in .uns['neighbors'] and .obsp.")
    return None if inplace else adata_work


def _labels_by_size(membership: np.ndarray) -> pd.Categorical:
    """Renames community ids so that '0' is the largest cluster."""
    ids, counts = np.unique(membership, return_counts=True)
    order = ids[np.argsort(-counts, kind='stable')]
    mapping = {old: new for new, old in enumerate(order)}
    labels = np.array([str(mapping[m]) for m in membership])
    return pd.Categorical(labels, categories=[str(i) for i in range(len(order))])


def _louvain_membership(adjacency, resolution: float, random_state: int) -> np.ndarray:
    """Multilevel (Louvain) communities of the undirected, weighted kNN graph."""
    upper = sparse.triu(sparse.csr_matrix(adjacency), k=1).tocoo()
    graph = ig.Graph(
        n=adjacency.shape[0],
        edges=list(zip(upper.row.tolist(), upper.col.tolist())),
        directed=False,
    )
    graph.es['weight'] = upper.data.tolist()
    # igraph draws from Python's `random` module; the caller's state is restored
    state = random.getstate()
    random.seed(random_state)
    try:
        partition = graph.community_multilevel(weights='weight', resolution=resolution)
    finally:
        random.setstate(state)
    return np.asarray(partition.membership)


def _run_community_detection(
    adata: ad.AnnData,
    method: str,
    resolution: float,
    random_state: int,
    key_added: str
) -> int:
    if method == 'leiden':
        sc.tl.leiden(
            adata,
            resolution=resolution,
            random_state=random_state,
            key_added=key_added,
            flavor='leidenalg',
        )
    else:
        membership = _louvain_membership(adata.obsp['connectivities'], resolution, random_state)
        adata.obs[key_added] = _labels_by_size(membership)
    adata.uns.setdefault(key_added, {})
    adata.uns[key_added]['params'] = {
        'method': method, 'resolution': resolution, 'random_state': random_state
    }
    return int(adata.obs[key_added].nunique())


def perform_clustering(
    adata: ad.AnnData,
    use_rep: str = 'X_pca',
    n_neighbors: int = 15,
    resolution: float = 1.0,
    random_state: int = 0,
    method: str = 'leiden',
    key_added: str | None = None,
    n_pcs: int | None = None,
    calculate_umap: bool = True,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Computes the neighborhood graph, clusters it, and optionally embeds it with UMAP.

    Leiden uses scanpy.tl.leiden (leidenalg); Louvain uses igraph's multilevel
    community detection on the same connectivities, honouring `resolution`.
    Cluster labels are categorical strings with '0' the largest cluster.

    Args:
        adata: The annotated data matrix (typically after PCA).
        use_rep: Representation in adata.obsm used for the neighbor graph.
        n_neighbors: Number of neighbors for the k-NN graph. Defaults to 15.
        resolution: Resolution of the modularity objective; higher values give
                    more clusters. Defaults to 1.0.
        random_state: Seed used by the neighbor search, clustering and UMAP.
        method: 'leiden' or 'louvain'. Defaults to 'leiden'.
        key_added: adata.obs column for the labels. Defaults to the method name.
        n_pcs: Number of components of `use_rep` to use. None uses all.
        calculate_umap: Whether to calculate the UMAP embedding. Defaults to True.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified copy.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `use_rep` is not found in `adata.obsm`.
        ValueError: If `n_neighbors`, `resolution` or `method` are invalid.
        RuntimeError: If the underlying library calls fail.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm. Run dimensionality reduction first.")
    if not isinstance(n_neighbors, int) or isinstance(n_neighbors, bool) or n_neighbors <= 0:
        raise ValueError("Argument 'n_neighbors' must be a positive integer.")
    if not isinstance(resolution, (int, float)) or resolution <= 0:
        raise ValueError("Argument 'resolution' must be a positive number.")
    if method not in CLUSTER_METHODS:
        raise ValueError(f"Unknown clustering method '{method}'. Use one of {CLUSTER_METHODS}.")
    key_added = key_added or method

    log.info(
        f"Performing {method} clustering using {use_rep}: n_neighbors={n_neighbors}, "
        f"resolution={resolution}, random_state={random_state}. UMAP calculation: {calculate_umap}."
    )

    adata_work = adata if inplace else adata.copy()

    build_neighbor_graph(
        adata_work, use_rep=use_rep, n_neighbors=n_neighbors, n_pcs=n_pcs,
        random_state=random_state, inplace=True
    )

    try:
        n_clusters = _run_community_detection(adata_work, method, resolution, random_state, key_added)
    except Exception as e:
        log.error(f"An error occurred during {method} clustering: {e}", exc_info=True)
        raise RuntimeError(f"Failed during {method} clustering: {e}") from e
    log.info(f"Found {n_clusters} clusters. Results stored in adata.obs['{key_added}'].")

    if calculate_umap:
        compute_embedding(adata_work, method='umap', random_state=random_state, inplace=True)
    else:
        log.info("Skipping UMAP calculation as requested.")

    return None if inplace else adata_work


def resolution_sweep(
    adata: ad.AnnData,
    resolutions: list[float],
    method: str = 'leiden',
    use_rep: str = 'X_pca',
    random_state: int = 0,
    key_prefix: str | None = None
) -> pd.DataFrame:
    """
    Clusters the existing neighbor graph at several resolutions.

    Each result is written to adata.obs[f'{key_prefix}_res{resolution}'] and
    the summary (cluster count and mean silhouette width on `use_rep`) is
    returned and stored in adata.uns[f'{key_prefix}_sweep']. The silhouette is
    NaN when a resolution yields a single cluster.

    Raises:
        KeyError: If the neighbor graph or `use_rep` is missing.
        ValueError: If `resolutions` is empty or contains non-positive values.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if 'connectivities' not in adata.obsp:
        raise KeyError("Neighbor graph not found in adata.obsp. Run build_neighbor_graph first.")
    if use_rep not in adata.obsm:
        raise KeyError(f"Representation '{use_rep}' not found in adata.obsm.")
    if not resolutions or any(r <= 0 for r in resolutions):
        raise ValueError("Argument 'resolutions' must be a non-empty list of positive numbers.")
    if method not in CLUSTER_METHODS:
        raise ValueError(f"Unknown clustering method '{method}'. Use one of {CLUSTER_METHODS}.")
    key_prefix = key_prefix or method

    embedding = np.asarray(adata.obsm[use_rep])
    rows = []
    for resolution in sorted(resolutions):
        key = f"{key_prefix}_res{resolution:g}"
        n_clusters = _run_community_detection(adata, method, resolution, random_state, key)
        if 1 < n_clusters < adata.n_obs:
            silhouette = float(silhouette_score(embedding, adata.obs[key].to_numpy(), random_state=random_state))
        else:
            silhouette = np.nan
        log.info(f"Resolution {resolution:g}: {n_clusters} clusters, silhouette={silhouette:.3f}")
        rows.append({'resolution': float(resolution), 'key': key, 'n_clusters': n_clusters, 'silhouette': silhouette})

    summary = pd.DataFrame(rows)
    adata.uns[f"{key_prefix}_sweep"] = summary
    return summary
