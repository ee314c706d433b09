# scrnaseq_workflow/analysis/dimred.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
import warnings

log = logging.getLogger(__name__)

EMBEDDING_METHODS = ('umap', 'tsne')


def reduce_dimensionality(
    adata: ad.AnnData,
    n_comps: int = 50,
    random_state: int = 0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Performs principal component analysis (PCA) to reduce the dimensionality.

    Uses scanpy.tl.pca. Stores PCA results in adata.obsm['X_pca'] and
    related info (variance, variance ratio, loadings) in adata.uns['pca']
    and adata.varm['PCs']. Assumes data has been preprocessed
    (normalized, log1p, scaled) or holds Pearson residuals.

    Args:
        adata: The annotated data matrix (typically after scaling).
        n_comps: Number of principal components to compute. Defaults to 50.
               Values >= min(n_obs, n_vars) are lowered with a warning.
        random_state: Random seed for the SVD solver. Defaults to 0.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData
        object with PCA results.

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        ValueError: If `n_comps` is not a positive integer or cannot be adjusted.
        AttributeError: If `adata.X` is not present.
        RuntimeError: If the underlying scanpy PCA function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(n_comps, int) or isinstance(n_comps, bool) or n_comps <= 0:
        raise ValueError("Argument 'n_comps' must be a positive integer.")

    log.info(f"Performing PCA with n_comps={n_comps}, random_state={random_state}...")

    if adata.X is None:
        raise AttributeError("Cannot perform PCA: AnnData object does not have a suitable '.X' attribute.")

    min_dim = min(adata.shape)
    if n_comps >= min_dim:
        adjusted_n_comps = min_dim - 1
        if adjusted_n_comps <= 0:
            raise ValueError(f"Cannot compute PCA. Input data has shape {adata.shape}, "
                             f"requiring n_comps < {min_dim}, but minimum is 1.")
        warning_message = (
            f"Requested n_comps ({n_comps}) >= smallest dimension ({min_dim}). "
            f"Adjusting n_comps to {adjusted_n_comps}."
        )
        warnings.warn(warning_message, UserWarning, stacklevel=2)
        log.warning(warning_message)
        n_comps = adjusted_n_comps

    adata_work = adata if inplace else adata.copy()

    try:
        sc.tl.pca(
            adata_work, n_comps=n_comps, svd_solver='arpack',
            random_state=random_state, zero_center=True, copy=False
        )
    except ValueError as ve:
        log.error(f"ValueError during PCA: {ve}", exc_info=True)
        raise ValueError(f"Input value error during PCA: {ve}") from ve
    except Exception as e:
        log.error(f"Unexpected error during PCA: {e}", exc_info=True)
        raise RuntimeError(f"Failed PCA: {e}") from e

    log.info(f"PCA completed. Results in .obsm['X_pca'] ({adata_work.obsm['X_pca'].shape}), .uns['pca'], .varm['PCs'].")
    return None if inplace else adata_work


def choose_n_pcs(
    adata: ad.AnnData,
    min_pcs: int = 5,
    variance_threshold: float = 0.9,
    elbow_delta: float = 0.001
) -> int:
    """
    Picks the number of principal components to keep from the elbow of the
    variance-ratio curve.

    The elbow is the first component whose drop in explained variance
    relative to its successor falls below `elbow_delta`. The result is capped
    at the number of components needed to reach `variance_threshold` of the
    computed variance and never smaller than `min_pcs` (or the number of
    computed components, if fewer).

    Raises:
        KeyError: If PCA has not been run.
        ValueError: If `variance_threshold` is not in (0, 1].
    """
    if 'pca' not in adata.uns or 'variance_ratio' not in adata.uns['pca']:
        raise KeyError("PCA variance ratios not found in adata.uns['pca']. Run reduce_dimensionality first.")
    if not 0 < variance_threshold <= 1:
        raise ValueError("Argument 'variance_threshold' must be in (0, 1].")

    ratios = np.asarray(adata.uns['pca']['variance_ratio'], dtype=float)
    n_computed = len(ratios)

    drops = ratios[:-1] - ratios[1:]
    flat = np.flatnonzero(drops < elbow_delta)
    elbow = int(flat[0]) + 1 if flat.size else n_computed

    cumulative = np.cumsum(ratios) / ratios.sum()
    n_for_variance = int(np.searchsorted(cumulative, variance_threshold) + 1)

    n_pcs = min(elbow, n_for_variance, n_computed)
    n_pcs = max(n_pcs, min(min_pcs, n_computed))
    log.info(
        f"Elbow at PC {elbow}, {n_for_variance} PCs reach {variance_threshold:.0%} of computed variance; "
        f"keeping {n_pcs} PCs."
    )
    return n_pcs


def compute_embedding(
    adata: ad.AnnData,
    method: str = 'umap',
    n_pcs: int | None = None,
    random_state: int = 0,
    perplexity: float = 30.0,
    min_dist: float = 0.5,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Computes a 2-D embedding for visualization.

    'umap' (scanpy.tl.umap) embeds the neighbor graph, so build_neighbor_graph
    (or perform_clustering) must have run first. 'tsne' (scanpy.tl.tsne)
    works directly on X_pca, optionally restricted to the first `n_pcs`.
    Results go to adata.obsm['X_umap'] / adata.obsm['X_tsne'].

    Raises:
        ValueError: For unknown methods or a perplexity too large for the cell count.
        KeyError: If the neighbor graph (UMAP) or X_pca (t-SNE) is missing.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if method not in EMBEDDING_METHODS:
        raise ValueError(f"Unknown embedding method '{method}'. Use one of {EMBEDDING_METHODS}.")

    if method == 'umap':
        if 'neighbors' not in adata.uns:
            raise KeyError("Neighbor graph not found in adata.uns['neighbors']. Run build_neighbor_graph first.")
    else:
        if 'X_pca' not in adata.obsm:
            raise KeyError("Representation 'X_pca' not found in adata.obsm. Run reduce_dimensionality first.")
        # t-SNE needs perplexity < n_obs / 3
        if perplexity * 3 >= adata.n_obs:
            raise ValueError(f"perplexity ({perplexity}) is too large for {adata.n_obs} cells.")

    adata_work = adata if inplace else adata.copy()
    log.info(f"Computing {method.upper()} embedding (random_state={random_state}).")
    try:
        if method == 'umap':
            sc.tl.umap(adata_work, min_dist=min_dist, random_state=random_state)
            umap_params = adata_work.uns.setdefault('umap', {}).setdefault('params', {})
            umap_params.update({'random_state': random_state, 'min_dist': min_dist})
        else:
            sc.tl.tsne(
                adata_work, n_pcs=n_pcs, use_rep='X_pca',
                perplexity=perplexity, random_state=random_state
            )
    except Exception as e:
        log.error(f"Error while computing {method} embedding: {e}", exc_info=True)
        raise RuntimeError(f"Failed {method} embedding: {e}") from e

    log.info(f"{method.upper()} embedding stored in adata.obsm['X_{method}'].")
    return None if inplace else adata_work
