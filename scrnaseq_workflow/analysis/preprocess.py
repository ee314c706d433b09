# scrnaseq_workflow/analysis/preprocess.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np
from scipy import sparse

log = logging.getLogger(__name__)

COUNTS_LAYER = 'counts'
HVG_FLAVORS = ('seurat', 'cell_ranger', 'seurat_v3', 'pearson_residuals')
# Flavors that model raw counts rather than log-normalized values
_COUNT_FLAVORS = ('seurat_v3', 'pearson_residuals')


def _looks_like_counts(X) -> bool:
    values = X.data if sparse.issparse(X) else np.asarray(X)
    if values.size == 0:
        return True
    if np.issubdtype(values.dtype, np.integer):
        return bool(values.min() >= 0)
    return bool(values.min() >= 0 and np.allclose(np.modf(values)[0], 0))


def normalize_log1p(
    adata: ad.AnnData,
    target_sum: float | None = 1e4,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Normalizes counts per cell to target_sum and log1p transforms the data.

    Uses scanpy.pp.normalize_total and scanpy.pp.log1p. A copy of the raw
    counts is kept in adata.layers['counts'] for count-based HVG flavors.

    Args:
        adata: The annotated data matrix (typically after QC filtering).
        target_sum: Total counts per cell after normalization. If None, library sizes
                    are scaled to the median library size. Defaults to 1e4.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Normalizing total counts per cell to target_sum={target_sum} and log1p transforming.")

    adata_work = adata if inplace else adata.copy()

    if not _looks_like_counts(adata_work.X):
        log.warning("Data in adata.X does not look like raw counts (e.g., negative values or non-integers found). "
                    "Normalization and log1p transformation assume raw counts.")

    try:
        if COUNTS_LAYER not in adata_work.layers:
            adata_work.layers[COUNTS_LAYER] = adata_work.X.copy()
        if not np.issubdtype(adata_work.X.dtype, np.floating):
            adata_work.X = adata_work.X.astype(np.float32)
        sc.pp.normalize_total(adata_work, target_sum=target_sum, inplace=True)
        sc.pp.log1p(adata_work)
        adata_work.uns['normalization'] = {'method': 'log1p', 'target_sum': target_sum}
        log.info("Normalization and log1p transformation complete.")
    except Exception as e:
        log.error(f"Error during normalization/log1p: {e}", exc_info=True)
        raise RuntimeError(f"Failed to normalize/log1p data: {e}") from e

    return None if inplace else adata_work


def normalize_pearson_residuals(
    adata: ad.AnnData,
    theta: float = 100.0,
    clip: float | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Variance-stabilizing normalization with analytic Pearson residuals.

    Residuals of a negative-binomial null model with overdispersion `theta`
    replace adata.X (dense). Raw counts are kept in adata.layers['counts'].
    Residuals are already centered and scaled, so `scale_data` is not needed
    afterwards.

    Raises:
        ValueError: If `theta` is not positive or adata.X does not hold counts.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if theta <= 0:
        raise ValueError("Argument 'theta' must be positive.")
    if not _looks_like_counts(adata.X):
        raise ValueError("Pearson residual normalization requires raw counts in adata.X.")

    log.info(f"Computing analytic Pearson residuals (theta={theta}, clip={clip}).")
    adata_work = adata if inplace else adata.copy()

    try:
        if COUNTS_LAYER not in adata_work.layers:
            adata_work.layers[COUNTS_LAYER] = adata_work.X.copy()
        sc.experimental.pp.normalize_pearson_residuals(adata_work, theta=theta, clip=clip, inplace=True)
        adata_work.uns['normalization'] = {'method': 'pearson_residuals', 'theta': theta}
        log.info("Pearson residual normalization complete.")
    except Exception as e:
        log.error(f"Error during Pearson residual normalization: {e}", exc_info=True)
        raise RuntimeError(f"Failed Pearson residual normalization: {e}") from e

    return None if inplace else adata_work


def select_hvg(
    adata: ad.AnnData,
    n_top_genes: int | None = 3000,
    flavor: str = 'seurat_v3',
    subset: bool = True,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Selects Highly Variable Genes (HVGs).

    Uses scanpy.pp.highly_variable_genes, or the Pearson-residual variant for
    flavor='pearson_residuals'. Stores HVG information in adata.var and
    optionally subsets the AnnData object to only the HVGs.

    'seurat_v3' and 'pearson_residuals' model counts, so they read
    adata.layers['counts'] when present. 'seurat' and 'cell_ranger' expect
    log-normalized values in .X.

    Args:
        adata: The annotated data matrix (typically after normalization and log1p).
        n_top_genes: Number of highly variable genes to select. Defaults to 3000.
        flavor: One of 'seurat', 'cell_ranger', 'seurat_v3', 'pearson_residuals'.
        subset: If True, subset the AnnData object to only the selected HVGs.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise a new AnnData with HVG info
        (subsetted if subset=True).

    Raises:
        ValueError: If n_top_genes is invalid. Invalid flavors are reported by scanpy.
        ImportError: If a dependency required by the flavor is missing (scikit-misc).
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if n_top_genes is not None and n_top_genes <= 0:
        raise ValueError("n_top_genes must be a positive integer or None.")
    if flavor not in HVG_FLAVORS:
        raise ValueError(f"`flavor` needs to be one of {', '.join(HVG_FLAVORS)}; got '{flavor}'.")

    log.info(f"Selecting highly variable genes (flavor='{flavor}', n_top_genes={n_top_genes}).")

    adata_work = adata if inplace else adata.copy()
    if n_top_genes is not None and n_top_genes > adata_work.n_vars:
        log.warning(f"n_top_genes ({n_top_genes}) exceeds number of genes ({adata_work.n_vars}); using all genes.")
        n_top_genes = adata_work.n_vars

    layer = COUNTS_LAYER if flavor in _COUNT_FLAVORS and COUNTS_LAYER in adata_work.layers else None

    try:
        if flavor == 'pearson_residuals':
            sc.experimental.pp.highly_variable_genes(
                adata_work, flavor='pearson_residuals', n_top_genes=n_top_genes,
                layer=layer, inplace=True
            )
        else:
            sc.pp.highly_variable_genes(
                adata_work,
                flavor=flavor,
                n_top_genes=n_top_genes,
                layer=layer,
                inplace=True,
                subset=False
            )
    except Exception as e:
        log.error(f"Error during HVG selection: {e}", exc_info=True)
        raise

    n_hvgs = int(adata_work.var['highly_variable'].sum())
    log.info(f"Identified {n_hvgs} highly variable genes.")

    if subset:
        log.info("Subsetting AnnData to selected HVGs.")
        if inplace:
            adata_work._inplace_subset_var(adata_work.var['highly_variable'].to_numpy())
        else:
            adata_work = adata_work[:, adata_work.var['highly_variable'].to_numpy()].copy()
        log.info(f"AnnData shape after HVG subsetting: {adata_work.shape}")

    return None if inplace else adata_work


def scale_data(
    adata: ad.AnnData,
    max_value: float | None = 10.0,
    regress_keys: list[str] | None = None,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Optionally regresses out per-cell covariates, then scales genes to unit variance.

    Args:
        adata: Log-normalized data, usually subset to HVGs.
        max_value: Clip scaled values above this value. None disables clipping.
        regress_keys: Columns of adata.obs to regress out (e.g. ['total_counts', 'pct_counts_mt']).
        inplace: Modify AnnData object inplace. Defaults to True.

    Raises:
        KeyError: If a regression covariate is missing from adata.obs.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    regress_keys = list(regress_keys or [])
    missing = [k for k in regress_keys if k not in adata.obs]
    if missing:
        raise KeyError(f"Regression covariates not found in adata.obs: {missing}")

    adata_work = adata if inplace else adata.copy()
    try:
        if regress_keys:
            log.info(f"Regressing out covariates: {regress_keys}")
            sc.pp.regress_out(adata_work, keys=regress_keys)
        log.info(f"Scaling data (max_value={max_value}).")
        sc.pp.scale(adata_work, max_value=max_value)
    except Exception as e:
        log.error(f"Error during scaling: {e}", exc_info=True)
        raise RuntimeError(f"Failed to scale data: {e}") from e

    return None if inplace else adata_work
