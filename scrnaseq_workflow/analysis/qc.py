# scrnaseq_workflow/analysis/qc.py

import scanpy as sc
import anndata as ad
import logging
import numpy as np

log = logging.getLogger(__name__)


def calculate_qc_metrics(
    adata: ad.AnnData,
    mito_gene_prefix: str = "mt-",
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Calculates standard QC metrics using scanpy.

    Adds the following to adata.obs:
        - 'n_genes_by_counts', 'total_counts'
        - 'total_counts_mt', 'pct_counts_mt' (zero-filled if no mito genes found)
    Adds relevant metrics and the boolean 'mt' flag to adata.var.

    Args:
        adata: The annotated data matrix with raw counts in .X.
        mito_gene_prefix: Prefix for mitochondrial genes. Defaults to "mt-". Use "MT-" for human.
        inplace: Modify AnnData object inplace. Defaults to True.

    Returns:
        If inplace=True, returns None. Otherwise, returns the modified AnnData object.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    log.info(f"Calculating QC metrics. Identifying mitochondrial genes with prefix: '{mito_gene_prefix}'")

    adata_work = adata if inplace else adata.copy()

    adata_work.var['mt'] = adata_work.var_names.str.startswith(mito_gene_prefix)
    n_mt_genes = int(np.sum(adata_work.var['mt']))
    qc_vars = ['mt'] if n_mt_genes > 0 else []

    try:
        sc.pp.calculate_qc_metrics(
            adata_work,
            qc_vars=qc_vars,
            percent_top=None,
            log1p=False,
            inplace=True
        )
    except Exception as e:
        log.error(f"Error calculating QC metrics: {e}", exc_info=True)
        raise RuntimeError(f"Failed to calculate QC metrics: {e}") from e

    if n_mt_genes > 0:
        log.info(f"Found {n_mt_genes} mitochondrial genes. Calculated MT percentages.")
    else:
        log.warning(f"No mitochondrial genes found using prefix '{mito_gene_prefix}'. "
                    f"Columns 'total_counts_mt' and 'pct_counts_mt' will be zero.")
        adata_work.obs['total_counts_mt'] = 0.0
        adata_work.obs['pct_counts_mt'] = 0.0

    log.info("Finished QC metrics calculation step.")
    return None if inplace else adata_work


def filter_cells_qc(
    adata: ad.AnnData,
    min_genes: int | None = 200,
    max_genes: int | None = None,
    min_counts: int | None = None,
    max_counts: int | None = None,
    max_pct_mito: float | None = 5.0,
    inplace: bool = True
) -> ad.AnnData | None:
    """
    Filters cells based on calculated QC metrics.

    Assumes `calculate_qc_metrics` has been run previously. All thresholds are
    optional; None disables the corresponding filter. Upper bounds are
    inclusive except `max_pct_mito`, which keeps cells strictly below it.

    Raises:
        KeyError: If a QC column needed by an active threshold is missing in adata.obs.
        ValueError: If thresholds are illogical (e.g., min > max).
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")

    required_cols = []
    if min_genes is not None or max_genes is not None:
        required_cols.append('n_genes_by_counts')
    if min_counts is not None or max_counts is not None:
        required_cols.append('total_counts')
    if max_pct_mito is not None:
        required_cols.append('pct_counts_mt')

    missing_cols = [col for col in required_cols if col not in adata.obs.columns]
    if missing_cols:
        raise KeyError(
            f"Missing required QC columns in adata.obs: {missing_cols}. "
            "Run calculate_qc_metrics first."
        )

    if min_genes is not None and max_genes is not None and min_genes > max_genes:
        raise ValueError(f"min_genes ({min_genes}) cannot be greater than max_genes ({max_genes}).")
    if min_counts is not None and max_counts is not None and min_counts > max_counts:
        raise ValueError(f"min_counts ({min_counts}) cannot be greater than max_counts ({max_counts}).")
    if max_pct_mito is not None and (max_pct_mito < 0 or max_pct_mito > 100):
        raise ValueError(f"max_pct_mito ({max_pct_mito}) must be between 0 and 100.")

    n_obs_start = adata.n_obs
    log.info(f"Starting filtering with {n_obs_start} cells.")

    obs = adata.obs
    keep = np.ones(adata.n_obs, dtype=bool)
    if min_genes is not None:
        keep &= (obs['n_genes_by_counts'] >= min_genes).to_numpy()
        log.info(f"Applied filter: min_genes = {min_genes}. Cells remaining: {int(keep.sum())}")
    if max_genes is not None:
        keep &= (obs['n_genes_by_counts'] <= max_genes).to_numpy()
        log.info(f"Applied filter: max_genes = {max_genes}. Cells remaining: {int(keep.sum())}")
    if min_counts is not None:
        keep &= (obs['total_counts'] >= min_counts).to_numpy()
        log.info(f"Applied filter: min_counts = {min_counts}. Cells remaining: {int(keep.sum())}")
    if max_counts is not None:
        keep &= (obs['total_counts'] <= max_counts).to_numpy()
        log.info(f"Applied filter: max_counts = {max_counts}. Cells remaining: {int(keep.sum())}")
    if max_pct_mito is not None:
        keep &= (obs['pct_counts_mt'] < max_pct_mito).to_numpy()
        log.info(f"Applied filter: max_pct_mito = {max_pct_mito}. Cells remaining: {int(keep.sum())}")

    n_obs_end = int(keep.sum())
    pct_kept = n_obs_end / n_obs_start * 100 if n_obs_start else 0.0
    log.info(f"Filtering complete. Kept {n_obs_end} cells out of {n_obs_start} ({pct_kept:.2f}%).")

    if inplace:
        adata._inplace_subset_obs(keep)
        return None
    return adata[keep, :].copy()


def filter_genes_qc(
    adata: ad.AnnData,
    min_cells: int | None = 3,
    inplace: bool = True
) -> ad.AnnData | None:
    """Removes genes detected in fewer than `min_cells` cells."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input must be an AnnData object.")
    if min_cells is not None and min_cells < 0:
        raise ValueError(f"min_cells ({min_cells}) must be non-negative.")

    adata_work = adata if inplace else adata.copy()
    if min_cells is None:
        log.info("min_cells is None, skipping gene filtering.")
        return None if inplace else adata_work

    n_vars_start = adata_work.n_vars
    sc.pp.filter_genes(adata_work, min_cells=min_cells)
    log.info(f"Gene filter min_cells = {min_cells}: kept {adata_work.n_vars} / {n_vars_start} genes.")
    return None if inplace else adata_work
