# scrnaseq_workflow/analysis/dge.py

import scanpy as sc
import anndata as ad
import logging
import pandas as pd

log = logging.getLogger(__name__)


def find_marker_genes(
    adata: ad.AnnData,
    groupby: str,
    method: str = 'wilcoxon',
    corr_method: str = 'benjamini-hochberg',
    use_raw: bool | None = None,
    key_added: str = 'rank_genes_groups',
    **kwargs
) -> None:
    """
    Performs differential gene expression analysis to find marker genes.

    Wraps scanpy.tl.rank_genes_groups. This function identifies genes that are
    differentially expressed in each group defined by `groupby` compared to
    all other cells. Results are stored inplace in `adata.uns[key_added]`.

    Args:
        adata: The annotated data matrix (must contain cluster labels in .obs).
        groupby: The key in `adata.obs` that contains the group labels (e.g.,
                 'leiden', 'cell_type').
        method: The statistical method to use ('wilcoxon', 't-test', 'logreg').
                Defaults to 'wilcoxon'.
        corr_method: Method for multiple testing correction ('benjamini-hochberg',
                     'bonferroni'). Defaults to 'benjamini-hochberg'.
        use_raw: Whether to use `adata.raw.X` for the analysis. If None (default),
                 uses `.raw` if it exists, otherwise `adata.X`. `.raw` should
                 hold log-normalized, unscaled values.
        key_added: Key under which the results dictionary is stored in `adata.uns`.
        **kwargs: Additional keyword arguments passed directly to
                  `sc.tl.rank_genes_groups` (e.g., `n_genes`, `pts`).

    Raises:
        TypeError: If input `adata` is not an AnnData object.
        KeyError: If `groupby` key is not found in `adata.obs`.
        ValueError: If `use_raw=True` but `adata.raw` is None, or fewer than two groups exist.
        RuntimeError: If the underlying scanpy function fails.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if adata.obs[groupby].nunique() < 2:
        raise ValueError(f"Group key '{groupby}' has fewer than two groups; nothing to compare.")

    log.info(f"Finding marker genes using '{method}' method for groups in '{groupby}'.")
    log.info(f"Correction method: '{corr_method}'. Results key: '{key_added}'.")

    if use_raw is None:
        use_raw_calc = adata.raw is not None
        log.info(f"'use_raw' is None, automatically setting to {use_raw_calc} based on presence of adata.raw.")
    else:
        use_raw_calc = use_raw
        if use_raw_calc and adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        log.info(f"Using {'adata.raw.X' if use_raw_calc else 'adata.X'} for calculation based on 'use_raw'={use_raw}.")

    # rank_genes_groups requires a categorical grouping
    if not isinstance(adata.obs[groupby].dtype, pd.CategoricalDtype):
        adata.obs[groupby] = adata.obs[groupby].astype(str).astype('category')

    try:
        sc.tl.rank_genes_groups(
            adata,
            groupby=groupby,
            method=method,
            corr_method=corr_method,
            use_raw=use_raw_calc,
            key_added=key_added,
            **kwargs
        )
    except Exception as e:
        log.error(f"An error occurred during marker gene identification: {e}", exc_info=True)
        raise RuntimeError(f"Failed during marker gene identification: {e}") from e

    if 'names' not in adata.uns[key_added] or 'pvals_adj' not in adata.uns[key_added]:
        log.warning(f"Results in adata.uns['{key_added}'] might be incomplete (missing 'names' or 'pvals_adj').")

    log.info(f"Marker gene analysis completed. Results stored in adata.uns['{key_added}'].")
    return None


def get_marker_table(
    adata: ad.AnnData,
    key: str = 'rank_genes_groups',
    group: str | list[str] | None = None,
    pval_cutoff: float | None = 0.05,
    min_logfc: float | None = 0.25,
    n_genes: int | None = None
) -> pd.DataFrame:
    """
    Tidy table of significant markers from a rank_genes_groups result.

    Rows are filtered by adjusted p-value (`pval_cutoff`) and minimum log2
    fold change (`min_logfc`), then the first `n_genes` per group are kept in
    rank order. The returned frame always has a 'group' column.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if key not in adata.uns:
        raise KeyError(f"DGE key '{key}' not found in adata.uns. Run find_marker_genes first.")
    if pval_cutoff is not None and not 0 < pval_cutoff <= 1:
        raise ValueError("Argument 'pval_cutoff' must be in (0, 1].")

    groups = adata.uns[key]['names'].dtype.names
    if isinstance(group, str):
        group = [group]
    if group is not None:
        unknown = [g for g in group if g not in groups]
        if unknown:
            raise KeyError(f"Groups {unknown} not found in adata.uns['{key}'].")

    selected = list(group) if group is not None else list(groups)
    frames = []
    for g in selected:
        df = sc.get.rank_genes_groups_df(
            adata, group=g, key=key, pval_cutoff=pval_cutoff, log2fc_min=min_logfc
        )
        df.insert(0, 'group', g)
        if n_genes is not None:
            df = df.head(n_genes)
        frames.append(df)

    table = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(columns=['group', 'names'])
    log.info(f"Marker table from '{key}': {len(table)} rows across {len(selected)} groups.")
    return table
