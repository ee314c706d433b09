# scrnaseq_workflow/visualization/plotting.py

import scanpy as sc
import anndata as ad
import logging
import os
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from pathlib import Path

log = logging.getLogger(__name__)

EMBEDDING_FUNCS = {'umap': sc.pl.umap, 'tsne': sc.pl.tsne}


# --- Helpers for saving ---
def _save_scanpy_plot(plot_func, plot_type, output_path, *args, dpi=150, **kwargs):
    """Calls a scanpy plot function with save=..., then moves the file to `output_path`."""
    out_dir, filename = os.path.split(os.path.abspath(output_path))
    save_suffix = kwargs.pop('save', None) or f"_{filename}"
    show = kwargs.pop('show', False)

    previous_figdir = sc.settings.figdir
    sc.settings.figdir = out_dir
    try:
        with plt.rc_context({'savefig.dpi': dpi}):
            plot_func(*args, save=save_suffix, show=show, **kwargs)

        scanpy_saved_path = os.path.join(out_dir, f"{plot_type}{save_suffix}")
        fallback_path = os.path.join(out_dir, f"{plot_type}_{save_suffix}")
        if os.path.exists(scanpy_saved_path):
            found_path = scanpy_saved_path
        elif os.path.exists(fallback_path):
            log.debug(f"Scanpy saved plot using fallback name convention: {fallback_path}")
            found_path = fallback_path
        else:
            msg = f"Scanpy did not save the plot to expected paths: '{scanpy_saved_path}' or '{fallback_path}'"
            log.error(msg)
            raise FileNotFoundError(msg)

        os.replace(found_path, output_path)
        log.info(f"Saved {plot_type} plot to {output_path}")
    except FileNotFoundError:
        raise
    except Exception as e:
        msg = f"Failed during Scanpy plot generation/saving for {plot_type}: {e}"
        log.error(msg, exc_info=True)
        raise RuntimeError(msg) from e
    finally:
        sc.settings.figdir = previous_figdir
        plt.close('all')


def _save_figure(fig, output_path: str, dpi: int = 150) -> str:
    Path(output_path).parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=dpi, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    log.info(f"Saved figure to {output_path}")
    return output_path


def _output_path(output_dir: str, file_prefix: str, file_format: str) -> str:
    if not output_dir:
        raise ValueError("output_dir must be provided")
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    return os.path.join(output_dir, f"{file_prefix}.{file_format}")


# --- Embeddings ---

def plot_embedding(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    basis: str = 'umap',
    file_prefix: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> list[str]:
    """
    Saves one UMAP or t-SNE plot per feature in `color_by` (obs column or gene).

    Unknown features are skipped with a warning. Returns the written paths.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if basis not in EMBEDDING_FUNCS:
        raise ValueError(f"basis must be one of {list(EMBEDDING_FUNCS)}")
    if f"X_{basis}" not in adata.obsm:
        raise KeyError(f"Embedding key 'X_{basis}' not found")
    if not isinstance(color_by, list) or not color_by:
        raise ValueError("color_by must be non-empty list")
    if not output_dir:
        raise ValueError("output_dir must be provided")

    file_prefix = file_prefix or basis
    Path(output_dir).mkdir(parents=True, exist_ok=True)
    log.info(f"Generating {basis.upper()} plots colored by: {', '.join(color_by)}")
    genes = set(adata.var_names)
    if adata.raw is not None and kwargs.get('use_raw', True):
        genes |= set(adata.raw.var_names)

    written, errors_occurred = [], []
    for feature in color_by:
        if feature not in adata.obs.columns and feature not in genes:
            log.warning(f"Feature '{feature}' not found. Skipping {basis} plot.")
            errors_occurred.append(feature)
            continue

        safe_feature = feature.replace('/', '_').replace('\\', '_').replace(' ', '_')
        output_path = os.path.join(output_dir, f"{file_prefix}_{safe_feature}.{file_format}")
        try:
            _save_scanpy_plot(EMBEDDING_FUNCS[basis], basis, output_path, adata, color=feature, dpi=dpi, **kwargs)
            written.append(output_path)
        except Exception as e:
            errors_occurred.append(f"{feature}: {e}")

    if errors_occurred:
        log.warning(f"Some errors occurred during {basis} plotting for features: {errors_occurred}")
    return written


def plot_umap(
    adata: ad.AnnData,
    color_by: list[str],
    output_dir: str,
    file_prefix: str = "umap",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> list[str]:
    """Generates and saves UMAP plots colored by specified features."""
    return plot_embedding(
        adata, color_by, output_dir, basis='umap', file_prefix=file_prefix,
        file_format=file_format, dpi=dpi, **kwargs
    )


# --- QC and PCA ---

def plot_qc_violin(
    adata: ad.AnnData,
    keys: list[str],
    output_dir: str,
    file_prefix: str = "qc_violin",
    groupby: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str | None:
    """Generates and saves violin plots for QC metrics."""
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if not isinstance(keys, list) or not keys:
        raise ValueError("keys must be non-empty list")

    missing_keys = [k for k in keys if k not in adata.obs]
    if missing_keys:
        log.warning(f"QC keys not found in adata.obs: {missing_keys}. Skipping violin plots for these.")
        keys = [k for k in keys if k in adata.obs]
        if not keys:
            log.error("No valid QC keys found to plot.")
            return None

    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating QC violin plots for: {', '.join(keys)}")
    try:
        _save_scanpy_plot(
            sc.pl.violin, "violin", output_path,
            adata, keys=keys, groupby=groupby, rotation=90, multi_panel=groupby is None, dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate QC violin plot: {e}", exc_info=True)
        return None
    return output_path


def plot_pca_elbow(
    adata: ad.AnnData,
    output_dir: str,
    n_pcs: int = 50,
    chosen_n_pcs: int | None = None,
    file_prefix: str = "pca_elbow",
    file_format: str = "png",
    dpi: int = 150
) -> str:
    """
    Elbow plot of the PCA variance ratio; marks `chosen_n_pcs` when given.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if 'pca' not in adata.uns or 'variance_ratio' not in adata.uns['pca']:
        raise KeyError("PCA results not found in adata.uns['pca']. Run reduce_dimensionality first.")

    ratio = np.asarray(adata.uns['pca']['variance_ratio'])[:n_pcs]
    components = np.arange(1, len(ratio) + 1)
    output_path = _output_path(output_dir, file_prefix, file_format)

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(components, ratio, marker='o', markersize=3, color='black', linewidth=1)
    if chosen_n_pcs is not None:
        ax.axvline(chosen_n_pcs, color='tab:red', linestyle='--', label=f"n_pcs = {chosen_n_pcs}")
        ax.legend(frameon=False)
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance ratio")
    ax.set_title("PCA variance ratio")
    return _save_figure(fig, output_path, dpi=dpi)


# --- DGE plots ---

def _extract_top_marker_genes(adata: ad.AnnData, key: str, n_genes: int) -> list[str]:
    """Unique top `n_genes` marker names per group, in rank order."""
    try:
        marker_genes_structured = adata.uns[key]['names']
    except KeyError:
        raise KeyError(f"Structure 'names' not found within adata.uns['{key}'].")
    top_genes_flat = [
        gene for group_genes in marker_genes_structured[:n_genes]
        for gene in group_genes if isinstance(gene, str)
    ]
    var_names_unique = list(dict.fromkeys(top_genes_flat))
    if not var_names_unique:
        raise ValueError(f"No valid marker gene names extracted from key '{key}'.")
    log.debug(f"Extracted top {len(var_names_unique)} unique marker names.")
    return var_names_unique


def _plot_rank_genes_groups(
    plot_func, plot_type, adata, key, n_genes, groupby, output_dir, file_prefix, file_format, dpi, **kwargs
) -> str | None:
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    if key not in adata.uns:
        raise KeyError(f"DGE key '{key}' not found")
    if not output_dir:
        raise ValueError("output_dir must be provided")

    groupby_used = groupby or adata.uns[key].get('params', {}).get('groupby')
    if not groupby_used or groupby_used not in adata.obs:
        raise ValueError(f"Invalid groupby key '{groupby_used}'.")

    var_names_to_plot = _extract_top_marker_genes(adata, key, n_genes)
    output_path = _output_path(output_dir, file_prefix, file_format)
    log.info(f"Generating DGE {plot_type} for top {n_genes} genes per group.")
    try:
        _save_scanpy_plot(
            plot_func, plot_type, output_path,
            adata, var_names=var_names_to_plot, groupby=groupby_used, dpi=dpi, **kwargs
        )
    except Exception as e:
        log.error(f"Failed to generate DGE {plot_type}: {e}", exc_info=True)
        return None
    return output_path


def plot_rank_genes_groups_dotplot(
    adata: ad.AnnData,
    key: str,
    n_genes: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "dge_dotplot",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str | None:
    """Generates and saves a dotplot of marker genes."""
    return _plot_rank_genes_groups(
        sc.pl.dotplot, "dotplot", adata, key, n_genes, groupby, output_dir, file_prefix, file_format, dpi, **kwargs
    )


def plot_rank_genes_groups_stacked_violin(
    adata: ad.AnnData,
    key: str,
    n_genes: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "dge_stacked_violin",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str | None:
    """Generates and saves a stacked violin plot of marker genes."""
    return _plot_rank_genes_groups(
        sc.pl.stacked_violin, "stacked_violin", adata, key, n_genes, groupby, output_dir, file_prefix,
        file_format, dpi, **kwargs
    )


def plot_rank_genes_groups_heatmap(
    adata: ad.AnnData,
    key: str,
    n_genes: int = 5,
    groupby: str | None = None,
    output_dir: str = ".",
    file_prefix: str = "dge_heatmap",
    file_format: str = "png",
    dpi: int = 150,
    **kwargs
) -> str | None:
    """Generates and saves a heatmap of marker genes."""
    return _plot_rank_genes_groups(
        sc.pl.heatmap, "heatmap", adata, key, n_genes, groupby, output_dir, file_prefix, file_format, dpi, **kwargs
    )


# --- Annotation plots ---

def _heatmap(ax, values: pd.DataFrame, cmap: str, colorbar_label: str):
    im = ax.imshow(values.to_numpy(dtype=float), aspect="auto", cmap=cmap)
    ax.set_xticks(range(values.shape[1]))
    ax.set_xticklabels(values.columns.astype(str), rotation=45, ha="right")
    ax.set_yticks(range(values.shape[0]))
    ax.set_yticklabels(values.index.astype(str))
    plt.colorbar(im, ax=ax, label=colorbar_label)


def plot_reference_scores(
    adata: ad.AnnData,
    output_dir: str,
    key: str = 'ref',
    groupby: str | None = None,
    max_cells: int = 2000,
    file_prefix: str | None = None,
    file_format: str = "png",
    dpi: int = 150,
    random_state: int = 0
) -> str:
    """
    Heatmap of reference-annotation scores.

    Per-cell scores (adata.obsm[f'{key}_scores']) are shown one row per cell,
    ordered by assigned label (`groupby` if given) and subsampled to
    `max_cells`. Per-group scores (adata.uns[f'{key}_group_scores']) are shown
    one row per group.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")

    if f'{key}_scores' in adata.obsm:
        labels = list(adata.uns[f'{key}_score_labels'])
        scores = pd.DataFrame(np.asarray(adata.obsm[f'{key}_scores']), index=adata.obs_names, columns=labels)
        order_by = groupby or f'{key}_labels'
        if order_by not in adata.obs:
            raise KeyError(f"Column '{order_by}' not found in adata.obs.")
        if len(scores) > max_cells:
            rng = np.random.default_rng(random_state)
            scores = scores.iloc[np.sort(rng.choice(len(scores), size=max_cells, replace=False))]
        order = adata.obs.loc[scores.index, order_by].astype(str).sort_values(kind='stable')
        scores = scores.loc[order.index]
        row_labels = False
    elif f'{key}_group_scores' in adata.uns:
        scores = pd.DataFrame(adata.uns[f'{key}_group_scores'])
        row_labels = True
    else:
        raise KeyError(f"No reference scores found for key '{key}'. Run annotate_reference first.")

    output_path = _output_path(output_dir, file_prefix or f"{key}_scores_heatmap", file_format)
    height = 0.35 * len(scores) + 2 if row_labels else 6
    fig, ax = plt.subplots(figsize=(max(6, 0.5 * scores.shape[1] + 3), min(height, 20)))
    _heatmap(ax, scores, cmap="viridis", colorbar_label="Score")
    if not row_labels:
        ax.set_yticks([])
        ax.set_ylabel(f"Cells (ordered by {groupby or f'{key}_labels'})")
    ax.set_title("Reference annotation scores")
    return _save_figure(fig, output_path, dpi=dpi)


def plot_label_composition(
    adata: ad.AnnData,
    groupby: str,
    label_key: str,
    output_dir: str,
    normalize: bool = True,
    file_prefix: str | None = None,
    file_format: str = "png",
    dpi: int = 150
) -> str:
    """
    Heatmap of cluster x label counts (or row proportions when `normalize`).
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("adata must be AnnData")
    for column in (groupby, label_key):
        if column not in adata.obs:
            raise KeyError(f"Column '{column}' not found in adata.obs.")

    table = pd.crosstab(adata.obs[groupby], adata.obs[label_key].astype(object).fillna("NA").astype(str))
    if normalize:
        table = table.div(table.sum(axis=1), axis=0) * 100
    output_path = _output_path(output_dir, file_prefix or f"{groupby}_x_{label_key}", file_format)

    fig, ax = plt.subplots(figsize=(max(6, 0.5 * table.shape[1] + 3), max(4, 0.35 * table.shape[0] + 2)))
    _heatmap(ax, table, cmap="YlOrRd", colorbar_label="Percent of group" if normalize else "Cells")
    ax.set_xlabel(label_key)
    ax.set_ylabel(groupby)
    ax.set_title(f"{groupby} x {label_key}")
    return _save_figure(fig, output_path, dpi=dpi)
