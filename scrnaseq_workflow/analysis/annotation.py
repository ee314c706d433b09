# scrnaseq_workflow/analysis/annotation.py

import scanpy as sc
import anndata as ad
import logging
import pandas as pd
import json

# --- CellTypist Import Handling ---
try:
    import celltypist
    from celltypist import models
    CELLTYPIST_INSTALLED = True
except ImportError:
    celltypist = None
    models = None
    CELLTYPIST_INSTALLED = False
# --- END ---

log = logging.getLogger(__name__)

UNASSIGNED = 'Unassigned'


def load_marker_dict(file_path: str) -> dict | None:
    """Loads a marker gene (or gene set) dictionary from a JSON file."""
    if not file_path:
        log.warning("No marker file path provided.")
        return None
    try:
        with open(file_path, 'r') as f:
            marker_dict = json.load(f)
    except FileNotFoundError:
        log.error(f"Marker file not found: {file_path}")
        return None
    except json.JSONDecodeError as e:
        log.error(f"Error decoding JSON {file_path}: {e}")
        return None
    log.info(f"Loaded marker dictionary from {file_path}")
    if not isinstance(marker_dict, dict) or not all(
        isinstance(k, str) and isinstance(v, list) and all(isinstance(g, str) for g in v)
        for k, v in marker_dict.items()
    ):
        log.error(f"Marker file '{file_path}' invalid format: expected {{label: [genes]}}.")
        return None
    return marker_dict


def annotate_cell_types(
    adata: ad.AnnData,
    marker_dict: dict,
    groupby: str,
    rank_key: str = 'rank_genes_groups',
    annotation_key: str = 'marker_overlap',
    method: str = 'overlap_count',
    **kwargs
) -> pd.DataFrame:
    """
    Labels each group by the overlap of its DGE markers with known marker sets.

    The overlap table (marker set x group) from sc.tl.marker_gene_overlap is
    stored in adata.uns[annotation_key]; the best-scoring marker set of each
    group is written to adata.obs[annotation_key]. Groups without any overlap
    are labelled 'Unassigned'.

    Returns:
        The overlap table.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(marker_dict, dict) or not marker_dict:
        raise TypeError("Input 'marker_dict' must be a non-empty dictionary.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")
    if rank_key not in adata.uns:
        raise KeyError(f"Rank genes groups key '{rank_key}' not found in adata.uns.")

    log.info(f"Performing marker overlap annotation for groups '{groupby}' using results '{rank_key}'.")
    log.info(f"Using method '{method}'. Annotation key: '{annotation_key}'.")
    try:
        overlap = sc.tl.marker_gene_overlap(
            adata, {k: set(v) for k, v in marker_dict.items()}, key=rank_key,
            method=method, inplace=False, **kwargs
        )
    except Exception as e:
        log.error(f"Error during marker overlap annotation: {e}", exc_info=True)
        raise RuntimeError(f"Failed marker overlap annotation: {e}") from e

    overlap.columns = overlap.columns.astype(str)
    best = {
        group: (overlap[group].idxmax() if overlap[group].max() > 0 else UNASSIGNED)
        for group in overlap.columns
    }
    labels = adata.obs[groupby].astype(str).map(best).fillna(UNASSIGNED)
    categories = sorted(set(labels))
    adata.obs[annotation_key] = pd.Categorical(labels, categories=categories)
    adata.uns[annotation_key] = overlap

    n_unassigned = sum(1 for v in best.values() if v == UNASSIGNED)
    log.info(
        f"Marker overlap annotation complete: {len(best)} groups labelled, {n_unassigned} unassigned. "
        f"Labels in adata.obs['{annotation_key}']."
    )
    return overlap


def annotate_celltypist(
    adata: ad.AnnData,
    model_name: str = "Immune_All_Low.pkl",
    majority_voting: bool = False,
    output_key_prefix: str = "celltypist",
    cluster_key_for_voting: str | None = None,
    use_raw: bool | None = None,
    **kwargs
) -> None:
    """
    Performs cell type annotation using a CellTypist model.

    CellTypist expects log1p-normalized expression (target sum 1e4) over all
    genes, so .raw is used when present (`use_raw=None`). Adds
    f'{prefix}_predicted_labels', f'{prefix}_conf_score' and, with majority
    voting, f'{prefix}_majority_voting' to adata.obs.
    """
    if not CELLTYPIST_INSTALLED:
        raise ImportError("celltypist not installed.")
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be AnnData.")
    if majority_voting and (cluster_key_for_voting is None or cluster_key_for_voting not in adata.obs):
        raise ValueError("Majority voting requires valid 'cluster_key_for_voting'.")

    if use_raw is None:
        use_raw = adata.raw is not None
    if use_raw and adata.raw is None:
        raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
    query = adata.raw.to_adata() if use_raw else adata

    log.info(f"Performing CellTypist annotation using model: {model_name}")
    log.info(f"Majority voting: {majority_voting}. Output prefix: {output_key_prefix}")
    try:
        model = models.Model.load(model=model_name)
        over_clustering = adata.obs[cluster_key_for_voting].astype(str) if majority_voting else None
        predictions = celltypist.annotate(
            query, model=model, majority_voting=majority_voting,
            over_clustering=over_clustering, **kwargs
        )
    except Exception as e:
        log.error(f"An error occurred during CellTypist annotation: {e}", exc_info=True)
        raise RuntimeError(f"CellTypist annotation failed: {e}") from e

    result = predictions.predicted_labels
    adata.obs[f"{output_key_prefix}_predicted_labels"] = (
        result['predicted_labels'].reindex(adata.obs_names).astype('category')
    )
    if 'conf_score' in result.columns:
        adata.obs[f"{output_key_prefix}_conf_score"] = result['conf_score'].reindex(adata.obs_names).to_numpy()
    elif hasattr(predictions, 'probability_matrix'):
        adata.obs[f"{output_key_prefix}_conf_score"] = (
            predictions.probability_matrix.max(axis=1).reindex(adata.obs_names).to_numpy()
        )
    if majority_voting:
        if 'majority_voting' in result.columns:
            adata.obs[f"{output_key_prefix}_majority_voting"] = (
                result['majority_voting'].reindex(adata.obs_names).astype('category')
            )
        else:
            log.warning("Majority voting requested but no 'majority_voting' column in CellTypist output.")

    log.info("CellTypist annotation complete.")
    return None


def score_gene_sets(
    adata: ad.AnnData,
    gene_sets: dict[str, list[str]],
    score_prefix: str = 'score',
    use_raw: bool | None = None,
    random_state: int = 0,
    ctrl_size: int = 50
) -> list[str]:
    """
    Per-cell module scores for each gene set (sc.tl.score_genes).

    Genes absent from the data are dropped with a warning; sets with no genes
    left are skipped. Scores go to adata.obs[f'{score_prefix}_{set_name}'].

    Returns:
        The names of the obs columns that were added.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if not isinstance(gene_sets, dict) or not gene_sets:
        raise TypeError("Input 'gene_sets' must be a non-empty dictionary.")

    if use_raw is None:
        use_raw = adata.raw is not None
    if use_raw and adata.raw is None:
        raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
    universe = set((adata.raw.var_names if use_raw else adata.var_names).astype(str))

    added = []
    for name, genes in gene_sets.items():
        present = [g for g in genes if g in universe]
        missing = [g for g in genes if g not in universe]
        if not present:
            log.warning(f"Gene set '{name}': none of its {len(genes)} genes are present; skipping.")
            continue
        if missing:
            log.warning(f"Gene set '{name}': dropping {len(missing)} absent genes: {missing}")
        score_name = f"{score_prefix}_{name.replace(' ', '_')}"
        try:
            sc.tl.score_genes(
                adata, present, ctrl_size=ctrl_size, score_name=score_name,
                random_state=random_state, use_raw=use_raw
            )
        except Exception as e:
            log.error(f"Error while scoring gene set '{name}': {e}", exc_info=True)
            raise RuntimeError(f"Failed to score gene set '{name}': {e}") from e
        added.append(score_name)

    log.info(f"Scored {len(added)} of {len(gene_sets)} gene sets: {added}")
    return added
