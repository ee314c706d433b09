# scrnaseq_workflow/analysis/markers.py

import anndata as ad
import logging
import numpy as np
import pandas as pd
import warnings
from scipy import sparse
from scipy.stats import mannwhitneyu, rankdata

log = logging.getLogger(__name__)

EFFECT_STATISTICS = ('cohens_d', 'auc', 'delta_detected')
SUMMARIES = ('mean', 'min', 'median', 'max', 'rank')
GENE_CHUNK_SIZE = 2000


def _expression_matrix(adata: ad.AnnData, layer: str | None, use_raw: bool):
    if use_raw:
        if adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        return adata.raw.X, adata.raw.var_names
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found in adata.layers.")
        return adata.layers[layer], adata.var_names
    return adata.X, adata.var_names


def _dense(block) -> np.ndarray:
    return block.toarray() if sparse.issparse(block) else np.asarray(block)


def _pairwise_effects(self_block, other_block, self_stats, other_stats):
    """Cohen's d, AUC and detection difference of one group against another."""
    diff = self_stats['mean'] - other_stats['mean']
    pooled_sd = np.sqrt((self_stats['var'] + other_stats['var']) / 2)
    with np.errstate(divide='ignore', invalid='ignore'):
        cohens_d = diff / pooled_sd
    # Two constant groups with equal means carry no effect
    cohens_d[(pooled_sd == 0) & (diff == 0)] = 0.0

    with warnings.catch_warnings():
        # Constant genes make the p-value undefined; only U is used here
        warnings.simplefilter("ignore", RuntimeWarning)
        u_stat = mannwhitneyu(self_block, other_block, axis=0, alternative='two-sided', method='asymptotic').statistic
    auc = np.asarray(u_stat, dtype=float) / (self_block.shape[0] * other_block.shape[0])

    delta_detected = self_stats['detected'] - other_stats['detected']
    return {'cohens_d': cohens_d, 'auc': auc, 'delta_detected': delta_detected}


def score_markers(
    adata: ad.AnnData,
    groupby: str,
    layer: str | None = None,
    use_raw: bool = False,
    key_added: str = 'marker_scores'
) -> dict[str, pd.DataFrame]:
    """
    Scores every gene as a marker of every group using pairwise effect sizes.

    Each group is compared against each other group separately. Per
    comparison three effect sizes are computed:

    - Cohen's d: difference in mean expression over the pooled standard deviation;
    - AUC: probability that a random cell of the group expresses the gene more
      than a random cell of the other group (Mann-Whitney U / n1*n2);
    - delta_detected: difference in the proportion of cells with non-zero expression.

    Each effect is summarized across comparisons as mean/min/median/max and
    'rank' (the best rank the gene reaches in any single comparison, 1 = top).
    A high 'min' means the gene separates the group from *every* other group;
    a small 'rank' finds genes that separate it from at least one.

    Args:
        adata: Log-normalized expression (unscaled) with group labels in .obs.
        groupby: Column of adata.obs with the groups.
        layer: Layer to use instead of .X.
        use_raw: Use adata.raw instead of .X.
        key_added: adata.uns key for the results; parameters go to f'{key_added}_params'.

    Returns:
        Mapping group -> DataFrame indexed by gene, with columns
        self_average, other_average, self_detected, other_detected and
        f'{summary}_{statistic}' for every summary and statistic.

    Raises:
        KeyError: If `groupby` or `layer` is missing.
        ValueError: If fewer than two groups exist or a group has fewer than two cells.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    if groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")

    X, genes = _expression_matrix(adata, layer, use_raw)
    labels = adata.obs[groupby]
    if isinstance(labels.dtype, pd.CategoricalDtype):
        groups = [str(g) for g in labels.cat.categories if (labels == g).any()]
    else:
        groups = sorted(labels.astype(str).unique())
    labels = labels.astype(str).to_numpy()

    if len(groups) < 2:
        raise ValueError(f"Group key '{groupby}' has fewer than two groups; nothing to compare.")
    sizes = {g: int((labels == g).sum()) for g in groups}
    too_small = [g for g, n in sizes.items() if n < 2]
    if too_small:
        raise ValueError(f"Groups with fewer than two cells cannot be scored: {too_small}")

    log.info(f"Scoring markers for {len(groups)} groups of '{groupby}' across {len(genes)} genes.")

    n_genes = len(genes)
    # Row subsets stay sparse; only GENE_CHUNK_SIZE columns are densified at a time
    subsets = {g: X[labels == g] for g in groups}
    stats = {g: {k: np.empty(n_genes) for k in ('mean', 'var', 'detected')} for g in groups}
    pairs = [(g, h) for g in groups for h in groups if g != h]
    effects = {pair: {s: np.empty(n_genes) for s in EFFECT_STATISTICS} for pair in pairs}

    for start in range(0, n_genes, GENE_CHUNK_SIZE):
        columns = slice(start, min(start + GENE_CHUNK_SIZE, n_genes))
        blocks = {g: _dense(subset[:, columns]).astype(np.float64) for g, subset in subsets.items()}
        chunk_stats = {}
        for g, block in blocks.items():
            chunk_stats[g] = {
                'mean': block.mean(axis=0),
                'var': block.var(axis=0, ddof=1),
                'detected': (block > 0).mean(axis=0),
            }
            for k, values in chunk_stats[g].items():
                stats[g][k][columns] = values
        for g, h in pairs:
            chunk_effects = _pairwise_effects(blocks[g], blocks[h], chunk_stats[g], chunk_stats[h])
            for s in EFFECT_STATISTICS:
                effects[(g, h)][s][columns] = chunk_effects[s]

    results = {}
    for g in groups:
        others = [h for h in groups if h != g]
        per_stat = {s: np.vstack([effects[(g, h)][s] for h in others]) for s in EFFECT_STATISTICS}

        frame = pd.DataFrame(index=pd.Index(genes, name='gene'))
        frame['self_average'] = stats[g]['mean']
        frame['other_average'] = np.mean([stats[h]['mean'] for h in others], axis=0)
        frame['self_detected'] = stats[g]['detected']
        frame['other_detected'] = np.mean([stats[h]['detected'] for h in others], axis=0)
        for s, values in per_stat.items():
            frame[f'mean_{s}'] = values.mean(axis=0)
            frame[f'min_{s}'] = values.min(axis=0)
            frame[f'median_{s}'] = np.median(values, axis=0)
            frame[f'max_{s}'] = values.max(axis=0)
            # Rank 1 = largest effect within a comparison
            frame[f'rank_{s}'] = rankdata(-values, axis=1, method='min').min(axis=0).astype(int)
        results[g] = frame

    adata.uns[key_added] = results
    adata.uns[f'{key_added}_params'] = {
        'groupby': groupby, 'layer': layer or '', 'use_raw': bool(use_raw), 'groups': list(groups)
    }
    log.info(f"Marker scores stored in adata.uns['{key_added}'].")
    return results


def top_scored_markers(
    scores: dict[str, pd.DataFrame],
    group: str,
    statistic: str = 'mean_auc',
    n: int = 10
) -> list[str]:
    """Top `n` genes of `group` by a summary column; 'rank_*' columns sort ascending."""
    if group not in scores:
        raise KeyError(f"Group '{group}' not found in marker scores.")
    frame = scores[group]
    if statistic not in frame.columns:
        raise KeyError(f"Statistic '{statistic}' not found. Available: {list(frame.columns)}")
    if n <= 0:
        raise ValueError("Argument 'n' must be positive.")
    ascending = statistic.startswith('rank_')
    ordered = frame[statistic].sort_values(ascending=ascending, kind='stable')
    return ordered.index[:n].astype(str).tolist()
