# scrnaseq_workflow/analysis/reference.py
"""
Reference-based cell-type annotation by rank correlation.

Each query profile (a cell, or a cluster average) is compared against every
sample of a labelled reference using Spearman correlation
(`scipy.stats.spearmanr`) over genes that distinguish the reference labels.
The per-label score is a high quantile of those correlations. Optionally the
call is refined by fine-tuning, which repeatedly rescores only the labels
close to the best one using only the genes that separate them, until a
single label remains or the candidate set stops shrinking.

Low-confidence calls are pruned with the delta-from-median rule: for each
profile, delta = best score - median score over all labels; within every
assigned label, profiles whose delta is an outlier on the low side
(more than `nmads` MADs below the label's median delta) lose their label.

Expression is only densified after it has been restricted to the shared
or marker genes, so sparse whole-transcriptome inputs stay sparse.
"""

import anndata as ad
import logging
import numpy as np
import pandas as pd
from scipy import sparse
from scipy.stats import median_abs_deviation, spearmanr

log = logging.getLogger(__name__)

MIN_SHARED_GENES = 10
# Query rows correlated per spearmanr call
CHUNK_SIZE = 256


def _dense(matrix) -> np.ndarray:
    return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


def aggregate_reference(
    reference: ad.AnnData,
    label_key: str,
    method: str = 'median'
) -> pd.DataFrame:
    """Label x gene table of per-label median (or mean) reference expression."""
    if not isinstance(reference, ad.AnnData):
        raise TypeError("Input 'reference' must be an AnnData object.")
    if label_key not in reference.obs:
        raise KeyError(f"Label key '{label_key}' not found in reference .obs.")
    if method not in ('median', 'mean'):
        raise ValueError("Argument 'method' must be 'median' or 'mean'.")

    labels = reference.obs[label_key].astype(str).to_numpy()
    names = sorted(np.unique(labels).tolist())
    rows = []
    for label in names:
        block = _dense(reference.X[labels == label]).astype(float)
        rows.append(np.median(block, axis=0) if method == 'median' else block.mean(axis=0))
    return pd.DataFrame(
        np.vstack(rows),
        index=pd.Index(names, name=label_key),
        columns=reference.var_names.astype(str),
    )


def default_marker_count(n_labels: int) -> int:
    """Genes per label pair; fewer per pair as the number of labels grows."""
    if n_labels < 2:
        raise ValueError("At least two reference labels are required.")
    return int(round(500 * (2 / 3) ** np.log2(n_labels)))


def select_reference_markers(
    profiles: pd.DataFrame,
    n_genes: int | None = None
) -> dict[str, dict[str, list[str]]]:
    """
    Genes most up-regulated in each label relative to each other label.

    Returns markers[a][b]: up to `n_genes` genes with the largest positive
    difference profile[a] - profile[b], in decreasing order of difference.
    """
    labels = [str(label) for label in profiles.index]
    if n_genes is None:
        n_genes = default_marker_count(len(labels))
    if n_genes <= 0:
        raise ValueError("Argument 'n_genes' must be positive.")

    values = profiles.to_numpy(dtype=float)
    genes = np.asarray(profiles.columns.astype(str))
    markers = {}
    for i, a in enumerate(labels):
        markers[a] = {}
        for j, b in enumerate(labels):
            if i == j:
                continue
            diff = values[i] - values[j]
            order = np.argsort(-diff, kind='stable')
            order = order[diff[order] > 0][:n_genes]
            markers[a][b] = genes[order].tolist()
    return markers


def _spearman_block(query: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Spearman correlations of query rows (by reference rows)."""
    correlations = np.zeros((query.shape[0], reference.shape[0]))
    # Constant profiles have no defined correlation and score 0; spearmanr
    # would collapse the whole result to a single NaN if one came first
    query_ok = np.ptp(query, axis=1) > 0
    reference_ok = np.ptp(reference, axis=1) > 0
    if not query_ok.any() or not reference_ok.any():
        return correlations
    rho, _ = spearmanr(query[query_ok], reference[reference_ok], axis=1)
    n_query = int(query_ok.sum())
    block = np.full((1, 1), rho) if np.ndim(rho) == 0 else rho[:n_query, n_query:]
    correlations[np.ix_(query_ok, reference_ok)] = np.nan_to_num(block, nan=0.0)
    return correlations


def correlation_scores(
    query: np.ndarray,
    reference: np.ndarray,
    reference_labels: np.ndarray,
    quantile: float = 0.8,
    labels: list[str] | None = None
) -> np.ndarray:
    """
    Per-label scores: the `quantile` of Spearman correlations between each
    query row and the reference samples of that label. Both matrices must
    share the same gene columns. Columns follow `labels` (sorted unique
    reference labels by default); the result has shape (n_query, n_labels).
    """
    reference_labels = np.asarray(reference_labels).astype(str)
    if labels is None:
        labels = sorted(np.unique(reference_labels).tolist())
    if not 0 <= quantile <= 1:
        raise ValueError("Argument 'quantile' must be between 0 and 1.")
    query = np.asarray(query, dtype=float)
    reference = np.asarray(reference, dtype=float)
    members = [reference_labels == label for label in labels]

    scores = np.empty((query.shape[0], len(labels)))
    for start in range(0, query.shape[0], CHUNK_SIZE):
        stop = start + CHUNK_SIZE
        correlations = _spearman_block(query[start:stop], reference)
        for j, mask in enumerate(members):
            scores[start:stop, j] = np.quantile(correlations[:, mask], quantile, axis=1)
    return scores


def prune_labels(
    scores: np.ndarray,
    labels: np.ndarray,
    nmads: float = 3.0,
    min_diff_med: float = -np.inf
) -> tuple[np.ndarray, np.ndarray]:
    """
    Delta-from-median pruning.

    Returns (keep, delta) where delta is best score minus median score per
    row and keep is False for rows whose delta is below
    median(delta) - nmads * MAD(delta) among rows sharing their label, or
    below `min_diff_med`.
    """
    scores = np.asarray(scores, dtype=float)
    labels = np.asarray(labels)
    delta = scores.max(axis=1) - np.median(scores, axis=1)
    keep = delta >= min_diff_med
    for label in np.unique(labels):
        members = labels == label
        label_delta = delta[members]
        center = np.median(label_delta)
        spread = median_abs_deviation(label_delta, scale='normal')
        keep[members] &= label_delta >= center - nmads * spread
    return keep, delta


def _fine_tune_one(
    profile: pd.Series,
    initial: np.ndarray,
    labels: list[str],
    reference_frame: pd.DataFrame,
    reference_labels: np.ndarray,
    markers: dict[str, dict[str, list[str]]],
    tune_threshold: float,
    quantile: float
) -> str:
    candidates = [labels[j] for j in np.flatnonzero(initial >= initial.max() - tune_threshold)]
    best = labels[int(np.argmax(initial))]
    while len(candidates) > 1:
        genes = sorted({g for a in candidates for b in candidates if a != b for g in markers[a][b]})
        if len(genes) < 2:
            break
        in_candidates = np.isin(reference_labels, candidates)
        sub_scores = correlation_scores(
            profile[genes].to_numpy()[None, :],
            reference_frame.loc[in_candidates, genes].to_numpy(),
            reference_labels[in_candidates],
            quantile=quantile,
            labels=candidates,
        )[0]
        best = candidates[int(np.argmax(sub_scores))]
        remaining = [c for c, s in zip(candidates, sub_scores) if s >= sub_scores.max() - tune_threshold]
        if len(remaining) == len(candidates):
            break
        candidates = remaining
    return candidates[0] if len(candidates) == 1 else best


def _expression_source(adata: ad.AnnData, use_raw: bool | None, layer: str | None):
    if use_raw is None:
        use_raw = adata.raw is not None and layer is None
    if use_raw:
        if adata.raw is None:
            raise ValueError("Argument 'use_raw' was set to True, but adata.raw is None.")
        return adata.raw.X, pd.Index(adata.raw.var_names.astype(str))
    if layer is not None:
        if layer not in adata.layers:
            raise KeyError(f"Layer '{layer}' not found in adata.layers.")
        return adata.layers[layer], pd.Index(adata.var_names.astype(str))
    return adata.X, pd.Index(adata.var_names.astype(str))


def _query_frame(
    adata: ad.AnnData,
    matrix,
    genes: pd.Index,
    selected: list[str],
    groupby: str | None
) -> pd.DataFrame:
    columns = genes.get_indexer(selected)
    frame = pd.DataFrame(_dense(matrix[:, columns]), index=adata.obs_names, columns=selected)
    if groupby is None:
        return frame
    return frame.groupby(adata.obs[groupby].astype(str).to_numpy(), sort=True).mean()


def annotate_reference(
    adata: ad.AnnData,
    reference: ad.AnnData,
    label_key: str,
    groupby: str | None = None,
    use_raw: bool | None = None,
    layer: str | None = None,
    de_n: int | None = None,
    quantile: float = 0.8,
    fine_tune: bool = True,
    tune_threshold: float = 0.05,
    prune: bool = True,
    nmads: float = 3.0,
    key_added: str = 'ref'
) -> pd.DataFrame:
    """
    Transfers labels from a reference dataset by rank correlation.

    Args:
        adata: Query data with log-normalized expression (in .raw, a layer or .X).
        reference: Reference samples x genes, log-normalized, labels in .obs[label_key].
        label_key: Reference .obs column with the labels.
        groupby: If set, classify the mean profile of each query group (e.g.
                 clusters) instead of single cells.
        use_raw: Read query expression from .raw. None uses .raw when present.
        layer: Query layer to use when not reading .raw.
        de_n: Marker genes per label pair. None uses a label-count dependent default.
        quantile: Quantile of per-sample correlations used as the label score.
        fine_tune: Refine calls among labels within `tune_threshold` of the best.
        tune_threshold: Score margin defining the candidate labels in fine-tuning.
        prune: Apply delta-from-median pruning.
        nmads: Number of MADs below the median delta that triggers pruning.
        key_added: Prefix of the output columns.

    Writes adata.obs[f'{key_added}_labels'], f'{key_added}_first_labels',
    f'{key_added}_pruned_labels', f'{key_added}_delta_next'. Per-cell scores
    go to adata.obsm[f'{key_added}_scores'] (columns listed in
    adata.uns[f'{key_added}_score_labels']); in group mode the score table is
    stored in adata.uns[f'{key_added}_group_scores'].

    Returns:
        One row per classified profile (cell or group) with labels, pruned
        labels, delta_next and one score column per reference label.

    Raises:
        KeyError: If `label_key` or `groupby` are missing.
        ValueError: If fewer than MIN_SHARED_GENES genes are shared with the reference
                    or the reference has fewer than two labels.
    """
    if not isinstance(adata, ad.AnnData) or not isinstance(reference, ad.AnnData):
        raise TypeError("Inputs 'adata' and 'reference' must be AnnData objects.")
    if label_key not in reference.obs:
        raise KeyError(f"Label key '{label_key}' not found in reference .obs.")
    if groupby is not None and groupby not in adata.obs:
        raise KeyError(f"Group key '{groupby}' not found in adata.obs.")

    matrix, genes = _expression_source(adata, use_raw, layer)
    reference_genes = pd.Index(reference.var_names.astype(str))
    shared = genes.intersection(reference_genes)
    if len(shared) < MIN_SHARED_GENES:
        raise ValueError(
            f"Only {len(shared)} genes are shared between query and reference; at least {MIN_SHARED_GENES} are needed."
        )
    reference_labels = reference.obs[label_key].astype(str).to_numpy()
    labels = sorted(np.unique(reference_labels).tolist())
    if len(labels) < 2:
        raise ValueError("The reference must contain at least two labels.")

    shared_ref = reference[:, reference_genes.get_indexer(shared)]
    profiles = aggregate_reference(shared_ref, label_key)
    markers = select_reference_markers(profiles, n_genes=de_n)
    marker_genes = sorted({g for a in markers for b in markers[a] for g in markers[a][b]})
    if len(marker_genes) < 2:
        raise ValueError("Reference labels are not separated by any marker genes.")

    query = _query_frame(adata, matrix, genes, marker_genes, groupby)
    reference_frame = pd.DataFrame(
        _dense(reference.X[:, reference_genes.get_indexer(marker_genes)]),
        index=reference.obs_names, columns=marker_genes,
    )
    log.info(
        f"Annotating {len(query)} {'groups' if groupby else 'cells'} against {len(labels)} reference labels "
        f"using {len(marker_genes)} of {len(shared)} shared genes (quantile={quantile}, fine_tune={fine_tune})."
    )
    scores = correlation_scores(
        query.to_numpy(), reference_frame.to_numpy(),
        reference_labels, quantile=quantile, labels=labels,
    )
    first_labels = np.asarray(labels, dtype=object)[np.argmax(scores, axis=1)]

    if fine_tune:
        final_labels = np.array([
            _fine_tune_one(
                query.iloc[i], scores[i], labels, reference_frame, reference_labels,
                markers, tune_threshold, quantile
            )
            for i in range(len(query))
        ], dtype=object)
        n_changed = int((final_labels != first_labels).sum())
        log.info(f"Fine-tuning changed {n_changed} of {len(final_labels)} calls.")
    else:
        final_labels = first_labels.copy()

    ordered = np.sort(scores, axis=1)
    delta_next = ordered[:, -1] - ordered[:, -2]
    if prune:
        keep, _ = prune_labels(scores, final_labels, nmads=nmads)
    else:
        keep = np.ones(len(final_labels), dtype=bool)
    pruned = np.where(keep, final_labels, None)
    n_pruned = int((~keep).sum())
    log.info(f"Reference annotation complete. {n_pruned} of {len(final_labels)} calls pruned.")

    table = pd.DataFrame(scores, index=query.index, columns=labels)
    table.insert(0, 'delta_next', delta_next)
    table.insert(0, 'pruned_labels', pruned)
    table.insert(0, 'first_labels', first_labels)
    table.insert(0, 'labels', final_labels)

    if groupby is None:
        cell_table = table
        adata.obsm[f'{key_added}_scores'] = scores
        adata.uns[f'{key_added}_score_labels'] = labels
    else:
        groups = adata.obs[groupby].astype(str)
        cell_table = table.loc[groups.to_numpy()].set_index(adata.obs_names)
        adata.uns[f'{key_added}_group_scores'] = table[labels].copy()

    for column in ('labels', 'first_labels', 'pruned_labels'):
        adata.obs[f'{key_added}_{column}'] = pd.Categorical(cell_table[column].to_numpy(), categories=labels)
    adata.obs[f'{key_added}_delta_next'] = cell_table['delta_next'].to_numpy()
    return table
