# tests/test_markers.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from scrnaseq_workflow.analysis.markers import score_markers, top_scored_markers, SUMMARIES, EFFECT_STATISTICS
from conftest import MARKER_GENES, CELL_TYPES


@pytest.fixture(scope="module")
def marker_scores(normalized_adata):
    adata = normalized_adata.copy()
    scores = score_markers(adata, groupby='cell_type', key_added='scores_test')
    return adata, scores


def test_score_markers_structure(marker_scores, normalized_adata):
    adata, scores = marker_scores
    assert set(scores) == set(CELL_TYPES)
    assert adata.uns['scores_test'] is scores
    assert adata.uns['scores_test_params']['groupby'] == 'cell_type'

    frame = scores['T']
    assert list(frame.index) == list(normalized_adata.var_names)
    expected_cols = {'self_average', 'other_average', 'self_detected', 'other_detected'}
    expected_cols |= {f'{s}_{e}' for s in SUMMARIES for e in EFFECT_STATISTICS}
    assert expected_cols <= set(frame.columns)


def test_score_markers_value_ranges(marker_scores):
    _, scores = marker_scores
    for frame in scores.values():
        assert frame['mean_auc'].between(0, 1).all()
        assert frame['min_delta_detected'].between(-1, 1).all()
        assert (frame['min_auc'] <= frame['median_auc'] + 1e-12).all()
        assert (frame['median_auc'] <= frame['max_auc'] + 1e-12).all()
        # Two other groups: best rank is 1..n_genes
        assert frame['rank_cohens_d'].between(1, len(frame)).all()


def test_planted_markers_score_highest(marker_scores):
    _, scores = marker_scores
    for cell_type, markers in MARKER_GENES.items():
        top = top_scored_markers(scores, cell_type, statistic='min_auc', n=10)
        assert set(top) <= set(markers), f"{cell_type} top markers should be planted genes"
        assert (scores[cell_type].loc[markers, 'min_cohens_d'] > 1).all()


def test_top_scored_markers_rank_ascending(marker_scores):
    _, scores = marker_scores
    top = top_scored_markers(scores, 'B', statistic='rank_auc', n=5)
    ranks = scores['B'].loc[top, 'rank_auc'].tolist()
    assert ranks[0] == 1
    assert ranks == sorted(ranks)


def test_auc_matches_manual_calculation():
    X = np.array([[0.0], [1.0], [2.0], [3.0], [4.0], [5.0]])
    adata = ad.AnnData(X=X, obs=pd.DataFrame({'g': ['a', 'a', 'a', 'b', 'b', 'b']}, index=[str(i) for i in range(6)]))
    scores = score_markers(adata, groupby='g')
    assert scores['b'].loc['0', 'mean_auc'] == pytest.approx(1.0)
    assert scores['a'].loc['0', 'mean_auc'] == pytest.approx(0.0)
    assert scores['b'].loc['0', 'mean_delta_detected'] == pytest.approx(1 / 3)
    # Means 4 vs 1 with unit variance in each group
    assert scores['b'].loc['0', 'mean_cohens_d'] == pytest.approx(3.0)


def test_constant_gene_has_zero_effect():
    X = np.zeros((4, 2))
    X[:, 1] = [1, 2, 3, 4]
    adata = ad.AnnData(X=X, obs=pd.DataFrame({'g': ['a', 'a', 'b', 'b']}, index=list('wxyz')))
    scores = score_markers(adata, groupby='g')
    assert scores['a'].loc['0', 'mean_cohens_d'] == 0
    assert scores['a'].loc['0', 'mean_auc'] == pytest.approx(0.5)


def test_score_markers_chunked_sparse_matches_dense(marker_scores, normalized_adata, mocker):
    _, expected = marker_scores
    adata = normalized_adata.copy()
    X = adata.X.toarray() if sparse.issparse(adata.X) else np.asarray(adata.X)
    adata.X = sparse.csr_matrix(X)
    mocker.patch("scrnaseq_workflow.analysis.markers.GENE_CHUNK_SIZE", 7)
    chunked = score_markers(adata, groupby='cell_type')
    for group, frame in expected.items():
        pd.testing.assert_frame_equal(chunked[group], frame, check_exact=False)


def test_score_markers_use_raw(clustered_adata):
    scores = score_markers(clustered_adata.copy(), groupby='cell_type', use_raw=True)
    assert len(scores['Mono']) == clustered_adata.raw.n_vars


def test_score_markers_missing_groupby(normalized_adata):
    with pytest.raises(KeyError, match="Group key 'nope' not found"):
        score_markers(normalized_adata.copy(), groupby='nope')


def test_score_markers_missing_layer(normalized_adata):
    with pytest.raises(KeyError, match="Layer 'nope' not found"):
        score_markers(normalized_adata.copy(), groupby='cell_type', layer='nope')


def test_score_markers_single_group(normalized_adata):
    adata = normalized_adata.copy()
    adata.obs['one'] = 'x'
    with pytest.raises(ValueError, match="fewer than two groups"):
        score_markers(adata, groupby='one')


def test_score_markers_tiny_group(normalized_adata):
    adata = normalized_adata.copy()
    labels = np.array(['big'] * adata.n_obs, dtype=object)
    labels[0] = 'tiny'
    adata.obs['grp'] = labels
    with pytest.raises(ValueError, match="fewer than two cells"):
        score_markers(adata, groupby='grp')


@pytest.mark.parametrize("kwargs, error", [
    ({'group': 'NK'}, KeyError),
    ({'group': 'T', 'statistic': 'best_auc'}, KeyError),
    ({'group': 'T', 'n': 0}, ValueError),
])
def test_top_scored_markers_invalid(marker_scores, kwargs, error):
    _, scores = marker_scores
    with pytest.raises(error):
        top_scored_markers(scores, **kwargs)
