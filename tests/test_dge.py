# tests/test_dge.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd

from scrnaseq_workflow.analysis.dge import find_marker_genes, get_marker_table
from conftest import MARKER_GENES


# --- find_marker_genes ---

def test_find_markers_default(clustered_adata):
    """Wilcoxon markers on .raw stored under the default key."""
    adata = clustered_adata.copy()
    result = find_marker_genes(adata, groupby='leiden')
    assert result is None
    assert 'rank_genes_groups' in adata.uns
    res = adata.uns['rank_genes_groups']
    for field in ('names', 'scores', 'pvals', 'pvals_adj', 'logfoldchanges'):
        assert field in res, f"'{field}' missing from rank_genes_groups results"
    assert res['params']['groupby'] == 'leiden'
    assert res['params']['use_raw'] is True
    assert set(res['names'].dtype.names) == set(adata.obs['leiden'].cat.categories)


def test_find_markers_recovers_planted_markers(dge_adata):
    names = dge_adata.uns['rank_genes_groups']['names']
    for cell_type, markers in MARKER_GENES.items():
        top = list(names[cell_type][:5])
        assert set(top) <= set(markers), f"Top markers of {cell_type} should be its planted genes"


def test_find_markers_custom_key_and_method(clustered_adata):
    adata = clustered_adata.copy()
    find_marker_genes(
        adata, groupby='cell_type', method='t-test', corr_method='bonferroni',
        use_raw=False, key_added='dge_ttest', n_genes=20
    )
    res = adata.uns['dge_ttest']
    assert res['params']['method'] == 't-test'
    assert res['params']['corr_method'] == 'bonferroni'
    assert res['params']['use_raw'] is False
    assert len(res['names']) == 20


def test_find_markers_casts_groupby_to_category(clustered_adata):
    adata = clustered_adata.copy()
    adata.obs['batch'] = np.where(np.arange(adata.n_obs) % 2 == 0, 'a', 'b')
    find_marker_genes(adata, groupby='batch', key_added='dge_batch')
    assert isinstance(adata.obs['batch'].dtype, pd.CategoricalDtype)


def test_find_markers_use_raw_without_raw(clustered_adata):
    adata = clustered_adata.copy()
    del adata.raw
    with pytest.raises(ValueError, match="adata.raw is None"):
        find_marker_genes(adata, groupby='leiden', use_raw=True)


def test_find_markers_single_group(clustered_adata):
    adata = clustered_adata.copy()
    adata.obs['one'] = 'x'
    with pytest.raises(ValueError, match="fewer than two groups"):
        find_marker_genes(adata, groupby='one')


def test_find_markers_missing_groupby(clustered_adata):
    with pytest.raises(KeyError, match="Group key 'nope' not found"):
        find_marker_genes(clustered_adata.copy(), groupby='nope')


def test_find_markers_invalid_input():
    with pytest.raises(TypeError):
        find_marker_genes(pd.DataFrame(), groupby='leiden')


def test_find_markers_library_failure_wrapped(clustered_adata, mocker):
    mocker.patch(
        "scrnaseq_workflow.analysis.dge.sc.tl.rank_genes_groups",
        side_effect=ValueError("boom")
    )
    with pytest.raises(RuntimeError, match="Failed during marker gene identification: boom"):
        find_marker_genes(clustered_adata.copy(), groupby='leiden')


# --- get_marker_table ---

def test_marker_table_all_groups(dge_adata):
    table = get_marker_table(dge_adata, pval_cutoff=0.05, min_logfc=0.25)
    assert list(table.columns[:2]) == ['group', 'names']
    assert set(table['group']) == set(MARKER_GENES)
    assert (table['pvals_adj'] <= 0.05).all()
    assert (table['logfoldchanges'] >= 0.25).all()
    b_markers = set(table.loc[table['group'] == 'B', 'names'])
    assert set(MARKER_GENES['B']) <= b_markers


def test_marker_table_single_group_top_n(dge_adata):
    table = get_marker_table(dge_adata, group='T', n_genes=5)
    assert len(table) == 5
    assert (table['group'] == 'T').all()
    assert set(table['names']) <= set(MARKER_GENES['T'])


def test_marker_table_no_filters(dge_adata):
    table = get_marker_table(dge_adata, group=['T', 'B'], pval_cutoff=None, min_logfc=None)
    assert len(table) == 2 * dge_adata.raw.n_vars


def test_marker_table_unknown_group(dge_adata):
    with pytest.raises(KeyError, match="not found"):
        get_marker_table(dge_adata, group='NK')


def test_marker_table_missing_key(clustered_adata):
    with pytest.raises(KeyError, match="Run find_marker_genes first"):
        get_marker_table(clustered_adata, key='missing')


def test_marker_table_invalid_cutoff(dge_adata):
    with pytest.raises(ValueError):
        get_marker_table(dge_adata, pval_cutoff=0)
