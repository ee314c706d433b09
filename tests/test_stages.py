# tests/test_stages.py

import pytest
import anndata as ad

from scrnaseq_workflow.data.stages import (
    STAGES,
    completed_stages,
    load_stage,
    previous_stage,
    save_stage,
    stage_path,
)


def test_stage_order():
    assert STAGES[0] == "qc"
    assert STAGES[-1] == "annotate"
    assert STAGES.index("cluster") < STAGES.index("embed") < STAGES.index("markers")


def test_previous_stage():
    assert previous_stage("qc") is None
    assert previous_stage("normalize") == "qc"
    assert previous_stage("annotate") == "markers"


def test_unknown_stage_raises():
    with pytest.raises(ValueError, match="Unknown stage 'tsne'"):
        previous_stage("tsne")
    with pytest.raises(ValueError, match="Unknown stage"):
        stage_path("out", "run", "bogus")


def test_stage_path(tmp_path):
    assert stage_path(tmp_path, "pbmc", "pca") == tmp_path / "pbmc_pca.h5ad"


def test_save_and_load_roundtrip(tmp_path, qc_adata):
    adata = qc_adata.copy()
    path = save_stage(adata, tmp_path / "nested", "run", "qc")
    assert path.is_file()
    assert completed_stages(adata) == ["qc"]

    save_stage(adata, tmp_path / "nested", "run", "normalize")
    loaded = load_stage(tmp_path / "nested", "run", "normalize")
    assert isinstance(loaded, ad.AnnData)
    assert loaded.shape == qc_adata.shape
    assert completed_stages(loaded) == ["qc", "normalize"]
    assert 'pct_counts_mt' in loaded.obs


def test_save_stage_does_not_duplicate(tmp_path, qc_adata):
    adata = qc_adata.copy()
    save_stage(adata, tmp_path, "run", "qc")
    save_stage(adata, tmp_path, "run", "qc")
    assert completed_stages(adata) == ["qc"]


def test_load_missing_stage(tmp_path):
    with pytest.raises(FileNotFoundError, match="No saved result for stage 'pca'"):
        load_stage(tmp_path, "run", "pca")


def test_save_stage_rejects_non_anndata(tmp_path):
    with pytest.raises(TypeError):
        save_stage({"X": []}, tmp_path, "run", "qc")
