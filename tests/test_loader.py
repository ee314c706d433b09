# tests/test_loader.py

import pytest
import anndata as ad
import numpy as np
import pandas as pd
from scipy import io, sparse

from scrnaseq_workflow.data.loader import load_data, load_reference
from conftest import simulate_counts


# --- Fixtures ---

@pytest.fixture(scope="module")
def small_adata():
    return simulate_counts(5, seed=3)


@pytest.fixture
def tenx_dir(tmp_path, small_adata):
    """Legacy (v2) 10x MTX layout with a duplicated gene symbol."""
    out = tmp_path / "hg19"
    out.mkdir()
    io.mmwrite(str(out / "matrix.mtx"), sparse.csr_matrix(small_adata.X.T).astype(np.int64))
    symbols = list(small_adata.var_names)
    symbols[1] = symbols[0]
    genes = pd.DataFrame({'id': [f"ENSG{i:05d}" for i in range(len(symbols))], 'symbol': symbols})
    genes.to_csv(out / "genes.tsv", sep="\t", header=False, index=False)
    pd.Series(small_adata.obs_names).to_csv(out / "barcodes.tsv", header=False, index=False)
    return out


# --- load_data ---

def test_load_h5ad_success(tmp_path, small_adata):
    """Tests successful loading of an H5AD file."""
    path = tmp_path / "data.h5ad"
    small_adata.write_h5ad(path)
    adata = load_data(str(path))
    assert isinstance(adata, ad.AnnData), "Loaded object is not an AnnData instance"
    assert adata.shape == small_adata.shape
    assert list(adata.obs_names) == list(small_adata.obs_names)


def test_load_10x_dir_success(tenx_dir, small_adata):
    """Tests loading a 10x MTX directory; duplicated symbols are made unique."""
    adata = load_data(str(tenx_dir))
    assert isinstance(adata, ad.AnnData)
    assert adata.shape == small_adata.shape
    assert adata.var_names.is_unique, "var_names should be made unique"
    np.testing.assert_allclose(adata.X.toarray(), small_adata.X.toarray())


def test_load_invalid_path_raises_error():
    """Tests that loading a non-existent path raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_data("non_existent_dir/non_existent_file.h5ad")


def test_load_wrong_file_type_raises_error(tmp_path):
    """Tests that loading an unsupported file type raises ValueError."""
    path = tmp_path / "notes.txt"
    path.write_text("not a matrix")
    with pytest.raises(ValueError, match="Unrecognized file format"):
        load_data(str(path))


def test_load_single_mtx_file_raises_error(tmp_path):
    path = tmp_path / "matrix.mtx.gz"
    path.write_bytes(b"")
    with pytest.raises(ValueError, match="ambiguous"):
        load_data(str(path))


def test_load_non_string_path_raises_error():
    """Tests that passing a non-string path raises TypeError."""
    with pytest.raises(TypeError):
        load_data(12345)


# --- load_reference ---

def test_load_reference_h5ad(tmp_path, reference_adata):
    path = tmp_path / "ref.h5ad"
    reference_adata.write_h5ad(path)
    ref = load_reference(str(path), label_key="label")
    assert ref.shape == reference_adata.shape
    assert ref.obs['label'].dtype.name == 'category'
    assert set(ref.obs['label'].cat.categories) == {'T', 'B', 'Mono'}


def test_load_reference_h5ad_missing_label(tmp_path, reference_adata):
    path = tmp_path / "ref.h5ad"
    reference_adata.write_h5ad(path)
    with pytest.raises(KeyError, match="cell_ontology"):
        load_reference(str(path), label_key="cell_ontology")


def test_load_reference_csv_with_labels(tmp_path, reference_adata):
    """A genes x samples table plus a sidecar labels file."""
    matrix = pd.DataFrame(
        reference_adata.X.T, index=reference_adata.var_names, columns=reference_adata.obs_names
    )
    matrix.to_csv(tmp_path / "ref.csv")
    labels = pd.DataFrame({'sample': reference_adata.obs_names, 'label': reference_adata.obs['label'].astype(str)})
    labels.to_csv(tmp_path / "ref.labels.csv", index=False)

    ref = load_reference(str(tmp_path / "ref.csv"), label_key="cell_type")
    assert ref.shape == reference_adata.shape, "Reference should be transposed to samples x genes"
    assert list(ref.obs_names) == list(reference_adata.obs_names)
    assert list(ref.obs['cell_type'].astype(str)) == list(reference_adata.obs['label'].astype(str))
    np.testing.assert_allclose(ref.X, reference_adata.X, rtol=1e-5)


def test_load_reference_csv_without_labels_file(tmp_path):
    pd.DataFrame({'s1': [1.0, 2.0]}, index=['A', 'B']).to_csv(tmp_path / "ref.csv")
    with pytest.raises(FileNotFoundError, match="labels"):
        load_reference(str(tmp_path / "ref.csv"))


def test_load_reference_unlabelled_samples(tmp_path):
    pd.DataFrame({'s1': [1.0, 2.0], 's2': [0.5, 0.1]}, index=['A', 'B']).to_csv(tmp_path / "ref.csv")
    pd.DataFrame({'sample': ['s1'], 'label': ['X']}).to_csv(tmp_path / "ref.labels.csv", index=False)
    with pytest.raises(ValueError, match="without labels"):
        load_reference(str(tmp_path / "ref.csv"))


def test_load_reference_unsupported_format(tmp_path):
    path = tmp_path / "ref.loom"
    path.write_text("")
    with pytest.raises(ValueError, match="Unsupported reference format"):
        load_reference(str(path))
