# scrnaseq_workflow/data/loader.py

import scanpy as sc
import anndata as ad
import pandas as pd
import os
import logging
from pathlib import Path

log = logging.getLogger(__name__)

_TABLE_SEPARATORS = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def load_data(data_path: str, cache: bool = False) -> ad.AnnData:
    """
    Loads single-cell RNA sequencing data into an AnnData object.

    Supports:
        - 10x Genomics MTX directory (matrix.mtx.gz, features.tsv.gz, barcodes.tsv.gz)
        - 10x Genomics HDF5 file (.h5)
        - AnnData (.h5ad) file

    Args:
        data_path: Path to the data file or directory.
        cache: Whether to use scanpy's read cache for MTX input. Defaults to False.

    Returns:
        An AnnData object containing the loaded data.

    Raises:
        FileNotFoundError: If the data_path does not exist.
        ValueError: If the data format is not recognized or loading fails.
        TypeError: If data_path is not a string.
    """
    log.info(f"Attempting to load data from: {data_path}")

    if not isinstance(data_path, str):
        raise TypeError(f"Expected data_path to be a string, but got {type(data_path)}")

    expanded_path = os.path.expanduser(data_path)
    if not os.path.exists(expanded_path):
        raise FileNotFoundError(f"Data path not found: {expanded_path}")

    lower_path = expanded_path.lower()
    if os.path.isfile(expanded_path) and lower_path.endswith(".mtx.gz"):
        raise ValueError(
            "Loading a single .mtx.gz file is ambiguous. Please provide the path to the directory "
            "containing matrix.mtx.gz, features.tsv.gz, and barcodes.tsv.gz."
        )

    try:
        if os.path.isdir(expanded_path):
            log.info("Detected directory, attempting to load as 10x MTX format.")
            adata = sc.read_10x_mtx(expanded_path, var_names='gene_symbols', cache=cache)
        elif lower_path.endswith(".h5ad"):
            log.info("Detected .h5ad file, attempting to load.")
            adata = sc.read_h5ad(expanded_path)
        elif lower_path.endswith(".h5"):
            log.info("Detected 10x .h5 file, attempting to load.")
            adata = sc.read_10x_h5(expanded_path)
        else:
            raise ValueError(
                f"Unrecognized file format or path type: {expanded_path}. "
                "Expecting a directory (for 10x MTX), a 10x .h5 file or an .h5ad file."
            )
    except ValueError:
        raise
    except FileNotFoundError as e:
        log.error(f"File not found during loading process: {e}")
        raise FileNotFoundError(f"Required file missing within {expanded_path}: {e}") from e
    except Exception as e:
        log.error(f"Failed to load data from {expanded_path}: {e}", exc_info=True)
        raise ValueError(f"An error occurred during data loading: {e}") from e

    # Duplicate gene symbols break indexing downstream
    adata.var_names_make_unique()
    log.info(f"Successfully loaded data. Shape: {adata.shape}")
    return adata


def load_reference(reference_path: str, label_key: str = "label") -> ad.AnnData:
    """
    Loads a labelled reference expression dataset for correlation-based annotation.

    Two layouts are accepted:
        - an .h5ad file whose .obs carries `label_key`;
        - a genes x samples CSV/TSV matrix (first column = gene names) next to a
          `<stem>.labels.csv` file with columns `sample` and `label`.

    The returned object is samples x genes with the labels in `.obs[label_key]`.
    Expression values are expected to be log-normalized; no transformation is applied.

    Raises:
        FileNotFoundError: If the reference or its labels file is missing.
        KeyError: If `label_key` is not present.
        ValueError: If the format is unsupported or samples do not match labels.
    """
    path = Path(os.path.expanduser(str(reference_path)))
    log.info(f"Loading reference dataset from: {path}")
    if not path.exists():
        raise FileNotFoundError(f"Reference path not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".h5ad":
        ref = sc.read_h5ad(path)
        if label_key not in ref.obs:
            raise KeyError(f"Label key '{label_key}' not found in reference .obs.")
    elif suffix in _TABLE_SEPARATORS:
        matrix = pd.read_csv(path, sep=_TABLE_SEPARATORS[suffix], index_col=0)
        labels_path = path.with_name(f"{path.stem}.labels.csv")
        if not labels_path.exists():
            raise FileNotFoundError(f"Reference labels file not found: {labels_path}")
        labels = pd.read_csv(labels_path)
        if 'sample' not in labels.columns or 'label' not in labels.columns:
            raise KeyError("Reference labels file must have 'sample' and 'label' columns.")
        labels = labels.set_index('sample')['label'].astype(str)
        missing = matrix.columns.difference(labels.index)
        if len(missing) > 0:
            raise ValueError(f"Reference samples without labels: {list(missing)[:5]}")
        ref = ad.AnnData(
            X=matrix.T.to_numpy(dtype="float32"),
            obs=pd.DataFrame({label_key: labels.loc[matrix.columns].values}, index=matrix.columns.astype(str)),
            var=pd.DataFrame(index=matrix.index.astype(str)),
        )
    else:
        raise ValueError(f"Unsupported reference format '{suffix}'. Use .h5ad, .csv or .tsv.")

    ref.var_names_make_unique()
    ref.obs[label_key] = ref.obs[label_key].astype(str).astype('category')
    log.info(
        f"Reference loaded: {ref.n_obs} samples, {ref.n_vars} genes, "
        f"{ref.obs[label_key].nunique()} labels."
    )
    return ref
