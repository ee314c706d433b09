# scrnaseq_workflow/data/stages.py

import anndata as ad
import scanpy as sc
import logging
from pathlib import Path

log = logging.getLogger(__name__)

# Order in which the workflow produces its intermediates
STAGES = (
    "qc",
    "normalize",
    "hvg",
    "scale",
    "pca",
    "cluster",
    "embed",
    "markers",
    "annotate",
)


def _check_stage(stage: str) -> None:
    if stage not in STAGES:
        raise ValueError(f"Unknown stage '{stage}'. Valid stages: {', '.join(STAGES)}.")


def previous_stage(stage: str) -> str | None:
    """Returns the stage whose output feeds `stage`, or None for the first stage."""
    _check_stage(stage)
    idx = STAGES.index(stage)
    return STAGES[idx - 1] if idx > 0 else None


def stage_path(output_dir: str | Path, prefix: str, stage: str) -> Path:
    _check_stage(stage)
    return Path(output_dir) / f"{prefix}_{stage}.h5ad"


def save_stage(adata: ad.AnnData, output_dir: str | Path, prefix: str, stage: str) -> Path:
    """
    Writes `adata` as the serialized result of `stage`.

    The list of completed stages is kept in adata.uns['workflow']['stages'] so a
    downstream run can tell how far the object has been processed.
    """
    if not isinstance(adata, ad.AnnData):
        raise TypeError("Input 'adata' must be an AnnData object.")
    path = stage_path(output_dir, prefix, stage)
    path.parent.mkdir(parents=True, exist_ok=True)

    workflow_info = dict(adata.uns.get('workflow', {}))
    completed = [str(s) for s in workflow_info.get('stages', [])]
    if stage not in completed:
        completed.append(stage)
    workflow_info['stages'] = completed
    adata.uns['workflow'] = workflow_info

    try:
        adata.write_h5ad(path, compression="gzip")
    except Exception as e:
        log.error(f"Failed to write stage '{stage}' to {path}: {e}", exc_info=True)
        raise RuntimeError(f"Failed to save stage '{stage}': {e}") from e
    log.info(f"Saved stage '{stage}' to {path}")
    return path


def load_stage(output_dir: str | Path, prefix: str, stage: str) -> ad.AnnData:
    """Reads the h5ad written by `save_stage` for `stage`."""
    path = stage_path(output_dir, prefix, stage)
    if not path.is_file():
        raise FileNotFoundError(f"No saved result for stage '{stage}' at {path}. Run that stage first.")
    adata = sc.read_h5ad(path)
    log.info(f"Loaded stage '{stage}' from {path}. Shape: {adata.shape}")
    return adata


def completed_stages(adata: ad.AnnData) -> list[str]:
    return [str(s) for s in adata.uns.get('workflow', {}).get('stages', [])]
