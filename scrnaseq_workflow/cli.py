# scrnaseq_workflow/cli.py

import argparse
import logging
import sys
from pathlib import Path
import yaml

from .data.stages import STAGES
from .workflow import ScrnaSeqWorkflow

log = logging.getLogger("scrnaseq_workflow.cli")

DEFAULTS = {
    'output_prefix': "scrnaseq_result",
    'save_intermediates': False,
    'start_from': None,
    # QC
    'mito_prefix': "MT-", 'min_genes': 200, 'max_genes': None, 'min_counts': None,
    'max_counts': None, 'max_pct_mito': 10.0, 'min_cells': 3,
    # Preprocessing
    'normalization': "log1p", 'target_sum': 10000.0, 'pearson_theta': 100.0,
    'n_hvgs': 2000, 'hvg_flavor': "seurat_v3", 'scale_max_value': 10.0, 'regress_keys': None,
    # Dimensionality reduction
    'n_pca_comps': 50, 'n_pcs': None,
    # Clustering and embedding
    'n_neighbors': 15, 'cluster_method': "leiden", 'resolution': 1.0, 'resolution_sweep': None,
    'embeddings': "umap", 'skip_umap': False, 'tsne_perplexity': 30.0,
    # Markers
    'dge_method': "wilcoxon", 'dge_corr_method': "benjamini-hochberg", 'dge_use_raw': True,
    'dge_key': "rank_genes_groups", 'dge_pval_cutoff': 0.05, 'dge_min_logfc': 0.25,
    'score_markers': True,
    # Annotation
    'annotation_tool': 'none',
    'marker_file': None,
    'annotation_key': "cell_type_annotation",
    'annotation_method': "overlap_count",
    'celltypist_model': "Immune_All_Low.pkl",
    'celltypist_majority_voting': False,
    'reference_path': None,
    'reference_label_key': "label",
    'reference_by_cluster': False,
    'reference_fine_tune': True,
    'reference_quantile': 0.8,
    'reference_nmads': 3.0,
    'gene_set_file': None,
    # Plotting
    'plot_umap_color': "n_genes_by_counts,pct_counts_mt",
    'run_qc_violin': True,
    'qc_violin_keys': "n_genes_by_counts,total_counts,pct_counts_mt",
    'run_dge_plots': True,
    'dge_n_genes': 5,
    'run_dge_heatmap': True,
    'plot_dpi': 150,
    'plot_format': "png",
    'random_seed': 0
}

LIST_PARAMS = ['plot_umap_color', 'qc_violin_keys', 'regress_keys', 'embeddings']
FLOAT_LIST_PARAMS = ['resolution_sweep']
# YAML keys under `plotting:` that map to prefixed parameter names
PLOTTING_ALIASES = {'umap_color': 'plot_umap_color'}
NULLABLE_PARAMS = [
    'max_genes', 'min_counts', 'max_counts', 'marker_file', 'reference_path',
    'gene_set_file', 'n_pcs', 'start_from', 'regress_keys', 'resolution_sweep'
]


# --- Argument Parser Setup ---
def create_parser():
    parser = argparse.ArgumentParser(
        description="Run a staged scRNA-seq analysis pipeline: QC to annotated clusters.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # --- Input/Output Arguments ---
    parser.add_argument("-i", "--input-path", type=str, required=True, help="Path to input data (10x directory, .h5 or .h5ad).")
    parser.add_argument("-o", "--output-dir", type=str, required=True, help="Directory to save results (AnnData objects and plots).")
    parser.add_argument("-c", "--config", type=str, default=None, help="Path to a YAML configuration file with pipeline parameters.")
    parser.add_argument("--output-prefix", type=str, help="Prefix for output files. Overrides config.")
    parser.add_argument("--save-intermediates", action=argparse.BooleanOptionalAction, help="Write an .h5ad after every stage.")
    parser.add_argument("--start-from", type=str, choices=list(STAGES), help="Resume from this stage using the saved result of the previous one.")

    # QC
    parser.add_argument("--mito-prefix", type=str, help="Mitochondrial gene prefix.")
    parser.add_argument("--min-genes", type=int, help="Min genes per cell.")
    parser.add_argument("--max-genes", type=int, help="Max genes per cell.")
    parser.add_argument("--min-counts", type=int, help="Min counts per cell.")
    parser.add_argument("--max-counts", type=int, help="Max counts per cell.")
    parser.add_argument("--max-pct-mito", type=float, help="Max mitochondrial percentage.")
    parser.add_argument("--min-cells", type=int, help="Min cells expressing a gene.")
    # Preprocessing
    parser.add_argument("--normalization", type=str, choices=['log1p', 'pearson_residuals'], help="Normalization method.")
    parser.add_argument("--target-sum", type=float, help="Target sum for library-size normalization.")
    parser.add_argument("--pearson-theta", type=float, help="Overdispersion for Pearson residuals.")
    parser.add_argument("--n-hvgs", type=int, help="Number of highly variable genes.")
    parser.add_argument(
        "--hvg-flavor", type=str, choices=['seurat', 'cell_ranger', 'seurat_v3', 'pearson_residuals'],
        help="HVG selection flavor."
    )
    parser.add_argument("--scale-max-value", type=float, help="Max value for scaling.")
    parser.add_argument("--regress-keys", type=str, help="Comma-separated obs keys to regress out before scaling.")
    # DimRed
    parser.add_argument("--n-pca-comps", type=int, help="Number of PCA components to compute.")
    parser.add_argument("--n-pcs", type=int, help="Number of PCs used downstream. Chosen from the elbow if omitted.")
    # Clustering
    parser.add_argument("--n-neighbors", type=int, help="Number of neighbors for graph.")
    parser.add_argument("--cluster-method", type=str, choices=['leiden', 'louvain'], help="Community detection method.")
    parser.add_argument("--resolution", type=float, help="Clustering resolution.")
    parser.add_argument("--resolution-sweep", type=str, help="Comma-separated resolutions to compare, e.g. '0.25,0.5,1'.")
    parser.add_argument("--embeddings", type=str, help="Comma-separated embeddings to compute (umap, tsne).")
    parser.add_argument("--skip-umap", action='store_true', default=None, help="Skip UMAP calculation.")
    parser.add_argument("--tsne-perplexity", type=float, help="t-SNE perplexity.")
    # DGE
    parser.add_argument("--dge-method", type=str, choices=['wilcoxon', 't-test', 'logreg'], help="DGE method.")
    parser.add_argument("--dge-corr-method", type=str, choices=['benjamini-hochberg', 'bonferroni'], help="DGE correction.")
    parser.add_argument("--dge-use-raw", action=argparse.BooleanOptionalAction, help="Use .raw (log-normalized, all genes) for DGE.")
    parser.add_argument("--dge-key", type=str, help="adata.uns key for DGE results.")
    parser.add_argument("--dge-pval-cutoff", type=float, help="Adjusted p-value cutoff for the marker table.")
    parser.add_argument("--dge-min-logfc", type=float, help="Minimum log2 fold change for the marker table.")
    parser.add_argument("--score-markers", action=argparse.BooleanOptionalAction, help="Compute pairwise effect-size marker scores.")
    # Annotation
    parser.add_argument(
        "--annotation-tool", type=str, choices=['marker_overlap', 'celltypist', 'reference', 'none'],
        help="Annotation tool to use."
    )
    parser.add_argument("--marker-file", type=str, help="JSON marker file (annotation-tool='marker_overlap').")
    parser.add_argument("--annotation-key", type=str, help="Base key for storing annotation results in adata.obs/uns.")
    parser.add_argument(
        "--annotation-method", type=str, choices=['overlap_count', 'overlap_coef', 'jaccard'],
        help="Method for marker gene overlap (if tool='marker_overlap')."
    )
    parser.add_argument("--celltypist-model", type=str, help="Name or path to CellTypist model (if tool='celltypist').")
    parser.add_argument(
        "--celltypist-majority-voting", action=argparse.BooleanOptionalAction,
        help="Perform majority voting within clusters for CellTypist."
    )
    parser.add_argument("--reference-path", type=str, help="Labelled reference (.h5ad, or .csv/.tsv with .labels.csv).")
    parser.add_argument("--reference-label-key", type=str, help="Label column of the reference.")
    parser.add_argument("--reference-by-cluster", action=argparse.BooleanOptionalAction, help="Classify cluster profiles instead of cells.")
    parser.add_argument("--reference-fine-tune", action=argparse.BooleanOptionalAction, help="Fine-tune reference labels.")
    parser.add_argument("--reference-quantile", type=float, help="Correlation quantile used as label score.")
    parser.add_argument("--reference-nmads", type=float, help="MADs below the median delta that prune a label.")
    parser.add_argument("--gene-set-file", type=str, help="JSON gene sets to score per cell.")
    # Plotting
    parser.add_argument("--plot-umap-color", type=str, help="Comma-separated features for embedding colors.")
    parser.add_argument("--dge-n-genes", type=int, help="Number of genes per group in DGE plots.")
    parser.add_argument("--plot-dpi", type=int, help="DPI for plots.")
    parser.add_argument("--plot-format", type=str, choices=['png', 'pdf', 'svg'], help="Plot file format.")
    parser.add_argument("--run-qc-violin", action=argparse.BooleanOptionalAction, help="Generate QC violin plots.")
    parser.add_argument("--qc-violin-keys", type=str, help="Comma-separated obs keys for QC violin plot.")
    parser.add_argument("--run-dge-plots", action=argparse.BooleanOptionalAction, help="Generate all standard DGE plots.")
    parser.add_argument("--run-dge-heatmap", action=argparse.BooleanOptionalAction, help="Generate DGE heatmap plot specifically.")
    # Other
    parser.add_argument("--random-seed", type=int, help="Random seed for reproducibility.")

    return parser


def _read_config(config_file: str) -> dict:
    """Flattens a sectioned YAML config into parameter names."""
    config_path = Path(config_file)
    if not config_path.is_file():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, 'r') as f:
        config_yaml = yaml.safe_load(f) or {}
    if not isinstance(config_yaml, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping.")

    config_params = {}
    for section, params_in_section in config_yaml.items():
        if isinstance(params_in_section, dict):
            for key, value in params_in_section.items():
                if section == 'plotting':
                    key = PLOTTING_ALIASES.get(key, key)
                config_params[key] = value
        else:
            config_params[section] = params_in_section
    unknown = sorted(set(config_params) - set(DEFAULTS))
    if unknown:
        log.warning(f"Ignoring unknown config parameters: {unknown}")
    return config_params


def _as_list(value, cast=str):
    if value is None:
        return None
    if isinstance(value, str):
        value = [v.strip() for v in value.split(',') if v.strip()]
    elif not isinstance(value, (list, tuple)):
        value = [value]
    return [cast(v) for v in value]


# --- Parameter Loading and Precedence ---
def load_and_merge_params(args: argparse.Namespace) -> argparse.Namespace:
    """Merges parameters with precedence CLI > config file > defaults."""
    config_params = {}
    if args.config:
        try:
            config_params = _read_config(args.config)
        except yaml.YAMLError as e:
            log.error(f"Error parsing config file {args.config}: {e}")
            sys.exit(1)
        except (OSError, ValueError) as e:
            log.error(f"Error reading config file {args.config}: {e}")
            sys.exit(1)
        log.info(f"Loaded parameters from config file: {args.config}")

    final_params = argparse.Namespace()
    cli_args_dict = vars(args)

    for key, default_value in DEFAULTS.items():
        param_value = default_value
        if key in config_params:
            config_value = config_params[key]
            param_value = None if str(config_value).lower() in ('null', 'none') and key in NULLABLE_PARAMS else config_value
        cli_value = cli_args_dict.get(key)
        if cli_value is not None:
            param_value = cli_value

        if key in LIST_PARAMS:
            param_value = _as_list(param_value) or ([] if key != 'regress_keys' else None)
        elif key in FLOAT_LIST_PARAMS:
            param_value = _as_list(param_value, cast=float)
        elif key in NULLABLE_PARAMS and param_value == '':
            param_value = None

        setattr(final_params, key, param_value)

    final_params.input_path = args.input_path
    final_params.output_dir = args.output_dir

    log.debug(f"Final parameters after merge: {vars(final_params)}")
    return final_params


def run_pipeline(params) -> int:
    """Runs the workflow; returns the process exit status."""
    if params.annotation_tool == 'celltypist' and not params.celltypist_model:
        log.error("Annotation tool is 'celltypist' but --celltypist-model was not provided.")
        return 1
    try:
        workflow = ScrnaSeqWorkflow(params)
        workflow.run()
    except Exception:
        log.critical("Pipeline execution failed. See previous logs for details.")
        return 1
    log.info("Workflow finished.")
    return 0


# --- Entry Point ---
def main(argv=None):
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    parser = create_parser()
    args = parser.parse_args(argv)
    final_params = load_and_merge_params(args)
    sys.exit(run_pipeline(final_params))


if __name__ == "__main__":
    main()
