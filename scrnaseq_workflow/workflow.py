# scrnaseq_workflow/workflow.py

import logging
from pathlib import Path
import scanpy as sc

from .data.loader import load_data, load_reference
from .data.stages import STAGES, previous_stage, save_stage, load_stage
from .analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc
from .analysis.preprocess import normalize_log1p, normalize_pearson_residuals, select_hvg, scale_data
from .analysis.dimred import reduce_dimensionality, choose_n_pcs, compute_embedding
from .analysis.clustering import perform_clustering, resolution_sweep
from .analysis.dge import find_marker_genes, get_marker_table
from .analysis.markers import score_markers
from .analysis.annotation import (
    annotate_cell_types,
    annotate_celltypist,
    load_marker_dict,
    score_gene_sets,
)
from .analysis.reference import annotate_reference
from .visualization.plotting import (
    plot_embedding,
    plot_qc_violin,
    plot_pca_elbow,
    plot_rank_genes_groups_dotplot,
    plot_rank_genes_groups_stacked_violin,
    plot_rank_genes_groups_heatmap,
    plot_reference_scores,
    plot_label_composition,
)

log = logging.getLogger(__name__)

ANNOTATION_TOOLS = ('marker_overlap', 'celltypist', 'reference', 'none')


class ScrnaSeqWorkflow:
    """
    Orchestrates the staged scRNA-seq analysis.

    Stages run in the order of `STAGES`. With `save_intermediates` every stage
    result is written to `<output_dir>/<prefix>_<stage>.h5ad`; with
    `start_from` the run loads the previous stage's file instead of the input
    and continues from there.
    """

    def __init__(self, params):
        required_attrs = ['input_path', 'output_dir', 'output_prefix']
        for attr in required_attrs:
            if not hasattr(params, attr):
                raise ValueError(f"Initialization failed: Missing required parameter '{attr}'.")

        self.params = params
        self.adata = None
        self.output_dir = Path(self.params.output_dir)
        self.prefix = self.params.output_prefix
        self.cluster_key = self.params.cluster_method
        self.n_pcs = None
        self.annotation_result_key = None

        start_from = getattr(params, 'start_from', None)
        if start_from is not None and start_from not in STAGES:
            raise ValueError(f"Unknown start stage '{start_from}'. Valid stages: {', '.join(STAGES)}.")
        self.start_from = start_from or STAGES[0]

        tool = str(params.annotation_tool).lower() if params.annotation_tool else 'none'
        if tool not in ANNOTATION_TOOLS:
            raise ValueError(f"Unknown annotation tool '{params.annotation_tool}'. Use one of {ANNOTATION_TOOLS}.")
        self.annotation_tool = tool
        if tool == 'marker_overlap' and not params.marker_file:
            log.warning("Annotation tool set to 'marker_overlap' but no marker file given. Annotation will be skipped.")
        if tool == 'reference' and not params.reference_path:
            raise ValueError("Annotation tool 'reference' requires a reference path.")

        self._stage_funcs = {
            'qc': self._run_qc,
            'normalize': self._normalize,
            'hvg': self._select_hvg,
            'scale': self._scale,
            'pca': self._run_pca,
            'cluster': self._cluster,
            'embed': self._embed,
            'markers': self._find_markers,
            'annotate': self._annotate,
        }
        log.info("ScrnaSeqWorkflow initialized.")
        log.debug(f"Workflow parameters: {vars(self.params)}")

    def run(self):
        """Executes the pipeline from `start_from` to the end and returns the final AnnData."""
        log.info(f"Starting workflow run: {self.prefix} (from stage '{self.start_from}')")
        try:
            self._setup_environment()
            self._load_input()
            for stage in STAGES[STAGES.index(self.start_from):]:
                log.info(f"--- Stage '{stage}' ---")
                self._stage_funcs[stage]()
                if self.params.save_intermediates:
                    save_stage(self.adata, self.output_dir, self.prefix, stage)
            self._plot_results()
            self._save_results()
            log.info(f"Workflow run '{self.prefix}' completed successfully.")
            return self.adata
        except Exception as e:
            log.error(f"Workflow run '{self.prefix}' failed: {e}", exc_info=True)
            raise

    def _setup_environment(self):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        sc.settings.figdir = str(self.output_dir)
        sc.settings.verbosity = 3
        log.info(f"Output directory set to: {self.output_dir}")

    def _load_input(self):
        prior = previous_stage(self.start_from)
        if prior is None:
            log.info("Loading input data...")
            self.adata = load_data(self.params.input_path)
        else:
            log.info(f"Resuming from stage '{self.start_from}': loading saved result of '{prior}'.")
            self.adata = load_stage(self.output_dir, self.prefix, prior)
            self.n_pcs = self.adata.uns.get('workflow', {}).get('n_pcs')
        log.info(f"Data shape: {self.adata.shape}")

    def _plot_kwargs(self):
        return dict(output_dir=str(self.output_dir), file_format=self.params.plot_format, dpi=self.params.plot_dpi)

    def _record(self, **values):
        info = dict(self.adata.uns.get('workflow', {}))
        info.update(values)
        self.adata.uns['workflow'] = info

    # --- Stages ---

    def _run_qc(self):
        calculate_qc_metrics(self.adata, mito_gene_prefix=self.params.mito_prefix, inplace=True)
        if self.params.run_qc_violin and self.params.qc_violin_keys:
            plot_qc_violin(
                self.adata, keys=self.params.qc_violin_keys,
                file_prefix=f"{self.prefix}_qc_violin_prefilt", **self._plot_kwargs()
            )

        n_obs_before, n_vars_before = self.adata.shape
        filter_cells_qc(
            self.adata, min_genes=self.params.min_genes, max_genes=self.params.max_genes,
            min_counts=self.params.min_counts, max_counts=self.params.max_counts,
            max_pct_mito=self.params.max_pct_mito, inplace=True
        )
        if self.adata.n_obs == 0:
            raise ValueError("All cells filtered out!")
        filter_genes_qc(self.adata, min_cells=self.params.min_cells, inplace=True)
        log.info(
            f"QC complete. Kept {self.adata.n_obs} / {n_obs_before} cells and "
            f"{self.adata.n_vars} / {n_vars_before} genes."
        )

        if self.params.run_qc_violin and self.params.qc_violin_keys:
            plot_qc_violin(
                self.adata, keys=self.params.qc_violin_keys,
                file_prefix=f"{self.prefix}_qc_violin_postfilt", **self._plot_kwargs()
            )

    def _normalize(self):
        method = self.params.normalization
        if method == 'log1p':
            normalize_log1p(self.adata, target_sum=self.params.target_sum, inplace=True)
            # All genes, log-normalized: used by markers and annotation after HVG subsetting
            self.adata.raw = self.adata
        elif method == 'pearson_residuals':
            lognorm = normalize_log1p(self.adata, target_sum=self.params.target_sum, inplace=False)
            normalize_pearson_residuals(self.adata, theta=self.params.pearson_theta, inplace=True)
            self.adata.raw = lognorm
        else:
            raise ValueError(f"Unknown normalization '{method}'. Use 'log1p' or 'pearson_residuals'.")
        log.info(f".raw set to log-normalized expression of all {self.adata.raw.n_vars} genes.")

    def _select_hvg(self):
        n_vars_before = self.adata.n_vars
        select_hvg(
            self.adata, n_top_genes=self.params.n_hvgs, flavor=self.params.hvg_flavor,
            subset=True, inplace=True
        )
        log.info(f"Kept {self.adata.n_vars} / {n_vars_before} HVGs.")

    def _scale(self):
        if self.adata.uns.get('normalization', {}).get('method') == 'pearson_residuals':
            log.info("Pearson residuals are already standardized. Skipping scaling.")
            return
        scale_data(
            self.adata, max_value=self.params.scale_max_value,
            regress_keys=self.params.regress_keys, inplace=True
        )

    def _run_pca(self):
        reduce_dimensionality(
            self.adata, n_comps=self.params.n_pca_comps,
            random_state=self.params.random_seed, inplace=True
        )
        n_computed = self.adata.obsm['X_pca'].shape[1]
        if self.params.n_pcs:
            self.n_pcs = min(int(self.params.n_pcs), n_computed)
        else:
            self.n_pcs = choose_n_pcs(self.adata)
        self._record(n_pcs=self.n_pcs)
        log.info(f"Using {self.n_pcs} principal components downstream.")
        try:
            plot_pca_elbow(
                self.adata, n_pcs=n_computed, chosen_n_pcs=self.n_pcs,
                file_prefix=f"{self.prefix}_pca_elbow", **self._plot_kwargs()
            )
        except Exception as e:
            log.error(f"Failed generating PCA elbow plot: {e}", exc_info=True)

    def _cluster(self):
        if 'X_pca' not in self.adata.obsm:
            raise RuntimeError("PCA key 'X_pca' not found.")
        perform_clustering(
            self.adata, use_rep='X_pca', n_neighbors=self.params.n_neighbors,
            resolution=self.params.resolution, random_state=self.params.random_seed,
            method=self.params.cluster_method, key_added=self.cluster_key,
            n_pcs=self.n_pcs, calculate_umap=False, inplace=True
        )
        if self.params.resolution_sweep:
            summary = resolution_sweep(
                self.adata, self.params.resolution_sweep, method=self.params.cluster_method,
                random_state=self.params.random_seed, key_prefix=self.cluster_key
            )
            summary_path = self.output_dir / f"{self.prefix}_resolution_sweep.csv"
            summary.to_csv(summary_path, index=False)
            log.info(f"Resolution sweep summary written to {summary_path}")

    def _embed(self):
        methods = [m for m in self.params.embeddings if not (m == 'umap' and self.params.skip_umap)]
        if not methods:
            log.info("No embeddings requested.")
            return
        for method in methods:
            compute_embedding(
                self.adata, method=method, n_pcs=self.n_pcs, random_state=self.params.random_seed,
                perplexity=self.params.tsne_perplexity, inplace=True
            )

    def _find_markers(self):
        if self.cluster_key not in self.adata.obs:
            log.warning(f"Cluster key '{self.cluster_key}' not found. Skipping marker detection.")
            return
        if self.adata.obs[self.cluster_key].nunique() < 2:
            log.warning("Only one cluster found. Skipping marker detection.")
            return
        find_marker_genes(
            self.adata, groupby=self.cluster_key, method=self.params.dge_method,
            corr_method=self.params.dge_corr_method, use_raw=self.params.dge_use_raw,
            key_added=self.params.dge_key
        )
        table = get_marker_table(
            self.adata, key=self.params.dge_key, pval_cutoff=self.params.dge_pval_cutoff,
            min_logfc=self.params.dge_min_logfc
        )
        table_path = self.output_dir / f"{self.prefix}_markers.csv"
        table.to_csv(table_path, index=False)
        log.info(f"Marker table ({len(table)} rows) written to {table_path}")

        if self.params.score_markers:
            score_markers(
                self.adata, groupby=self.cluster_key,
                use_raw=self.adata.raw is not None, key_added='marker_scores'
            )

    def _annotate(self):
        tool = self.annotation_tool
        self.annotation_result_key = None
        log.info(f"Annotating cell types using tool: '{tool}'")

        if tool == 'marker_overlap':
            marker_dict = load_marker_dict(self.params.marker_file)
            if not marker_dict:
                log.warning("No valid marker dictionary loaded. Skipping marker overlap annotation.")
            elif self.params.dge_key not in self.adata.uns:
                log.warning(f"DGE key '{self.params.dge_key}' not found. Skipping marker overlap annotation.")
            else:
                annotate_cell_types(
                    self.adata, marker_dict, groupby=self.cluster_key, rank_key=self.params.dge_key,
                    annotation_key=self.params.annotation_key, method=self.params.annotation_method
                )
                self.annotation_result_key = self.params.annotation_key

        elif tool == 'celltypist':
            voting = bool(self.params.celltypist_majority_voting) and self.cluster_key in self.adata.obs
            try:
                annotate_celltypist(
                    self.adata, model_name=self.params.celltypist_model, majority_voting=voting,
                    output_key_prefix=self.params.annotation_key,
                    cluster_key_for_voting=self.cluster_key if voting else None
                )
            except ImportError as e:
                log.error(f"CellTypist import failed: {e}.")
            else:
                suffix = 'majority_voting' if voting else 'predicted_labels'
                self.annotation_result_key = f"{self.params.annotation_key}_{suffix}"

        elif tool == 'reference':
            reference = load_reference(self.params.reference_path, label_key=self.params.reference_label_key)
            annotate_reference(
                self.adata, reference, label_key=self.params.reference_label_key,
                groupby=self.cluster_key if self.params.reference_by_cluster else None,
                fine_tune=self.params.reference_fine_tune, quantile=self.params.reference_quantile,
                nmads=self.params.reference_nmads, key_added=self.params.annotation_key
            )
            self.annotation_result_key = f"{self.params.annotation_key}_labels"

        else:
            log.info("Annotation tool set to 'none'. Skipping cell type annotation.")

        if self.params.gene_set_file:
            gene_sets = load_marker_dict(self.params.gene_set_file)
            if gene_sets:
                score_gene_sets(self.adata, gene_sets, random_state=self.params.random_seed)
            else:
                log.warning("No valid gene sets loaded. Skipping gene-set scoring.")

        if self.annotation_result_key:
            self._record(annotation_key=self.annotation_result_key)

    # --- Outputs ---

    def _plot_results(self):
        log.info("Generating plots...")
        plot_kwargs = self._plot_kwargs()
        annotation_key = self.annotation_result_key or self.adata.uns.get('workflow', {}).get('annotation_key')

        features = list(self.params.plot_umap_color)
        if self.cluster_key in self.adata.obs and self.cluster_key not in features:
            features.insert(0, self.cluster_key)
        if annotation_key and annotation_key in self.adata.obs and annotation_key not in features:
            features.append(annotation_key)
        raw_genes = self.adata.raw.var_names if self.adata.raw is not None else []
        missing = [f for f in features if f not in self.adata.obs and f not in self.adata.var_names and f not in raw_genes]
        if missing:
            log.warning(f"Embedding features not found in .obs, .var_names or .raw: {missing}")
        features = [f for f in features if f not in missing]

        for basis in ('umap', 'tsne'):
            if f"X_{basis}" in self.adata.obsm and features:
                try:
                    plot_embedding(
                        self.adata, color_by=features, basis=basis,
                        file_prefix=f"{self.prefix}_{basis}", **plot_kwargs
                    )
                except Exception as e:
                    log.error(f"Failed generating {basis} plots: {e}", exc_info=True)

        if self.params.run_dge_plots and self.params.dge_key in self.adata.uns:
            dge_plot_kwargs = dict(
                key=self.params.dge_key, n_genes=self.params.dge_n_genes,
                groupby=self.cluster_key, use_raw=self.params.dge_use_raw, **plot_kwargs
            )
            plot_rank_genes_groups_dotplot(self.adata, file_prefix=f"{self.prefix}_dge_dotplot", **dge_plot_kwargs)
            plot_rank_genes_groups_stacked_violin(
                self.adata, file_prefix=f"{self.prefix}_dge_violin", **dge_plot_kwargs
            )
            if self.params.run_dge_heatmap:
                plot_rank_genes_groups_heatmap(
                    self.adata, file_prefix=f"{self.prefix}_dge_heatmap", show_gene_labels=True, **dge_plot_kwargs
                )
        elif not self.params.run_dge_plots:
            log.info("Skipping DGE plots as requested.")

        if self.annotation_tool == 'reference' and annotation_key:
            try:
                plot_reference_scores(
                    self.adata, key=self.params.annotation_key,
                    file_prefix=f"{self.prefix}_reference_scores", **plot_kwargs
                )
            except Exception as e:
                log.error(f"Failed generating reference score heatmap: {e}", exc_info=True)
        if annotation_key and annotation_key in self.adata.obs and self.cluster_key in self.adata.obs:
            try:
                plot_label_composition(
                    self.adata, groupby=self.cluster_key, label_key=annotation_key,
                    file_prefix=f"{self.prefix}_label_composition", **plot_kwargs
                )
            except Exception as e:
                log.error(f"Failed generating label composition heatmap: {e}", exc_info=True)
        log.info("Plot generation complete.")

    def _save_results(self):
        final_adata_path = self.output_dir / f"{self.prefix}_final.h5ad"
        for col in self.adata.obs.select_dtypes(include='category').columns:
            if len(self.adata.obs[col].cat.categories) > 500:
                log.warning(f"Obs column '{col}' has >500 categories.")
        try:
            self.adata.write_h5ad(final_adata_path, compression="gzip")
        except Exception as e:
            log.error(f"Failed to save final AnnData: {e}", exc_info=True)
            raise
        log.info(f"Final AnnData object saved to: {final_adata_path}")
