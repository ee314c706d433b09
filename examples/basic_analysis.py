"""
Example script: the workflow steps called directly, without the CLI.
"""

import logging

from scrnaseq_workflow.data.loader import load_data, load_reference
from scrnaseq_workflow.analysis.qc import calculate_qc_metrics, filter_cells_qc, filter_genes_qc
from scrnaseq_workflow.analysis.preprocess import normalize_log1p, select_hvg, scale_data
from scrnaseq_workflow.analysis.dimred import reduce_dimensionality, choose_n_pcs, compute_embedding
from scrnaseq_workflow.analysis.clustering import perform_clustering
from scrnaseq_workflow.analysis.dge import find_marker_genes, get_marker_table
from scrnaseq_workflow.analysis.markers import score_markers, top_scored_markers
from scrnaseq_workflow.analysis.reference import annotate_reference


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    adata = load_data("path/to/filtered_gene_bc_matrices/hg19")
    calculate_qc_metrics(adata, mito_gene_prefix="MT-")
    filter_cells_qc(adata, min_genes=200, max_genes=2500, max_pct_mito=5.0)
    filter_genes_qc(adata, min_cells=3)

    normalize_log1p(adata, target_sum=1e4)
    adata.raw = adata
    select_hvg(adata, n_top_genes=2000, flavor="seurat")
    scale_data(adata, max_value=10)

    reduce_dimensionality(adata, n_comps=50, random_state=0)
    n_pcs = choose_n_pcs(adata)
    perform_clustering(adata, n_neighbors=10, n_pcs=n_pcs, resolution=0.5, method="louvain")
    compute_embedding(adata, method="tsne", n_pcs=n_pcs)

    find_marker_genes(adata, groupby="louvain")
    print(get_marker_table(adata, n_genes=5))

    scores = score_markers(adata, groupby="louvain", use_raw=True)
    for group in scores:
        print(group, top_scored_markers(scores, group, statistic="mean_auc", n=5))

    reference = load_reference("path/to/reference.h5ad", label_key="label")
    table = annotate_reference(adata, reference, label_key="label", key_added="ref")
    print(table[["labels", "pruned_labels", "delta_next"]].head())

    adata.write_h5ad("results.h5ad")


if __name__ == "__main__":
    main()
