"""
Quality control functions for the bulk RNA-seq pipeline.

Computes per-sample library metrics, generates QC plots (count
distributions, library sizes, detected genes, PCA, sample distances) and
handles sample dropping after QC review.
"""

import copy
import os

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist, squareform
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from .utils import check_sample_order, filter_min_total

# Consistent color palette for an arbitrary number of factor levels
_PALETTE = [
    '#1f77b4', '#2ca02c', '#d62728', '#ff7f0e', '#9467bd',
    '#8c564b', '#e377c2', '#7f7f7f', '#bcbd22', '#17becf',
]


def _level_color_map(levels):
    """Build a color map for an arbitrary number of factor levels."""
    return {level: _PALETTE[i % len(_PALETTE)] for i, level in enumerate(levels)}


def _factor_levels(sample_metadata, factor):
    column = sample_metadata[factor]
    if isinstance(column.dtype, pd.CategoricalDtype):
        return [l for l in column.cat.categories if l in set(column)]
    return list(pd.unique(column))


def library_metrics(counts):
    """
    Per-sample library size, detection and complexity.

    Returns
    -------
    pd.DataFrame
        Indexed by sample with columns:
        - library_size: total counts
        - detected_genes: genes with count > 0
        - pct_top1pct: share of reads in the top 1% most expressed genes
        - genes_for_50pct: genes needed to account for half the reads
    """
    n_top = max(1, int(np.ceil(len(counts) * 0.01)))
    rows = {}

    for sample in counts.columns:
        values = np.sort(counts[sample].values)[::-1]
        total = values.sum()
        if total > 0:
            cumulative = np.cumsum(values) / total
            genes_for_half = int(np.searchsorted(cumulative, 0.5) + 1)
            pct_top = values[:n_top].sum() / total * 100
        else:
            genes_for_half = 0
            pct_top = 0.0

        rows[sample] = {
            'library_size': int(total),
            'detected_genes': int((values > 0).sum()),
            'pct_top1pct': pct_top,
            'genes_for_50pct': genes_for_half,
        }

    return pd.DataFrame.from_dict(rows, orient='index')


def qc_de(data, output_suffix=''):
    """
    Generate quality control metrics and plots.

    Creates:
    - Boxplot of log2(count + 1) per sample
    - Library size barplot
    - Detected genes barplot
    - PCA plot on log counts, colored by each design factor
    - Sample-to-sample distance clustermap

    Parameters
    ----------
    data : dict
        Output from prep_de().
    output_suffix : str, optional
        Suffix to add to output filenames. Use this to distinguish QC runs.
        Example: output_suffix='_after_drop' creates '01_count_boxplot_after_drop.pdf'

    Returns
    -------
    pd.DataFrame
        Per-sample QC metrics (also saved to tables/qc_metrics.csv).

    Example
    -------
    >>> metrics = qc_de(data)
    >>> data = drop_samples(data, ['KO_BPA_3'])
    >>> qc_de(data, output_suffix='_after_drop')
    """

    print("\n" + "="*80)
    print("QUALITY CONTROL ANALYSIS")
    if output_suffix:
        print(f"Output suffix: {output_suffix}")
    print("="*80)

    counts = data['counts']
    sample_metadata = data['sample_metadata']
    output_dirs = data['output_dirs']

    check_sample_order(counts, sample_metadata)

    qc_dir = output_dirs['qc']
    samples = list(counts.columns)
    log_counts = np.log2(counts + 1)

    print(f"\nGenerating QC plots...")
    print(f"  Output directory: {qc_dir}")

    # =========================================================================
    # 1. LIBRARY METRICS
    # =========================================================================
    print(f"\n[1/5] Computing library metrics...")

    metrics = library_metrics(counts)
    metrics_path = os.path.join(output_dirs['tables'], f'qc_metrics{output_suffix}.csv')
    metrics.to_csv(metrics_path, index_label='sample')

    for sample, row in metrics.iterrows():
        print(f"    {sample}: {row['library_size']:,} reads, "
              f"{row['detected_genes']} genes detected, "
              f"{row['pct_top1pct']:.1f}% in top 1% genes")
    print(f"  > Saved: qc_metrics{output_suffix}.csv")

    # =========================================================================
    # 2. COUNT DISTRIBUTION BOXPLOT
    # =========================================================================
    print(f"\n[2/5] Creating count distribution boxplot...")

    fig, ax = plt.subplots(figsize=(max(8, len(samples) * 0.6), 6))

    sns.boxplot(data=log_counts, ax=ax, color='#1f77b4', fliersize=1)

    ax.set_title('Count Distribution per Sample', fontsize=14, fontweight='bold')
    ax.set_xlabel('Samples', fontsize=12)
    ax.set_ylabel('log2(count + 1)', fontsize=12)
    ax.set_xticks(np.arange(len(samples)))
    ax.set_xticklabels(samples, rotation=45, ha='right', fontsize=8)

    plt.tight_layout()
    plt.savefig(f"{qc_dir}/01_count_boxplot{output_suffix}.pdf", dpi=300, bbox_inches='tight')
    plt.close()

    print(f"  > Saved: 01_count_boxplot{output_suffix}.pdf")

    # =========================================================================
    # 3. LIBRARY SIZE AND DETECTION
    # =========================================================================
    print(f"\n[3/5] Creating library size and detection plots...")

    fig, axes = plt.subplots(1, 2, figsize=(max(12, len(samples) * 1.0), 5))

    for ax, column, label in [
        (axes[0], 'library_size', 'Total counts'),
        (axes[1], 'detected_genes', 'Genes with count > 0'),
    ]:
        ax.bar(samples, metrics.loc[samples, column], color='#2ca02c', edgecolor='black')
        ax.set_ylabel(label, fontsize=12)
        ax.set_xticks(np.arange(len(samples)))
        ax.set_xticklabels(samples, rotation=45, ha='right', fontsize=8)
        ax.grid(alpha=0.3, axis='y')

    axes[0].set_title('Library Size', fontsize=14, fontweight='bold')
    axes[1].set_title('Gene Detection', fontsize=14, fontweight='bold')

    plt.tight_layout()
    plt.savefig(f"{qc_dir}/02_library_size{output_suffix}.pdf", dpi=300, bbox_inches='tight')
    plt.close()

    print(f"  > Saved: 02_library_size{output_suffix}.pdf")

    # =========================================================================
    # 4. PCA PLOT
    # =========================================================================
    print(f"\n[4/5] Creating PCA plot...")

    for factor in sample_metadata.columns:
        _create_pca_plot(
            log_counts, sample_metadata, factor,
            title=f'PCA - log2 counts by {factor}',
            save_path=f"{qc_dir}/03_pca_{factor}{output_suffix}.pdf",
        )

    # =========================================================================
    # 5. SAMPLE DISTANCES
    # =========================================================================
    print(f"\n[5/5] Creating sample distance heatmap...")

    _create_distance_heatmap(
        log_counts, sample_metadata,
        title='Sample-to-Sample Distance (log2 counts)',
        save_path=f"{qc_dir}/04_sample_distances{output_suffix}.pdf",
    )

    # =========================================================================
    # SUMMARY
    # =========================================================================
    print("\n" + "="*80)
    print("QC COMPLETE")
    print("="*80)
    print(f"\nPlots saved to: {qc_dir}")
    print(f"  - 01_count_boxplot{output_suffix}.pdf")
    print(f"  - 02_library_size{output_suffix}.pdf")
    print(f"  - 03_pca_<factor>{output_suffix}.pdf")
    print(f"  - 04_sample_distances{output_suffix}.pdf")
    print("="*80 + "\n")

    return metrics


def _create_pca_plot(matrix, sample_metadata, factor, title, save_path, n_top=500):
    """Create and save a PCA scatter plot of samples colored by one factor."""
    # Most variable genes, as DESeq2's plotPCA does
    top = matrix.var(axis=1).sort_values(ascending=False).index[:n_top]
    pca_data_t = matrix.loc[top].T

    scaled_data = StandardScaler(with_std=False).fit_transform(pca_data_t)

    pca = PCA(n_components=min(2, *scaled_data.shape))
    pca_coords = pca.fit_transform(scaled_data)
    if pca_coords.shape[1] < 2:
        print(f"  Warning: Not enough samples/genes for a 2D PCA, skipping {factor}")
        return None

    levels = _factor_levels(sample_metadata, factor)
    color_map = _level_color_map(levels)
    labels = sample_metadata[factor].astype(str).values

    fig, ax = plt.subplots(figsize=(10, 8))

    for level in levels:
        mask = labels == str(level)
        ax.scatter(
            pca_coords[mask, 0],
            pca_coords[mask, 1],
            c=color_map[level],
            label=str(level),
            s=200,
            alpha=0.7,
            edgecolors='black',
            linewidth=2
        )

    for i, sample in enumerate(matrix.columns):
        ax.annotate(
            sample,
            (pca_coords[i, 0], pca_coords[i, 1]),
            xytext=(8, 8),
            textcoords='offset points',
            fontsize=9,
            color='black',
        )

    ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)', fontsize=12)
    ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.legend(title=factor, fontsize=11, loc='best')
    ax.grid(alpha=0.3)

    plt.tight_layout()
    plt.savefig(save_path, dpi=300, bbox_inches='tight')
    plt.close()

    print(f"  > Saved: {os.path.basename(save_path)}")
    print(f"    PC1 explains {pca.explained_variance_ratio_[0]*100:.1f}% of variance")
    print(f"    PC2 explains {pca.explained_variance_ratio_[1]*100:.1f}% of variance")

    return pca


def _create_distance_heatmap(matrix, sample_metadata, title, save_path):
    """Clustered heatmap of Euclidean distances between samples."""
    condensed = pdist(matrix.T.values, metric='euclidean')
    distances = pd.DataFrame(
        squareform(condensed), index=matrix.columns, columns=matrix.columns
    )
    link = linkage(condensed, method='average')

    col_colors = _factor_color_frame(sample_metadata)

    g = sns.clustermap(
        distances,
        cmap='Blues_r',
        row_linkage=link,
        col_linkage=link,
        col_colors=col_colors,
        cbar_kws={'label': 'Euclidean distance'},
        figsize=(10, 9),
    )
    g.ax_heatmap.set_title(title, fontsize=14, fontweight='bold', pad=20)
    g.savefig(save_path, dpi=300)
    plt.close('all')

    print(f"  > Saved: {os.path.basename(save_path)}")


def _factor_color_frame(sample_metadata):
    """Per-sample color for each factor, for clustermap column annotations."""
    frame = pd.DataFrame(index=sample_metadata.index)
    for factor in sample_metadata.columns:
        color_map = _level_color_map([str(l) for l in _factor_levels(sample_metadata, factor)])
        frame[factor] = sample_metadata[factor].astype(str).map(color_map)
    return frame


def drop_samples(data, samples_to_drop):
    """
    Remove problematic samples from the dataset after QC review.

    Use this after reviewing QC plots to exclude samples that:
    - Cluster away from replicates in PCA
    - Have unusually small libraries or low gene detection
    - Failed during library prep

    Parameters
    ----------
    data : dict
        Output from prep_de().
    samples_to_drop : list of str
        Sample ids to remove.

    Returns
    -------
    dict
        Updated data dictionary with samples removed from counts and
        sample metadata, and genes re-filtered on the remaining samples.

    Example
    -------
    >>> data = drop_samples(data, ['KO_BPA_3'])
    """

    counts = data['counts']
    sample_metadata = data['sample_metadata']
    config = data['config']

    print("\n" + "="*80)
    print("DROP SAMPLES (MANUAL QC)")
    print("="*80)

    cols_to_drop = [s for s in samples_to_drop if s in counts.columns]
    unknown = [s for s in samples_to_drop if s not in counts.columns]
    for sample in unknown:
        print(f"  Warning: Sample '{sample}' not found")

    if not cols_to_drop:
        print("\nNo valid samples to drop.")
        return data

    print(f"\nDropping {len(cols_to_drop)} sample(s):")
    for col in cols_to_drop:
        print(f"  - {col}")

    min_total = config.get('filtering', {}).get('min_total_count', 10)
    counts_updated = filter_min_total(counts.drop(columns=cols_to_drop), min_total)
    metadata_updated_samples = sample_metadata.drop(index=cols_to_drop)
    check_sample_order(counts_updated, metadata_updated_samples)

    metadata_updated = data['metadata'].copy()
    metadata_updated['n_genes'] = len(counts_updated)
    metadata_updated['n_samples'] = counts_updated.shape[1]
    metadata_updated['samples'] = list(counts_updated.columns)
    metadata_updated['samples_dropped'] = list(data['metadata'].get('samples_dropped', [])) + cols_to_drop

    data_updated = copy.copy(data)
    data_updated['counts'] = counts_updated
    data_updated['sample_metadata'] = metadata_updated_samples
    data_updated['config'] = copy.deepcopy(config)
    data_updated['metadata'] = metadata_updated
    data_updated.pop('vst', None)

    print("\n" + "="*80)
    print("SAMPLES DROPPED")
    print("="*80)
    print(f"\nRemaining samples: {metadata_updated['n_samples']}")
    print(f"Remaining genes:   {metadata_updated['n_genes']}")
    for factor in metadata_updated_samples.columns:
        print(f"  {factor}: {metadata_updated_samples[factor].value_counts().to_dict()}")

    print("\n" + "="*80)
    print("TIP: Save this updated data!")
    print("  save_data(data, 'results/data_after_qc.pkl')")
    print("="*80 + "\n")

    return data_updated
