"""
Visualization functions for the bulk RNA-seq pipeline.

Generates dispersion, PCA, PCA-loading, sample-distance, volcano and
z-score heatmap plots from the VST matrix and differential expression
results.
"""

import os

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from adjustText import adjust_text
from sklearn.decomposition import PCA

from .engines import PyDESeq2Engine
from .qc import _create_distance_heatmap, _create_pca_plot, _factor_color_frame
from .utils import check_sample_order


def pca_loadings(vst, n_top=500, n_components=2):
    """
    Gene loadings of the first principal components of the VST matrix.

    Returns
    -------
    pd.DataFrame
        Genes x ['PC1', 'PC2', ...], restricted to the n_top most variable genes.
    """
    top = vst.var(axis=1).sort_values(ascending=False).index[:n_top]
    centered = vst.loc[top].T - vst.loc[top].T.mean(axis=0)

    pca = PCA(n_components=min(n_components, *centered.shape))
    pca.fit(centered.values)

    return pd.DataFrame(
        pca.components_.T,
        index=top,
        columns=[f'PC{i + 1}' for i in range(pca.n_components_)],
    )


def zscore_rows(matrix):
    """Row-wise z-scores; rows with zero variance become 0."""
    std = matrix.std(axis=1, ddof=1).replace(0, np.nan)
    z = matrix.sub(matrix.mean(axis=1), axis=0).div(std, axis=0)
    return z.fillna(0.0)


def _plot_dispersions(dispersions, save_path):
    fig, ax = plt.subplots(figsize=(9, 7))

    x = dispersions['baseMean'].clip(lower=1e-1)
    ax.scatter(x, dispersions['genewise'], s=4, c='black', alpha=0.4, label='gene-wise')
    ax.scatter(x, dispersions['final'], s=4, c='#1f77b4', alpha=0.6, label='final')
    order = np.argsort(x.values)
    ax.plot(x.values[order], dispersions['fitted'].values[order], c='#d62728', lw=2, label='fitted')

    ax.set_xscale('log')
    ax.set_yscale('log')
    ax.set_xlabel('Mean of normalized counts', fontsize=12)
    ax.set_ylabel('Dispersion', fontsize=12)
    ax.set_title('Dispersion Estimates', fontsize=14, fontweight='bold')
    ax.legend(fontsize=10, loc='best')
    ax.grid(alpha=0.3)

    plt.tight_layout()
    plt.savefig(save_path, dpi=300, bbox_inches='tight')
    plt.close()


def _plot_loadings(loadings, save_path, top_n=15):
    fig, axes = plt.subplots(1, min(2, loadings.shape[1]), figsize=(14, 7), squeeze=False)

    for ax, pc in zip(axes[0], loadings.columns[:2]):
        top = loadings[pc].abs().sort_values(ascending=False).index[:top_n]
        values = loadings.loc[top, pc].sort_values()
        colors = ['#3498DB' if v < 0 else '#E74C3C' for v in values]
        ax.barh(values.index.astype(str), values.values, color=colors, edgecolor='white')
        ax.axvline(0, color='black', lw=0.8)
        ax.set_title(f'{pc} Loadings (top {top_n})', fontsize=14, fontweight='bold')
        ax.set_xlabel('Loading', fontsize=12)
        ax.tick_params(axis='y', labelsize=8)

    plt.tight_layout()
    plt.savefig(save_path, dpi=300, bbox_inches='tight')
    plt.close()


def _plot_volcano(results, name, alpha, fc_thresh, gene_labels, save_path, n_labels=20):
    log2fc = results['log2FoldChange']
    padj = results['padj'].fillna(1.0)
    neg_log10 = -np.log10(padj.replace(0, 1e-300))

    significant = (padj < alpha) & (log2fc.abs() > fc_thresh)
    categories = np.where(significant & (log2fc > 0), 'up',
                          np.where(significant & (log2fc < 0), 'down', 'not_significant'))

    fig, ax = plt.subplots(figsize=(10, 8))

    for category, color, label in [
        ('not_significant', '#CCCCCC', 'Not Significant'),
        ('down', '#3498DB', 'Down'),
        ('up', '#E74C3C', 'Up'),
    ]:
        mask = categories == category
        ax.scatter(
            log2fc[mask],
            neg_log10[mask],
            c=color,
            label=f'{label} ({mask.sum()})',
            s=12,
            alpha=0.6,
            edgecolors='none'
        )

    ax.axhline(-np.log10(alpha), color='black', linestyle='--',
               linewidth=1, alpha=0.5, label=f'padj = {alpha}')
    ax.axvline(fc_thresh, color='black', linestyle='--', linewidth=1, alpha=0.5)
    ax.axvline(-fc_thresh, color='black', linestyle='--', linewidth=1, alpha=0.5)

    top = results[significant].assign(_score=neg_log10[significant]).nlargest(n_labels, '_score')
    if len(top) > 0:
        texts = [
            ax.text(row['log2FoldChange'], row['_score'],
                    gene_labels.get(row['gene'], row['gene']), fontsize=8, alpha=0.8)
            for _, row in top.iterrows()
        ]
        adjust_text(texts, ax=ax, arrowprops=dict(arrowstyle='-', color='black', lw=0.5))

    ax.set_xlabel('Log2 Fold Change', fontsize=12, fontweight='bold')
    ax.set_ylabel('-Log10 Adjusted P-value', fontsize=12, fontweight='bold')
    ax.set_title(f'Volcano Plot: {name}', fontsize=14, fontweight='bold')
    ax.legend(loc='lower right', fontsize=10)
    ax.grid(alpha=0.3)

    plt.tight_layout()
    plt.savefig(save_path, dpi=300, bbox_inches='tight')
    plt.close()


def _plot_zscore_heatmap(vst, sample_metadata, save_path):
    z = zscore_rows(vst)

    g = sns.clustermap(
        z,
        cmap='RdBu_r',
        center=0,
        vmin=-3,
        vmax=3,
        col_colors=_factor_color_frame(sample_metadata),
        cbar_kws={'label': 'Row z-score (VST)'},
        yticklabels=False,
        xticklabels=True,
        figsize=(12, 14),
        row_cluster=len(z) > 1,
        col_cluster=z.shape[1] > 1,
        method='average',
        metric='euclidean'
    )

    g.ax_heatmap.set_title(f'All {len(z)} Filtered Genes', fontsize=14, fontweight='bold', pad=20)
    g.ax_heatmap.set_xlabel('Samples', fontsize=12)
    g.ax_heatmap.set_ylabel('Genes', fontsize=12)
    g.ax_heatmap.set_xticklabels(g.ax_heatmap.get_xticklabels(), rotation=45, ha='right', fontsize=8)

    g.savefig(save_path, dpi=300)
    plt.close('all')


def viz_de(data, engine=None, seed=None, n_labels=20):
    """
    Create visualization plots for differential expression results.

    Creates:
    - Dispersion plot
    - PCA on VST counts (one plot per design factor) and PCA loadings
    - Sample-to-sample distance clustermap on VST counts
    - Volcano plot per contrast
    - Clustered z-score heatmap of all filtered genes, annotated by factor

    Parameters
    ----------
    data : dict
        Output from stat_de() (must also carry 'vst' from vst_de()).
    engine : object, optional
        Engine with dispersions(model). Defaults to PyDESeq2Engine.
    seed : int, optional
        Random seed for layout (default: statistics.seed or 42).
    n_labels : int, optional
        Number of genes labeled on each volcano plot (default: 20).

    Returns
    -------
    list of str
        Paths of the figures written to figures/viz/.

    Example
    -------
    >>> data = stat_de(vst_de(data))
    >>> viz_de(data)
    """

    print("\n" + "="*80)
    print("CREATING VISUALIZATIONS")
    print("="*80)

    config = data['config']
    vst = data['vst']
    sample_metadata = data['sample_metadata']
    stats_params = data['stats_params']
    viz_dir = data['output_dirs']['viz']
    os.makedirs(viz_dir, exist_ok=True)

    # VST may cover genes later re-filtered out in stat_de
    vst = vst.loc[vst.index.intersection(data['counts'].index), data['counts'].columns]
    check_sample_order(vst, sample_metadata)

    if seed is None:
        seed = config.get('statistics', {}).get('seed', 42)
    np.random.seed(seed)

    if engine is None:
        engine = PyDESeq2Engine()

    gene_labels = {}
    if 'gene_annotation' in data and 'name' in data['gene_annotation'].columns:
        names = data['gene_annotation']['name']
        gene_labels = {g: n for g, n in names.items() if isinstance(n, str) and n}

    print(f"\nOutput directory: {viz_dir}")
    saved = []

    # =========================================================================
    # 1. DISPERSION PLOT
    # =========================================================================
    print(f"\n[1/5] Creating dispersion plot...")

    path = os.path.join(viz_dir, 'dispersion.pdf')
    _plot_dispersions(engine.dispersions(data['model']), path)
    saved.append(path)
    print(f"  > Saved: dispersion.pdf")

    # =========================================================================
    # 2. PCA AND LOADINGS
    # =========================================================================
    print(f"\n[2/5] Creating PCA plots...")

    for factor in sample_metadata.columns:
        path = os.path.join(viz_dir, f'pca_vst_{factor}.pdf')
        if _create_pca_plot(vst, sample_metadata, factor,
                            title=f'PCA - VST counts by {factor}', save_path=path) is not None:
            saved.append(path)

    loadings = pca_loadings(vst)
    loadings.to_csv(os.path.join(data['output_dirs']['tables'], 'pca_loadings.csv'), index_label='gene_id')
    path = os.path.join(viz_dir, 'pca_loadings.pdf')
    _plot_loadings(loadings.rename(index=lambda g: gene_labels.get(g, g)), path)
    saved.append(path)
    print(f"  > Saved: pca_loadings.pdf")

    # =========================================================================
    # 3. SAMPLE DISTANCES
    # =========================================================================
    print(f"\n[3/5] Creating sample distance heatmap...")

    path = os.path.join(viz_dir, 'sample_distances_vst.pdf')
    _create_distance_heatmap(vst, sample_metadata,
                             title='Sample-to-Sample Distance (VST)', save_path=path)
    saved.append(path)

    # =========================================================================
    # 4. VOLCANO PLOTS
    # =========================================================================
    print(f"\n[4/5] Creating volcano plots...")

    for name, results in data['de_results'].items():
        path = os.path.join(viz_dir, f'volcano_{name}.pdf')
        _plot_volcano(results, name, stats_params['alpha'], stats_params['log2fc_threshold'],
                      gene_labels, path, n_labels=n_labels)
        saved.append(path)
        print(f"  > Saved: volcano_{name}.pdf")

    # =========================================================================
    # 5. Z-SCORE HEATMAP
    # =========================================================================
    print(f"\n[5/5] Creating z-score heatmap of all filtered genes...")

    path = os.path.join(viz_dir, 'heatmap_zscore_all_genes.pdf')
    _plot_zscore_heatmap(vst, sample_metadata, path)
    saved.append(path)
    print(f"  > Saved: heatmap_zscore_all_genes.pdf")

    # =========================================================================
    # SUMMARY
    # =========================================================================
    print("\n" + "="*80)
    print("VISUALIZATION COMPLETE")
    print("="*80)
    print(f"\nPlots saved to: {viz_dir}")
    for path in saved:
        print(f"  - {os.path.basename(path)}")
    print("\n" + "="*80 + "\n")

    return saved
