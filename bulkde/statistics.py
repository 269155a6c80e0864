"""
Differential expression functions for the bulk RNA-seq pipeline.

Fits one negative-binomial model per run under the configured design and
extracts a result table per requested contrast.
"""

import copy
import os

import pandas as pd

from .design import check_contrast, coerce_factors, parse_formula, validate_design
from .engines import PyDESeq2Engine
from .errors import ConfoundedContrastError, contrast_name
from .utils import check_sample_order, filter_min_total, save_data, write_results


def _default_engine(config):
    stats_config = config.get('statistics', {})
    return PyDESeq2Engine(
        alpha=stats_config.get('alpha', 0.05),
        n_cpus=stats_config.get('n_cpus', 1),
        refit_cooks=stats_config.get('refit_cooks', True),
    )


def format_results(results, counts_index):
    """
    Attach the gene column and order by adjusted p-value (NaN last).

    Every gene in counts_index gets exactly one row.
    """
    table = results.reindex(counts_index).copy()
    table['gene'] = table.index.astype(str)
    table = table.sort_values('padj', ascending=True, na_position='last', kind='mergesort')
    return table.reset_index(drop=True)


def stat_de(data, engine=None, contrasts=None, alpha=None, log2fc_threshold=None):
    """
    Run differential expression for each configured contrast.

    Steps:
    - Re-applies the minimum total count filter
    - Coerces design factors to categoricals with the configured levels
    - Validates the design (levels, rank, residual df)
    - Rejects contrasts that the design cannot separate
    - Fits the model once and extracts one result table per contrast

    Parameters
    ----------
    data : dict
        Output from prep_de() or vst_de().
    engine : object, optional
        DE engine with fit() and results(). Defaults to PyDESeq2Engine.
    contrasts : list, optional
        [factor, level, reference] triples. Defaults to config['contrasts'].
    alpha : float, optional
        Adjusted p-value threshold (default: statistics.alpha or 0.05).
    log2fc_threshold : float, optional
        Absolute log2 fold change threshold for up/down counts
        (default: statistics.log2fc_threshold or 1.0).

    Returns
    -------
    dict
        Updated data dictionary with:
        - 'model': fitted engine model
        - 'de_results': contrast name -> result DataFrame
        - 'skipped_contrasts': contrast name -> reason
        - 'stats_params': parameters used for analysis

    Example
    -------
    >>> data = vst_de(data)
    >>> data = stat_de(data)
    >>> data['de_results']['knockout_status_KO_vs_WT'].head()
    """

    print("\n" + "="*80)
    print("DIFFERENTIAL EXPRESSION")
    print("="*80)

    config = data['config']
    stats_config = config.get('statistics', {})
    formula = config['design']['formula']
    factor_levels = config['design']['factors']

    alpha = stats_config.get('alpha', 0.05) if alpha is None else alpha
    if log2fc_threshold is None:
        log2fc_threshold = stats_config.get('log2fc_threshold', 1.0)
    if contrasts is None:
        contrasts = config.get('contrasts', [])
    if engine is None:
        engine = _default_engine(config)

    print(f"\nDesign: {formula}")
    print(f"Contrasts: {len(contrasts)}")
    print(f"\nThresholds:")
    print(f"  Adjusted p-value: {alpha}")
    print(f"  Log2 FC: {log2fc_threshold}")

    # =========================================================================
    # 1. RE-FILTER AND CHECK SAMPLE ORDER
    # =========================================================================
    print(f"\n[1/5] Preparing counts...")

    min_total = config.get('filtering', {}).get('min_total_count', 10)
    counts = filter_min_total(data['counts'], min_total)
    if len(counts) < len(data['counts']):
        print(f"  Warning: {len(data['counts']) - len(counts)} genes below {min_total} total counts removed")

    check_sample_order(counts, data['sample_metadata'])
    print(f"  > {counts.shape[0]} genes x {counts.shape[1]} samples")

    # =========================================================================
    # 2. COERCE FACTORS AND VALIDATE DESIGN
    # =========================================================================
    print(f"\n[2/5] Validating design...")

    design_factors = parse_formula(formula)
    sample_metadata = coerce_factors(
        data['sample_metadata'],
        {f: factor_levels.get(f) for f in design_factors},
    )
    check_sample_order(counts, sample_metadata)

    X = validate_design(sample_metadata, formula)
    print(f"  > {X.shape[1]} parameters, {X.shape[0] - X.shape[1]} residual df")
    for factor in design_factors:
        print(f"    {factor}: {list(sample_metadata[factor].cat.categories)}")

    # =========================================================================
    # 3. CHECK CONTRASTS
    # =========================================================================
    print(f"\n[3/5] Checking contrasts...")

    valid_contrasts = []
    skipped = {}
    for contrast in contrasts:
        name = contrast_name(contrast)
        try:
            check_contrast(sample_metadata, formula, contrast)
        except ConfoundedContrastError as e:
            skipped[name] = e.reason
            print(f"  Warning: skipping {name}: {e.reason}")
            continue
        valid_contrasts.append([str(c) for c in contrast])
        print(f"  {name}: ok")

    # =========================================================================
    # 4. FIT MODEL
    # =========================================================================
    print(f"\n[4/5] Fitting model (once, shared across contrasts)...")

    # Formula is handed to the engine here, at fit time
    model = engine.fit(counts, sample_metadata, formula)
    print(f"  > Model fit for {counts.shape[0]} genes")

    # =========================================================================
    # 5. EXTRACT AND SAVE RESULTS
    # =========================================================================
    print(f"\n[5/5] Extracting results...")

    output_dir = data['output_dirs']['tables']
    os.makedirs(output_dir, exist_ok=True)

    de_results = {}
    summary_data = []
    for contrast in valid_contrasts:
        name = contrast_name(contrast)
        results = format_results(engine.results(model, contrast), counts.index)
        de_results[name] = results

        path = os.path.join(output_dir, f'de_{name}.csv')
        write_results(results, path)

        sig = results['padj'] < alpha
        n_up = int((sig & (results['log2FoldChange'] > log2fc_threshold)).sum())
        n_down = int((sig & (results['log2FoldChange'] < -log2fc_threshold)).sum())

        print(f"  {name}: {int(sig.sum())} genes padj < {alpha} "
              f"({n_up} up, {n_down} down at |log2FC| > {log2fc_threshold})")
        print(f"    > Saved: de_{name}.csv")

        summary_data.append({
            'Contrast': name,
            'Significant': int(sig.sum()),
            'Up': n_up,
            'Down': n_down,
            'Alpha': alpha,
            'Log2FC_threshold': log2fc_threshold,
        })

    for name, reason in skipped.items():
        summary_data.append({'Contrast': name, 'Skipped': reason})

    summary_df = pd.DataFrame(summary_data)
    summary_df.to_csv(os.path.join(output_dir, 'de_summary.csv'), index=False)
    print(f"  > Saved: de_summary.csv")

    # =========================================================================
    # 6. UPDATE DATA DICTIONARY
    # =========================================================================
    data_updated = copy.copy(data)
    data_updated['counts'] = counts
    data_updated['sample_metadata'] = sample_metadata
    data_updated['model'] = model
    data_updated['de_results'] = de_results
    data_updated['skipped_contrasts'] = skipped
    data_updated['stats_params'] = {
        'formula': formula,
        'contrasts': valid_contrasts,
        'alpha': alpha,
        'log2fc_threshold': log2fc_threshold,
    }

    # Auto-save
    output_path = os.path.join(config['data_paths']['output_dir'], 'data_after_stat.pkl')
    save_data(data_updated, output_path)

    print("\n" + "="*80)
    print("DIFFERENTIAL EXPRESSION COMPLETE")
    print("="*80)
    print(f"\nContrasts tested:  {len(de_results)}")
    print(f"Contrasts skipped: {len(skipped)}")
    print("\n" + "="*80)
    print("Next step: viz_de() and enrich_de()")
    print("="*80 + "\n")

    return data_updated
