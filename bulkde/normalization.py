"""
Variance-stabilizing transformation for the bulk RNA-seq pipeline.

The transformed matrix feeds PCA, sample clustering and heatmaps only;
differential expression always runs on the raw integer counts.
"""

import copy
import os

from .design import coerce_factors, parse_formula
from .engines import PyDESeq2Engine
from .utils import check_sample_order, save_data


def vst_de(data, engine=None):
    """
    Variance-stabilize counts for visualization and clustering.

    Parameters
    ----------
    data : dict
        Output from prep_de() or drop_samples().
    engine : object, optional
        Engine with a vst(counts, metadata, formula) method.
        Defaults to PyDESeq2Engine.

    Returns
    -------
    dict
        Updated data dictionary with 'vst' (genes x samples DataFrame).
        'counts' is left untouched.

    Example
    -------
    >>> data = prep_de('config/experiment.yaml')
    >>> data = vst_de(data)
    """

    print("\n" + "="*80)
    print("VARIANCE-STABILIZING TRANSFORMATION")
    print("="*80)

    config = data['config']
    counts = data['counts']
    formula = config['design']['formula']

    check_sample_order(counts, data['sample_metadata'])

    if engine is None:
        engine = PyDESeq2Engine(n_cpus=config.get('statistics', {}).get('n_cpus', 1))

    print(f"\nProcessing {counts.shape[0]} genes across {counts.shape[1]} samples")
    print(f"Transform is blind to the design ({formula} is not used)")

    sample_metadata = coerce_factors(
        data['sample_metadata'],
        {f: config['design']['factors'].get(f) for f in parse_formula(formula)},
    )

    # =========================================================================
    # 1. TRANSFORM
    # =========================================================================
    print(f"\n[1/2] Running VST...")

    vst = engine.vst(counts, sample_metadata, formula)
    vst = vst.loc[counts.index, counts.columns]

    print(f"  > VST range: {vst.min().min():.2f} to {vst.max().max():.2f}")

    # =========================================================================
    # 2. SAVE
    # =========================================================================
    print(f"\n[2/2] Saving transformed matrix...")

    vst_path = os.path.join(data['output_dirs']['tables'], 'vst_counts.csv')
    vst.to_csv(vst_path, index_label='gene_id')
    print(f"  > Saved: vst_counts.csv")

    data_updated = copy.copy(data)
    data_updated['vst'] = vst

    output_path = os.path.join(config['data_paths']['output_dir'], 'data_after_vst.pkl')
    save_data(data_updated, output_path)

    print("\n" + "="*80)
    print("VST COMPLETE")
    print("="*80)
    print(f"\nNext step: stat_de() for differential expression")
    print("="*80 + "\n")

    return data_updated
