"""
Data preparation functions for the bulk RNA-seq pipeline.

Loads the annotated count matrix, cleans and filters it, and builds the
sample metadata table in the matrix's column order.
"""

import os

import numpy as np
import pandas as pd

from .errors import InputError
from .utils import (
    _create_output_dirs,
    _design_factors,
    _load_config,
    check_sample_order,
    filter_min_total,
    save_data,
)

ANNOTATION_COLUMNS = ['name', 'description']


def clean_count_matrix(df, min_total_count=10, keep_unannotated=False):
    """
    Turn the annotated count matrix into an integer gene x sample matrix.

    Steps, in order: drop duplicate gene rows (keep first), drop rows with
    any missing value, index by gene_id, drop annotation columns, round to
    integers, drop genes with total count below min_total_count.

    With keep_unannotated=True only missing gene ids or counts drop a row;
    genes whose name or description did not resolve are kept.

    Returns
    -------
    pd.DataFrame
        Integer counts indexed by unique gene_id.
    """
    if 'gene_id' not in df.columns:
        raise InputError("Count matrix has no 'gene_id' column")

    sample_cols = [c for c in df.columns if c not in ['gene_id'] + ANNOTATION_COLUMNS]
    if not sample_cols:
        raise InputError("Count matrix has no sample columns")

    df = df.drop_duplicates(subset='gene_id', keep='first')
    if keep_unannotated:
        df = df.dropna(subset=['gene_id'] + sample_cols)
    else:
        df = df.dropna()
    df = df.set_index('gene_id')
    df = df.drop(columns=[c for c in ANNOTATION_COLUMNS if c in df.columns])

    try:
        counts = df.astype(float)
    except ValueError as e:
        raise InputError(f"Count matrix has non-numeric sample values: {e}") from e

    if (counts < 0).any().any():
        negative = counts.columns[(counts < 0).any()].tolist()
        raise InputError(f"Negative counts in samples {negative}")

    counts = np.round(counts).astype('int64')
    counts.columns = [str(c) for c in counts.columns]

    if counts.columns.duplicated().any():
        raise InputError(f"Duplicate sample columns: {counts.columns[counts.columns.duplicated()].tolist()}")

    return filter_min_total(counts, min_total_count)


def build_sample_metadata(config, columns):
    """
    Sample metadata with one row per count-matrix column, in the same order.

    Parameters
    ----------
    config : dict
        Loaded configuration with 'samples' and 'design.factors'.
    columns : list of str
        Count matrix column names.

    Returns
    -------
    pd.DataFrame
        Indexed by sample id, one column per design factor.
    """
    factors = _design_factors(config)
    by_id = {str(s['id']): s for s in config['samples']}

    unknown = [c for c in columns if c not in by_id]
    if unknown:
        raise InputError(f"Samples in count matrix but not in config: {unknown}")

    rows = []
    for sample in columns:
        entry = by_id[sample]
        missing = [f for f in factors if f not in entry]
        if missing:
            raise InputError(f"Sample '{sample}' has no value for factors {missing}")
        rows.append({f: str(entry[f]) for f in factors})

    metadata = pd.DataFrame(rows, index=pd.Index(list(columns), name='sample'))
    return metadata


def prep_de(config_path):
    """
    Load and prepare the gene count matrix for differential expression.

    After loading the YAML configuration file, this function:
    1. Reads the annotated count matrix
    2. Cleans it (duplicates, rows with missing values, integer rounding)
    3. Removes genes below the minimum total count
    4. Builds sample metadata in count-matrix column order
    5. Creates the output directory structure and saves filtered counts

    Rows with any missing value are dropped, including genes whose name or
    description did not resolve. Set filtering.keep_unannotated: true to
    keep those genes.

    Parameters
    ----------
    config_path : str
        Path to YAML configuration file.

    Returns
    -------
    dict
        Dictionary containing:
        - 'counts': pd.DataFrame of integer counts (genes x samples)
        - 'sample_metadata': design factors per sample, same order as columns
        - 'gene_annotation': name/description per retained gene_id
        - 'config': loaded configuration dictionary
        - 'metadata': summary statistics about the data
        - 'output_dirs': paths to output directories

    Example
    -------
    >>> data = prep_de('config/experiment.yaml')
    >>> print(f"Loaded {len(data['counts'])} genes")
    """

    # =========================================================================
    # LOAD CONFIGURATION
    # =========================================================================
    print("\n" + "="*80)
    print("STEP 1: LOADING COUNT MATRIX AND CONFIGURATION")
    print("="*80)

    config = _load_config(config_path)
    filtering = config.get('filtering', {})
    min_total = filtering.get('min_total_count', 10)
    keep_unannotated = filtering.get('keep_unannotated', False)

    print(f"\n> Configuration loaded")
    print(f"  Experiment: {config['experiment']['name']}")
    print(f"  Design: {config['design']['formula']}")

    # =========================================================================
    # 1. LOAD COUNT MATRIX
    # =========================================================================
    print(f"\n[1/5] Loading count matrix...")

    matrix_path = config['data_paths']['count_matrix']
    if not os.path.exists(matrix_path):
        raise FileNotFoundError(f"Count matrix not found: {matrix_path}")

    df = pd.read_csv(matrix_path, dtype={'gene_id': str})
    initial_gene_count = len(df)
    print(f"  > Loaded {df.shape[0]} genes, {df.shape[1]} columns")

    # =========================================================================
    # 2. CLEAN
    # =========================================================================
    print(f"\n[2/5] Cleaning count matrix...")

    n_duplicated = int(df['gene_id'].duplicated().sum())
    if n_duplicated > 0:
        print(f"  Warning: {n_duplicated} duplicate gene rows dropped (first kept)")

    annotation_cols = [c for c in ANNOTATION_COLUMNS if c in df.columns]
    unique_rows = df.drop_duplicates(subset='gene_id', keep='first')
    sample_cols = [c for c in df.columns if c not in ['gene_id'] + ANNOTATION_COLUMNS]
    missing_counts = unique_rows[['gene_id'] + sample_cols].isna().any(axis=1)
    missing_annotation = unique_rows[annotation_cols].isna().any(axis=1) & ~missing_counts

    if missing_counts.any():
        print(f"  Warning: {int(missing_counts.sum())} rows with missing gene_id or counts dropped")
    if missing_annotation.any():
        if keep_unannotated:
            print(f"  {int(missing_annotation.sum())} rows with missing name/description kept "
                  f"(keep_unannotated)")
        else:
            print(f"  Warning: {int(missing_annotation.sum())} rows with missing name/description dropped")

    counts = clean_count_matrix(df, min_total_count=0, keep_unannotated=keep_unannotated)
    n_cleaned = len(counts)
    print(f"  > {n_cleaned} genes after cleaning")

    # =========================================================================
    # 3. FILTER LOW COUNTS
    # =========================================================================
    print(f"\n[3/5] Filtering genes with total count < {min_total}...")

    counts = filter_min_total(counts, min_total)
    print(f"  > Removed {n_cleaned - len(counts)} genes")
    print(f"    Remaining: {len(counts)} genes")

    gene_annotation = (
        unique_rows.set_index('gene_id')[annotation_cols]
        .reindex(counts.index)
        .fillna('')
    )

    # =========================================================================
    # 4. SAMPLE METADATA
    # =========================================================================
    print(f"\n[4/5] Building sample metadata...")

    sample_metadata = build_sample_metadata(config, list(counts.columns))
    check_sample_order(counts, sample_metadata)

    for factor in sample_metadata.columns:
        levels = sample_metadata[factor].value_counts().to_dict()
        print(f"  {factor}: {levels}")

    # =========================================================================
    # 5. OUTPUT
    # =========================================================================
    print(f"\n[5/5] Saving filtered counts...")

    output_dir = config['data_paths']['output_dir']
    output_dirs = _create_output_dirs(output_dir)

    counts_path = os.path.join(output_dirs['tables'], 'filtered_counts.csv')
    counts.to_csv(counts_path, index_label='gene_id')
    print(f"  > Saved: filtered_counts.csv")

    metadata = {
        'n_genes': len(counts),
        'n_samples': counts.shape[1],
        'genes_removed': initial_gene_count - len(counts),
        'missing_annotation': int(missing_annotation.sum()),
        'keep_unannotated': keep_unannotated,
        'min_total_count': min_total,
        'samples': list(counts.columns),
    }

    print("\n" + "="*80)
    print("DATA PREPARATION COMPLETE")
    print("="*80)
    print(f"\nInitial genes:           {initial_gene_count}")
    print(f"Final genes:             {len(counts)}")
    print(f"Samples:                 {metadata['n_samples']}")
    print("\n" + "="*80 + "\n")

    return_data = {
        'counts': counts,
        'sample_metadata': sample_metadata,
        'gene_annotation': gene_annotation,
        'config': config,
        'metadata': metadata,
        'output_dirs': output_dirs,
    }

    # Auto-save for sequential workflow
    save_path = os.path.join(output_dir, 'data_after_prep.pkl')
    save_data(return_data, save_path)

    return return_data
