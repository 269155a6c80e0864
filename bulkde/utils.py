"""
Utility functions for the bulk RNA-seq pipeline.

Internal helpers for configuration loading, directory management,
sample-order checks, and data serialization.
"""

import os
import pickle

import pandas as pd
import yaml

from .errors import SampleOrderError


def _load_config(config_path):
    """Load YAML config file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def _sample_ids(config):
    """Sample identifiers in configured order."""
    return [str(s['id']) for s in config['samples']]


def _design_factors(config):
    """Factor names declared under design.factors, in declaration order."""
    return list(config['design']['factors'].keys())


def _create_output_dirs(base_dir):
    """Create organized output directory structure."""
    dirs = {
        'base': base_dir,
        'figures': f"{base_dir}/figures",
        'qc': f"{base_dir}/figures/qc",
        'viz': f"{base_dir}/figures/viz",
        'tables': f"{base_dir}/tables",
        'enrichment': f"{base_dir}/tables/enrichment",
    }

    for dir_path in dirs.values():
        os.makedirs(dir_path, exist_ok=True)

    return dirs


def check_sample_order(counts, sample_metadata):
    """
    Verify that metadata rows match count matrix columns one-to-one, in order.

    Raises
    ------
    SampleOrderError
        If the two sample orders differ in any position.
    """
    columns = list(counts.columns)
    rows = list(sample_metadata.index)

    if columns == rows:
        return

    if sorted(columns) == sorted(rows):
        mismatched = [(i, c, r) for i, (c, r) in enumerate(zip(columns, rows)) if c != r]
        i, c, r = mismatched[0]
        raise SampleOrderError(
            f"Sample metadata is permuted relative to the count matrix: "
            f"position {i} is '{c}' in counts but '{r}' in metadata "
            f"({len(mismatched)} positions differ)"
        )

    missing = sorted(set(columns) - set(rows))
    extra = sorted(set(rows) - set(columns))
    raise SampleOrderError(
        f"Sample metadata does not match the count matrix: "
        f"missing from metadata {missing}, not in counts {extra}"
    )


def filter_min_total(counts, min_total_count):
    """Keep genes whose total count across samples is at least min_total_count."""
    keep = counts.sum(axis=1) >= min_total_count
    return counts.loc[keep]


def write_results(results, path):
    """Write a DE result table; floats are written with full precision."""
    results.to_csv(path, index=False, float_format='%.17g')
    return path


def read_results(path):
    """Read a DE result table written by write_results."""
    return pd.read_csv(path, dtype={'gene': str}, float_precision='round_trip')


def save_data(data, filename=None):
    """
    Save analysis data to pickle file for sequential workflow.

    Parameters
    ----------
    data : dict
        Analysis data dictionary (output from prep_de, stat_de, etc.)
    filename : str, optional
        Custom filename. If None, uses default based on output_dir in config.

    Returns
    -------
    str
        Path where data was saved.

    Example
    -------
    >>> data = prep_de('config/experiment.yaml')
    >>> save_data(data)  # Saves to results/data_checkpoint.pkl
    """
    if filename is None:
        output_dir = data['config']['data_paths']['output_dir']
        filename = os.path.join(output_dir, 'data_checkpoint.pkl')

    with open(filename, 'wb') as f:
        pickle.dump(data, f)

    size_mb = os.path.getsize(filename) / (1024 * 1024)

    print(f"\n{'='*80}")
    print(f"DATA SAVED")
    print(f"{'='*80}")
    print(f"Location: {filename}")
    print(f"Size: {size_mb:.1f} MB")
    print(f"\nTo load this data later:")
    print(f"  from bulkde import load_data")
    print(f"  data = load_data('{filename}')")
    print(f"{'='*80}\n")

    return filename


def load_data(filepath):
    """
    Load analysis data from pickle file.

    Parameters
    ----------
    filepath : str
        Path to saved pickle file.

    Returns
    -------
    dict
        Analysis data dictionary.

    Example
    -------
    >>> from bulkde import load_data
    >>> data = load_data('results/data_after_prep.pkl')
    >>> qc_de(data)  # Continue from where you left off
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Data file not found: {filepath}")

    print(f"\n{'='*80}")
    print(f"LOADING DATA")
    print(f"{'='*80}")

    with open(filepath, 'rb') as f:
        data = pickle.load(f)

    size_mb = os.path.getsize(filepath) / (1024 * 1024)

    print(f"Location: {filepath}")
    print(f"Size: {size_mb:.1f} MB")

    if 'metadata' in data:
        print(f"\nData contains:")
        print(f"  Genes: {data['metadata']['n_genes']}")
        print(f"  Samples: {data['metadata']['n_samples']}")

    print(f"{'='*80}\n")

    return data
