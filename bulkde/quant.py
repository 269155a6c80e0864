"""
Transcript quantification import for the bulk RNA-seq pipeline.

Reads per-sample salmon quant.sf files, summarizes transcripts to genes
with length-scaled TPM counts, annotates gene ids with symbols and
descriptions, and writes the annotated count matrix consumed by prep_de().
"""

import os

import numpy as np
import pandas as pd

from .engines import MyGeneAnnotator
from .errors import InputError
from .utils import _create_output_dirs, _load_config, _sample_ids

GTF_COLUMNS = ['seqname', 'source', 'feature', 'start', 'end',
               'score', 'strand', 'frame', 'attribute']

QUANT_COLUMNS = ['Name', 'Length', 'EffectiveLength', 'TPM', 'NumReads']


def _strip_version(ids):
    """Drop trailing '.N' version suffixes from Ensembl-style identifiers."""
    return pd.Series(ids).astype(str).str.replace(r'\.\d+$', '', regex=True).values


def build_tx2gene(gtf_path):
    """
    Derive the transcript-to-gene map from a GTF annotation.

    Parameters
    ----------
    gtf_path : str
        Path to a GTF file (optionally gzipped).

    Returns
    -------
    pd.DataFrame
        Columns 'transcript_id' and 'gene_id', versions stripped, one row
        per transcript.
    """
    if not os.path.exists(gtf_path):
        raise FileNotFoundError(f"Annotation file not found: {gtf_path}")

    gtf = pd.read_csv(
        gtf_path, sep='\t', comment='#', header=None,
        names=GTF_COLUMNS, dtype=str,
    )
    gtf = gtf[gtf['feature'] == 'transcript']

    tx2gene = pd.DataFrame({
        'transcript_id': gtf['attribute'].str.extract(r'transcript_id "([^"]+)"', expand=False),
        'gene_id': gtf['attribute'].str.extract(r'gene_id "([^"]+)"', expand=False),
    }).dropna()

    tx2gene['transcript_id'] = _strip_version(tx2gene['transcript_id'])
    tx2gene['gene_id'] = _strip_version(tx2gene['gene_id'])
    tx2gene = tx2gene.drop_duplicates().reset_index(drop=True)

    ambiguous = tx2gene['transcript_id'].duplicated(keep=False)
    if ambiguous.any():
        examples = sorted(tx2gene.loc[ambiguous, 'transcript_id'].unique())[:5]
        raise InputError(f"Transcripts mapped to more than one gene: {examples}")

    return tx2gene


def read_quant(path):
    """Read one salmon quant.sf file, indexed by unversioned transcript id."""
    quant = pd.read_csv(path, sep='\t')

    missing = [c for c in QUANT_COLUMNS if c not in quant.columns]
    if missing:
        raise InputError(f"{path}: missing quantification columns {missing}")

    quant = quant[QUANT_COLUMNS].copy()
    quant['Name'] = _strip_version(quant['Name'])
    return quant.groupby('Name', sort=False).sum()


def summarize_to_gene(quants, tx2gene):
    """
    Summarize transcript quantifications to gene level (lengthScaledTPM).

    Parameters
    ----------
    quants : dict
        Sample id -> DataFrame from read_quant().
    tx2gene : pd.DataFrame
        Output of build_tx2gene().

    Returns
    -------
    dict
        'counts', 'abundance', 'length' (genes x samples DataFrames) and
        'n_unmapped' (sample id -> transcripts absent from the map).
    """
    tx_to_gene = tx2gene.set_index('transcript_id')['gene_id']

    abundance = {}
    raw_counts = {}
    length = {}
    n_unmapped = {}

    for sample, quant in quants.items():
        genes = tx_to_gene.reindex(quant.index)
        mapped = genes.notna()
        n_unmapped[sample] = int((~mapped).sum())

        q = quant[mapped.values].copy()
        q['gene_id'] = genes[mapped].values

        grouped = q.groupby('gene_id')
        abundance[sample] = grouped['TPM'].sum()
        raw_counts[sample] = grouped['NumReads'].sum()

        # Abundance-weighted mean of effective length; plain mean where TPM is 0
        weighted = (q['TPM'] * q['EffectiveLength']).groupby(q['gene_id']).sum()
        plain = grouped['EffectiveLength'].mean()
        with np.errstate(divide='ignore', invalid='ignore'):
            gene_len = weighted / abundance[sample]
        length[sample] = gene_len.where(abundance[sample] > 0, plain)

    abundance = pd.DataFrame(abundance).fillna(0.0)
    raw_counts = pd.DataFrame(raw_counts).fillna(0.0)
    length = pd.DataFrame(length)
    length = length.apply(lambda row: row.fillna(row.mean()), axis=1)

    # lengthScaledTPM: scale TPM by mean gene length, then back to library size
    scaled = abundance.mul(length.mean(axis=1), axis=0)
    col_totals = scaled.sum(axis=0).replace(0, np.nan)
    counts = (scaled / col_totals * raw_counts.sum(axis=0)).fillna(0.0)

    samples = list(quants.keys())
    index = abundance.index.sort_values()
    return {
        'counts': counts.loc[index, samples],
        'abundance': abundance.loc[index, samples],
        'length': length.loc[index, samples],
        'n_unmapped': n_unmapped,
    }


def annotate_genes(gene_ids, annotator):
    """
    Attach name/description to gene ids. Service failures leave both blank.
    """
    blank = pd.DataFrame({'name': '', 'description': ''},
                         index=pd.Index(list(gene_ids), name='gene_id'))
    if annotator is None:
        return blank

    try:
        annotation = annotator.lookup(list(gene_ids))
    except Exception as e:
        print(f"  Warning: Could not annotate gene ids: {e}")
        print(f"  Writing blank name/description columns instead")
        return blank

    return annotation.reindex(blank.index).fillna('')


def quant_de(config_path, annotator=None):
    """
    Build the annotated gene count matrix from transcript quantifications.

    This function:
    1. Loads the YAML configuration file
    2. Checks that every sample's quant.sf exists
    3. Builds the transcript-to-gene map from the GTF
    4. Reads each quantification file
    5. Summarizes transcripts to genes (length-scaled TPM counts)
    6. Annotates gene ids using mygene
    7. Writes the annotated count matrix

    Parameters
    ----------
    config_path : str
        Path to YAML configuration file.
    annotator : object, optional
        Object with a lookup(gene_ids) method. Defaults to MyGeneAnnotator
        built from the 'annotation' config section; pass False to skip
        annotation entirely.

    Returns
    -------
    dict
        Dictionary containing:
        - 'counts', 'abundance', 'length': gene x sample DataFrames
        - 'annotation': name/description per gene id
        - 'config', 'metadata', 'output_dirs'

    Example
    -------
    >>> quant = quant_de('config/experiment.yaml')
    >>> data = prep_de('config/experiment.yaml')
    """

    print("\n" + "="*80)
    print("QUANTIFICATION IMPORT")
    print("="*80)

    config = _load_config(config_path)
    samples = _sample_ids(config)
    paths = {str(s['id']): s['quant_file'] for s in config['samples']}

    print(f"\n> Configuration loaded")
    print(f"  Experiment: {config['experiment']['name']}")
    print(f"  Samples: {len(samples)}")

    # =========================================================================
    # 1. CHECK INPUT FILES
    # =========================================================================
    print(f"\n[1/6] Checking quantification files...")

    missing = [f"{s}: {p}" for s, p in paths.items() if not os.path.exists(p)]
    if missing:
        raise FileNotFoundError(f"Quantification files not found: {missing}")

    print(f"  > All {len(paths)} files present")

    # =========================================================================
    # 2. TRANSCRIPT-TO-GENE MAP
    # =========================================================================
    print(f"\n[2/6] Building transcript-to-gene map...")

    tx2gene = build_tx2gene(config['data_paths']['annotation_gtf'])
    print(f"  > {len(tx2gene)} transcripts, {tx2gene['gene_id'].nunique()} genes")

    # =========================================================================
    # 3. READ QUANTIFICATIONS
    # =========================================================================
    print(f"\n[3/6] Reading quantifications...")

    quants = {}
    for sample in samples:
        quants[sample] = read_quant(paths[sample])
        print(f"  {sample}: {len(quants[sample])} transcripts, "
              f"{quants[sample]['NumReads'].sum():,.0f} reads")

    # =========================================================================
    # 4. SUMMARIZE TO GENES
    # =========================================================================
    print(f"\n[4/6] Summarizing to gene level (lengthScaledTPM)...")

    gene_level = summarize_to_gene(quants, tx2gene)
    counts = gene_level['counts']

    for sample, n in gene_level['n_unmapped'].items():
        if n > 0:
            print(f"  Warning: {sample}: {n} transcripts not in annotation, excluded")

    print(f"  > {counts.shape[0]} genes x {counts.shape[1]} samples")

    # =========================================================================
    # 5. ANNOTATE
    # =========================================================================
    print(f"\n[5/6] Annotating gene ids...")

    ann_config = config.get('annotation', {})
    if annotator is None and ann_config.get('enabled', True):
        annotator = MyGeneAnnotator(
            species=ann_config.get('species', 'human'),
            scopes=ann_config.get('scopes', 'ensembl.gene'),
            fields=ann_config.get('fields', 'symbol,name'),
        )
    elif annotator is False:
        annotator = None

    annotation = annotate_genes(counts.index, annotator)
    n_named = (annotation['name'] != '').sum()
    print(f"  > {n_named}/{len(annotation)} genes resolved to a symbol")

    # =========================================================================
    # 6. WRITE ANNOTATED COUNT MATRIX
    # =========================================================================
    print(f"\n[6/6] Writing annotated count matrix...")

    output_dirs = _create_output_dirs(config['data_paths']['output_dir'])

    matrix = pd.concat([annotation, counts], axis=1)
    matrix.index.name = 'gene_id'
    matrix = matrix.reset_index()[['gene_id', 'name', 'description'] + samples]

    matrix_path = config['data_paths']['count_matrix']
    matrix_dir = os.path.dirname(matrix_path)
    if matrix_dir:
        os.makedirs(matrix_dir, exist_ok=True)
    matrix.to_csv(matrix_path, index=False)
    print(f"  > Saved: {os.path.basename(matrix_path)}")

    for name in ['abundance', 'length']:
        path = os.path.join(output_dirs['tables'], f'gene_{name}.csv')
        gene_level[name].to_csv(path, index_label='gene_id')
        print(f"  > Saved: gene_{name}.csv")

    metadata = {
        'n_genes': counts.shape[0],
        'n_samples': counts.shape[1],
        'n_transcripts_mapped': len(tx2gene),
        'unmapped_transcripts': gene_level['n_unmapped'],
    }

    print("\n" + "="*80)
    print("QUANTIFICATION IMPORT COMPLETE")
    print("="*80)
    print(f"\nGenes:    {metadata['n_genes']}")
    print(f"Samples:  {metadata['n_samples']}")
    print(f"Matrix:   {matrix_path}")
    print("\n" + "="*80 + "\n")

    return {
        'counts': counts,
        'abundance': gene_level['abundance'],
        'length': gene_level['length'],
        'annotation': annotation,
        'config': config,
        'metadata': metadata,
        'output_dirs': output_dirs,
    }
