"""Shared test fixtures for bulk RNA-seq pipeline tests."""

import os

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
import yaml


N_GENES = 60
N_DE_GENES = 5

SAMPLES = [
    ('WT_U_1', 'WT', 'Untreated'), ('WT_U_2', 'WT', 'Untreated'),
    ('WT_B_1', 'WT', 'BPA'), ('WT_B_2', 'WT', 'BPA'),
    ('KO_U_1', 'KO', 'Untreated'), ('KO_U_2', 'KO', 'Untreated'),
    ('KO_B_1', 'KO', 'BPA'), ('KO_B_2', 'KO', 'BPA'),
]


def gene_id(i):
    return f"ENSG{str(i).zfill(11)}"


# ============================================================================
# STUB ENGINES
# ============================================================================

class StubAnnotator:
    """Resolves every gene except the last five; Entrez ids for even genes only."""

    def __init__(self):
        self.calls = 0

    def lookup(self, gene_ids):
        self.calls += 1
        rows = {}
        for g in gene_ids:
            i = int(g[4:])
            if i < N_GENES - 5:
                rows[g] = {'name': f'GENE{i}', 'description': f'gene number {i}'}
            else:
                rows[g] = {'name': '', 'description': ''}
        return pd.DataFrame.from_dict(rows, orient='index')

    def to_entrez(self, gene_ids):
        return {g: str(1000 + int(g[4:])) for g in gene_ids if int(g[4:]) % 2 == 0}


class FailingAnnotator:
    def lookup(self, gene_ids):
        raise ConnectionError("annotation service unavailable")


class StubDEEngine:
    """
    Deterministic stand-in for the DESeq2 engine.

    log2FoldChange is the difference of mean log2(count + 1); genes with
    |log2FC| > 2 get p = 1e-6, all others p = 0.5.
    """

    def __init__(self):
        self.fit_calls = []

    def fit(self, counts, metadata, formula):
        self.fit_calls.append(formula)
        return {'counts': counts, 'metadata': metadata, 'formula': formula}

    def results(self, model, contrast):
        factor, level, reference = contrast
        counts = model['counts']
        metadata = model['metadata']
        log_counts = np.log2(counts + 1)

        at_level = metadata.index[metadata[factor] == level]
        at_reference = metadata.index[metadata[factor] == reference]
        lfc = log_counts[at_level].mean(axis=1) - log_counts[at_reference].mean(axis=1)
        pvalue = np.where(lfc.abs() > 2, 1e-6, 0.5)

        return pd.DataFrame({
            'baseMean': counts.mean(axis=1),
            'log2FoldChange': lfc,
            'lfcSE': 0.1,
            'stat': lfc / 0.1,
            'pvalue': pvalue,
            'padj': pvalue,
        }, index=counts.index)

    def vst(self, counts, metadata, formula):
        return np.log2(counts + 1)

    def dispersions(self, model):
        counts = model['counts']
        mean = counts.mean(axis=1)
        return pd.DataFrame({
            'baseMean': mean,
            'genewise': 0.1 + 1 / (mean + 1),
            'fitted': 0.1 + 1 / (mean + 2),
            'final': 0.1 + 1 / (mean + 1.5),
        }, index=counts.index)


class StubEnrichmentEngine:
    """Gene sets of ten consecutive symbols; results list overlap sizes."""

    def __init__(self):
        self.enrich_calls = []
        self.prerank_calls = []

    def gene_sets(self, library):
        return {
            f"{library} set {k}": [f'GENE{i}' for i in range(k * 10, k * 10 + 10)]
            for k in range(N_GENES // 10)
        }

    def enrich(self, genes, gene_sets, background):
        self.enrich_calls.append((list(genes), list(background)))
        rows = []
        for term, members in gene_sets.items():
            overlap = set(genes) & set(members)
            rows.append({'Term': term, 'Overlap': f"{len(overlap)}/{len(members)}",
                         'Adjusted P-value': 0.01 if overlap else 1.0})
        return pd.DataFrame(rows)

    def prerank(self, ranking, gene_sets):
        self.prerank_calls.append(ranking.copy())
        usable = {t: m for t, m in gene_sets.items() if len(set(m) & set(ranking.index)) >= 3}
        if not usable:
            raise LookupError("No gene sets passed through filtering condition")
        return pd.DataFrame({'Term': list(usable), 'NES': 1.0})


class StubPathways:
    def gene_sets(self):
        return {
            'hsa00001 Pathway A': [str(1000 + i) for i in range(0, 20, 2)],
            'hsa00002 Pathway B': [str(1000 + i) for i in range(20, 40, 2)],
        }


@pytest.fixture
def stub_engine():
    return StubDEEngine()


@pytest.fixture
def stub_annotator():
    return StubAnnotator()


@pytest.fixture
def stub_enrichment():
    return StubEnrichmentEngine()


@pytest.fixture
def stub_pathways():
    return StubPathways()


# ============================================================================
# SYNTHETIC INPUTS
# ============================================================================

def _write_config(tmp_path, samples, count_matrix, gtf_path=None, quant_files=None):
    config = {
        'experiment': {
            'name': 'Test_Experiment',
            'description': 'Unit test experiment',
        },
        'samples': [
            {
                'id': sid,
                'quant_file': (quant_files or {}).get(sid, str(tmp_path / 'salmon' / sid / 'quant.sf')),
                'knockout_status': ko,
                'bisphenol': bp,
            }
            for sid, ko, bp in samples
        ],
        'design': {
            'formula': '~knockout_status + bisphenol',
            'factors': {
                'knockout_status': {'reference': 'WT', 'levels': ['WT', 'KO']},
                'bisphenol': {'reference': 'Untreated', 'levels': ['Untreated', 'BPA', 'BPS']},
            },
        },
        'contrasts': [
            ['knockout_status', 'KO', 'WT'],
            ['bisphenol', 'BPA', 'Untreated'],
        ],
        'data_paths': {
            'annotation_gtf': gtf_path or str(tmp_path / 'annotation.gtf'),
            'count_matrix': str(count_matrix),
            'output_dir': str(tmp_path / 'results'),
        },
        'filtering': {'min_total_count': 10},
        'annotation': {'enabled': False},
        'statistics': {'alpha': 0.05, 'log2fc_threshold': 1.0, 'n_cpus': 1, 'seed': 42},
        'enrichment': {
            'ontologies': {'BP': 'GO_BP', 'MF': 'GO_MF', 'CC': 'GO_CC'},
            'min_genes': 3,
        },
    }

    config_path = str(tmp_path / 'test_config.yaml')
    with open(config_path, 'w') as f:
        yaml.dump(config, f, sort_keys=False)
    return config_path


def make_counts(seed=42):
    """Poisson counts for N_GENES genes; the first N_DE_GENES are 8x higher in KO."""
    rng = np.random.default_rng(seed)
    base = rng.uniform(50, 500, N_GENES)
    data = {}
    for sid, ko, _ in SAMPLES:
        mu = base.copy()
        if ko == 'KO':
            mu[:N_DE_GENES] *= 8
        data[sid] = rng.poisson(mu)
    counts = pd.DataFrame(data, index=[gene_id(i) for i in range(N_GENES)])
    # Low-count genes for the total-count filter
    counts.iloc[-3:] = 0
    counts.iloc[-3, 0] = 5
    return counts


@pytest.fixture
def count_matrix_file(tmp_path):
    """Annotated count matrix with a duplicate row and a row with a missing count."""
    counts = make_counts()
    matrix = counts.astype(float) + 0.3
    matrix.index.name = 'gene_id'
    matrix = matrix.reset_index()
    matrix.insert(1, 'name', [f'GENE{i}' if i < N_GENES - 5 else np.nan for i in range(N_GENES)])
    matrix.insert(2, 'description', [f'gene number {i}' for i in range(N_GENES)])

    duplicate = matrix.iloc[[0]].copy()
    duplicate[[s for s, _, _ in SAMPLES]] = 99999.0
    missing = matrix.iloc[[1]].copy()
    missing['gene_id'] = 'ENSG_MISSING'
    missing[SAMPLES[0][0]] = np.nan

    matrix = pd.concat([matrix, duplicate, missing], ignore_index=True)

    path = tmp_path / 'annotated_counts.csv'
    matrix.to_csv(path, index=False)
    return path


@pytest.fixture
def sample_config(tmp_path, count_matrix_file):
    """YAML config pointing at the synthetic count matrix."""
    config_path = _write_config(tmp_path, SAMPLES, count_matrix_file)
    return config_path, tmp_path


@pytest.fixture
def prepped_data(sample_config):
    """Run prep_de and return the result for downstream tests."""
    from bulkde import prep_de

    config_path, tmp_path = sample_config
    return prep_de(config_path)


@pytest.fixture
def stat_data(prepped_data, stub_engine):
    """prep_de -> vst_de -> stat_de with the stub engine."""
    from bulkde import stat_de, vst_de

    data = vst_de(prepped_data, engine=stub_engine)
    return stat_de(data, engine=stub_engine)


@pytest.fixture
def quant_inputs(tmp_path):
    """
    GTF with two versioned transcripts per gene for 10 genes, and one
    quant.sf per sample that also lists a transcript missing from the GTF.
    """
    n_genes = 10
    gtf_lines = ['#!genome-build test']
    for i in range(n_genes):
        g = f"{gene_id(i)}.{i % 3 + 1}"
        gtf_lines.append('\t'.join([
            'chr1', 'TEST', 'gene', '1', '1000', '.', '+', '.', f'gene_id "{g}"; gene_name "GENE{i}";'
        ]))
        for t in range(2):
            tx = f"ENST{str(i * 2 + t).zfill(11)}.1"
            attrs = f'gene_id "{g}"; transcript_id "{tx}"; gene_name "GENE{i}";'
            gtf_lines.append('\t'.join(['chr1', 'TEST', 'transcript', '1', '1000', '.', '+', '.', attrs]))
            gtf_lines.append('\t'.join(['chr1', 'TEST', 'exon', '1', '500', '.', '+', '.', attrs]))

    gtf_path = tmp_path / 'annotation.gtf'
    gtf_path.write_text('\n'.join(gtf_lines) + '\n')

    rng = np.random.default_rng(7)
    quant_files = {}
    for sid, _, _ in SAMPLES[:4]:
        names = [f"ENST{str(k).zfill(11)}.1" for k in range(n_genes * 2)] + ['ENST99999999999.1']
        eff_len = rng.uniform(500, 3000, len(names))
        reads = rng.uniform(0, 1000, len(names))
        reads[4] = 0.0
        reads[5] = 0.0
        rate = reads / eff_len
        tpm = rate / rate.sum() * 1e6
        quant = pd.DataFrame({
            'Name': names,
            'Length': (eff_len + 200).round().astype(int),
            'EffectiveLength': eff_len,
            'TPM': tpm,
            'NumReads': reads,
        })
        path = tmp_path / 'salmon' / sid / 'quant.sf'
        os.makedirs(path.parent, exist_ok=True)
        quant.to_csv(path, sep='\t', index=False)
        quant_files[sid] = str(path)

    config_path = _write_config(
        tmp_path, SAMPLES[:4], tmp_path / 'out' / 'annotated_counts.csv',
        gtf_path=str(gtf_path), quant_files=quant_files,
    )
    return config_path, tmp_path
