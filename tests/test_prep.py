"""Tests for bulkde.prep module."""

import os

import numpy as np
import pandas as pd
import pytest
import yaml

from bulkde import prep_de
from bulkde.errors import InputError
from bulkde.prep import build_sample_metadata, clean_count_matrix
from bulkde.utils import _load_config

from conftest import N_GENES, SAMPLES, gene_id, make_counts


class TestCleanCountMatrix:
    def _matrix(self):
        return pd.DataFrame({
            'gene_id': ['g1', 'g2', 'g1', 'g3', 'g4'],
            'name': ['A', np.nan, 'A2', 'C', 'D'],
            'description': ['a', 'b', 'a2', 'c', 'd'],
            's1': [10.4, 20.6, 500.0, np.nan, 1.0],
            's2': [12.0, 30.0, 500.0, 8.0, 2.0],
        })

    def test_duplicates_keep_first(self):
        counts = clean_count_matrix(self._matrix())
        assert counts.index.is_unique
        assert counts.loc['g1', 's1'] == 10

    def test_missing_counts_drop_row(self):
        counts = clean_count_matrix(self._matrix())
        assert 'g3' not in counts.index

    def test_missing_annotation_drops_row(self):
        counts = clean_count_matrix(self._matrix())
        assert 'g2' not in counts.index

    def test_keep_unannotated_keeps_row(self):
        counts = clean_count_matrix(self._matrix(), keep_unannotated=True)
        assert 'g2' in counts.index
        assert 'g3' not in counts.index

    def test_rounds_to_integers(self):
        counts = clean_count_matrix(self._matrix(), keep_unannotated=True)
        assert counts.dtypes.eq('int64').all()
        assert counts.loc['g2', 's1'] == 21

    def test_annotation_columns_dropped(self):
        counts = clean_count_matrix(self._matrix())
        assert list(counts.columns) == ['s1', 's2']

    def test_low_total_genes_removed(self):
        counts = clean_count_matrix(self._matrix(), min_total_count=10)
        assert 'g4' not in counts.index
        assert (counts.sum(axis=1) >= 10).all()

    def test_negative_counts_raise(self):
        matrix = self._matrix()
        matrix.loc[0, 's2'] = -3.0
        with pytest.raises(InputError, match='Negative'):
            clean_count_matrix(matrix)

    def test_missing_gene_id_column_raises(self):
        with pytest.raises(InputError):
            clean_count_matrix(self._matrix().drop(columns='gene_id'))


class TestBuildSampleMetadata:
    def test_follows_column_order(self, sample_config):
        config_path, _ = sample_config
        config = _load_config(config_path)

        columns = [s for s, _, _ in SAMPLES][::-1]
        metadata = build_sample_metadata(config, columns)

        assert list(metadata.index) == columns
        assert list(metadata.columns) == ['knockout_status', 'bisphenol']
        assert metadata.loc['KO_B_2', 'knockout_status'] == 'KO'

    def test_unknown_sample_raises(self, sample_config):
        config_path, _ = sample_config
        config = _load_config(config_path)

        with pytest.raises(InputError, match='MYSTERY'):
            build_sample_metadata(config, ['WT_U_1', 'MYSTERY'])


class TestPrepDe:
    def test_returns_required_keys(self, prepped_data):
        for key in ['counts', 'sample_metadata', 'gene_annotation', 'config', 'metadata', 'output_dirs']:
            assert key in prepped_data

    def test_counts_are_clean(self, prepped_data):
        counts = prepped_data['counts']

        assert counts.index.is_unique
        assert not counts.isna().any().any()
        assert (counts.values >= 0).all()
        assert counts.dtypes.eq('int64').all()
        assert (counts.sum(axis=1) >= prepped_data['metadata']['min_total_count']).all()

    def test_drops_duplicate_and_missing_rows(self, prepped_data):
        counts = prepped_data['counts']
        expected = make_counts()

        assert 'ENSG_MISSING' not in counts.index
        # First occurrence kept, the 99999 duplicate discarded
        assert counts.loc[gene_id(0)].tolist() == expected.loc[gene_id(0)].tolist()

    def test_unannotated_and_low_count_genes_removed(self, prepped_data):
        counts = prepped_data['counts']
        # Last five genes have no name; the last three are also low-count
        assert len(counts) == N_GENES - 5
        for i in range(N_GENES - 5, N_GENES):
            assert gene_id(i) not in counts.index
        assert prepped_data['metadata']['missing_annotation'] == 5

    def test_keep_unannotated_option(self, sample_config):
        config_path, _ = sample_config
        config = _load_config(config_path)
        config['filtering']['keep_unannotated'] = True
        with open(config_path, 'w') as f:
            yaml.dump(config, f, sort_keys=False)

        data = prep_de(config_path)
        counts = data['counts']

        assert len(counts) == N_GENES - 3
        assert gene_id(N_GENES - 5) in counts.index
        assert data['gene_annotation'].loc[gene_id(N_GENES - 5), 'name'] == ''
        assert 'ENSG_MISSING' not in counts.index

    def test_metadata_matches_columns(self, prepped_data):
        counts = prepped_data['counts']
        meta = prepped_data['sample_metadata']
        assert list(meta.index) == list(counts.columns)

    def test_metadata_counts_are_consistent(self, prepped_data):
        metadata = prepped_data['metadata']
        assert metadata['n_genes'] == len(prepped_data['counts'])
        assert metadata['n_samples'] == len(SAMPLES)
        assert metadata['samples'] == [s for s, _, _ in SAMPLES]

    def test_gene_annotation_follows_counts(self, prepped_data):
        annotation = prepped_data['gene_annotation']
        assert list(annotation.index) == list(prepped_data['counts'].index)
        assert annotation.loc[gene_id(3), 'name'] == 'GENE3'

    def test_writes_outputs(self, prepped_data):
        tables = prepped_data['output_dirs']['tables']
        output_dir = prepped_data['config']['data_paths']['output_dir']

        assert os.path.exists(os.path.join(tables, 'filtered_counts.csv'))
        assert os.path.exists(os.path.join(output_dir, 'data_after_prep.pkl'))

    def test_missing_count_matrix_raises(self, sample_config):
        config_path, tmp_path = sample_config
        os.remove(tmp_path / 'annotated_counts.csv')
        with pytest.raises(FileNotFoundError):
            prep_de(config_path)

    def test_reports_steps_and_dropped_annotation(self, sample_config, capsys):
        config_path, _ = sample_config
        prep_de(config_path)
        out = capsys.readouterr().out

        for step in range(1, 6):
            assert f'[{step}/5]' in out
        assert '[1/4]' not in out
        assert '5 rows with missing name/description dropped' in out
