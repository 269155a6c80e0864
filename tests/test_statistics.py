"""Tests for bulkde.statistics module."""

import os

import numpy as np
import pandas as pd
import pytest

from bulkde import read_results, stat_de
from bulkde.errors import DesignError, SampleOrderError
from bulkde.statistics import format_results

from conftest import N_DE_GENES, gene_id


KO_CONTRAST = 'knockout_status_KO_vs_WT'
BPA_CONTRAST = 'bisphenol_BPA_vs_Untreated'


class TestFormatResults:
    def test_sorted_by_padj_with_nan_last(self):
        results = pd.DataFrame({
            'log2FoldChange': [1.0, -2.0, 0.5, 3.0],
            'padj': [0.5, np.nan, 0.01, 0.2],
        }, index=['a', 'b', 'c', 'd'])

        table = format_results(results, pd.Index(['a', 'b', 'c', 'd']))
        assert list(table['gene']) == ['c', 'd', 'a', 'b']

    def test_one_row_per_gene(self):
        results = pd.DataFrame({'log2FoldChange': [1.0], 'padj': [0.1]}, index=['a'])
        table = format_results(results, pd.Index(['a', 'b']))
        assert len(table) == 2
        assert np.isnan(table.loc[table['gene'] == 'b', 'padj'].iloc[0])


class TestStatDe:
    def test_returns_expected_keys(self, stat_data):
        for key in ['model', 'de_results', 'skipped_contrasts', 'stats_params']:
            assert key in stat_data

    def test_fits_once_with_formula(self, prepped_data, stub_engine):
        stat_de(prepped_data, engine=stub_engine)
        assert stub_engine.fit_calls == ['~knockout_status + bisphenol']

    def test_one_table_per_contrast(self, stat_data):
        assert set(stat_data['de_results']) == {KO_CONTRAST, BPA_CONTRAST}
        assert stat_data['skipped_contrasts'] == {}

    def test_every_gene_once(self, stat_data):
        counts = stat_data['counts']
        for results in stat_data['de_results'].values():
            assert len(results) == len(counts)
            assert results['gene'].notna().all()
            assert results['gene'].is_unique
            assert set(results['gene']) == set(counts.index)

    def test_sorted_by_padj(self, stat_data):
        padj = stat_data['de_results'][KO_CONTRAST]['padj'].dropna().values
        assert (np.diff(padj) >= 0).all()

    def test_injected_genes_are_up_in_ko(self, stat_data):
        results = stat_data['de_results'][KO_CONTRAST].set_index('gene')
        alpha = stat_data['stats_params']['alpha']
        for i in range(N_DE_GENES):
            assert results.loc[gene_id(i), 'padj'] < alpha
            assert results.loc[gene_id(i), 'log2FoldChange'] > 0

    def test_writes_tables(self, stat_data):
        tables = stat_data['output_dirs']['tables']
        for name in [KO_CONTRAST, BPA_CONTRAST]:
            path = os.path.join(tables, f'de_{name}.csv')
            loaded = read_results(path)
            pd.testing.assert_series_equal(
                loaded['log2FoldChange'], stat_data['de_results'][name]['log2FoldChange']
            )

        summary = pd.read_csv(os.path.join(tables, 'de_summary.csv'))
        assert set(summary['Contrast']) == {KO_CONTRAST, BPA_CONTRAST}

    def test_params_stored(self, prepped_data, stub_engine):
        result = stat_de(prepped_data, engine=stub_engine, alpha=0.01, log2fc_threshold=2.0)
        params = result['stats_params']
        assert params['alpha'] == 0.01
        assert params['log2fc_threshold'] == 2.0
        assert params['formula'] == '~knockout_status + bisphenol'

    def test_input_dict_not_mutated(self, prepped_data, stub_engine):
        stat_de(prepped_data, engine=stub_engine)
        assert 'de_results' not in prepped_data

    def test_unobserved_level_dropped(self, stat_data):
        categories = list(stat_data['sample_metadata']['bisphenol'].cat.categories)
        assert categories == ['Untreated', 'BPA']

    def test_confounded_contrast_is_skipped(self, prepped_data, stub_engine):
        data = dict(prepped_data)
        meta = prepped_data['sample_metadata'].copy()
        # BPS only ever seen in KO samples
        meta.loc[['KO_B_1', 'KO_B_2'], 'bisphenol'] = 'BPS'
        data['sample_metadata'] = meta

        contrasts = [
            ['knockout_status', 'KO', 'WT'],
            ['bisphenol', 'BPS', 'Untreated'],
        ]
        result = stat_de(data, engine=stub_engine, contrasts=contrasts)

        assert 'bisphenol_BPS_vs_Untreated' in result['skipped_contrasts']
        assert 'bisphenol_BPS_vs_Untreated' not in result['de_results']
        assert KO_CONTRAST in result['de_results']

    def test_unknown_contrast_level_is_skipped(self, prepped_data, stub_engine):
        contrasts = [['bisphenol', 'BPS', 'Untreated']]
        result = stat_de(prepped_data, engine=stub_engine, contrasts=contrasts)
        assert result['de_results'] == {}
        assert 'bisphenol_BPS_vs_Untreated' in result['skipped_contrasts']

    def test_single_level_factor_raises(self, prepped_data, stub_engine):
        data = dict(prepped_data)
        meta = prepped_data['sample_metadata'].copy()
        meta['knockout_status'] = 'WT'
        data['sample_metadata'] = meta

        with pytest.raises(DesignError):
            stat_de(data, engine=stub_engine)
        assert stub_engine.fit_calls == []

    def test_aliased_factors_raise(self, prepped_data, stub_engine):
        data = dict(prepped_data)
        meta = prepped_data['sample_metadata'].copy()
        meta['bisphenol'] = meta['knockout_status'].map({'WT': 'Untreated', 'KO': 'BPA'})
        data['sample_metadata'] = meta

        with pytest.raises(DesignError):
            stat_de(data, engine=stub_engine)

    def test_permuted_metadata_raises(self, prepped_data, stub_engine):
        data = dict(prepped_data)
        data['sample_metadata'] = prepped_data['sample_metadata'].iloc[::-1]

        with pytest.raises(SampleOrderError):
            stat_de(data, engine=stub_engine)
