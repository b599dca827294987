"""
Tests for negative-control contaminant detection.
"""

import numpy as np
import pandas as pd
import pytest

from amplicon_tools import (
    RANKS,
    ContaminantReport,
    Dataset,
    EmptyControlSet,
    contaminant_abundance,
    detect_contaminants,
    remove_contaminants,
)
from amplicon_tools.amplicon_decontam import disproportion

CONTROLS = {'SampleType': 'NegCtrl'}


@pytest.fixture
def balanced_dataset():
    """T1 has the same relative abundance (0.5) in every sample."""
    counts = pd.DataFrame(
        {'C1': [50, 50, 0], 'C2': [50, 40, 10], 'B1': [50, 50, 0], 'B2': [50, 10, 40]},
        index=['T1', 'T2', 'T3'],
    )
    taxonomy = pd.DataFrame([['Bacteria'] + [np.nan] * 6] * 3, index=counts.index, columns=RANKS)
    metadata = pd.DataFrame({'SampleType': ['NegCtrl', 'NegCtrl', 'Sample', 'Sample']},
                            index=counts.columns)
    return Dataset(counts=counts, taxonomy=taxonomy, metadata=metadata)


class TestDetectContaminants:

    def test_flags_control_dominant_taxon(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        assert report.contaminants == frozenset({'T4'})
        assert report.control_samples == ('N1', 'N2')
        assert report.threshold == 0.40

    def test_table_covers_taxa_seen_in_controls(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        assert set(report.table.index) == {'T1', 'T2', 'T3', 'T4'}
        assert report.table.index[0] == 'T4'
        assert report.table.loc['T4', 'Control Reads'] == 140
        assert report.table.loc['T4', 'Control Prevalence'] == 1.0
        assert report.table.loc['T4', 'Genus'] == 'Ralstonia'

    def test_mean_abundance_uses_full_sample_depth(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        expected = (80 / 83 + 60 / 61) / 2
        assert report.table.loc['T4', 'Mean Control Abundance'] == pytest.approx(expected)

    def test_equal_means_are_never_flagged(self, balanced_dataset):
        report = detect_contaminants(balanced_dataset, CONTROLS, threshold=0.0)
        assert report.table.loc['T1', 'Disproportion'] == pytest.approx(0.0)
        assert 'T1' not in report.contaminants

    def test_biological_enriched_taxa_are_never_flagged(self, dataset):
        report = detect_contaminants(dataset, CONTROLS, threshold=0.0)
        for taxon in ['T1', 'T2', 'T3']:
            assert report.table.loc[taxon, 'Disproportion'] > 0.4
            assert taxon not in report.contaminants

    def test_threshold_of_one_flags_nothing(self, dataset):
        report = detect_contaminants(dataset, CONTROLS, threshold=1.0)
        assert report.contaminants == frozenset()

    def test_no_controls(self, dataset):
        with pytest.raises(EmptyControlSet):
            detect_contaminants(dataset, {'SampleType': 'Blank'})

    def test_invalid_threshold(self, dataset):
        with pytest.raises(ValueError):
            detect_contaminants(dataset, CONTROLS, threshold=-0.1)

    def test_callable_control_criteria(self, dataset):
        report = detect_contaminants(dataset, lambda md: md.index.str.startswith('N'))
        assert report.contaminants == frozenset({'T4'})

    def test_report_to_csv(self, dataset, tmp_path):
        report = detect_contaminants(dataset, CONTROLS)
        output = tmp_path / 'contaminants.csv'
        report.to_csv(output)
        written = pd.read_csv(output, index_col=0)
        assert bool(written.loc['T4', 'Contaminant'])


class TestDisproportion:

    def test_values(self):
        assert disproportion(0.5, 0.5) == 0.0
        assert disproportion(0.0, 0.0) == 0.0
        assert disproportion(0.4, 0.1) == pytest.approx(0.75)
        assert disproportion(0.1, 0.4) == pytest.approx(0.75)


class TestRemoveContaminants:

    def test_remove_from_report(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        cleaned = remove_contaminants(dataset, report)
        assert 'T4' not in cleaned.taxon_ids
        assert cleaned.sample_ids == dataset.sample_ids

    def test_remove_explicit_list(self, dataset):
        cleaned = remove_contaminants(dataset, ['T2', 'T3'])
        assert cleaned.taxon_ids == ['T1', 'T4', 'T5', 'T6']

    def test_detection_alone_changes_nothing(self, dataset):
        detect_contaminants(dataset, CONTROLS)
        assert dataset.n_taxa == 6


class TestContaminantAbundance:

    def test_long_format(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        long_df = contaminant_abundance(dataset, report)
        assert len(long_df) == dataset.n_samples
        assert set(long_df['TaxonID']) == {'T4'}
        groups = long_df.set_index('SampleID')['Group']
        assert groups['N1'] == 'Control'
        assert groups['S1'] == 'Biological'

    def test_grouped_by_metadata(self, dataset):
        report = detect_contaminants(dataset, CONTROLS)
        long_df = contaminant_abundance(dataset, report, group_var='Treatment')
        assert set(long_df['Group']) == {'A', 'B', 'Control'}

    def test_nothing_flagged(self, dataset):
        report = ContaminantReport(contaminants=frozenset(), table=pd.DataFrame())
        assert contaminant_abundance(dataset, report).empty
