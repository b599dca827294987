"""
Tests for the Dataset container and the table loaders.
"""

import numpy as np
import pandas as pd
import pytest

from amplicon_tools import RANKS, Dataset, SchemaMismatch, load_dataset
from amplicon_tools.amplicon_utils import (
    load_count_table,
    load_metadata,
    load_taxonomy_table,
    split_lineage_strings
)


class TestDatasetInvariant:
    """The three tables must agree on taxon and sample identifiers."""

    def test_tables_are_aligned_to_counts(self, counts_df, taxonomy_df, metadata_df):
        shuffled = Dataset(
            counts=counts_df,
            taxonomy=taxonomy_df.iloc[::-1],
            metadata=metadata_df.iloc[::-1],
        )
        assert list(shuffled.taxonomy.index) == list(counts_df.index)
        assert list(shuffled.metadata.index) == list(counts_df.columns)
        assert list(shuffled.taxonomy.columns) == RANKS

    def test_taxon_missing_from_taxonomy(self, counts_df, taxonomy_df, metadata_df):
        with pytest.raises(SchemaMismatch, match='missing from the taxonomy'):
            Dataset(counts=counts_df, taxonomy=taxonomy_df.drop('T3'), metadata=metadata_df)

    def test_extra_taxonomy_row(self, counts_df, taxonomy_df, metadata_df):
        with pytest.raises(SchemaMismatch, match='missing from the count matrix'):
            Dataset(counts=counts_df.drop('T3'), taxonomy=taxonomy_df, metadata=metadata_df)

    def test_sample_missing_from_metadata(self, counts_df, taxonomy_df, metadata_df):
        with pytest.raises(SchemaMismatch, match='missing from the metadata'):
            Dataset(counts=counts_df, taxonomy=taxonomy_df, metadata=metadata_df.drop('S2'))

    def test_extra_metadata_row(self, counts_df, taxonomy_df, metadata_df):
        with pytest.raises(SchemaMismatch):
            Dataset(counts=counts_df.drop(columns='S2'), taxonomy=taxonomy_df, metadata=metadata_df)

    def test_duplicate_taxon_ids(self, counts_df, taxonomy_df, metadata_df):
        duplicated = pd.concat([counts_df, counts_df.loc[['T1']]])
        with pytest.raises(SchemaMismatch, match='Duplicate'):
            Dataset(counts=duplicated, taxonomy=taxonomy_df, metadata=metadata_df)

    def test_missing_rank_column(self, counts_df, taxonomy_df, metadata_df):
        with pytest.raises(SchemaMismatch, match='Species'):
            Dataset(counts=counts_df, taxonomy=taxonomy_df.drop(columns='Species'), metadata=metadata_df)

    @pytest.mark.parametrize('bad_value', [-1, 2.5, np.nan])
    def test_invalid_counts(self, counts_df, taxonomy_df, metadata_df, bad_value):
        counts = counts_df.astype(float)
        counts.loc['T2', 'S3'] = bad_value
        with pytest.raises(SchemaMismatch, match='T2'):
            Dataset(counts=counts, taxonomy=taxonomy_df, metadata=metadata_df)

    def test_float_counts_are_cast(self, counts_df, taxonomy_df, metadata_df):
        dataset = Dataset(counts=counts_df.astype(float), taxonomy=taxonomy_df, metadata=metadata_df)
        assert (dataset.counts.dtypes == 'int64').all()

    def test_input_tables_are_copied(self, counts_df, taxonomy_df, metadata_df):
        dataset = Dataset(counts=counts_df, taxonomy=taxonomy_df, metadata=metadata_df)
        counts_df.loc['T1', 'S1'] = 0
        assert dataset.counts.loc['T1', 'S1'] == 500

    def test_dataset_is_frozen(self, dataset):
        with pytest.raises(AttributeError):
            dataset.counts = None

    def test_equality_is_identity(self, dataset):
        copy = dataset.subset()
        assert dataset == dataset
        assert dataset != copy
        assert len({dataset, copy}) == 2


class TestDatasetAccessors:

    def test_shape_and_ids(self, dataset):
        assert dataset.n_taxa == 6
        assert dataset.n_samples == 8
        assert dataset.taxon_ids[0] == 'T1'
        assert dataset.sample_ids[-1] == 'N2'

    def test_sample_depths(self, dataset):
        assert dataset.sample_depths()['N1'] == 83
        assert dataset.taxon_totals()['T4'] == 170

    def test_relative_abundance_sums_to_one(self, dataset):
        totals = dataset.relative_abundance().sum(axis=0)
        assert np.allclose(totals.to_numpy(), 1.0)

    def test_relative_abundance_of_empty_sample(self, dataset):
        counts = dataset.counts.copy()
        counts['S1'] = 0
        rel = dataset.with_counts(counts).relative_abundance()
        assert (rel['S1'] == 0).all()

    def test_subset_keeps_dataset_order(self, dataset):
        subset = dataset.subset(taxa=['T3', 'T1'], samples=['S2', 'S1'])
        assert subset.taxon_ids == ['T1', 'T3']
        assert subset.sample_ids == ['S1', 'S2']
        assert list(subset.taxonomy.index) == ['T1', 'T3']
        assert list(subset.metadata.index) == ['S1', 'S2']

    def test_describe(self, dataset):
        info = dataset.describe()
        assert info['taxa'] == 6
        assert info['samples'] == 8
        assert info['min depth'] == 61
        assert 'Dataset(6 taxa x 8 samples' in str(dataset)


class TestLoadDataset:

    def test_load_tab_delimited(self, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df, taxonomy_df, metadata_df)
        dataset = load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'])

        assert dataset.taxon_ids == list(counts_df.index)
        assert dataset.sample_ids == list(counts_df.columns)
        assert dataset.counts.loc['T4', 'N1'] == 80
        assert dataset.taxonomy.loc['T1', 'Genus'] == 'Streptococcus'
        assert pd.isna(dataset.taxonomy.loc['T3', 'Genus'])
        assert dataset.metadata.loc['N1', 'SampleType'] == 'NegCtrl'

    def test_load_csv(self, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df, taxonomy_df, metadata_df, suffix='.csv')
        dataset = load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'])
        assert dataset.n_taxa == 6
        assert dataset.n_samples == 8

    def test_missing_taxon_raises(self, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df, taxonomy_df.drop('T2'), metadata_df)
        with pytest.raises(SchemaMismatch, match='T2'):
            load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'])

    def test_missing_sample_raises(self, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df, taxonomy_df, metadata_df.drop('N2'))
        with pytest.raises(SchemaMismatch, match='N2'):
            load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'])

    def test_extra_rows_are_dropped(self, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df.drop('T6').drop(columns='N2'), taxonomy_df, metadata_df)
        dataset = load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'])
        assert 'T6' not in dataset.taxonomy.index
        assert 'N2' not in dataset.metadata.index

    def test_sample_id_column(self, write_tables, counts_df, taxonomy_df, metadata_df):
        metadata = metadata_df.reset_index()
        metadata.insert(0, 'Batch', 'run1')
        metadata = metadata.set_index('Batch')
        paths = write_tables(counts_df, taxonomy_df, metadata)
        dataset = load_dataset(paths['counts'], paths['taxonomy'], paths['metadata'],
                               sample_id_column='SampleID')
        assert dataset.sample_ids == list(counts_df.columns)
        assert (dataset.metadata['Batch'] == 'run1').all()

    def test_biom_preamble_is_skipped(self, tmp_path, write_tables, counts_df, taxonomy_df, metadata_df):
        paths = write_tables(counts_df, taxonomy_df, metadata_df)
        biom_tsv = tmp_path / 'feature-table.tsv'
        body = counts_df.to_csv(sep='\t', index_label='#OTU ID')
        biom_tsv.write_text('# Constructed from biom file\n' + body)

        dataset = load_dataset(biom_tsv, paths['taxonomy'], paths['metadata'])
        assert dataset.counts.index.name == 'TaxonID'
        assert dataset.counts.loc['T1', 'S1'] == 500

    @pytest.mark.parametrize('id_header', ['#SampleID', '#Sample ID', 'sample-id'])
    def test_qiime_metadata_header(self, tmp_path, write_tables, counts_df, taxonomy_df, metadata_df,
                                   id_header):
        paths = write_tables(counts_df, taxonomy_df, metadata_df)
        metadata_file = tmp_path / 'sample-metadata.tsv'
        body = metadata_df.to_csv(sep='\t', index_label=id_header)
        header, rows = body.split('\n', 1)
        metadata_file.write_text(header + '\n#q2:types\tcategorical\tcategorical\n' + rows)

        dataset = load_dataset(paths['counts'], paths['taxonomy'], metadata_file)
        assert dataset.sample_ids == list(counts_df.columns)
        assert dataset.metadata.index.name == 'SampleID'
        assert list(dataset.metadata.columns) == ['SampleType', 'Treatment']
        assert dataset.metadata.loc['N1', 'Treatment'] == 'Control'

    def test_comment_lines_before_sample_header(self, tmp_path, metadata_df):
        metadata_file = tmp_path / 'mapping.txt'
        body = metadata_df.to_csv(sep='\t', index_label='#SampleID')
        metadata_file.write_text('# exported mapping file\n' + body)

        metadata = load_metadata(metadata_file)
        assert list(metadata.index) == list(metadata_df.index)

    def test_zero_padded_ids_are_kept(self, tmp_path):
        counts_file = tmp_path / 'counts.tsv'
        counts_file.write_text('#OTU ID\t007\t010\n001\t5\t3\n002\t0\t8\n')
        taxonomy_file = tmp_path / 'taxonomy.tsv'
        taxonomy_file.write_text(
            'Feature ID\tTaxon\n'
            '001\td__Bacteria; p__Firmicutes\n'
            '002\td__Bacteria; p__Bacteroidota\n'
        )
        metadata_file = tmp_path / 'metadata.tsv'
        metadata_file.write_text('sample-id\tGroup\n007\tA\n010\tB\n')

        dataset = load_dataset(counts_file, taxonomy_file, metadata_file)
        assert dataset.taxon_ids == ['001', '002']
        assert dataset.sample_ids == ['007', '010']
        assert dataset.counts.loc['002', '010'] == 8
        assert dataset.taxonomy.loc['001', 'Phylum'] == 'Firmicutes'
        assert list(load_count_table(counts_file).index) == ['001', '002']
        assert list(load_taxonomy_table(taxonomy_file).index) == ['001', '002']


class TestTaxonomyParsing:

    def test_qiime_lineage_strings(self, tmp_path):
        path = tmp_path / 'taxonomy.tsv'
        path.write_text(
            'Feature ID\tTaxon\tConfidence\n'
            'a1\td__Bacteria; p__Firmicutes; c__Bacilli; o__Lactobacillales; '
            'f__Streptococcaceae; g__Streptococcus; s__pneumoniae\t0.99\n'
            'a2\td__Bacteria; p__Proteobacteria; c__\t0.87\n'
            'a3\tUnassigned\t0.5\n'
        )
        taxonomy = load_taxonomy_table(path)

        assert list(taxonomy.columns) == RANKS
        assert taxonomy.loc['a1', 'Species'] == 'pneumoniae'
        assert taxonomy.loc['a2', 'Phylum'] == 'Proteobacteria'
        assert pd.isna(taxonomy.loc['a2', 'Class'])
        assert pd.isna(taxonomy.loc['a2', 'Genus'])
        assert taxonomy.loc['a3', 'Domain'] == 'Unassigned'

    def test_short_rank_table_is_padded(self, tmp_path):
        path = tmp_path / 'taxonomy.csv'
        path.write_text('id,Kingdom,Phylum,Class\nx1,Bacteria,Firmicutes, Bacilli \nx2,Bacteria,,\n')
        taxonomy = load_taxonomy_table(path)

        assert list(taxonomy.columns) == RANKS
        assert taxonomy.loc['x1', 'Class'] == 'Bacilli'
        assert pd.isna(taxonomy.loc['x2', 'Phylum'])
        assert taxonomy['Species'].isna().all()

    def test_headerless_table(self, tmp_path):
        path = tmp_path / 'taxonomy.tsv'
        path.write_text('x1\tBacteria\tFirmicutes\n')
        taxonomy = load_taxonomy_table(path, header=False)
        assert taxonomy.loc['x1', 'Phylum'] == 'Firmicutes'

    def test_too_many_ranks(self, tmp_path):
        path = tmp_path / 'taxonomy.csv'
        path.write_text('id,' + ','.join(f'r{i}' for i in range(8)) + '\n'
                        'x1,' + ','.join('v' for _ in range(8)) + '\n')
        with pytest.raises(SchemaMismatch):
            load_taxonomy_table(path)

    def test_too_many_lineage_levels(self):
        lineages = pd.Series({'x1': 'a;b;c;d;e;f;g;h'})
        with pytest.raises(SchemaMismatch, match='x1'):
            split_lineage_strings(lineages)
