"""
Shared fixtures for amplicon_tools tests.

The small dataset has six biological samples in two treatment groups and two
negative controls. T4 is a reagent contaminant that dominates the controls,
T5 is mitochondrial and T6 is a chloroplast.
"""

import io

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from amplicon_tools import RANKS, Dataset, load_config


def make_taxonomy(rows):
    return pd.DataFrame.from_dict(rows, orient='index', columns=RANKS)


def make_metadata(sample_types, treatments):
    return pd.DataFrame({'SampleType': sample_types, 'Treatment': treatments},
                        index=pd.Index(list(sample_types.keys()), name='SampleID'))


@pytest.fixture
def taxonomy_df():
    return make_taxonomy({
        'T1': ['Bacteria', 'Firmicutes', 'Bacilli', 'Lactobacillales', 'Streptococcaceae',
               'Streptococcus', np.nan],
        'T2': ['Bacteria', 'Bacteroidota', 'Bacteroidia', 'Bacteroidales', 'Prevotellaceae',
               'Prevotella', np.nan],
        'T3': ['Bacteria', 'Proteobacteria', 'Gammaproteobacteria', 'Pseudomonadales',
               'Moraxellaceae', np.nan, np.nan],
        'T4': ['Bacteria', 'Proteobacteria', 'Gammaproteobacteria', 'Burkholderiales',
               'Comamonadaceae', 'Ralstonia', np.nan],
        'T5': ['Bacteria', 'Proteobacteria', 'Alphaproteobacteria', 'Rickettsiales',
               'Mitochondria', np.nan, np.nan],
        'T6': ['Bacteria', 'Cyanobacteria', 'Chloroplast', np.nan, np.nan, np.nan, np.nan],
    })


@pytest.fixture
def counts_df():
    return pd.DataFrame(
        {
            'S1': [500, 300, 100, 5, 20, 10],
            'S2': [450, 350, 120, 4, 0, 15],
            'S3': [520, 280, 90, 6, 30, 0],
            'S4': [100, 700, 150, 5, 10, 5],
            'S5': [120, 650, 160, 3, 0, 8],
            'S6': [90, 720, 140, 7, 12, 0],
            'N1': [2, 0, 1, 80, 0, 0],
            'N2': [0, 1, 0, 60, 0, 0],
        },
        index=pd.Index(['T1', 'T2', 'T3', 'T4', 'T5', 'T6'], name='TaxonID'),
    )


@pytest.fixture
def metadata_df():
    return make_metadata(
        {'S1': 'Sample', 'S2': 'Sample', 'S3': 'Sample', 'S4': 'Sample', 'S5': 'Sample',
         'S6': 'Sample', 'N1': 'NegCtrl', 'N2': 'NegCtrl'},
        ['A', 'A', 'A', 'B', 'B', 'B', 'Control', 'Control'],
    )


@pytest.fixture
def dataset(counts_df, taxonomy_df, metadata_df):
    return Dataset(counts=counts_df, taxonomy=taxonomy_df, metadata=metadata_df)


@pytest.fixture
def biological_dataset(dataset):
    """The six biological samples without controls or organelles."""
    return dataset.subset(taxa=['T1', 'T2', 'T3', 'T4'], samples=['S1', 'S2', 'S3', 'S4', 'S5', 'S6'])


@pytest.fixture
def tree():
    """Rooted tree over T1-T4; all branch lengths sum to 2.1."""
    return TreeNode.read(io.StringIO('((T1:0.1,T2:0.2):0.3,(T3:0.4,T4:0.5):0.6);\n'), format='newick')


@pytest.fixture
def tree_dataset(biological_dataset, tree):
    return Dataset(counts=biological_dataset.counts, taxonomy=biological_dataset.taxonomy,
                   metadata=biological_dataset.metadata, tree=tree)


@pytest.fixture
def config():
    config = load_config()
    config['rarefaction']['depth'] = 500
    config['rarefaction']['curve_depths'] = [100, 500]
    config['metadata']['group_variables'] = ['Treatment']
    return config


@pytest.fixture
def write_tables(tmp_path):
    """Write tables as tab-delimited files and return their paths."""
    def _write(counts, taxonomy, metadata, suffix='.tsv'):
        sep = ',' if suffix == '.csv' else '\t'
        paths = {
            'counts': tmp_path / f'counts{suffix}',
            'taxonomy': tmp_path / f'taxonomy{suffix}',
            'metadata': tmp_path / f'metadata{suffix}',
        }
        counts.to_csv(paths['counts'], sep=sep)
        taxonomy.to_csv(paths['taxonomy'], sep=sep)
        metadata.to_csv(paths['metadata'], sep=sep)
        return paths
    return _write
