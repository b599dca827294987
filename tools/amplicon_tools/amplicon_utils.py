"""
Utility functions for amplicon data loading, configuration and export.
"""

import copy
import logging
import os
from pathlib import Path

import numpy as np
import pandas as pd
import yaml

from .amplicon_dataset import RANKS, SchemaMismatch

logger = logging.getLogger(__name__)

# Header tokens written by biom/QIIME 2 exports
FEATURE_HEADER_TOKENS = (
    "#OTU ID", "#OTUID", "#OTU_ID", "#Feature ID", "#FEATURE ID",
    "feature-id", "feature id", "OTU ID", "Feature ID"
)

# Sample ID headers of QIIME 1 mapping files and QIIME 2 metadata
SAMPLE_HEADER_TOKENS = ("#SampleID", "#Sample ID", "#Sample-ID", "sample-id", "sampleid", "sample id")

# Directive row QIIME 2 metadata may carry directly below the header
QIIME2_DIRECTIVE_PREFIX = "#q2:"

RANK_PREFIXES = ('d__', 'k__', 'p__', 'c__', 'o__', 'f__', 'g__', 's__')

DEFAULT_CONFIG = {
    'input': {
        'counts': 'data/counts.tsv',
        'taxonomy': 'data/taxonomy.tsv',
        'metadata': 'data/metadata.tsv',
        'tree': None,
        'sample_id_column': None,
        'taxonomy_header': True,
    },
    'filtering': {
        'excluded_lineages': [
            ['Domain', 'Eukaryota'],
            ['Family', 'Mitochondria'],
            ['Class', 'Chloroplast'],
        ],
        'excluded_samples': [],
        'min_relative_abundance': 1e-5,
        'min_prevalence': None,
        'min_reads': None,
    },
    'decontamination': {
        'enabled': True,
        'control_criteria': {'SampleType': 'NegCtrl'},
        'threshold': 0.40,
        'apply': False,
        'contaminants': [],
        'drop_controls': True,
    },
    'rarefaction': {
        'enabled': True,
        'depth': 10000,
        'seed': 42,
        'curve_depths': [100, 500, 1000, 2500, 5000, 10000, 20000],
    },
    'metadata': {
        'group_variables': [],
    },
    'diversity': {
        'alpha_metrics': ['observed_features', 'shannon', 'simpson'],
        'beta_metric': 'braycurtis',
        'permutations': 999,
    },
    'indicator_species': {
        'variable': None,
        'groups': None,
        'permutations': 999,
        'seed': 42,
    },
    'differential_abundance': {
        'method': 'deseq2',
        'reference': {},
        'p_value_threshold': 0.05,
    },
    'visualization': {
        'figure_dpi': 300,
        'top_n': 15,
        'rank': 'Genus',
    },
    'output': {
        'directory': 'results',
    },
}


def setup_logger(name='amplicon_tools', log_file=None, log_level=logging.INFO):
    """Set up a console (and optional file) logger for a script."""
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Create formatter
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Create console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Create file handler if log_file specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def _merge_dicts(base, override):
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None):
    """
    Load a YAML configuration file on top of DEFAULT_CONFIG.

    Parameters:
    -----------
    config_path : str or Path, optional
        Path to the YAML file; None returns the defaults

    Returns:
    --------
    dict
        Merged configuration
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    return _merge_dicts(DEFAULT_CONFIG, user_config)


def infer_separator(filepath):
    """Comma for .csv files, tab for everything else."""
    return ',' if Path(filepath).suffix.lower() == '.csv' else '\t'


def _is_header_line(line):
    lowered = line.lower()
    return lowered.startswith(tuple(token.lower() for token in FEATURE_HEADER_TOKENS + SAMPLE_HEADER_TOKENS))


def _count_preamble_lines(filepath):
    # biom conversions prepend "# Constructed from biom file" before the header row
    skiprows = 0
    with open(filepath, 'r') as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                skiprows += 1
                continue
            if stripped.startswith('#') and not _is_header_line(stripped):
                skiprows += 1
                continue
            break
    return skiprows


def load_count_table(filepath):
    """
    Load a count matrix with taxa as rows and samples as columns.

    Parameters:
    -----------
    filepath : str or Path
        Path to the count matrix; the first column holds taxon IDs

    Returns:
    --------
    pandas.DataFrame
        Count matrix with string taxon and sample IDs
    """
    counts_df = pd.read_csv(
        filepath,
        sep=infer_separator(filepath),
        index_col=0,
        converters={0: str},
        skiprows=_count_preamble_lines(filepath),
    )
    counts_df.index = counts_df.index.astype(str).str.strip()
    counts_df.index.name = 'TaxonID'
    counts_df.columns = counts_df.columns.astype(str).str.strip()
    return counts_df


def _strip_rank_prefix(value):
    if isinstance(value, str) and value.startswith(RANK_PREFIXES):
        return value[3:]
    return value


def split_lineage_strings(lineages):
    """
    Split semicolon-delimited lineage strings into the 7 ranks.

    Parameters:
    -----------
    lineages : pandas.Series
        Lineage strings such as 'd__Bacteria; p__Firmicutes; ...' indexed by taxon ID

    Returns:
    --------
    pandas.DataFrame
        Lineage table with the columns in RANKS
    """
    rows = {}
    for taxon, lineage in lineages.items():
        if not isinstance(lineage, str):
            rows[taxon] = [np.nan] * len(RANKS)
            continue
        parts = [_strip_rank_prefix(part.strip()) for part in lineage.split(';')]
        if len(parts) > len(RANKS):
            raise SchemaMismatch(f"Lineage for {taxon} has more than {len(RANKS)} ranks: {lineage}")
        parts = parts + [np.nan] * (len(RANKS) - len(parts))
        rows[taxon] = parts
    return pd.DataFrame.from_dict(rows, orient='index', columns=RANKS)


def load_taxonomy_table(filepath, header=True):
    """
    Load a lineage table keyed by taxon ID.

    Rank columns are taken in order (domain through species) and renamed;
    missing trailing ranks are filled with NaN. A single column of
    semicolon-delimited lineage strings is split into ranks.

    Parameters:
    -----------
    filepath : str or Path
        Path to the lineage table
    header : bool
        Whether the first row is a header

    Returns:
    --------
    pandas.DataFrame
        Lineage table with the columns in RANKS
    """
    # IDs stay text so zero-padded identifiers survive
    taxonomy_df = pd.read_csv(
        filepath,
        sep=infer_separator(filepath),
        header=0 if header else None,
        dtype=str,
        skiprows=_count_preamble_lines(filepath),
    )
    taxonomy_df = taxonomy_df.set_index(taxonomy_df.columns[0])
    taxonomy_df.index = taxonomy_df.index.astype(str).str.strip()
    taxonomy_df.index.name = 'TaxonID'

    # QIIME 2 taxonomy exports carry a Confidence column after the lineage string
    if taxonomy_df.shape[1] == 2 and str(taxonomy_df.columns[1]).lower() == 'confidence':
        taxonomy_df = taxonomy_df.iloc[:, :1]

    if taxonomy_df.shape[1] == 1 and taxonomy_df.iloc[:, 0].str.contains(';', na=False).any():
        taxonomy_df = split_lineage_strings(taxonomy_df.iloc[:, 0])
    else:
        if taxonomy_df.shape[1] > len(RANKS):
            raise SchemaMismatch(
                f"Taxonomy table {filepath} has {taxonomy_df.shape[1]} rank columns, "
                f"expected at most {len(RANKS)}"
            )
        taxonomy_df.columns = RANKS[:taxonomy_df.shape[1]]
        for rank in RANKS[taxonomy_df.shape[1]:]:
            taxonomy_df[rank] = np.nan

    # Blank and prefix-only cells are unknown ranks
    for rank in RANKS:
        taxonomy_df[rank] = taxonomy_df[rank].map(lambda v: v.strip() if isinstance(v, str) else v)
    taxonomy_df = taxonomy_df.replace({'': np.nan})
    for prefix in RANK_PREFIXES:
        taxonomy_df = taxonomy_df.replace({prefix: np.nan})
    return taxonomy_df[RANKS]


def load_metadata(filepath, sample_id_column=None):
    """
    Load sample metadata.

    Parameters:
    -----------
    filepath : str or Path
        Path to the metadata file
    sample_id_column : str, optional
        Column name for sample IDs (default: first column)

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index; all fields as strings
    """
    metadata_df = pd.read_csv(filepath, sep=infer_separator(filepath), dtype=str,
                              skiprows=_count_preamble_lines(filepath))

    directives = metadata_df.iloc[:, 0].str.strip().str.lower().str.startswith(QIIME2_DIRECTIVE_PREFIX, na=False)
    if directives.any():
        metadata_df = metadata_df.loc[~directives].copy()

    if sample_id_column is None:
        sample_id_column = metadata_df.columns[0]

    # Check if the sample ID column exists
    if sample_id_column not in metadata_df.columns:
        raise SchemaMismatch(f"Sample ID column '{sample_id_column}' not found in metadata")

    metadata_df[sample_id_column] = metadata_df[sample_id_column].str.strip()
    metadata_df = metadata_df.set_index(sample_id_column)
    metadata_df.index.name = 'SampleID'

    duplicated = metadata_df.index[metadata_df.index.duplicated()]
    if len(duplicated):
        raise SchemaMismatch(f"Found {len(duplicated)} duplicate sample IDs in metadata: "
                             f"{', '.join(sorted(set(duplicated)))}")

    return metadata_df


def load_tree(filepath):
    """Read a Newick tree into a scikit-bio TreeNode."""
    from skbio import TreeNode

    tree = TreeNode.read(str(filepath), format='newick')
    logger.info(f"Loaded tree with {tree.count(tips=True)} tips from {filepath}")
    return tree


def lineage_labels(taxonomy_df, rank):
    """
    Label each taxon by its lineage at `rank`, falling back to the deepest known rank.

    Unclassified taxa at `rank` get 'Unclassified <known rank value>' labels so
    they are not merged with each other across higher ranks.
    """
    if rank not in RANKS:
        raise ValueError(f"Unknown rank '{rank}'. Use one of: {', '.join(RANKS)}")

    depth = RANKS.index(rank)
    labels = {}
    for taxon, row in taxonomy_df.iterrows():
        value = row[rank]
        if isinstance(value, str) and value:
            labels[taxon] = value
            continue
        known = [row[r] for r in RANKS[:depth] if isinstance(row[r], str) and row[r]]
        labels[taxon] = f"Unclassified {known[-1]}" if known else 'Unclassified'
    return pd.Series(labels, name=rank)


def collapse_taxa(dataset, rank):
    """
    Sum counts of taxa sharing a lineage label at `rank`.

    Returns:
    --------
    pandas.DataFrame
        Counts with lineage labels as index, samples as columns
    """
    labels = lineage_labels(dataset.taxonomy, rank)
    return dataset.counts.groupby(labels.loc[dataset.counts.index]).sum()


def create_abundance_summary(dataset, group_var=None, top_n=20):
    """
    Create a summary table of relative abundance and prevalence per taxon.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to summarize
    group_var : str, optional
        Metadata variable to report group-specific means for
    top_n : int
        Number of most abundant taxa to include (None for all)

    Returns:
    --------
    pandas.DataFrame
        Summary table indexed by taxon ID
    """
    rel_abundance = dataset.relative_abundance() * 100
    summary = pd.DataFrame({
        'Mean Abundance (%)': rel_abundance.mean(axis=1),
        'Prevalence (%)': (dataset.counts > 0).mean(axis=1) * 100,
        'Total Reads': dataset.taxon_totals(),
    })
    summary = summary.join(dataset.taxonomy)

    if group_var is not None and group_var in dataset.metadata.columns:
        for group, group_df in dataset.metadata.groupby(group_var):
            summary[f'Mean in {group} (%)'] = rel_abundance[group_df.index].mean(axis=1)

    summary = summary.sort_values('Mean Abundance (%)', ascending=False)

    if top_n is not None:
        summary = summary.head(top_n)

    return summary


def export_dataset(dataset, output_dir, prefix):
    """
    Write the counts, taxonomy and metadata of a dataset as CSV files.

    Returns:
    --------
    dict
        Paths keyed by table name
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = {
        'counts': Path(output_dir) / f"{prefix}_counts.csv",
        'taxonomy': Path(output_dir) / f"{prefix}_taxonomy.csv",
        'metadata': Path(output_dir) / f"{prefix}_metadata.csv",
    }
    dataset.counts.to_csv(paths['counts'])
    dataset.taxonomy.to_csv(paths['taxonomy'])
    dataset.metadata.to_csv(paths['metadata'])
    logger.info(f"Exported {dataset} to {output_dir} with prefix '{prefix}'")
    return paths


def export_biom_format(dataset, output_file, table_id="Amplicon abundance data"):
    """
    Export the counts and taxonomy of a dataset to BIOM (HDF5) format.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to export
    output_file : str
        Path to save BIOM file
    table_id : str
        Identifier stored in the BIOM table
    """
    from biom import Table
    from biom.util import biom_open

    observation_metadata = [
        {'taxonomy': [value if isinstance(value, str) else '' for value in row]}
        for row in dataset.taxonomy.itertuples(index=False)
    ]
    table = Table(
        dataset.counts.values,
        observation_ids=list(dataset.counts.index),
        sample_ids=list(dataset.counts.columns),
        observation_metadata=observation_metadata,
    )

    with biom_open(str(output_file), 'w') as f:
        table.to_hdf5(f, table_id)

    logger.info(f"Exported abundance data to BIOM format: {output_file}")
