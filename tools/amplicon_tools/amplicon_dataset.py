"""
Dataset container and loader for amplicon count tables.

A Dataset bundles the taxa x samples count matrix, the 7-rank lineage table,
the sample metadata table and an optional phylogenetic tree. The three tables
must agree on their identifiers; this is checked every time a Dataset is
built, so every filtering stage re-validates it on its output.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

RANKS = ['Domain', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']


class AmpliconError(Exception):
    """Base class for amplicon_tools errors."""


class SchemaMismatch(AmpliconError, ValueError):
    """Input tables disagree on taxon or sample identifiers."""


class EmptyControlSet(AmpliconError):
    """The negative-control selection matched no samples."""


class SampleBelowDepth(UserWarning):
    """Samples were dropped because their read count is below the rarefaction depth."""


def _preview(ids, limit=10):
    ids = sorted(str(i) for i in ids)
    shown = ', '.join(ids[:limit])
    if len(ids) > limit:
        shown += f', ... ({len(ids) - limit} more)'
    return shown


@dataclass(frozen=True, eq=False)
class Dataset:
    """
    Immutable bundle of counts, taxonomy, metadata and tree.

    Parameters:
    -----------
    counts : pandas.DataFrame
        Non-negative integer counts with taxa as index, samples as columns
    taxonomy : pandas.DataFrame
        Lineage table indexed by taxon ID with the columns in RANKS
    metadata : pandas.DataFrame
        Sample metadata indexed by sample ID
    tree : skbio.TreeNode, optional
        Phylogenetic tree whose tips are taxon IDs

    The tables are copied on construction and re-ordered so that taxonomy rows
    follow the count rows and metadata rows follow the count columns.
    """

    counts: pd.DataFrame
    taxonomy: pd.DataFrame
    metadata: pd.DataFrame
    tree: object = None

    def __post_init__(self):
        counts = self.counts.copy()
        counts.index = counts.index.astype(str)
        counts.columns = counts.columns.astype(str)

        _check_unique(counts.index, 'taxon IDs in count matrix')
        _check_unique(counts.columns, 'sample IDs in count matrix')
        _check_unique(self.taxonomy.index, 'taxon IDs in taxonomy table')
        _check_unique(self.metadata.index, 'sample IDs in metadata table')

        taxonomy = self.taxonomy.copy()
        taxonomy.index = taxonomy.index.astype(str)
        metadata = self.metadata.copy()
        metadata.index = metadata.index.astype(str)

        missing_taxa = set(counts.index) - set(taxonomy.index)
        if missing_taxa:
            raise SchemaMismatch(
                f"{len(missing_taxa)} taxa in the count matrix are missing from the taxonomy table: "
                f"{_preview(missing_taxa)}"
            )
        orphan_taxa = set(taxonomy.index) - set(counts.index)
        if orphan_taxa:
            raise SchemaMismatch(
                f"{len(orphan_taxa)} taxa in the taxonomy table are missing from the count matrix: "
                f"{_preview(orphan_taxa)}"
            )
        missing_samples = set(counts.columns) - set(metadata.index)
        if missing_samples:
            raise SchemaMismatch(
                f"{len(missing_samples)} samples in the count matrix are missing from the metadata: "
                f"{_preview(missing_samples)}"
            )
        orphan_samples = set(metadata.index) - set(counts.columns)
        if orphan_samples:
            raise SchemaMismatch(
                f"{len(orphan_samples)} samples in the metadata are missing from the count matrix: "
                f"{_preview(orphan_samples)}"
            )

        missing_ranks = [rank for rank in RANKS if rank not in taxonomy.columns]
        if missing_ranks:
            raise SchemaMismatch(f"Taxonomy table is missing rank columns: {', '.join(missing_ranks)}")

        counts = _as_integer_counts(counts)

        object.__setattr__(self, 'counts', counts)
        object.__setattr__(self, 'taxonomy', taxonomy.loc[counts.index, RANKS])
        object.__setattr__(self, 'metadata', metadata.loc[counts.columns])

    @property
    def taxon_ids(self):
        return list(self.counts.index)

    @property
    def sample_ids(self):
        return list(self.counts.columns)

    @property
    def n_taxa(self):
        return self.counts.shape[0]

    @property
    def n_samples(self):
        return self.counts.shape[1]

    def sample_depths(self):
        """Total read count per sample."""
        return self.counts.sum(axis=0)

    def taxon_totals(self):
        """Total read count per taxon across all samples."""
        return self.counts.sum(axis=1)

    def relative_abundance(self):
        """
        Per-sample relative abundance (count / sample total).

        Samples with zero reads contribute zeros rather than NaN.
        """
        depths = self.sample_depths()
        rel = self.counts.div(depths.replace(0, np.nan), axis=1)
        return rel.fillna(0.0)

    def subset(self, taxa=None, samples=None):
        """
        Return a new Dataset restricted to the given taxa and/or samples.

        Order follows the current Dataset, not the order of the arguments.
        """
        keep_taxa = self.counts.index if taxa is None else self.counts.index[self.counts.index.isin(list(taxa))]
        keep_samples = (self.counts.columns if samples is None
                        else self.counts.columns[self.counts.columns.isin(list(samples))])
        return Dataset(
            counts=self.counts.loc[keep_taxa, keep_samples],
            taxonomy=self.taxonomy.loc[keep_taxa],
            metadata=self.metadata.loc[keep_samples],
            tree=self.tree,
        )

    def with_counts(self, counts):
        """Return a new Dataset with replaced counts and matching taxonomy/metadata rows."""
        return Dataset(
            counts=counts,
            taxonomy=self.taxonomy.loc[counts.index],
            metadata=self.metadata.loc[counts.columns],
            tree=self.tree,
        )

    def describe(self):
        depths = self.sample_depths()
        return {
            'taxa': self.n_taxa,
            'samples': self.n_samples,
            'total reads': int(depths.sum()),
            'min depth': int(depths.min()) if self.n_samples else 0,
            'max depth': int(depths.max()) if self.n_samples else 0,
        }

    def __str__(self):
        info = self.describe()
        return f"Dataset({info['taxa']} taxa x {info['samples']} samples, {info['total reads']} reads)"


def _check_unique(index, label):
    duplicated = index[index.duplicated()]
    if len(duplicated):
        raise SchemaMismatch(f"Duplicate {label}: {_preview(set(duplicated))}")


def _as_integer_counts(counts):
    if counts.empty:
        return counts.astype('int64')

    values = counts.apply(pd.to_numeric, errors='coerce')
    bad_cells = values.isna()
    if bad_cells.values.any():
        bad_taxa = values.index[bad_cells.any(axis=1)]
        raise SchemaMismatch(f"Non-numeric or missing counts for taxa: {_preview(bad_taxa)}")

    array = values.to_numpy(dtype=float)
    if (array < 0).any():
        bad_taxa = values.index[(array < 0).any(axis=1)]
        raise SchemaMismatch(f"Negative counts for taxa: {_preview(bad_taxa)}")
    if (np.mod(array, 1) != 0).any():
        bad_taxa = values.index[(np.mod(array, 1) != 0).any(axis=1)]
        raise SchemaMismatch(f"Non-integer counts for taxa: {_preview(bad_taxa)}")

    return values.astype('int64')


def load_dataset(counts_path, taxonomy_path, metadata_path, tree_path=None,
                 sample_id_column=None, taxonomy_header=True):
    """
    Load the count matrix, lineage table, metadata and optional tree.

    Parameters:
    -----------
    counts_path : str or Path
        Count matrix, taxa as rows, samples as columns (.csv or tab-delimited)
    taxonomy_path : str or Path
        Lineage table keyed by taxon ID with up to 7 rank columns
    metadata_path : str or Path
        Metadata table keyed by sample ID
    tree_path : str or Path, optional
        Newick tree with taxon IDs as tip labels
    sample_id_column : str, optional
        Metadata column holding sample IDs (default: first column)
    taxonomy_header : bool
        Whether the lineage table has a header row

    Returns:
    --------
    Dataset
        Validated dataset

    Raises:
    -------
    SchemaMismatch
        If count-matrix taxa are absent from the lineage table or count-matrix
        samples are absent from the metadata.
    """
    from .amplicon_utils import load_count_table, load_metadata, load_taxonomy_table, load_tree

    counts = load_count_table(counts_path)
    taxonomy = load_taxonomy_table(taxonomy_path, header=taxonomy_header)
    metadata = load_metadata(metadata_path, sample_id_column=sample_id_column)
    tree = load_tree(tree_path) if tree_path is not None else None

    logger.info(f"Count matrix: {counts.shape[0]} taxa, {counts.shape[1]} samples")
    logger.info(f"Taxonomy: {taxonomy.shape[0]} taxa; metadata: {metadata.shape[0]} samples, "
                f"{metadata.shape[1]} variables")

    missing_taxa = set(counts.index) - set(taxonomy.index)
    if missing_taxa:
        raise SchemaMismatch(
            f"{len(missing_taxa)} taxa in {counts_path} are missing from {taxonomy_path}: "
            f"{_preview(missing_taxa)}"
        )
    missing_samples = set(counts.columns) - set(metadata.index)
    if missing_samples:
        raise SchemaMismatch(
            f"{len(missing_samples)} samples in {counts_path} are missing from {metadata_path}: "
            f"{_preview(missing_samples)}"
        )

    extra_taxa = len(taxonomy.index.difference(counts.index))
    if extra_taxa:
        logger.warning(f"Ignoring {extra_taxa} taxonomy rows with no counts")
    extra_samples = len(metadata.index.difference(counts.columns))
    if extra_samples:
        logger.warning(f"Ignoring {extra_samples} metadata rows with no counts")

    if tree is not None:
        tips = {tip.name for tip in tree.tips()}
        missing_tips = set(counts.index) - tips
        if missing_tips:
            logger.warning(f"{len(missing_tips)} taxa are not tips of the tree; "
                           "phylogenetic metrics will fail for them")

    dataset = Dataset(
        counts=counts,
        taxonomy=taxonomy.loc[taxonomy.index.isin(counts.index)],
        metadata=metadata.loc[metadata.index.isin(counts.columns)],
        tree=tree,
    )
    logger.info(f"Loaded {dataset}")
    return dataset
