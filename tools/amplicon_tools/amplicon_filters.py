"""
Filtering stages for amplicon datasets.

Every filter takes a Dataset and returns a new Dataset with the same or fewer
taxa and samples. Filters never modify their input and applying one twice
gives the same result as applying it once.
"""

import logging

import pandas as pd

from .amplicon_dataset import RANKS

logger = logging.getLogger(__name__)


def _log_shrink(stage, before, after):
    logger.info(
        f"{stage}: {before.n_taxa} -> {after.n_taxa} taxa, "
        f"{before.n_samples} -> {after.n_samples} samples"
    )


def filter_lineages(dataset, excluded):
    """
    Drop taxa whose lineage matches any excluded (rank, value) pair.

    Parameters:
    -----------
    dataset : Dataset
        Input dataset
    excluded : list of (str, str)
        Pairs such as ('Family', 'Mitochondria'); matching ignores case and
        surrounding whitespace

    Returns:
    --------
    Dataset
        Dataset without the matching taxa
    """
    drop = pd.Series(False, index=dataset.counts.index)

    for rank, value in excluded:
        if rank not in RANKS:
            raise ValueError(f"Unknown rank '{rank}'. Use one of: {', '.join(RANKS)}")
        forbidden = str(value).strip().lower()
        lineage = dataset.taxonomy[rank].map(lambda v: v.strip().lower() if isinstance(v, str) else None)
        matches = lineage == forbidden
        logger.debug(f"{int(matches.sum())} taxa match {rank} == {value}")
        drop |= matches

    filtered = dataset.subset(taxa=drop[~drop].index)
    _log_shrink('Lineage filter', dataset, filtered)
    return filtered


def filter_zero_sum(dataset):
    """Drop taxa with a total count of zero across the remaining samples."""
    totals = dataset.taxon_totals()
    filtered = dataset.subset(taxa=totals[totals > 0].index)
    _log_shrink('Zero-sum filter', dataset, filtered)
    return filtered


def exclude_samples(dataset, sample_ids, drop_empty_taxa=True):
    """
    Drop an explicit set of samples.

    Parameters:
    -----------
    dataset : Dataset
        Input dataset
    sample_ids : iterable of str
        Samples to remove; IDs not in the dataset are ignored
    drop_empty_taxa : bool
        Re-apply the zero-sum filter afterwards

    Returns:
    --------
    Dataset
        Dataset without the excluded samples
    """
    sample_ids = {str(s) for s in sample_ids}
    unknown = sample_ids - set(dataset.sample_ids)
    if unknown:
        logger.warning(f"Ignoring {len(unknown)} excluded samples not in the dataset: "
                       f"{', '.join(sorted(unknown))}")

    keep = [s for s in dataset.sample_ids if s not in sample_ids]
    filtered = dataset.subset(samples=keep)
    _log_shrink('Sample exclusion', dataset, filtered)
    if drop_empty_taxa:
        filtered = filter_zero_sum(filtered)
    return filtered


def sample_mask(metadata_df, criteria):
    """
    Evaluate a sample selection against metadata.

    Parameters:
    -----------
    metadata_df : pandas.DataFrame
        Metadata with samples as index
    criteria : dict or callable
        Either {field: value or list of values} (all fields must match) or a
        function taking the metadata DataFrame and returning a boolean mask

    Returns:
    --------
    pandas.Series
        Boolean mask indexed by sample ID
    """
    if callable(criteria):
        mask = pd.Series(criteria(metadata_df), index=metadata_df.index)
        return mask.fillna(False).astype(bool)

    if not criteria:
        raise ValueError("Sample selection criteria must not be empty")

    mask = pd.Series(True, index=metadata_df.index)
    for field, values in criteria.items():
        if field not in metadata_df.columns:
            raise KeyError(f"Metadata field '{field}' not found")
        if isinstance(values, (list, tuple, set)):
            allowed = {str(v) for v in values}
        else:
            allowed = {str(values)}
        mask &= metadata_df[field].astype(str).isin(allowed)
    return mask


def select_samples(dataset, criteria, drop_empty_taxa=True):
    """Keep only samples matching `criteria` (see sample_mask)."""
    mask = sample_mask(dataset.metadata, criteria)
    filtered = dataset.subset(samples=mask[mask].index)
    _log_shrink('Sample selection', dataset, filtered)
    if drop_empty_taxa:
        filtered = filter_zero_sum(filtered)
    return filtered


def filter_low_abundance(dataset, min_relative_abundance=1e-5):
    """
    Drop taxa whose share of all reads in the dataset is below a threshold.

    Parameters:
    -----------
    dataset : Dataset
        Input dataset
    min_relative_abundance : float
        Minimum fraction of the total read count a taxon must reach

    Returns:
    --------
    Dataset
        Filtered dataset
    """
    if not 0 <= min_relative_abundance <= 1:
        raise ValueError(f"min_relative_abundance must be within [0, 1], got {min_relative_abundance}")

    totals = dataset.taxon_totals()
    grand_total = totals.sum()
    if grand_total == 0:
        return dataset

    fraction = totals / grand_total
    filtered = dataset.subset(taxa=fraction[fraction >= min_relative_abundance].index)
    _log_shrink(f'Low-abundance filter (< {min_relative_abundance:g})', dataset, filtered)
    return filtered


def filter_prevalence(dataset, min_prevalence=0.1):
    """
    Drop taxa present in fewer than `min_prevalence` of the samples.

    A taxon is present in a sample when its count is above zero.
    """
    if not 0 <= min_prevalence <= 1:
        raise ValueError(f"min_prevalence must be within [0, 1], got {min_prevalence}")
    if dataset.n_samples == 0:
        return dataset

    prevalence = (dataset.counts > 0).mean(axis=1)
    filtered = dataset.subset(taxa=prevalence[prevalence >= min_prevalence].index)
    _log_shrink(f'Prevalence filter (< {min_prevalence:.2f})', dataset, filtered)
    return filtered


def filter_low_depth_samples(dataset, min_reads, drop_empty_taxa=True):
    """Drop samples with fewer than `min_reads` total reads."""
    depths = dataset.sample_depths()
    low = depths[depths < min_reads].index
    if len(low):
        logger.info(f"Dropping {len(low)} samples with fewer than {min_reads} reads: {', '.join(low)}")
    filtered = dataset.subset(samples=depths[depths >= min_reads].index)
    _log_shrink(f'Depth filter (< {min_reads} reads)', dataset, filtered)
    if drop_empty_taxa:
        filtered = filter_zero_sum(filtered)
    return filtered


def remove_taxa(dataset, taxon_ids):
    """Drop an explicit set of taxa, e.g. confirmed contaminants."""
    taxon_ids = {str(t) for t in taxon_ids}
    unknown = taxon_ids - set(dataset.taxon_ids)
    if unknown:
        logger.warning(f"{len(unknown)} taxa to remove are not in the dataset")
    filtered = dataset.subset(taxa=[t for t in dataset.taxon_ids if t not in taxon_ids])
    _log_shrink('Taxon removal', dataset, filtered)
    return filtered

