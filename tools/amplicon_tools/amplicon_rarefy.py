"""
Rarefaction of amplicon datasets to a common sequencing depth.

Each sample is subsampled to exactly `depth` reads without replacement, which
is the same as drawing `depth` reads uniformly at random from the multiset of
reads implied by its counts. Draws come from a NumPy Generator seeded once per
call and consumed in sample (column) order, so a given dataset, depth and seed
always produce the same table.
"""

import logging
import numbers
import warnings

import numpy as np
import pandas as pd

from .amplicon_dataset import SampleBelowDepth
from .amplicon_filters import filter_zero_sum

logger = logging.getLogger(__name__)


def _check_depth(depth):
    if isinstance(depth, bool) or not isinstance(depth, numbers.Integral) or depth < 0:
        raise ValueError(f"Rarefaction depth must be a non-negative integer, got {depth!r}")
    return int(depth)


def subsample_counts(counts, depth, rng):
    """
    Draw `depth` reads without replacement from one sample's count vector.

    Parameters:
    -----------
    counts : array-like of int
        Read counts per taxon
    depth : int
        Number of reads to keep; must not exceed counts.sum()
    rng : numpy.random.Generator
        Seeded generator

    Returns:
    --------
    numpy.ndarray
        Subsampled counts summing to `depth`
    """
    counts = np.asarray(counts, dtype=np.int64)
    if counts.sum() < depth:
        raise ValueError(f"Cannot draw {depth} reads from a sample with {counts.sum()} reads")
    if counts.size == 0:
        return counts
    return rng.multivariate_hypergeometric(counts, depth)


def rarefy(dataset, depth, seed=42):
    """
    Rarefy every sample to the same depth.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to normalize
    depth : int
        Target read count per sample
    seed : int
        Seed for numpy.random.default_rng

    Returns:
    --------
    Dataset
        Rarefied dataset; samples below `depth` and taxa left with no reads
        are dropped

    Warns:
    ------
    SampleBelowDepth
        Listing the samples dropped for having fewer than `depth` reads
    """
    depth = _check_depth(depth)
    depths = dataset.sample_depths()

    below = depths[depths < depth].index
    if len(below):
        message = (f"Dropping {len(below)} samples with fewer than {depth} reads: "
                   f"{', '.join(below)}")
        logger.warning(message)
        warnings.warn(message, SampleBelowDepth, stacklevel=2)

    retained = dataset.subset(samples=depths[depths >= depth].index)

    rng = np.random.default_rng(seed)
    rarefied = {}
    for sample_id in retained.sample_ids:
        rarefied[sample_id] = subsample_counts(retained.counts[sample_id].to_numpy(), depth, rng)

    counts = pd.DataFrame(rarefied, index=retained.counts.index, columns=retained.counts.columns,
                          dtype='int64')
    result = filter_zero_sum(retained.with_counts(counts))
    logger.info(f"Rarefied {result.n_samples} samples to {depth} reads ({result.n_taxa} taxa remain)")
    return result


def suggest_depth(dataset, quantile=0.1):
    """
    Sample depth at the given quantile, a starting point for choosing a depth.

    Rarefying at this depth keeps roughly (1 - quantile) of the samples.
    """
    if dataset.n_samples == 0:
        raise ValueError("Cannot suggest a rarefaction depth for a dataset without samples")
    return int(np.floor(dataset.sample_depths().quantile(quantile)))


def rarefaction_curve(dataset, depths, seed=42, metric='observed_features', iterations=1):
    """
    Alpha diversity of each sample rarefied to a series of depths.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to explore
    depths : list of int
        Depths to rarefy to; samples below a depth are skipped at that depth
    seed : int
        Seed for the generator shared by all draws
    metric : str
        scikit-bio alpha diversity metric
    iterations : int
        Independent draws per depth

    Returns:
    --------
    pandas.DataFrame
        Long table with columns SampleID, Depth, Iteration and the metric
    """
    from skbio.diversity import alpha_diversity

    rng = np.random.default_rng(seed)
    sample_depths = dataset.sample_depths()
    records = []

    for depth in sorted(_check_depth(d) for d in depths):
        samples = sample_depths[sample_depths >= depth].index
        if len(samples) == 0:
            logger.info(f"No samples reach depth {depth}; stopping curve")
            break
        for iteration in range(iterations):
            table = np.vstack([
                subsample_counts(dataset.counts[sample_id].to_numpy(), depth, rng)
                for sample_id in samples
            ])
            values = alpha_diversity(metric, table, ids=list(samples))
            for sample_id, value in values.items():
                records.append({'SampleID': sample_id, 'Depth': depth,
                                'Iteration': iteration, metric: value})

    return pd.DataFrame(records, columns=['SampleID', 'Depth', 'Iteration', metric])
