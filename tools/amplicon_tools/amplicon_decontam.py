"""
Frequency-based detection of reagent contaminants using negative controls.

A taxon seen in the negative controls is flagged when its mean relative
abundance in the controls exceeds its mean relative abundance in the
biological samples by more than a disproportion threshold. Relative abundance
is always count / sample total computed over the full dataset, for detection
and for the contaminant plots alike.

Flagged taxa are only a review list. Removing them is a separate call to
remove_contaminants.
"""

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from .amplicon_dataset import EmptyControlSet
from .amplicon_filters import filter_zero_sum, remove_taxa, sample_mask

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class ContaminantReport:
    """
    Result of contaminant detection.

    Attributes:
    -----------
    contaminants : frozenset of str
        Taxon IDs flagged as contaminants
    table : pandas.DataFrame
        Per-taxon comparison of control vs. biological relative abundance for
        every taxon present in the controls
    control_samples : tuple of str
        Samples selected as negative controls
    threshold : float
        Disproportion threshold used for flagging
    """

    contaminants: frozenset
    table: pd.DataFrame
    control_samples: tuple = field(default_factory=tuple)
    threshold: float = 0.40

    def to_csv(self, output_file):
        self.table.to_csv(output_file)
        logger.info(f"Contaminant abundance table saved to {output_file}")


def disproportion(mean_control, mean_biological):
    """|c - b| / max(c, b); zero when both means are zero."""
    mean_control = np.asarray(mean_control, dtype=float)
    mean_biological = np.asarray(mean_biological, dtype=float)
    largest = np.maximum(mean_control, mean_biological)
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = np.abs(mean_control - mean_biological) / largest
    return np.where(largest > 0, ratio, 0.0)


def detect_contaminants(dataset, control_criteria, threshold=0.40):
    """
    Flag taxa enriched in negative-control samples.

    Parameters:
    -----------
    dataset : Dataset
        Dataset containing both control and biological samples
    control_criteria : dict or callable
        Selection of the negative-control samples (see sample_mask),
        e.g. {'SampleType': 'NegCtrl'}
    threshold : float
        Minimum disproportion |c - b| / max(c, b) for a taxon to be flagged

    Returns:
    --------
    ContaminantReport
        Flagged taxa and the full comparison table

    Raises:
    -------
    EmptyControlSet
        If the criteria select no samples
    """
    if not 0 <= threshold <= 1:
        raise ValueError(f"threshold must be within [0, 1], got {threshold}")

    is_control = sample_mask(dataset.metadata, control_criteria)
    control_samples = is_control[is_control].index
    if len(control_samples) == 0:
        raise EmptyControlSet(f"No negative-control samples match {control_criteria!r}")

    biological_samples = is_control[~is_control].index
    logger.info(f"Comparing {len(control_samples)} control samples with "
                f"{len(biological_samples)} biological samples")
    if len(biological_samples) == 0:
        logger.warning("No biological samples remain; every control taxon will be flagged")

    controls = filter_zero_sum(dataset.subset(samples=control_samples))

    rel_abundance = dataset.relative_abundance().loc[controls.taxon_ids]
    mean_control = rel_abundance[control_samples].mean(axis=1)
    if len(biological_samples):
        mean_biological = rel_abundance[biological_samples].mean(axis=1)
    else:
        mean_biological = pd.Series(0.0, index=rel_abundance.index)

    table = pd.DataFrame({
        'Mean Control Abundance': mean_control,
        'Mean Biological Abundance': mean_biological,
        'Disproportion': disproportion(mean_control, mean_biological),
        'Control Prevalence': (controls.counts > 0).mean(axis=1),
        'Control Reads': controls.taxon_totals(),
    })
    table['Contaminant'] = ((table['Disproportion'] > threshold)
                            & (table['Mean Control Abundance'] > table['Mean Biological Abundance']))
    table = dataset.taxonomy.loc[table.index].join(table)
    table = table.sort_values(['Contaminant', 'Mean Control Abundance'], ascending=[False, False])
    table.index.name = 'TaxonID'

    contaminants = frozenset(table[table['Contaminant']].index)
    logger.info(f"{len(table)} taxa present in controls, {len(contaminants)} flagged as contaminants "
                f"(threshold {threshold:.0%})")

    return ContaminantReport(
        contaminants=contaminants,
        table=table,
        control_samples=tuple(control_samples),
        threshold=threshold,
    )


def remove_contaminants(dataset, contaminants):
    """
    Remove confirmed contaminant taxa.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to clean
    contaminants : iterable of str or ContaminantReport
        Confirmed contaminant taxon IDs

    Returns:
    --------
    Dataset
        Dataset without the contaminants
    """
    if isinstance(contaminants, ContaminantReport):
        contaminants = contaminants.contaminants
    contaminants = set(contaminants)
    logger.info(f"Removing {len(contaminants)} contaminant taxa")
    return remove_taxa(dataset, contaminants)


def contaminant_abundance(dataset, report, group_var=None):
    """
    Long-format relative abundance of flagged contaminants for plotting.

    Uses the same per-sample relative abundance as detection. Samples are
    labelled 'Control' or 'Biological', or by `group_var` when given.
    """
    taxa = sorted(report.contaminants)
    if not taxa:
        return pd.DataFrame(columns=['SampleID', 'TaxonID', 'Relative Abundance', 'Group'])
    rel_abundance = dataset.relative_abundance().loc[taxa]
    if group_var is not None:
        labels = dataset.metadata[group_var]
    else:
        labels = pd.Series('Biological', index=dataset.metadata.index)
        labels.loc[labels.index.isin(report.control_samples)] = 'Control'

    long_df = rel_abundance.T.stack().rename('Relative Abundance').reset_index()
    long_df.columns = ['SampleID', 'TaxonID', 'Relative Abundance']
    long_df['Group'] = long_df['SampleID'].map(labels)
    return long_df
