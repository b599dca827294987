"""
Sequential preprocessing of an amplicon dataset.

Stages run in a fixed order, each on the output of the previous one:

1. lineage filter, sample exclusion, zero-sum and low-abundance filters
2. contaminant detection on negative controls
3. removal of confirmed contaminants and of the control samples
4. re-filtering (zero-sum, low-abundance, prevalence)
5. rarefaction

Every intermediate Dataset is kept so later stages can be rerun with other
thresholds without repeating the earlier ones.
"""

import logging
from dataclasses import dataclass, field

from .amplicon_dataset import EmptyControlSet
from .amplicon_decontam import detect_contaminants, remove_contaminants
from .amplicon_filters import (
    exclude_samples,
    filter_lineages,
    filter_low_abundance,
    filter_low_depth_samples,
    filter_prevalence,
    filter_zero_sum,
)
from .amplicon_rarefy import rarefy, suggest_depth

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PreprocessingResult:
    """
    Datasets produced by prepare_dataset.

    Attributes:
    -----------
    stages : dict
        Dataset after every stage, in execution order
    contaminant_report : ContaminantReport or None
        Detection result, None when detection was skipped
    removed_contaminants : frozenset
        Taxon IDs actually removed as contaminants
    rarefaction_depth : int or None
        Depth used for rarefaction, None when rarefaction was disabled
    """

    stages: dict
    contaminant_report: object = None
    removed_contaminants: frozenset = field(default_factory=frozenset)
    rarefaction_depth: int = None

    @property
    def raw(self):
        return self.stages['raw']

    @property
    def filtered(self):
        """Dataset after decontamination and re-filtering, before rarefaction."""
        return self.stages['refiltered']

    @property
    def rarefied(self):
        return self.stages.get('rarefied')

    @property
    def final(self):
        return self.rarefied if self.rarefied is not None else self.filtered

    def summary(self):
        """One row per stage with taxon, sample and read counts."""
        import pandas as pd

        return pd.DataFrame.from_dict(
            {name: dataset.describe() for name, dataset in self.stages.items()}, orient='index'
        )


def apply_filters(dataset, filtering_config):
    """
    Run the lineage, sample exclusion, zero-sum and abundance filters.

    Parameters:
    -----------
    dataset : Dataset
        Loaded dataset
    filtering_config : dict
        The 'filtering' section of the configuration

    Returns:
    --------
    Dataset
        Filtered dataset
    """
    excluded_lineages = [tuple(pair) for pair in filtering_config.get('excluded_lineages') or []]
    dataset = filter_lineages(dataset, excluded_lineages)
    dataset = exclude_samples(dataset, filtering_config.get('excluded_samples') or [],
                              drop_empty_taxa=False)
    dataset = filter_zero_sum(dataset)

    min_reads = filtering_config.get('min_reads')
    if min_reads:
        dataset = filter_low_depth_samples(dataset, min_reads)

    min_relative_abundance = filtering_config.get('min_relative_abundance')
    if min_relative_abundance:
        dataset = filter_low_abundance(dataset, min_relative_abundance)

    return dataset


def refilter(dataset, filtering_config):
    """Zero-sum, low-abundance and prevalence filters after sample or taxon removal."""
    dataset = filter_zero_sum(dataset)

    min_relative_abundance = filtering_config.get('min_relative_abundance')
    if min_relative_abundance:
        dataset = filter_low_abundance(dataset, min_relative_abundance)

    min_prevalence = filtering_config.get('min_prevalence')
    if min_prevalence:
        dataset = filter_prevalence(dataset, min_prevalence)

    return dataset


def prepare_dataset(dataset, config, confirm_contaminants=False):
    """
    Run the full preprocessing chain on a loaded dataset.

    Parameters:
    -----------
    dataset : Dataset
        Dataset from load_dataset
    config : dict
        Configuration from load_config
    confirm_contaminants : bool
        Remove the detected contaminants; otherwise only the taxa listed in
        decontamination.contaminants are removed, unless decontamination.apply
        is set

    Returns:
    --------
    PreprocessingResult
        All intermediate datasets plus the contaminant report
    """
    filtering_config = config['filtering']
    decontam_config = config['decontamination']
    rarefaction_config = config['rarefaction']

    stages = {'raw': dataset}
    logger.info(f"Raw data: {dataset}")

    dataset = apply_filters(dataset, filtering_config)
    stages['filtered'] = dataset

    report = None
    removed = set(str(t) for t in decontam_config.get('contaminants') or [])

    if decontam_config.get('enabled', True):
        control_criteria = decontam_config['control_criteria']
        try:
            report = detect_contaminants(dataset, control_criteria, decontam_config['threshold'])
        except EmptyControlSet as e:
            logger.warning(f"Skipping contaminant detection: {e}")
        else:
            if confirm_contaminants or decontam_config.get('apply', False):
                removed |= set(report.contaminants)
            elif report.contaminants:
                logger.warning(f"{len(report.contaminants)} taxa flagged as contaminants were not removed; "
                               "review the contaminant table and rerun with confirmation to remove them")

            if decontam_config.get('drop_controls', True):
                dataset = exclude_samples(dataset, report.control_samples, drop_empty_taxa=False)

    if removed:
        dataset = remove_contaminants(dataset, removed & set(dataset.taxon_ids))
    stages['decontaminated'] = dataset

    dataset = refilter(dataset, filtering_config)
    stages['refiltered'] = dataset

    depth = None
    if rarefaction_config.get('enabled', True):
        depth = rarefaction_config.get('depth')
        if depth is None:
            depth = suggest_depth(dataset)
            logger.info(f"No rarefaction depth configured; using the 10th percentile depth {depth}")
        stages['rarefied'] = rarefy(dataset, depth, seed=rarefaction_config.get('seed', 42))

    for name, stage in stages.items():
        logger.info(f"{name}: {stage}")

    return PreprocessingResult(
        stages=stages,
        contaminant_report=report,
        removed_contaminants=frozenset(removed & set(stages['filtered'].taxon_ids)),
        rarefaction_depth=depth,
    )
