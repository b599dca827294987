"""
Amplicon analysis toolkit for microbiome count tables.

This package loads ASV/OTU count tables with their taxonomy, metadata and
tree, filters and decontaminates them, rarefies them to a common depth and
runs the usual diversity, ordination, indicator and differential abundance
analyses.

Usage:
    from amplicon_tools import load_dataset, prepare_dataset, calculate_alpha_diversity, ...
"""

from .amplicon_dataset import (
    RANKS,
    AmpliconError,
    Dataset,
    EmptyControlSet,
    SampleBelowDepth,
    SchemaMismatch,
    load_dataset
)

from .amplicon_filters import (
    exclude_samples,
    filter_lineages,
    filter_low_abundance,
    filter_low_depth_samples,
    filter_prevalence,
    filter_zero_sum,
    remove_taxa,
    sample_mask,
    select_samples
)

from .amplicon_decontam import (
    ContaminantReport,
    contaminant_abundance,
    detect_contaminants,
    remove_contaminants
)

from .amplicon_rarefy import (
    rarefaction_curve,
    rarefy,
    subsample_counts,
    suggest_depth
)

from .amplicon_pipeline import (
    PreprocessingResult,
    prepare_dataset
)

from .amplicon_stats import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    compare_alpha_diversity,
    differential_abundance_analysis,
    indicator_species,
    perform_permanova,
    perform_permdisp,
    run_pcoa
)

from .amplicon_utils import (
    collapse_taxa,
    create_abundance_summary,
    export_biom_format,
    export_dataset,
    load_config,
    load_count_table,
    load_metadata,
    load_taxonomy_table,
    load_tree,
    setup_logger
)

__version__ = '0.1.0'

__all__ = [
    'RANKS',
    'AmpliconError',
    'Dataset',
    'EmptyControlSet',
    'SampleBelowDepth',
    'SchemaMismatch',
    'load_dataset',
    'exclude_samples',
    'filter_lineages',
    'filter_low_abundance',
    'filter_low_depth_samples',
    'filter_prevalence',
    'filter_zero_sum',
    'remove_taxa',
    'sample_mask',
    'select_samples',
    'ContaminantReport',
    'contaminant_abundance',
    'detect_contaminants',
    'remove_contaminants',
    'rarefaction_curve',
    'rarefy',
    'subsample_counts',
    'suggest_depth',
    'PreprocessingResult',
    'prepare_dataset',
    'calculate_alpha_diversity',
    'calculate_beta_diversity',
    'compare_alpha_diversity',
    'differential_abundance_analysis',
    'indicator_species',
    'perform_permanova',
    'perform_permdisp',
    'run_pcoa',
    'collapse_taxa',
    'create_abundance_summary',
    'export_biom_format',
    'export_dataset',
    'load_config',
    'load_count_table',
    'load_metadata',
    'load_taxonomy_table',
    'load_tree',
    'setup_logger'
]
