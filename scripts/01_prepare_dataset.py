#!/usr/bin/env python3
"""
Load, filter, decontaminate and rarefy an amplicon dataset.

This script:
1. Loads the count matrix, taxonomy, metadata and (optional) tree
2. Removes excluded lineages and samples, zero-sum and low-abundance taxa
3. Flags taxa enriched in negative controls and exports them for review
4. Removes confirmed contaminants and the control samples, then re-filters
5. Rarefies every sample to a common depth
6. Saves the filtered and rarefied tables plus QC figures

Usage:
    python scripts/01_prepare_dataset.py [--config CONFIG_FILE] [--confirm-contaminants]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

project_root = Path(__file__).resolve().parents[1]

# Add tools directory to Python path
sys.path.append(str(project_root / 'tools'))

from amplicon_tools import (
    AmpliconError,
    create_abundance_summary,
    export_biom_format,
    export_dataset,
    load_config,
    load_dataset,
    prepare_dataset,
    rarefaction_curve,
    setup_logger
)
from amplicon_tools.amplicon_viz import (
    plot_contaminant_abundance,
    plot_rarefaction_curve,
    plot_read_depth
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Filter, decontaminate and rarefy amplicon data')
    parser.add_argument('--config', type=str, default=str(project_root / 'config' / 'analysis_parameters.yml'),
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory for output files (default: from config)')
    parser.add_argument('--confirm-contaminants', action='store_true',
                        help='Remove the taxa flagged as contaminants (default: only report them)')
    parser.add_argument('--depth', type=int, default=None,
                        help='Rarefaction depth (default: from config)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Rarefaction seed (default: from config)')
    parser.add_argument('--biom', action='store_true',
                        help='Also export the rarefied table in BIOM format')
    parser.add_argument('--log-file', default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to prepare the analysis dataset."""
    args = parse_args()

    # Library modules log under the package name
    logger = setup_logger('amplicon_tools', log_file=args.log_file,
                          log_level=getattr(logging, args.log_level))

    try:
        config = load_config(args.config)
        logger.info(f"Loaded configuration from {args.config}")
    except (OSError, ValueError) as e:
        logger.error(f"Error loading configuration: {str(e)}")
        sys.exit(1)

    if args.depth is not None:
        config['rarefaction']['depth'] = args.depth
    if args.seed is not None:
        config['rarefaction']['seed'] = args.seed

    # Set up paths
    output_dir = Path(args.output_dir or config['output']['directory'])
    processed_dir = output_dir / 'processed'
    tables_dir = output_dir / 'tables'
    figures_dir = output_dir / 'figures'
    for directory in (processed_dir, tables_dir, figures_dir):
        directory.mkdir(exist_ok=True, parents=True)
    dpi = config['visualization']['figure_dpi']

    input_config = config['input']
    try:
        dataset = load_dataset(
            input_config['counts'],
            input_config['taxonomy'],
            input_config['metadata'],
            tree_path=input_config.get('tree'),
            sample_id_column=input_config.get('sample_id_column'),
            taxonomy_header=input_config.get('taxonomy_header', True),
        )
    except (OSError, AmpliconError) as e:
        logger.error(f"Error loading input tables: {str(e)}")
        sys.exit(1)

    # Read depth QC before any filtering
    fig = plot_read_depth(dataset, depth=config['rarefaction'].get('depth'))
    fig.savefig(figures_dir / 'read_depth_raw.png', dpi=dpi, bbox_inches='tight')
    plt.close(fig)

    try:
        result = prepare_dataset(dataset, config, confirm_contaminants=args.confirm_contaminants)
    except (AmpliconError, ValueError) as e:
        logger.error(f"Error preparing dataset: {str(e)}")
        sys.exit(1)

    summary = result.summary()
    summary.to_csv(tables_dir / 'preprocessing_summary.csv')
    logger.info(f"Preprocessing summary:\n{summary.to_string()}")

    report = result.contaminant_report
    if report is not None:
        report.to_csv(tables_dir / 'contaminant_abundance.csv')
        fig = plot_contaminant_abundance(report, top_n=config['visualization']['top_n'],
                                         rank=config['visualization']['rank'])
        fig.savefig(figures_dir / 'contaminant_abundance.png', dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        if report.contaminants and not result.removed_contaminants:
            logger.info("Flagged contaminants were kept; rerun with --confirm-contaminants to remove them")

    export_dataset(result.filtered, processed_dir, 'filtered')
    create_abundance_summary(result.filtered, top_n=None).to_csv(tables_dir / 'abundance_summary.csv')

    curve_depths = config['rarefaction'].get('curve_depths') or []
    if curve_depths:
        curve_df = rarefaction_curve(result.filtered, curve_depths, seed=config['rarefaction']['seed'])
        curve_df.to_csv(tables_dir / 'rarefaction_curve.csv', index=False)
        group_vars = config['metadata']['group_variables']
        fig = plot_rarefaction_curve(curve_df, metadata_df=result.filtered.metadata,
                                     group_var=group_vars[0] if group_vars else None,
                                     depth=result.rarefaction_depth)
        fig.savefig(figures_dir / 'rarefaction_curve.png', dpi=dpi, bbox_inches='tight')
        plt.close(fig)

    if result.rarefied is not None:
        export_dataset(result.rarefied, processed_dir, 'rarefied')
        if args.biom:
            export_biom_format(result.rarefied, processed_dir / 'rarefied_counts.biom')

    logger.info("Dataset preparation completed successfully")


if __name__ == "__main__":
    main()
