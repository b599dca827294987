#!/usr/bin/env python3
"""
Calculate and analyze alpha and beta diversity of the rarefied dataset.

This script:
1. Loads the rarefied tables written by 01_prepare_dataset.py
2. Calculates alpha diversity metrics
3. Compares alpha diversity between groups
4. Calculates a beta diversity distance matrix
5. Performs PERMANOVA and PERMDISP for each group variable
6. Generates boxplots, ordination plots and taxa bar plots

Usage:
    python scripts/02_calculate_diversity.py [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd

project_root = Path(__file__).resolve().parents[1]

# Add tools directory to Python path
sys.path.append(str(project_root / 'tools'))

from amplicon_tools import (
    AmpliconError,
    calculate_alpha_diversity,
    calculate_beta_diversity,
    compare_alpha_diversity,
    load_config,
    load_dataset,
    perform_permanova,
    perform_permdisp,
    run_pcoa,
    setup_logger
)
from amplicon_tools.amplicon_viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_stacked_bar
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Calculate and analyze microbiome diversity')
    parser.add_argument('--config', type=str, default=str(project_root / 'config' / 'analysis_parameters.yml'),
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory holding processed/ and receiving results (default: from config)')
    parser.add_argument('--log-file', default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to calculate diversity metrics."""
    args = parse_args()
    logger = setup_logger('amplicon_tools', log_file=args.log_file,
                          log_level=getattr(logging, args.log_level))

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading configuration: {str(e)}")
        sys.exit(1)

    # Set up paths
    output_dir = Path(args.output_dir or config['output']['directory'])
    processed_dir = output_dir / 'processed'
    figures_dir = output_dir / 'figures'
    tables_dir = output_dir / 'tables'
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)
    dpi = config['visualization']['figure_dpi']

    counts_file = processed_dir / 'rarefied_counts.csv'
    if not counts_file.exists():
        logger.error(f"Rarefied counts not found at {counts_file}")
        logger.error("Please run 01_prepare_dataset.py with rarefaction enabled first.")
        sys.exit(1)

    try:
        dataset = load_dataset(
            counts_file,
            processed_dir / 'rarefied_taxonomy.csv',
            processed_dir / 'rarefied_metadata.csv',
            tree_path=config['input'].get('tree'),
        )
    except (OSError, AmpliconError) as e:
        logger.error(f"Error loading rarefied tables: {str(e)}")
        sys.exit(1)

    group_vars = [var for var in config['metadata']['group_variables'] if var in dataset.metadata.columns]
    for var in set(config['metadata']['group_variables']) - set(group_vars):
        logger.warning(f"Variable '{var}' not found in metadata")

    # Alpha diversity
    logger.info("Calculating alpha diversity metrics...")
    alpha_metrics = config['diversity']['alpha_metrics']
    if dataset.tree is not None and 'faith_pd' not in alpha_metrics:
        alpha_metrics = alpha_metrics + ['faith_pd']
    alpha_df = calculate_alpha_diversity(dataset, metrics=alpha_metrics)
    alpha_df.to_csv(tables_dir / 'alpha_diversity.csv')
    logger.info(f"Alpha diversity saved to {tables_dir / 'alpha_diversity.csv'}")

    for var in group_vars:
        logger.info(f"Analyzing differences in alpha diversity by {var}")
        results = compare_alpha_diversity(alpha_df, dataset.metadata, var)
        for metric, result in results.items():
            if result['p-value'] is not None:
                logger.info(f"  {metric}: {result['test']} p-value = {result['p-value']:.4f}")
            else:
                logger.info(f"  {metric}: {result['note']}")

        pd.DataFrame(results).T.to_csv(tables_dir / f"alpha_diversity_{var}_stats.csv")

        figures = plot_alpha_diversity_boxplot(alpha_df, dataset.metadata, var)
        for metric, fig in figures.items():
            fig.savefig(figures_dir / f"alpha_diversity_{metric}_{var}.png", dpi=dpi, bbox_inches='tight')
            plt.close(fig)

    # Beta diversity
    beta_metric = config['diversity']['beta_metric']
    logger.info(f"Calculating {beta_metric} beta diversity...")
    beta_dm = calculate_beta_diversity(dataset, metric=beta_metric)
    beta_dm.to_data_frame().to_csv(tables_dir / f"beta_diversity_{beta_metric}.csv")

    coordinates, proportion = run_pcoa(beta_dm)
    coordinates.join(dataset.metadata).to_csv(tables_dir / 'pcoa_coordinates.csv')
    logger.info(f"PCoA variance explained: {', '.join(f'{v:.1%}' for v in proportion)}")

    permutations = config['diversity']['permutations']
    permanova_results = {}
    permdisp_results = {}
    for var in group_vars:
        permanova_results[var] = perform_permanova(beta_dm, dataset.metadata, var, permutations)
        permdisp_results[var] = perform_permdisp(beta_dm, dataset.metadata, var, permutations)
        logger.info(f"PERMANOVA {var}: pseudo-F = {permanova_results[var]['test-statistic']:.4f}, "
                    f"p = {permanova_results[var]['p-value']:.4f} ({permanova_results[var]['note']})")
        logger.info(f"PERMDISP {var}: F = {permdisp_results[var]['test-statistic']:.4f}, "
                    f"p = {permdisp_results[var]['p-value']:.4f}")

        fig = plot_ordination(beta_dm, dataset.metadata, var, method='PCoA')
        fig.savefig(figures_dir / f"beta_diversity_pcoa_{var}.png", dpi=dpi, bbox_inches='tight')
        plt.close(fig)

        fig = plot_stacked_bar(dataset, var, rank=config['visualization']['rank'],
                               top_n=config['visualization']['top_n'])
        fig.savefig(figures_dir / f"composition_by_{var}.png", dpi=dpi, bbox_inches='tight')
        plt.close(fig)

    pd.DataFrame.from_dict(permanova_results, orient='index').to_csv(tables_dir / 'permanova_results.csv')
    pd.DataFrame.from_dict(permdisp_results, orient='index').to_csv(tables_dir / 'permdisp_results.csv')

    logger.info("Diversity analysis complete")


if __name__ == "__main__":
    main()
