#!/usr/bin/env python3
"""
Identify differentially abundant and indicator taxa between groups.

This script:
1. Loads the filtered (not rarefied) tables for DESeq2 and the rarefied
   tables for indicator species analysis
2. Tests each taxon for differential abundance per group variable
3. Runs IndVal indicator species analysis on the configured grouping
4. Saves result tables and a bar plot of the significant taxa

Usage:
    python scripts/03_differential_abundance.py [--config CONFIG_FILE]
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
    differential_abundance_analysis,
    indicator_species,
    load_config,
    load_dataset,
    setup_logger
)
from amplicon_tools.amplicon_viz import plot_stacked_bar


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Identify differentially abundant taxa')
    parser.add_argument('--config', type=str, default=str(project_root / 'config' / 'analysis_parameters.yml'),
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory holding processed/ and receiving results (default: from config)')
    parser.add_argument('--method', choices=['deseq2', 'wilcoxon', 'kruskal'], default=None,
                        help='Differential abundance method (default: from config)')
    parser.add_argument('--log-file', default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def load_processed(processed_dir, prefix):
    return load_dataset(
        processed_dir / f'{prefix}_counts.csv',
        processed_dir / f'{prefix}_taxonomy.csv',
        processed_dir / f'{prefix}_metadata.csv',
    )


def main():
    """Main function to identify differential taxa."""
    args = parse_args()
    logger = setup_logger('amplicon_tools', log_file=args.log_file,
                          log_level=getattr(logging, args.log_level))

    try:
        config = load_config(args.config)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading configuration: {str(e)}")
        sys.exit(1)

    output_dir = Path(args.output_dir or config['output']['directory'])
    processed_dir = output_dir / 'processed'
    tables_dir = output_dir / 'tables'
    figures_dir = output_dir / 'figures'
    tables_dir.mkdir(exist_ok=True, parents=True)
    figures_dir.mkdir(exist_ok=True, parents=True)
    dpi = config['visualization']['figure_dpi']

    try:
        filtered = load_processed(processed_dir, 'filtered')
    except (OSError, AmpliconError) as e:
        logger.error(f"Error loading filtered tables: {str(e)}")
        logger.error("Please run 01_prepare_dataset.py first.")
        sys.exit(1)

    da_config = config['differential_abundance']
    method = args.method or da_config['method']
    alpha = da_config['p_value_threshold']
    references = da_config.get('reference') or {}

    for var in config['metadata']['group_variables']:
        if var not in filtered.metadata.columns:
            logger.warning(f"Variable '{var}' not found in metadata")
            continue

        n_groups = filtered.metadata[var].nunique()
        if n_groups < 2:
            logger.info(f"Skipping {var}: needs at least 2 groups, found {n_groups}")
            continue

        var_method = method
        if method == 'wilcoxon' and n_groups > 2:
            var_method = 'kruskal'

        logger.info(f"Performing {var_method} differential abundance analysis by {var}")
        results = differential_abundance_analysis(filtered, var, method=var_method,
                                                  reference=references.get(var), alpha=alpha)
        da_file = tables_dir / f"differential_abundance_{var}.csv"
        results.to_csv(da_file, index=False)
        logger.info(f"  Results saved to {da_file}")

        significant = results[results['Adjusted P-value'] < alpha]
        logger.info(f"  Found {significant['TaxonID'].nunique()} significantly different taxa (adj. p < {alpha})")

        if not significant.empty:
            top_taxa = significant['TaxonID'].drop_duplicates().head(config['visualization']['top_n'])
            fig = plot_stacked_bar(filtered.subset(taxa=top_taxa), var,
                                   rank=config['visualization']['rank'],
                                   top_n=config['visualization']['top_n'], other_category=False)
            fig.savefig(figures_dir / f"differential_taxa_{var}.png", dpi=dpi, bbox_inches='tight')
            plt.close(fig)

    indicator_config = config['indicator_species']
    variable = indicator_config.get('variable')
    if variable:
        try:
            rarefied = load_processed(processed_dir, 'rarefied')
        except (OSError, AmpliconError) as e:
            logger.error(f"Error loading rarefied tables: {str(e)}")
            sys.exit(1)

        results = indicator_species(
            rarefied,
            variable,
            groups=indicator_config.get('groups'),
            permutations=indicator_config['permutations'],
            seed=indicator_config['seed'],
            alpha=alpha,
        )
        indicator_file = tables_dir / f"indicator_species_{variable}.csv"
        results.to_csv(indicator_file)
        logger.info(f"{int(results['Significant'].sum())} indicator taxa for {variable} "
                    f"saved to {indicator_file}")

    logger.info("Differential abundance analysis complete")


if __name__ == "__main__":
    main()
