"""
Visualization functions for amplicon datasets.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from sklearn.manifold import MDS

from .amplicon_stats import run_pcoa
from .amplicon_utils import collapse_taxa, lineage_labels


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var, metric=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Alpha diversity DataFrame with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    metric : str, optional
        Alpha diversity metric to plot (if None, plots all metrics)

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    common_samples = alpha_df.index.intersection(metadata_df.index)
    alpha_subset = alpha_df.loc[common_samples]
    metadata_subset = metadata_df.loc[common_samples]

    if metric is None:
        return {m: _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, m)
                for m in alpha_df.columns}

    if metric not in alpha_df.columns:
        raise ValueError(f"Metric '{metric}' not found in alpha diversity data")

    return _create_diversity_boxplot(alpha_subset, metadata_subset, group_var, metric)


def _create_diversity_boxplot(alpha_df, metadata_df, group_var, metric):
    """Helper function to create a diversity boxplot."""
    fig, ax = plt.subplots(figsize=(10, 6))

    plot_data = pd.DataFrame({
        metric: alpha_df[metric],
        group_var: metadata_df[group_var]
    })

    sns.boxplot(x=group_var, y=metric, data=plot_data, ax=ax)
    sns.stripplot(x=group_var, y=metric, data=plot_data,
                  color='black', size=4, alpha=0.5, ax=ax)

    ax.set_title(f'{metric} Diversity by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel(f'{metric} Diversity')

    # Rotate long group labels
    if len(plot_data) and len(str(plot_data[group_var].iloc[0])) > 10:
        ax.tick_params(axis='x', labelrotation=45)

    fig.tight_layout()
    return fig


def plot_ordination(beta_dm, metadata_df, variable, method='PCoA'):
    """
    Create ordination plot from beta diversity distance matrix.

    Parameters:
    -----------
    beta_dm : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    method : str
        Ordination method ('PCoA' or 'NMDS')

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    if method.upper() == 'PCOA':
        coordinates, proportion = run_pcoa(beta_dm)
        x_col, y_col = coordinates.columns[:2]
        plot_df = coordinates.rename(columns={x_col: 'PC1', y_col: 'PC2'})
        x_label = f'PC1 ({proportion.iloc[0] * 100:.1f}% variance explained)'
        y_label = f'PC2 ({proportion.iloc[1] * 100:.1f}% variance explained)'
        x, y = 'PC1', 'PC2'
        stress = None
    elif method.upper() == 'NMDS':
        # Non-metric MDS on the precomputed distances
        mds = MDS(n_components=2, dissimilarity='precomputed', random_state=42,
                  metric=False, n_init=10, max_iter=500)
        coords = mds.fit_transform(beta_dm.data)
        plot_df = pd.DataFrame({'NMDS1': coords[:, 0], 'NMDS2': coords[:, 1]},
                               index=pd.Index(beta_dm.ids, name='SampleID'))
        x_label, y_label = 'NMDS1', 'NMDS2'
        x, y = 'NMDS1', 'NMDS2'
        stress = getattr(mds, 'stress_', None)
    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    plot_df[variable] = metadata_df[variable].reindex(plot_df.index)

    fig, ax = plt.subplots(figsize=(10, 8))
    sns.scatterplot(data=plot_df.reset_index(), x=x, y=y, hue=variable, s=100, ax=ax)

    ax.set_xlabel(x_label)
    ax.set_ylabel(y_label)
    ax.set_title(f'{method} of Beta Diversity ({variable})')

    if stress is not None:
        ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                transform=ax.transAxes, va='top', ha='left',
                bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')
    fig.tight_layout()
    return fig


def plot_stacked_bar(dataset, group_var, rank='Genus', top_n=10, other_category=True):
    """
    Create a stacked bar plot of the most abundant taxa by group.

    Parameters:
    -----------
    dataset : Dataset
        Dataset to plot
    group_var : str
        Grouping variable from metadata
    rank : str
        Taxonomic rank to collapse taxa to
    top_n : int
        Number of top taxa to include
    other_category : bool
        Whether to include an "Other" category for remaining taxa

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    collapsed = collapse_taxa(dataset, rank)
    depths = collapsed.sum(axis=0).replace(0, np.nan)
    rel_abundance = collapsed.div(depths, axis=1).fillna(0)

    top_taxa = rel_abundance.mean(axis=1).nlargest(top_n).index.tolist()
    plot_data = rel_abundance.loc[top_taxa].copy()
    if other_category and len(rel_abundance) > len(top_taxa):
        plot_data.loc['Other'] = rel_abundance.drop(top_taxa).sum(axis=0)

    group_info = dataset.metadata[group_var]
    plot_df = plot_data.T.groupby(group_info).mean() * 100

    fig, ax = plt.subplots(figsize=(12, 8))
    plot_df.plot(kind='bar', stacked=True, ax=ax, colormap='tab20')

    ax.set_title(f'Mean {rank} Abundance by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel('Relative Abundance (%)')
    ax.legend(title=rank, bbox_to_anchor=(1.05, 1), loc='upper left')

    fig.tight_layout()
    return fig


def plot_contaminant_abundance(report, top_n=20, rank='Genus'):
    """
    Bar plot of mean relative abundance in controls vs. biological samples.

    Parameters:
    -----------
    report : ContaminantReport
        Output of detect_contaminants
    top_n : int
        Number of flagged taxa to show, most control-abundant first
    rank : str
        Rank used to label taxa

    Returns:
    --------
    matplotlib.figure.Figure
        Grouped bar plot
    """
    flagged = report.table[report.table['Contaminant']].head(top_n)

    fig, ax = plt.subplots(figsize=(12, 6))
    if flagged.empty:
        ax.text(0.5, 0.5, 'No contaminants flagged', ha='center', va='center', fontsize=12)
        ax.axis('off')
        return fig

    labels = lineage_labels(flagged, rank)
    plot_df = pd.DataFrame({
        'Taxon': [f'{labels[t]} ({t[:8]})' for t in flagged.index],
        'Control': flagged['Mean Control Abundance'].values * 100,
        'Biological': flagged['Mean Biological Abundance'].values * 100,
    }).melt(id_vars='Taxon', var_name='Sample Type', value_name='Mean Relative Abundance (%)')

    sns.barplot(data=plot_df, x='Taxon', y='Mean Relative Abundance (%)', hue='Sample Type', ax=ax)
    ax.set_title(f'Flagged Contaminants (disproportion > {report.threshold:.0%})')
    ax.set_xlabel('')
    ax.tick_params(axis='x', labelrotation=90)

    fig.tight_layout()
    return fig


def plot_rarefaction_curve(curve_df, metric='observed_features', metadata_df=None, group_var=None,
                           depth=None):
    """
    Plot alpha diversity against rarefaction depth, one line per sample.

    Parameters:
    -----------
    curve_df : pandas.DataFrame
        Output of rarefaction_curve
    metric : str
        Metric column to plot
    metadata_df : pandas.DataFrame, optional
        Metadata for coloring lines by `group_var`
    group_var : str, optional
        Grouping variable from metadata
    depth : int, optional
        Chosen rarefaction depth, drawn as a vertical line

    Returns:
    --------
    matplotlib.figure.Figure
        Line plot figure
    """
    plot_df = curve_df.groupby(['SampleID', 'Depth'], as_index=False)[metric].mean()
    hue = None
    if metadata_df is not None and group_var is not None:
        plot_df[group_var] = plot_df['SampleID'].map(metadata_df[group_var])
        hue = group_var

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.lineplot(data=plot_df, x='Depth', y=metric, units='SampleID', estimator=None,
                 hue=hue, alpha=0.6, ax=ax)
    if depth is not None:
        ax.axvline(depth, color='red', linestyle='--', label=f'Rarefaction depth ({depth})')
        ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')

    ax.set_title('Rarefaction Curves')
    ax.set_xlabel('Sequencing Depth (reads)')
    ax.set_ylabel(metric)

    fig.tight_layout()
    return fig


def plot_read_depth(dataset, depth=None, bins=30):
    """Histogram of sample read depths with the rarefaction depth marked."""
    depths = dataset.sample_depths()

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.histplot(depths, bins=bins, ax=ax)
    if depth is not None:
        n_below = int((depths < depth).sum())
        ax.axvline(depth, color='red', linestyle='--',
                   label=f'Depth {depth} ({n_below} samples below)')
        ax.legend()

    ax.set_title('Sample Read Depth')
    ax.set_xlabel('Reads per sample')
    ax.set_ylabel('Samples')

    fig.tight_layout()
    return fig
