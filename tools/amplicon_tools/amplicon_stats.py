"""
Diversity and statistical analysis functions for amplicon datasets.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats
from skbio.diversity import alpha_diversity, beta_diversity
from skbio.stats.distance import permanova, permdisp
from skbio.stats.ordination import pcoa
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

PHYLOGENETIC_ALPHA_METRICS = {'faith_pd'}
PHYLOGENETIC_BETA_METRICS = {'weighted_unifrac', 'unweighted_unifrac'}


def _sheared_tree(dataset):
    if dataset.tree is None:
        raise ValueError("Phylogenetic metrics require a tree; load the dataset with tree_path")
    tips = {tip.name for tip in dataset.tree.tips()}
    missing = [taxon for taxon in dataset.taxon_ids if taxon not in tips]
    if missing:
        raise ValueError(f"{len(missing)} taxa are not tips of the tree, e.g. {', '.join(missing[:5])}")
    return dataset.tree.shear(dataset.taxon_ids)


def calculate_alpha_diversity(dataset, metrics=None):
    """
    Calculate alpha diversity metrics for each sample.

    Parameters:
    -----------
    dataset : Dataset
        Dataset with raw (ideally rarefied) counts
    metrics : list, optional
        scikit-bio alpha diversity metrics
        Default: ['observed_features', 'shannon', 'simpson']

    Returns:
    --------
    pandas.DataFrame
        DataFrame with alpha diversity metrics for each sample
    """
    if metrics is None:
        metrics = ['observed_features', 'shannon', 'simpson']

    counts = dataset.counts.T.to_numpy()
    alpha_div = pd.DataFrame(index=pd.Index(dataset.sample_ids, name='SampleID'))

    for metric in metrics:
        if metric in PHYLOGENETIC_ALPHA_METRICS:
            values = alpha_diversity(metric, counts, ids=dataset.sample_ids,
                                     taxa=dataset.taxon_ids, tree=_sheared_tree(dataset))
        else:
            values = alpha_diversity(metric, counts, ids=dataset.sample_ids)
        alpha_div[metric] = values

    return alpha_div


def compare_alpha_diversity(alpha_df, metadata_df, variable):
    """
    Test alpha diversity differences between groups of a metadata variable.

    Mann-Whitney U is used for two groups and Kruskal-Wallis for more.

    Returns:
    --------
    dict
        Per-metric dicts with 'test', 'statistic', 'p-value' and 'note'
    """
    common_samples = alpha_df.index.intersection(metadata_df.index)
    groups = metadata_df.loc[common_samples, variable].dropna()
    unique_groups = sorted(groups.unique())

    results = {}
    for metric in alpha_df.columns:
        group_values = [alpha_df.loc[groups[groups == g].index, metric].dropna() for g in unique_groups]
        group_values = [values for values in group_values if len(values) > 0]

        if len(group_values) < 2:
            results[metric] = {'test': None, 'statistic': np.nan, 'p-value': None,
                               'note': f'Fewer than 2 groups with data in {variable}'}
            continue

        if len(group_values) == 2:
            test = 'Mann-Whitney U'
            statistic, p_value = stats.mannwhitneyu(*group_values, alternative='two-sided')
        else:
            test = 'Kruskal-Wallis'
            try:
                statistic, p_value = stats.kruskal(*group_values)
            except ValueError as e:
                # all values identical
                results[metric] = {'test': test, 'statistic': np.nan, 'p-value': None, 'note': str(e)}
                continue

        results[metric] = {'test': test, 'statistic': statistic, 'p-value': p_value,
                           'note': 'Successful test'}

    return results


def calculate_beta_diversity(dataset, metric='braycurtis'):
    """
    Calculate a beta diversity distance matrix between samples.

    Parameters:
    -----------
    dataset : Dataset
        Dataset with raw (ideally rarefied) counts
    metric : str
        'braycurtis', 'jaccard', 'weighted_unifrac' or 'unweighted_unifrac'
        (any other scikit-bio/SciPy metric name also works)

    Returns:
    --------
    skbio.DistanceMatrix
        Sample x sample distance matrix
    """
    counts = dataset.counts.T.to_numpy()
    if metric in PHYLOGENETIC_BETA_METRICS:
        return beta_diversity(metric, counts, ids=dataset.sample_ids,
                              taxa=dataset.taxon_ids, tree=_sheared_tree(dataset))
    return beta_diversity(metric, counts, ids=dataset.sample_ids)


def _grouping_for_test(distance_matrix, metadata_df, variable, min_samples=5):
    common_samples = [s for s in distance_matrix.ids if s in metadata_df.index]
    grouping = metadata_df.loc[common_samples, variable].dropna().astype(str)
    common_samples = list(grouping.index)

    if len(common_samples) < min_samples:
        return common_samples, None, 'Insufficient samples for test'

    counts = grouping.value_counts()
    if len(counts) < 2:
        return common_samples, None, f'Only one group found in {variable}'
    if (counts < 2).any():
        return common_samples, None, f'At least one group in {variable} has fewer than 2 samples'

    return common_samples, grouping.values, None


def _distance_test(test_fn, distance_matrix, metadata_df, variable, permutations):
    common_samples, grouping, note = _grouping_for_test(distance_matrix, metadata_df, variable)
    if grouping is None:
        return {
            'test-statistic': np.nan,
            'p-value': np.nan,
            'sample size': len(common_samples),
            'number of groups': np.nan,
            'note': note
        }

    filtered_dm = distance_matrix.filter(common_samples)
    results = test_fn(filtered_dm, grouping, permutations=permutations)

    return {
        'test-statistic': results['test statistic'],
        'p-value': results['p-value'],
        'sample size': len(common_samples),
        'number of groups': results['number of groups'],
        'note': 'Successful test'
    }


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use

    Returns:
    --------
    dict
        PERMANOVA results; NaN statistics with a note when the test cannot run
    """
    return _distance_test(permanova, distance_matrix, metadata_df, variable, permutations)


def perform_permdisp(distance_matrix, metadata_df, variable, permutations=999):
    """
    Test homogeneity of group dispersions (PERMDISP).

    A significant result means a PERMANOVA difference may reflect spread
    rather than location. Same arguments and result layout as perform_permanova.
    """
    return _distance_test(permdisp, distance_matrix, metadata_df, variable, permutations)


def run_pcoa(distance_matrix, n_axes=2):
    """
    Principal coordinates analysis of a distance matrix.

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series)
        Sample coordinates on the first `n_axes` axes and the proportion of
        variance each axis explains
    """
    results = pcoa(distance_matrix)
    axes = list(results.samples.columns[:n_axes])
    coordinates = results.samples[axes].copy()
    coordinates.index = list(distance_matrix.ids)
    coordinates.index.name = 'SampleID'
    proportion = pd.Series(np.asarray(results.proportion_explained)[:len(axes)], index=axes)
    return coordinates, proportion


def _indicator_values(abundance, presence, codes, n_groups):
    means = np.column_stack([abundance[:, codes == g].mean(axis=1) for g in range(n_groups)])
    fidelity = np.column_stack([presence[:, codes == g].mean(axis=1) for g in range(n_groups)])
    totals = means.sum(axis=1, keepdims=True)
    specificity = np.divide(means, totals, out=np.zeros_like(means), where=totals > 0)
    return specificity, fidelity, np.sqrt(specificity * fidelity)


def indicator_species(dataset, variable, groups=None, permutations=999, seed=42, alpha=0.05):
    """
    Indicator species analysis (IndVal.g) for the groups of a metadata variable.

    Each taxon is assigned to the group where its indicator value
    sqrt(specificity * fidelity) is highest. Specificity is the group mean
    abundance divided by the sum of group means, fidelity the fraction of
    group samples where the taxon is present. Significance comes from
    permuting group labels.

    Parameters:
    -----------
    dataset : Dataset
        Dataset with (ideally rarefied) counts
    variable : str
        Metadata variable defining the groups
    groups : list of str, optional
        Groups to compare, in reporting order (default: all groups, sorted)
    permutations : int
        Number of label permutations
    seed : int
        Seed for the permutation generator
    alpha : float
        Significance level for the 'Significant' column

    Returns:
    --------
    pandas.DataFrame
        One row per taxon, sorted by adjusted p-value
    """
    labels = dataset.metadata[variable].dropna().astype(str)
    if groups is None:
        groups = sorted(labels.unique())
    else:
        groups = [str(g) for g in groups]
        labels = labels[labels.isin(groups)]

    if len(groups) < 2:
        raise ValueError(f"Indicator analysis needs at least 2 groups in {variable}, found {len(groups)}")

    samples = list(labels.index)
    abundance = dataset.counts[samples].to_numpy(dtype=float)
    presence = (abundance > 0).astype(float)
    codes = labels.map({g: i for i, g in enumerate(groups)}).to_numpy()

    for i, group in enumerate(groups):
        if not (codes == i).any():
            raise ValueError(f"Group '{group}' of {variable} has no samples")

    logger.info(f"Indicator analysis of {dataset.n_taxa} taxa across {len(groups)} groups of {variable} "
                f"({len(samples)} samples, {permutations} permutations)")

    specificity, fidelity, indval = _indicator_values(abundance, presence, codes, len(groups))
    best = indval.argmax(axis=1)
    observed = indval.max(axis=1)

    rng = np.random.default_rng(seed)
    exceed = np.zeros(len(observed))
    for _ in range(permutations):
        _, _, permuted = _indicator_values(abundance, presence, rng.permutation(codes), len(groups))
        exceed += permuted.max(axis=1) >= observed - 1e-12
    p_values = (exceed + 1) / (permutations + 1)

    rows = np.arange(len(best))
    results = pd.DataFrame({
        'Group': [groups[g] for g in best],
        'IndVal': observed,
        'Specificity': specificity[rows, best],
        'Fidelity': fidelity[rows, best],
        'P-value': p_values,
    }, index=pd.Index(dataset.taxon_ids, name='TaxonID'))

    if len(results) > 0:
        results['Adjusted P-value'] = multipletests(results['P-value'], method='fdr_bh')[1]
    else:
        results['Adjusted P-value'] = results['P-value']
    results['Significant'] = results['Adjusted P-value'] < alpha

    results = results.join(dataset.taxonomy)
    return results.sort_values(['Adjusted P-value', 'IndVal'], ascending=[True, False])


def differential_abundance_analysis(dataset, variable, method='deseq2', reference=None, alpha=0.05):
    """
    Identify differentially abundant taxa between groups.

    Parameters:
    -----------
    dataset : Dataset
        Dataset with raw (not rarefied) counts for 'deseq2'
    variable : str
        Grouping variable in metadata
    method : str
        'deseq2' (negative-binomial Wald test), 'wilcoxon' (Mann-Whitney U,
        two groups) or 'kruskal' (Kruskal-Wallis, two or more groups)
    reference : str, optional
        Reference level for 'deseq2' contrasts (default: first level, sorted)
    alpha : float
        Significance level passed to DESeq2 independent filtering

    Returns:
    --------
    pandas.DataFrame
        Results of differential abundance testing with 'P-value' and
        'Adjusted P-value' columns
    """
    groups = dataset.metadata[variable].dropna().astype(str)
    unique_groups = sorted(groups.unique())

    if len(groups) < 5:
        raise ValueError(f"Not enough samples for differential abundance testing (found {len(groups)})")
    if len(unique_groups) < 2:
        raise ValueError(f"Need at least 2 groups in {variable} for differential abundance testing "
                         f"(found {len(unique_groups)})")

    subset = dataset.subset(samples=groups.index)
    method = method.lower()

    if method == 'deseq2':
        results_df = _deseq2_differential_testing(subset, variable, unique_groups, reference, alpha)
    elif method == 'wilcoxon':
        if len(unique_groups) != 2:
            raise ValueError(f"Wilcoxon testing needs exactly 2 groups, {variable} has {len(unique_groups)}")
        results_df = _two_group_differential_testing(subset.relative_abundance(), groups, unique_groups)
    elif method == 'kruskal':
        results_df = _multi_group_differential_testing(subset.relative_abundance(), groups, unique_groups)
    else:
        raise ValueError(f"Unknown method: {method}. Use 'deseq2', 'wilcoxon' or 'kruskal'.")

    return results_df.join(dataset.taxonomy, on='TaxonID')


def _deseq2_differential_testing(dataset, variable, unique_groups, reference, alpha):
    from pydeseq2.dds import DeseqDataSet
    from pydeseq2.ds import DeseqStats

    reference = str(reference) if reference is not None else unique_groups[0]
    if reference not in unique_groups:
        raise ValueError(f"Reference level '{reference}' not found in {variable}")

    metadata = dataset.metadata[[variable]].astype(str)
    logger.info(f"Fitting DESeq2 model ~{variable} on {dataset.n_taxa} taxa, {dataset.n_samples} samples")
    dds = DeseqDataSet(
        counts=dataset.counts.T,
        metadata=metadata,
        design=f"~{variable}",
        quiet=True,
    )
    dds.deseq2()

    results = []
    for level in unique_groups:
        if level == reference:
            continue
        ds = DeseqStats(dds, contrast=[variable, level, reference], alpha=alpha, quiet=True)
        ds.summary()
        level_df = ds.results_df.rename(columns={
            'baseMean': 'Base Mean',
            'log2FoldChange': 'Log2 Fold Change',
            'lfcSE': 'LFC SE',
            'stat': 'Wald Statistic',
            'pvalue': 'P-value',
            'padj': 'Adjusted P-value',
        })
        level_df['Comparison'] = f'{level} vs {reference}'
        level_df['Test'] = 'DESeq2 Wald'
        level_df.index.name = 'TaxonID'
        results.append(level_df.reset_index())

    results_df = pd.concat(results, ignore_index=True)
    return results_df.sort_values('Adjusted P-value', na_position='last')


def _adjust_p_values(results_df):
    if not results_df.empty and len(results_df) > 1:
        # Use Benjamini-Hochberg procedure for FDR control
        results_df['Adjusted P-value'] = multipletests(results_df['P-value'], method='fdr_bh')[1]
    else:
        results_df['Adjusted P-value'] = results_df['P-value']
    return results_df.sort_values('Adjusted P-value')


def _two_group_differential_testing(abundance_df, groups, unique_groups):
    """
    Run differential abundance testing for two groups using Mann-Whitney U test.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Relative abundance DataFrame with taxa as index, samples as columns
    groups : pandas.Series
        Group assignment for each sample
    unique_groups : array-like
        Unique group values

    Returns:
    --------
    pandas.DataFrame
        DataFrame with differential abundance results
    """
    results = []

    group1_samples = groups[groups == unique_groups[0]].index
    group2_samples = groups[groups == unique_groups[1]].index

    for taxon in abundance_df.index:
        values1 = abundance_df.loc[taxon, group1_samples]
        values2 = abundance_df.loc[taxon, group2_samples]

        mean1 = values1.mean()
        mean2 = values2.mean()

        # Add small pseudocount to avoid division by zero
        pseudocount = 1e-5
        fold_change = np.log2((mean2 + pseudocount) / (mean1 + pseudocount))

        if values1.nunique() == 1 and values2.nunique() == 1 and values1.iloc[0] == values2.iloc[0]:
            # identical constant groups, nothing to test
            stat, p_value = np.nan, 1.0
        else:
            stat, p_value = stats.mannwhitneyu(values1, values2, alternative='two-sided')

        results.append({
            'TaxonID': taxon,
            'P-value': p_value,
            'Group1': unique_groups[0],
            'Group2': unique_groups[1],
            'Mean in Group1': mean1,
            'Mean in Group2': mean2,
            'Log2 Fold Change': fold_change,
            'Cliff Delta': _calculate_cliffs_delta(values1, values2),
            'Test': 'Mann-Whitney U'
        })

    return _adjust_p_values(pd.DataFrame(results))


def _multi_group_differential_testing(abundance_df, groups, unique_groups):
    """Kruskal-Wallis testing across all groups, reporting the largest pairwise log2 fold change."""
    results = []

    for taxon in abundance_df.index:
        group_values = {group: abundance_df.loc[taxon, groups[groups == group].index]
                        for group in unique_groups}
        group_means = {group: values.mean() for group, values in group_values.items()}

        try:
            stat, p_value = stats.kruskal(*group_values.values())
        except ValueError:
            # all values identical
            stat, p_value = np.nan, 1.0

        max_fold_change = 0
        max_group_pair = None
        pseudocount = 1e-5
        for i, group1 in enumerate(unique_groups):
            for group2 in unique_groups[i + 1:]:
                fold_change = np.abs(np.log2((group_means[group2] + pseudocount)
                                             / (group_means[group1] + pseudocount)))
                if fold_change > max_fold_change:
                    max_fold_change = fold_change
                    max_group_pair = (group1, group2)

        result = {
            'TaxonID': taxon,
            'P-value': p_value,
            'Test': 'Kruskal-Wallis',
            'Max Log2 Fold Change': max_fold_change,
            'Max Fold Change Groups': f'{max_group_pair[0]} vs {max_group_pair[1]}' if max_group_pair else None,
        }
        for group in unique_groups:
            result[f'Mean in {group}'] = group_means[group]

        results.append(result)

    return _adjust_p_values(pd.DataFrame(results))


def _calculate_cliffs_delta(group1, group2):
    """
    Calculate Cliff's Delta effect size.

    Positive values mean group1 tends to be larger than group2.
    """
    x = np.asarray(group1, dtype=float)
    y = np.asarray(group2, dtype=float)
    if len(x) == 0 or len(y) == 0:
        return np.nan
    return np.sign(x[:, None] - y[None, :]).mean()
