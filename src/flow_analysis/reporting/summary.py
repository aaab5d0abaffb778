"""
Descriptive tables: per-sample population frequencies, channel summaries and
group comparisons of frequencies.
"""

import logging

import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)


def population_frequency_table(labels, sample_col='sample_id', label_col='cell_type'):
    """Samples x labels table of percentages (rows sum to 100)."""
    if sample_col not in labels.columns:
        raise ValueError(f"Column '{sample_col}' not in labels")
    table = pd.crosstab(labels[sample_col], labels[label_col], normalize='index') * 100.0
    table.columns.name = label_col
    return table


def channel_summary(events, channels, by=None):
    """Median, mean and SD of each channel, optionally per group."""
    if by is None:
        summary = events[channels].agg(['median', 'mean', 'std']).T
        summary.index.name = 'channel'
        return summary.reset_index()
    frames = []
    for channel in channels:
        part = events.groupby(by)[channel].agg(['median', 'mean', 'std']).reset_index()
        part.insert(part.shape[1] - 3, 'channel', channel)
        frames.append(part)
    return pd.concat(frames, ignore_index=True)


def compare_groups(frequencies, groups, alpha=0.05):
    """
    Compare each population's frequency between sample groups.

    Mann-Whitney U for two groups, Kruskal-Wallis for more; p-values are
    FDR-adjusted (Benjamini-Hochberg) across populations.

    Parameters:
    -----------
    frequencies : pd.DataFrame
        Samples x populations (e.g. from population_frequency_table)
    groups : pd.Series or dict
        Sample id -> group name

    Returns:
    --------
    pd.DataFrame
        One row per population with group medians, statistic, p and q values
    """
    groups = pd.Series(groups).reindex(frequencies.index)
    if groups.isna().any():
        missing = list(groups[groups.isna()].index)
        raise ValueError(f"No group given for samples: {missing}")
    group_names = sorted(groups.unique())
    if len(group_names) < 2:
        raise ValueError("Need at least two groups to compare")

    records = []
    for population in frequencies.columns:
        values = [frequencies.loc[groups == g, population].to_numpy() for g in group_names]
        record = {'population': population}
        for name, vals in zip(group_names, values):
            record[f"median_{name}"] = float(pd.Series(vals).median())
        if len(group_names) == 2:
            test = 'mannwhitney'
            statistic, p_value = stats.mannwhitneyu(values[0], values[1], alternative='two-sided')
        else:
            test = 'kruskal'
            try:
                statistic, p_value = stats.kruskal(*values)
            except ValueError:
                # all values identical
                statistic, p_value = 0.0, 1.0
        record.update({'test': test, 'statistic': float(statistic), 'p_value': float(p_value)})
        records.append(record)

    results = pd.DataFrame(records)
    results['p_value'] = results['p_value'].fillna(1.0)
    reject, q_values, _, _ = multipletests(results['p_value'], alpha=alpha, method='fdr_bh')
    results['q_value'] = q_values
    results['significant'] = reject
    logger.info(f"Compared {len(results)} populations across groups {group_names}; "
                f"{int(reject.sum())} significant at q < {alpha}")
    return results.sort_values('p_value').reset_index(drop=True)
