"""
Per-cell population labels.

Cell types come from gate membership: each rule names a population (full
path or alias) and the deepest population an event belongs to decides its
label. Memory state comes from the CCR7 / CD45RA quadrants of the T cells.
"""

import logging

import numpy as np
import pandas as pd

from .template import find_density_threshold

logger = logging.getLogger(__name__)

UNLABELED = 'Unlabeled'
NOT_APPLICABLE = 'Not applicable'

# (CCR7 positive, CD45RA positive) -> state
MEMORY_STATES = {
    (True, True): 'Naive',
    (True, False): 'Central memory',
    (False, False): 'Effector memory',
    (False, True): 'TEMRA',
}


def _rule_columns(membership, population):
    """Membership columns a rule refers to: an exact path or any path ending in the alias."""
    if population in membership.columns:
        return [population]
    return [c for c in membership.columns if c.split('/')[-1] == population]


def assign_cell_types(membership, rules, default=UNLABELED):
    """
    Label each event with the cell type of its deepest matching population.

    Parameters:
    -----------
    membership : pd.DataFrame
        Boolean events x population-path table
    rules : dict
        Population path or alias -> cell type; earlier rules win ties
    default : str
        Label for events matched by no rule

    Returns:
    --------
    pd.Series
        Cell type per event, indexed like membership
    """
    labels = np.full(len(membership), default, dtype=object)
    best_depth = np.full(len(membership), -1)
    for population, cell_type in rules.items():
        columns = _rule_columns(membership, population)
        if not columns:
            logger.warning(f"Cell type rule '{population}' matches no population")
            continue
        for column in columns:
            depth = column.count('/')
            hit = membership[column].to_numpy() & (depth > best_depth)
            labels[hit] = cell_type
            best_depth[hit] = depth
    result = pd.Series(labels, index=membership.index, name='cell_type')
    logger.info(f"Cell types: {result.value_counts().to_dict()}")
    return result


def memory_state_from_markers(events, ccr7, cd45ra, thresholds=None, mask=None):
    """
    Memory state from the CCR7 x CD45RA quadrants.

    Thresholds missing from `thresholds` are found with the density-valley
    threshold on the masked events. Events outside `mask` are 'Not applicable'.
    """
    missing = [c for c in (ccr7, cd45ra) if c not in events.columns]
    if missing:
        raise ValueError(f"Memory markers not in events: {missing}")

    mask = np.ones(len(events), dtype=bool) if mask is None else np.asarray(mask, dtype=bool)
    states = pd.Series(NOT_APPLICABLE, index=events.index, name='memory_state', dtype=object)
    if not mask.any():
        return states

    thresholds = dict(thresholds or {})
    subset = events.loc[mask, [ccr7, cd45ra]]
    for marker in (ccr7, cd45ra):
        if marker not in thresholds:
            thresholds[marker] = find_density_threshold(subset[marker].to_numpy())
            logger.info(f"{marker} threshold for memory state: {thresholds[marker]:.3f}")

    ccr7_pos = subset[ccr7].to_numpy() > thresholds[ccr7]
    cd45ra_pos = subset[cd45ra].to_numpy() > thresholds[cd45ra]
    states.loc[mask] = [MEMORY_STATES[(a, b)] for a, b in zip(ccr7_pos, cd45ra_pos)]
    return states


def label_events(events, membership, config):
    """Return a copy of `events` with cell_type and memory_state columns."""
    labelled = events.copy()
    labelled['cell_type'] = assign_cell_types(membership, config['cell_type_rules']).to_numpy()

    markers = config.get('memory_markers', {})
    ccr7, cd45ra = markers.get('ccr7'), markers.get('cd45ra')
    if ccr7 in events.columns and cd45ra in events.columns:
        memory_mask = labelled['cell_type'].isin(config.get('memory_cell_types', [])).to_numpy()
        if 'sample_id' in events.columns:
            states = pd.Series(NOT_APPLICABLE, index=events.index, dtype=object)
            for _, index in events.groupby('sample_id', sort=False).groups.items():
                positions = events.index.get_indexer(index)
                states.loc[index] = memory_state_from_markers(
                    events.loc[index], ccr7, cd45ra, mask=memory_mask[positions]
                ).to_numpy()
            labelled['memory_state'] = states.to_numpy()
        else:
            labelled['memory_state'] = memory_state_from_markers(
                events, ccr7, cd45ra, mask=memory_mask
            ).to_numpy()
    else:
        logger.warning(f"Memory markers {ccr7}/{cd45ra} not found; memory_state not assigned")
        labelled['memory_state'] = NOT_APPLICABLE
    return labelled


def label_summary(labels, by=('cell_type',)):
    """Counts and percentages per label group, per sample when sample_id is present."""
    by = list(by)
    if 'sample_id' in labels.columns and 'sample_id' not in by:
        group_cols = ['sample_id'] + by
        totals = labels.groupby('sample_id').size()
    else:
        group_cols = by
        totals = None
    summary = labels.groupby(group_cols).size().reset_index(name='count')
    if totals is not None:
        summary['percent'] = 100.0 * summary['count'] / summary['sample_id'].map(totals)
    else:
        summary['percent'] = 100.0 * summary['count'] / len(labels)
    return summary.sort_values(group_cols).reset_index(drop=True)
