"""
UMAP projection of events
"""

import logging

import numpy as np
import pandas as pd
import umap
from sklearn.preprocessing import StandardScaler

from ..config import CONFIG

logger = logging.getLogger(__name__)


def select_channels(events, channels=None, exclude_patterns=None):
    """
    Channels to embed: the given list, or every numeric column whose name
    does not contain one of `exclude_patterns` (scatter, time, label columns).
    """
    if channels is not None:
        missing = [c for c in channels if c not in events.columns]
        if missing:
            raise ValueError(f"Channels not in events: {missing}")
        return list(channels)

    if exclude_patterns is None:
        exclude_patterns = CONFIG['exclude_patterns']
    patterns = [p.lower() for p in exclude_patterns]
    numeric = events.select_dtypes(include=[np.number]).columns
    selected = [c for c in numeric if not any(p in str(c).lower() for p in patterns)]
    if not selected:
        raise ValueError("No channels left to embed after exclusions")
    return selected


def subsample_events(events, n, seed=42, stratify=None):
    """
    At most `n` events, drawn evenly across the `stratify` column groups when
    given (e.g. one share per sample).
    """
    if n is None or len(events) <= n:
        return events
    if stratify is None or stratify not in events.columns:
        return events.sample(n=n, random_state=seed).sort_index()

    groups = events.groupby(stratify, sort=False)
    per_group = max(1, n // groups.ngroups)
    parts = [g.sample(n=min(len(g), per_group), random_state=seed) for _, g in groups]
    return pd.concat(parts).sort_index()


def run_umap(events, channels=None, n_neighbors=15, min_dist=0.1, scale=True,
             random_state=42, metric='euclidean', exclude_patterns=None):
    """Two-dimensional UMAP embedding, indexed like `events`."""
    channels = select_channels(events, channels, exclude_patterns)
    if len(events) < n_neighbors + 1:
        raise ValueError(f"UMAP needs more than n_neighbors={n_neighbors} events, got {len(events)}")

    data = events[channels].to_numpy(dtype=float)
    if scale:
        data = StandardScaler().fit_transform(data)

    logger.info(f"Running UMAP on {data.shape[0]} events x {data.shape[1]} channels "
                f"(n_neighbors={n_neighbors}, min_dist={min_dist})")
    reducer = umap.UMAP(
        n_neighbors=n_neighbors,
        min_dist=min_dist,
        metric=metric,
        random_state=random_state
    )
    embedding = reducer.fit_transform(data)
    return pd.DataFrame(embedding, index=events.index, columns=['UMAP1', 'UMAP2'])
