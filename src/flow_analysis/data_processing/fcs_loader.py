"""
FCS loading, compensation and transformation.

Thin layer over FlowKit: the Sample object does the parsing, compensation
and transforms; this module decides which channels get which transform and
turns samples into pandas events tables with marker names as columns.
"""

import logging
import os
from pathlib import Path

import numpy as np
import pandas as pd
import flowkit as fk

logger = logging.getLogger(__name__)

SPILL_KEYWORDS = ('spill', 'spillover')


def find_fcs_files(directory, recursive=True):
    """Sorted list of .fcs files (any case) under directory."""
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"FCS directory not found: {directory}")
    pattern = '**/*' if recursive else '*'
    files = sorted(str(p) for p in root.glob(pattern) if p.is_file() and p.suffix.lower() == '.fcs')
    logger.info(f"Found {len(files)} FCS files in {directory}")
    return files


def embedded_spillover(sample):
    """Spillover text stored in the FCS metadata, or None."""
    for key in SPILL_KEYWORDS:
        value = sample.metadata.get(key)
        if value:
            return value
    return None


def compensate_sample(sample, matrix='spill'):
    """
    Apply compensation to `sample` in place and return it.

    ``matrix='spill'`` uses the matrix embedded in the FCS file; when the file
    carries none the sample is left uncompensated.
    """
    if matrix is None:
        return sample
    if isinstance(matrix, str) and matrix == 'spill':
        matrix = embedded_spillover(sample)
        if matrix is None:
            logger.warning(f"Sample {sample.id} has no embedded spillover matrix; not compensating")
            return sample
    sample.apply_compensation(matrix)
    logger.info(f"Compensated sample {sample.id}")
    return sample


def load_sample(path_or_data, sample_id=None, compensation='spill', ignore_offset_error=False,
                channel_labels=None):
    """
    Read one FCS file (or a DataFrame / array of events) into a flowkit.Sample.

    `channel_labels` is required by FlowKit for array input.
    """
    is_path = isinstance(path_or_data, (str, Path))
    if is_path and not os.path.exists(path_or_data):
        raise FileNotFoundError(f"FCS file not found: {path_or_data}")
    try:
        sample = fk.Sample(
            path_or_data,
            sample_id=sample_id,
            channel_labels=channel_labels,
            ignore_offset_error=ignore_offset_error
        )
    except Exception as e:
        logger.error(f"Error reading FCS data {path_or_data if is_path else sample_id}: {e}")
        raise
    logger.info(f"Loaded sample {sample.id}: {sample.event_count} events, {len(sample.pnn_labels)} channels")
    return compensate_sample(sample, compensation)


def load_samples(directory, **kwargs):
    """Load every FCS file in a directory."""
    return [load_sample(path, **kwargs) for path in find_fcs_files(directory)]


def build_transform(method='logicle', **params):
    """FlowKit transform instance for the given method name."""
    method = method.lower()
    if method == 'logicle':
        return fk.transforms.LogicleTransform(
            param_t=params.get('param_t', 262144.0),
            param_w=params.get('param_w', 0.5),
            param_m=params.get('param_m', 4.5),
            param_a=params.get('param_a', 0.0)
        )
    if method == 'asinh':
        return fk.transforms.AsinhTransform(
            param_t=params.get('param_t', 262144.0),
            param_m=params.get('param_m', 4.0),
            param_a=params.get('param_a', 0.0)
        )
    raise ValueError(f"Unknown transform method '{method}'; use 'logicle' or 'asinh'")


def transform_sample(sample, method='logicle', channels=None, **params):
    """
    Transform the fluorescence channels of `sample` (or just `channels`).

    Scatter and time channels are left on their linear scale.
    """
    xform = build_transform(method, **params)
    if channels is None:
        channels = [sample.pnn_labels[i] for i in sample.fluoro_indices]
    missing = [c for c in channels if c not in sample.pnn_labels]
    if missing:
        logger.warning(f"Channels not found in sample {sample.id}: {missing}")
    transforms = {c: xform for c in channels if c in sample.pnn_labels}
    sample.apply_transform(transforms)
    logger.info(f"Applied {method} transform to {len(transforms)} channels of sample {sample.id}")
    return sample


def channel_names(sample, use_markers=True):
    """
    Column names for the events table.

    Marker names ($PnS) are used when present and unique, otherwise the
    channel name ($PnN).
    """
    pnn = list(sample.pnn_labels)
    if not use_markers:
        return pnn
    pns = [label.strip() if isinstance(label, str) else '' for label in sample.pns_labels]
    names = []
    seen = set()
    for channel, marker in zip(pnn, pns):
        name = marker if marker and marker not in seen and marker not in pnn else channel
        seen.add(name)
        names.append(name)
    return names


def sample_to_dataframe(sample, source='xform', use_markers=True, subsample=None,
                        seed=0, sample_id_column=True):
    """Events of a sample as a DataFrame, one row per cell."""
    events = sample.get_events(source=source)
    df = pd.DataFrame(np.asarray(events), columns=channel_names(sample, use_markers))
    if subsample is not None and subsample < len(df):
        df = df.sample(n=subsample, random_state=seed).sort_index()
    if sample_id_column:
        df['sample_id'] = sample.id
    return df


def pool_samples(samples, **kwargs):
    """Concatenate the events of several samples, tagged with sample_id."""
    frames = [sample_to_dataframe(s, sample_id_column=True, **kwargs) for s in samples]
    if not frames:
        raise ValueError("No samples to pool")
    pooled = pd.concat(frames, ignore_index=True)
    logger.info(f"Pooled {len(frames)} samples into {len(pooled)} events")
    return pooled
