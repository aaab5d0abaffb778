"""
CSV gating templates.

A template lists one population per row, in the spirit of the openCyto
gating-template format::

    alias,pop,parent,dims,gating_method,gating_args
    Lymphocytes,+,root,"FSC-A,SSC-A",boundary,min_FSC-A=50000;max_SSC-A=100000
    Tcells,+,Lymphocytes,CD3,mindensity,
    CD4,+-,Tcells,"CD4,CD8",mindensity,
    CD8,-+,Tcells,"CD4,CD8",mindensity,

``parent`` is ``root``, the alias of an earlier/later population, or a full
``root/A/B`` path when an alias is ambiguous. ``pop`` carries one sign per
dimension for threshold gates (mindensity, quantile, fixed) and a single sign
(inside/outside) for region gates (boundary, polygon).

Gates are evaluated per sample on the parent's events; thresholds found by
data-driven methods are returned as gate geometry so they can be drawn.
"""

import logging
import re

import numpy as np
import pandas as pd
from matplotlib.path import Path
from scipy.signal import find_peaks
from scipy.stats import gaussian_kde

from ..utils.shared_functions import load_csv_with_logging

logger = logging.getLogger(__name__)

ROOT = 'root'
REQUIRED_COLUMNS = ['alias', 'pop', 'parent', 'dims', 'gating_method']


class GatingTemplateError(ValueError):
    """Raised for malformed gating templates."""


def _to_number(value):
    try:
        return float(value)
    except ValueError:
        return value


def _parse_vertices(text):
    vertices = []
    for pair in text.split('|'):
        parts = pair.split(':')
        if len(parts) != 2:
            raise GatingTemplateError(f"Malformed polygon vertex '{pair}', expected x:y")
        vertices.append((float(parts[0]), float(parts[1])))
    return vertices


def parse_gating_args(text):
    """
    Parse ``key=value;key=value`` (commas also separate) into a dict.

    Numeric values become floats. ``vertices`` is a ``x:y|x:y|...`` list.
    """
    if text is None or (isinstance(text, float) and np.isnan(text)):
        return {}
    if isinstance(text, dict):
        return dict(text)
    args = {}
    for item in re.split(r'[;,]', str(text)):
        item = item.strip()
        if not item:
            continue
        if '=' not in item:
            raise GatingTemplateError(f"Malformed gating argument '{item}', expected key=value")
        key, value = (part.strip() for part in item.split('=', 1))
        args[key] = _parse_vertices(value) if key == 'vertices' else _to_number(value)
    return args


def _dim_arg(args, key, dim, default=None):
    """Per-dimension argument ``key_<dim>`` falling back to ``key``."""
    return args.get(f"{key}_{dim}", args.get(key, default))


def find_density_threshold(values, range_min=None, range_max=None, tail_fraction=0.05,
                           side='right', grid_size=512, bw_method=None, min_prominence=0.05):
    """
    Threshold separating negative and positive events on one channel.

    With two or more density peaks the threshold is the lowest point of the
    KDE between the two most prominent peaks. With a single peak it is where
    the density on `side` of the peak drops below `tail_fraction` of the peak
    height.
    """
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    if range_min is not None:
        values = values[values >= range_min]
    if range_max is not None:
        values = values[values <= range_max]
    if values.size == 0:
        raise ValueError("No events left to compute a density threshold")
    unique = np.unique(values)
    if unique.size == 1:
        return float(unique[0])
    if unique.size == 2:
        return float(unique.mean())

    grid = np.linspace(values.min(), values.max(), grid_size)
    density = gaussian_kde(values, bw_method=bw_method)(grid)

    peaks, props = find_peaks(density, prominence=min_prominence * density.max())
    if len(peaks) >= 2:
        top = np.sort(peaks[np.argsort(props['prominences'])[-2:]])
        valley = top[0] + int(np.argmin(density[top[0]:top[1] + 1]))
        return float(grid[valley])

    peak = int(peaks[0]) if len(peaks) == 1 else int(np.argmax(density))
    cutoff = tail_fraction * density[peak]
    if side == 'left':
        below = np.flatnonzero(density[:peak + 1] < cutoff)
        return float(grid[below[-1]] if below.size else grid[0])
    below = np.flatnonzero(density[peak:] < cutoff)
    return float(grid[peak + below[0]] if below.size else grid[-1])


def _threshold_mask(data, dims, pop, thresholds):
    mask = np.ones(len(data), dtype=bool)
    for dim, sign in zip(dims, pop):
        values = data[dim].to_numpy()
        mask &= values > thresholds[dim] if sign == '+' else values <= thresholds[dim]
    return mask


def gate_mindensity(data, dims, pop, args):
    thresholds = {}
    for dim in dims:
        thresholds[dim] = find_density_threshold(
            data[dim].to_numpy(),
            range_min=_dim_arg(args, 'range_min', dim),
            range_max=_dim_arg(args, 'range_max', dim),
            tail_fraction=_dim_arg(args, 'tail_fraction', dim, 0.05),
            side=_dim_arg(args, 'side', dim, 'right'),
        )
    return _threshold_mask(data, dims, pop, thresholds), {'thresholds': thresholds}


def gate_quantile(data, dims, pop, args):
    thresholds = {dim: float(np.quantile(data[dim].to_numpy(), _dim_arg(args, 'probs', dim, 0.95)))
                  for dim in dims}
    return _threshold_mask(data, dims, pop, thresholds), {'thresholds': thresholds}


def gate_fixed(data, dims, pop, args):
    thresholds = {dim: float(_dim_arg(args, 'threshold', dim)) for dim in dims}
    return _threshold_mask(data, dims, pop, thresholds), {'thresholds': thresholds}


def gate_boundary(data, dims, pop, args):
    bounds = {}
    inside = np.ones(len(data), dtype=bool)
    for dim in dims:
        lo = float(_dim_arg(args, 'min', dim, -np.inf))
        hi = float(_dim_arg(args, 'max', dim, np.inf))
        values = data[dim].to_numpy()
        inside &= (values >= lo) & (values <= hi)
        bounds[dim] = (lo, hi)
    return (inside if pop == '+' else ~inside), {'bounds': bounds}


def gate_polygon(data, dims, pop, args):
    vertices = args['vertices']
    inside = Path(vertices).contains_points(data[dims].to_numpy())
    return (inside if pop == '+' else ~inside), {'vertices': vertices}


GATING_METHODS = {
    'mindensity': gate_mindensity,
    'quantile': gate_quantile,
    'fixed': gate_fixed,
    'boundary': gate_boundary,
    'polygon': gate_polygon,
}
REGION_METHODS = {'boundary', 'polygon'}


def _validate_row(row, args):
    where = f"population '{row['alias']}'"
    method = row['gating_method']
    dims, pop = row['dims'], row['pop']
    if method not in GATING_METHODS:
        raise GatingTemplateError(f"{where}: unknown gating method '{method}'; "
                                  f"choose from {sorted(GATING_METHODS)}")
    if not dims:
        raise GatingTemplateError(f"{where}: no dims given")
    if not pop or set(pop) - {'+', '-'}:
        raise GatingTemplateError(f"{where}: pop must be made of '+' and '-', got '{pop}'")
    expected = 1 if method in REGION_METHODS else len(dims)
    if len(pop) != expected:
        raise GatingTemplateError(f"{where}: {method} gate on {len(dims)} dims needs "
                                  f"{expected} sign(s) in pop, got '{pop}'")
    if method == 'polygon':
        if len(dims) != 2:
            raise GatingTemplateError(f"{where}: polygon gates need exactly 2 dims")
        if len(args.get('vertices', [])) < 3:
            raise GatingTemplateError(f"{where}: polygon gates need at least 3 vertices")
    if method == 'fixed':
        missing = [d for d in dims if _dim_arg(args, 'threshold', d) is None]
        if missing:
            raise GatingTemplateError(f"{where}: fixed gate has no threshold for {missing}")


def _resolve_parent(parent, paths, aliases):
    """Parent path for a parent reference, or None while it is not yet known."""
    if parent in ('', ROOT):
        return ROOT
    if '/' in parent:
        path = parent if parent.startswith(ROOT + '/') else f"{ROOT}/{parent.strip('/')}"
        return path if path in paths else None
    matches = aliases.get(parent, [])
    if len(matches) > 1:
        raise GatingTemplateError(f"Parent '{parent}' is ambiguous ({matches}); use the full path")
    return matches[0] if matches else None


def normalize_template(template):
    """
    Validate a gating template and return it in parent-before-child order.

    Adds ``path``, ``parent_path`` and parsed ``args`` columns; ``dims``
    becomes a tuple of channel names.
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in template.columns]
    if missing:
        raise GatingTemplateError(f"Gating template is missing columns: {missing}")

    df = template.copy()
    if 'gating_args' not in df.columns:
        df['gating_args'] = ''
    df['gating_args'] = df['gating_args'].fillna('')
    for col in ['alias', 'pop', 'parent', 'gating_method']:
        df[col] = df[col].fillna('').astype(str).str.strip()
    df['gating_method'] = df['gating_method'].str.lower()
    df['dims'] = df['dims'].fillna('').astype(str).map(
        lambda text: tuple(d.strip() for d in text.split(',') if d.strip())
    )
    if (df['alias'] == '').any():
        raise GatingTemplateError("Every population needs a non-empty alias")
    if df['alias'].str.contains('/').any():
        raise GatingTemplateError("Aliases must not contain '/'")

    rows = []
    for _, row in df.iterrows():
        record = row.to_dict()
        record['args'] = parse_gating_args(record['gating_args'])
        _validate_row(record, record['args'])
        rows.append(record)

    ordered, paths, aliases = [], {ROOT}, {}
    pending = rows
    while pending:
        still_pending = []
        for record in pending:
            parent_path = _resolve_parent(record['parent'], paths, aliases)
            if parent_path is None:
                still_pending.append(record)
                continue
            path = f"{parent_path}/{record['alias']}"
            if path in paths:
                raise GatingTemplateError(f"Duplicate population path '{path}'")
            record['parent_path'] = parent_path
            record['path'] = path
            paths.add(path)
            aliases.setdefault(record['alias'], []).append(path)
            ordered.append(record)
        if len(still_pending) == len(pending):
            pending_aliases = {r['alias'] for r in pending}
            unknown = [r['parent'] for r in pending
                       if r['parent'].split('/')[-1] not in pending_aliases]
            if unknown:
                raise GatingTemplateError(f"Unknown parent population(s): {sorted(set(unknown))}")
            raise GatingTemplateError(f"Cyclic parent references among: {sorted(pending_aliases)}")
        pending = still_pending

    # an alias parent may have been resolved before a second population took the same alias
    for record in ordered:
        parent = record['parent']
        if parent not in ('', ROOT) and '/' not in parent and len(aliases[parent]) > 1:
            raise GatingTemplateError(f"Parent '{parent}' of '{record['alias']}' is ambiguous "
                                      f"({aliases[parent]}); use the full path")

    normalized = pd.DataFrame(ordered).reset_index(drop=True)
    logger.info(f"Gating template with {len(normalized)} populations")
    return normalized


def load_gating_template(path):
    """Read and normalize a CSV gating template."""
    return normalize_template(load_csv_with_logging(path, required_columns=REQUIRED_COLUMNS))


def apply_gating_template(events, template):
    """
    Gate one sample's events.

    Returns (membership, geometry): a boolean DataFrame with one column per
    population path (plus 'root'), indexed like `events`, and a dict of the
    gate geometry computed for each path.
    """
    if 'path' not in template.columns:
        template = normalize_template(template)

    n_events = len(events)
    membership = {ROOT: np.ones(n_events, dtype=bool)}
    geometry = {}
    for _, row in template.iterrows():
        dims = list(row['dims'])
        missing = [d for d in dims if d not in events.columns]
        if missing:
            raise ValueError(f"Population '{row['path']}' uses channels not in the events: {missing}")

        parent_mask = membership[row['parent_path']]
        mask = np.zeros(n_events, dtype=bool)
        geom = {'method': row['gating_method'], 'dims': dims, 'pop': row['pop']}
        if parent_mask.any():
            parent_events = events.loc[parent_mask, dims]
            child_mask, details = GATING_METHODS[row['gating_method']](
                parent_events, dims, row['pop'], row['args']
            )
            mask[np.flatnonzero(parent_mask)[child_mask]] = True
            geom.update(details)
        else:
            logger.warning(f"Parent of '{row['path']}' is empty; population left empty")

        membership[row['path']] = mask
        geometry[row['path']] = geom
        logger.debug(f"{row['path']}: {mask.sum()} of {parent_mask.sum()} parent events")

    return pd.DataFrame(membership, index=events.index), geometry


def gate_samples(events, template, sample_col='sample_id'):
    """
    Apply the template to each sample of a pooled events table separately.

    Returns (membership, geometry) where geometry is keyed by sample id.
    """
    if 'path' not in template.columns:
        template = normalize_template(template)
    if sample_col not in events.columns:
        membership, geometry = apply_gating_template(events, template)
        return membership, {None: geometry}

    memberships, geometries = [], {}
    for sample_id, sample_events in events.groupby(sample_col, sort=False):
        membership, geometry = apply_gating_template(sample_events, template)
        memberships.append(membership)
        geometries[sample_id] = geometry
        logger.info(f"Gated sample {sample_id}: {len(sample_events)} events")
    return pd.concat(memberships).loc[events.index], geometries


def population_statistics(membership):
    """Count and percent-of-parent / percent-of-total per population path."""
    n_total = len(membership)
    counts = membership.sum()
    records = []
    for path in membership.columns:
        parent = path.rsplit('/', 1)[0] if '/' in path else None
        count = int(counts[path])
        parent_count = int(counts[parent]) if parent in counts.index else n_total
        records.append({
            'population': path.split('/')[-1],
            'path': path,
            'parent': parent,
            'count': count,
            'parent_count': parent_count,
            'percent_of_parent': 100.0 * count / parent_count if parent_count else 0.0,
            'percent_of_total': 100.0 * count / n_total if n_total else 0.0,
        })
    return pd.DataFrame(records)
